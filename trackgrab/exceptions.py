"""
Defines custom exceptions for the application to allow for more specific error handling.
"""


class TrackgrabError(Exception):
    """Base exception for all application-specific errors."""


class ConfigurationError(TrackgrabError):
    """Raised for issues related to configuration loading or validation."""


class InvalidSourceReference(TrackgrabError):
    """Raised when a request carries an empty or blank source reference."""


# --- Provisioning ---


class ProvisionError(TrackgrabError):
    """Raised when a required tool or credential cannot be set up."""

    kind = "provision_error"


class ToolUnavailable(ProvisionError):
    """Raised when an external tool binary is missing and could not be installed."""

    kind = "tool_unavailable"

    def __init__(self, tool: str, reason: str = ""):
        self.tool = tool
        message = f"Required tool '{tool}' is unavailable"
        super().__init__(f"{message}: {reason}" if reason else message)


class CredentialError(ProvisionError):
    """Raised when the catalog access token cannot be obtained."""

    kind = "credential_unavailable"


# --- Pipeline stages ---


class PipelineError(TrackgrabError):
    """
    Base class for failures raised by a pipeline stage.

    Subclasses set ``kind`` (a stable machine-readable identifier reported to
    the caller) and ``user_facing`` (True when the failure is about the input,
    not about the service).
    """

    kind = "pipeline_error"
    user_facing = False

    def __init__(self, message: str = "", stage: str | None = None):
        super().__init__(message or self.default_message())
        self.stage = stage

    @classmethod
    def default_message(cls) -> str:
        return "The download could not be completed."


class SourceUnresolvable(PipelineError):
    """Raised when the extractor cannot resolve the source reference."""

    kind = "source_unresolvable"
    user_facing = True


class MetadataParseError(PipelineError):
    """Raised when the extractor's metadata output is malformed."""

    kind = "metadata_parse_error"


class NoMatch(PipelineError):
    """Raised when the catalog returns no result for the query."""

    kind = "no_match"
    user_facing = True

    @classmethod
    def default_message(cls) -> str:
        return "Could not identify this track."


class CatalogTransportError(PipelineError):
    """Raised when the catalog cannot be reached or answers with an error."""

    kind = "catalog_unavailable"


class AcquisitionFailed(PipelineError):
    """Raised when the audio extraction process exits unsuccessfully."""

    kind = "acquisition_failed"

    def __init__(self, message: str = "", stage: str | None = None, output: str = ""):
        super().__init__(message, stage)
        self.output = output


class ArtworkUnavailable(PipelineError):
    """Raised when the cover art cannot be fetched."""

    kind = "artwork_unavailable"


class MuxFailed(PipelineError):
    """Raised when the muxer fails or produces an unreadable file."""

    kind = "mux_failed"

    def __init__(self, message: str = "", stage: str | None = None, output: str = ""):
        super().__init__(message, stage)
        self.output = output


class ProcessTimeout(PipelineError):
    """Raised when an external process exceeds its time limit."""

    kind = "timeout"


class RunCancelled(PipelineError):
    """Raised when the caller went away before the run completed."""

    kind = "cancelled"

    @classmethod
    def default_message(cls) -> str:
        return "The download was cancelled."
