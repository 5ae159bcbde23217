"""
Pydantic model for application configuration.
Provides robust validation for all settings.
"""

import os
import tempfile

from pydantic import BaseModel, Field, field_validator, model_validator

# Maps the output container to its extractor/muxer settings
AUDIO_FORMATS = {
    "mp3": {
        "name": "MP3",
        "mime": "audio/mpeg",
        "mux_args": ["-id3v2_version", "3"],
    },
    "m4a": {
        "name": "AAC (M4A)",
        "mime": "audio/mp4",
        "mux_args": ["-disposition:v:0", "attached_pic"],
    },
    "flac": {
        "name": "FLAC",
        "mime": "audio/flac",
        "mux_args": ["-disposition:v:0", "attached_pic"],
    },
}


def get_format_info(audio_format: str) -> dict:
    """Gets all information for a given audio format from the central map."""
    return AUDIO_FORMATS.get(
        audio_format,
        {"name": "Unknown", "mime": "application/octet-stream", "mux_args": []},
    )


def _default_dir(name: str) -> str:
    return os.path.join(tempfile.gettempdir(), name)


class AppConfig(BaseModel):
    """A validated configuration model for the application."""

    # Catalog credentials
    spotify_client_id: str = ""
    spotify_client_secret: str = ""

    # Session cookie material for the extractor
    cookies_url: str = ""
    github_token: str = ""
    credential_refresh_hours: float = 12.0

    # External tools
    ytdlp_path: str = ""
    ffmpeg_path: str = ""
    tools_dir: str = Field(default_factory=lambda: _default_dir("trackgrab-tools"))

    # Pipeline
    work_dir: str = Field(default_factory=lambda: _default_dir("trackgrab-runs"))
    audio_format: str = "mp3"
    metadata_timeout: float = 60.0
    acquisition_timeout: float = 900.0
    mux_timeout: float = 120.0
    artwork_timeout: float = 30.0
    artifact_ttl_seconds: int = 1800
    verify_output: bool = True

    # HTTP service
    host: str = "0.0.0.0"
    port: int = 3000

    # Internal fields not loaded from INI file
    config_path: str = Field("", repr=False)

    class Config:
        """Pydantic model configuration."""

        validate_assignment = True
        str_strip_whitespace = True

    @field_validator("audio_format")
    @classmethod
    def validate_audio_format(cls, v: str) -> str:
        """Ensures the format is one the muxer can attach cover art to."""
        v = v.lower()
        if v not in AUDIO_FORMATS:
            raise ValueError(
                f"Audio format must be one of: {', '.join(AUDIO_FORMATS)}."
            )
        return v

    @field_validator(
        "metadata_timeout",
        "acquisition_timeout",
        "mux_timeout",
        "artwork_timeout",
        "credential_refresh_hours",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Timeouts and intervals must be greater than zero.")
        return v

    @field_validator("artifact_ttl_seconds")
    @classmethod
    def validate_ttl(cls, v: int) -> int:
        if v < 10:
            raise ValueError("Artifact TTL must be at least 10 seconds.")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535.")
        return v

    @model_validator(mode="after")
    def validate_catalog_credentials(self) -> "AppConfig":
        """Validates that the catalog client credentials are present."""
        if not self.spotify_client_id or not self.spotify_client_secret:
            raise ValueError(
                "Catalog credentials not configured. Provide both "
                "'spotify_client_id' and 'spotify_client_secret'."
            )
        return self

    @model_validator(mode="after")
    def validate_cookie_source(self) -> "AppConfig":
        if self.github_token and not self.cookies_url:
            raise ValueError("'github_token' is set but 'cookies_url' is empty.")
        return self

    @classmethod
    def get_ini_keys(cls) -> set[str]:
        """Returns a set of all keys that are expected in the INI file."""
        internal_fields = {"config_path"}
        return {key for key in cls.model_fields if key not in internal_fields}
