"""
Turns a source link into a catalog search query by asking the extractor
for the video's metadata (no media transfer).
"""

import json
import logging

from trackgrab.exceptions import MetadataParseError, SourceUnresolvable
from trackgrab.models.track import SourceReference

from .process import run_process

log = logging.getLogger(__name__)

# Fields tried in order for the uploader identity
_UPLOADER_KEYS = ("uploader", "channel", "creator", "artist")


def _last_error_line(output: str) -> str:
    lines = [line for line in output.splitlines() if line.strip()]
    for line in reversed(lines):
        if line.startswith("ERROR:"):
            return line[len("ERROR:"):].strip()
    return lines[-1] if lines else "no output"


def build_query(info: dict) -> str:
    """Concatenates title and uploader into one search string."""
    title = info.get("title")
    if not isinstance(title, str) or not title.strip():
        raise MetadataParseError("Video metadata has no title.")
    uploader = next(
        (
            info[key].strip()
            for key in _UPLOADER_KEYS
            if isinstance(info.get(key), str) and info[key].strip()
        ),
        "",
    )
    return f"{title.strip()} {uploader}".strip()


def parse_info(output_lines: list[str]) -> dict:
    """Finds the JSON document among the extractor's output lines."""
    for line in reversed(output_lines):
        stripped = line.strip()
        if stripped.startswith("{"):
            try:
                info = json.loads(stripped)
            except json.JSONDecodeError as e:
                raise MetadataParseError(f"Could not decode video metadata: {e}") from e
            if not isinstance(info, dict):
                break
            return info
    raise MetadataParseError("The extractor returned no metadata document.")


class MetadataResolver:
    """Single-attempt metadata lookup through the extractor."""

    def __init__(self, timeout: float = 60.0):
        self.timeout = timeout

    def build_command(
        self, source: SourceReference, ytdlp_path: str, cookies_file: str | None = None
    ) -> list[str]:
        cmd = [
            ytdlp_path,
            "--dump-json",
            "--skip-download",
            "--no-playlist",
            "--no-warnings",
        ]
        if cookies_file:
            cmd += ["--cookies", cookies_file]
        cmd.append(str(source))
        return cmd

    async def resolve(
        self, source: SourceReference, ytdlp_path: str, cookies_file: str | None = None
    ) -> str:
        """
        Returns "<title> <uploader>" for ``source``.

        Raises:
            SourceUnresolvable: The extractor could not resolve the link.
            MetadataParseError: The extractor's output was not usable.
        """
        lines: list[str] = []
        result = await run_process(
            self.build_command(source, ytdlp_path, cookies_file),
            timeout=self.timeout,
            on_line=lines.append,
        )
        if not result.ok:
            raise SourceUnresolvable(
                f"Could not read this video: {_last_error_line(result.output)}"
            )

        query = build_query(parse_info(lines))
        log.debug(f"Resolved '{source}' to query '{query}'")
        return query
