"""
Audio acquisition: runs the extractor in audio-only mode and forwards its
download percentage as it goes.
"""

import logging
import os
import re
from collections.abc import Callable
from pathlib import Path

from trackgrab.exceptions import AcquisitionFailed
from trackgrab.models.track import SourceReference

from .process import run_process

log = logging.getLogger(__name__)

_PROGRESS_RE = re.compile(r"^\[download\]\s+(\d{1,3}(?:\.\d+)?)%")


def parse_progress(line: str) -> float | None:
    """Extracts the percentage from one extractor output line, if present."""
    match = _PROGRESS_RE.match(line.strip())
    if not match:
        return None
    return min(100.0, float(match.group(1)))


class AcquisitionEngine:
    """Downloads the audio track of a source link to a local file."""

    def __init__(self, audio_format: str = "mp3", timeout: float = 900.0):
        self.audio_format = audio_format
        self.timeout = timeout

    def build_command(
        self,
        source: SourceReference,
        destination: Path,
        ytdlp_path: str,
        ffmpeg_path: str,
        cookies_file: str | None = None,
    ) -> list[str]:
        # yt-dlp picks the extension itself after conversion
        output_template = str(destination.with_suffix(".%(ext)s"))
        cmd = [
            ytdlp_path,
            "-x",
            "--audio-format",
            self.audio_format,
            "--newline",
            "--no-playlist",
            "--no-continue",
            "--ffmpeg-location",
            ffmpeg_path,
            "-o",
            output_template,
        ]
        if cookies_file:
            cmd += ["--cookies", cookies_file]
        cmd.append(str(source))
        return cmd

    async def acquire(
        self,
        source: SourceReference,
        destination: Path,
        on_progress: Callable[[float], None],
        ytdlp_path: str,
        ffmpeg_path: str,
        cookies_file: str | None = None,
    ) -> Path:
        """
        Extracts audio from ``source`` into ``destination``.

        Completion is decided by the exit status alone. On failure the
        partial output is removed and AcquisitionFailed carries the tail of
        the extractor's output.
        """

        def _on_line(line: str) -> None:
            percent = parse_progress(line)
            if percent is not None:
                on_progress(percent)

        cmd = self.build_command(source, destination, ytdlp_path, ffmpeg_path, cookies_file)
        result = await run_process(cmd, timeout=self.timeout, on_line=_on_line)

        if not result.ok:
            self._discard_partials(destination)
            raise AcquisitionFailed(
                f"Audio download failed (exit status {result.returncode}).",
                output=result.output,
            )
        if not destination.is_file():
            self._discard_partials(destination)
            raise AcquisitionFailed(
                "The extractor finished but produced no audio file.",
                output=result.output,
            )
        log.debug(f"Acquired audio: {destination} ({destination.stat().st_size} bytes)")
        return destination

    @staticmethod
    def _discard_partials(destination: Path) -> None:
        for leftover in destination.parent.glob(f"{destination.stem}.*"):
            try:
                os.remove(leftover)
            except OSError as e:
                log.debug(f"Could not remove partial file {leftover.name}: {e}")
