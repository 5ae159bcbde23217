"""
Final stage: fetch the cover art, then combine audio and artwork into one
tagged file with a single stream-copying muxer invocation.
"""

import asyncio
import logging
import os
from pathlib import Path

import aiohttp

from trackgrab.exceptions import ArtworkUnavailable, MuxFailed
from trackgrab.models.config import get_format_info
from trackgrab.models.track import TrackMetadata

from .downloader import Downloader
from .integrity import FileIntegrityChecker
from .process import run_process

log = logging.getLogger(__name__)


def expected_tags(track: TrackMetadata) -> dict[str, str]:
    return {
        "title": track.title,
        "artist": track.artist_display,
        "album": track.album,
    }


class TaggingStage:
    """Artwork retrieval and muxing for one run."""

    def __init__(
        self,
        downloader: Downloader,
        audio_format: str = "mp3",
        mux_timeout: float = 120.0,
        artwork_timeout: float = 30.0,
        verify_output: bool = True,
    ):
        self.downloader = downloader
        self.audio_format = audio_format
        self.mux_timeout = mux_timeout
        self.artwork_timeout = artwork_timeout
        self.verify_output = verify_output

    async def fetch_artwork(self, track: TrackMetadata, destination: Path) -> Path:
        """Downloads the track's cover art to ``destination``."""
        if not track.artwork_url:
            raise ArtworkUnavailable("The catalog has no cover art for this track.")
        try:
            size = await self.downloader.download_file(
                track.artwork_url,
                str(destination),
                timeout=self.artwork_timeout,
                max_attempts=1,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise ArtworkUnavailable(f"Could not download cover art: {e}") from e
        if size == 0:
            raise ArtworkUnavailable("The cover art download was empty.")
        log.debug(f"Fetched artwork ({size} bytes) to {destination.name}")
        return destination

    def build_command(
        self,
        ffmpeg_path: str,
        audio_path: Path,
        artwork_path: Path,
        track: TrackMetadata,
        output_path: Path,
    ) -> list[str]:
        tags = expected_tags(track)
        cmd = [
            ffmpeg_path,
            "-y",
            "-hide_banner",
            "-loglevel",
            "error",
            "-i",
            str(audio_path),
            "-i",
            str(artwork_path),
            "-map",
            "0:a",
            "-map",
            "1:v",
            "-c",
            "copy",
            *get_format_info(self.audio_format)["mux_args"],
        ]
        for key, value in tags.items():
            cmd += ["-metadata", f"{key}={value}"]
        cmd += [
            "-metadata:s:v",
            "title=Album cover",
            "-metadata:s:v",
            "comment=Cover (front)",
            str(output_path),
        ]
        return cmd

    async def mux(
        self,
        ffmpeg_path: str,
        audio_path: Path,
        artwork_path: Path,
        track: TrackMetadata,
        output_path: Path,
    ) -> Path:
        """Runs the muxer once and optionally verifies the embedded tags."""
        cmd = self.build_command(ffmpeg_path, audio_path, artwork_path, track, output_path)
        result = await run_process(cmd, timeout=self.mux_timeout)

        if not result.ok or not output_path.is_file():
            self._discard(output_path)
            raise MuxFailed(
                f"Tagging failed (exit status {result.returncode}).", output=result.output
            )

        if self.verify_output:
            tags_ok = await asyncio.to_thread(
                FileIntegrityChecker.check_tags, str(output_path), expected_tags(track)
            )
            if not tags_ok:
                self._discard(output_path)
                raise MuxFailed("The tagged file is missing its metadata.")
        return output_path

    @staticmethod
    def _discard(path: Path) -> None:
        if path.exists():
            try:
                os.remove(path)
            except OSError as e:
                log.debug(f"Could not remove failed output {path.name}: {e}")
