"""
Utilities for handling run directories, output filenames and source links.
"""

import re
from pathlib import Path
from urllib.parse import urlparse

from pathvalidate import sanitize_filename

_UNSAFE_TITLE_CHARS = re.compile(r"[^A-Za-z0-9 ]")
_YOUTUBE_HOSTS = ("youtube.com", "youtu.be", "music.youtube.com")


def create_dir(directory_path: Path) -> None:
    """Creates a directory if it does not already exist."""
    directory_path.mkdir(parents=True, exist_ok=True)


def output_filename(title: str, ext: str, fallback: str = "track") -> str:
    """
    Builds the final artifact filename from a track title.

    Every character outside ``[A-Za-z0-9 ]`` is stripped. The result is then
    passed through pathvalidate so reserved names (``CON``, ``NUL``...) cannot
    reach the filesystem.
    """
    stem = _UNSAFE_TITLE_CHARS.sub("", title or "").strip()
    stem = sanitize_filename(stem, platform="universal") or fallback
    return f"{stem}.{ext}"


def is_probably_video_link(source: str) -> bool:
    """
    A loose check used only to warn about odd input; the extractor is the
    judge of what it can resolve.
    """
    parsed = urlparse(source)
    if parsed.scheme not in ("http", "https"):
        return False
    host = (parsed.hostname or "").lower()
    return any(host == h or host.endswith("." + h) for h in _YOUTUBE_HOSTS)
