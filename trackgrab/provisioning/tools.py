"""
Locates or installs the external extractor (yt-dlp) and muxer (ffmpeg)
binaries. Installation is single-flight per tool: concurrent callers wait
for the first installer instead of racing it.
"""

import asyncio
import logging
import os
import shutil
import stat
import tarfile
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from trackgrab.exceptions import ToolUnavailable
from trackgrab.media.downloader import Downloader

log = logging.getLogger(__name__)

YTDLP = "yt-dlp"
FFMPEG = "ffmpeg"

YTDLP_URL = "https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp"
FFMPEG_URL = (
    "https://johnvansickle.com/ffmpeg/releases/ffmpeg-release-amd64-static.tar.xz"
)

Installer = Callable[[Downloader, Path], Awaitable[Path]]


@dataclass(frozen=True)
class ProvisionedTool:
    name: str
    binary_path: str
    installed_at: float
    source: str  # configured | path | cache | installed


def _make_executable(path: Path) -> None:
    mode = path.stat().st_mode
    path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


async def install_ytdlp(downloader: Downloader, tools_dir: Path) -> Path:
    """Downloads the standalone yt-dlp release binary."""
    target = tools_dir / YTDLP
    await downloader.download_file(YTDLP_URL, str(target), timeout=300)
    await asyncio.to_thread(_make_executable, target)
    return target


def _extract_ffmpeg(archive: Path, target: Path) -> None:
    with tarfile.open(archive, "r:xz") as tar:
        member = next(
            (
                m
                for m in tar.getmembers()
                if m.isfile() and os.path.basename(m.name) == FFMPEG
            ),
            None,
        )
        if member is None:
            raise RuntimeError("ffmpeg binary not found in the release archive.")
        source = tar.extractfile(member)
        assert source is not None
        with source, open(target, "wb") as out:
            shutil.copyfileobj(source, out)
    _make_executable(target)


async def install_ffmpeg(downloader: Downloader, tools_dir: Path) -> Path:
    """Downloads the static ffmpeg build and unpacks only the ffmpeg binary."""
    archive = tools_dir / "ffmpeg.tar.xz"
    target = tools_dir / FFMPEG
    await downloader.download_file(FFMPEG_URL, str(archive), timeout=600)
    try:
        await asyncio.to_thread(_extract_ffmpeg, archive, target)
    finally:
        archive.unlink(missing_ok=True)
    return target


DEFAULT_INSTALLERS: dict[str, Installer] = {
    YTDLP: install_ytdlp,
    FFMPEG: install_ffmpeg,
}


class ToolProvisioner:
    """
    Resolves each tool, in order: an explicitly configured path, an
    executable on PATH, a copy previously installed into ``tools_dir``,
    and finally a fresh install.

    A resolved tool is cached for the life of the process. A failed install
    is not cached, so the next caller tries again.
    """

    def __init__(
        self,
        tools_dir: Path,
        downloader: Downloader,
        configured_paths: dict[str, str] | None = None,
        installers: dict[str, Installer] | None = None,
        search_path: bool = True,
    ):
        self.tools_dir = tools_dir
        self.downloader = downloader
        self.configured_paths = {k: v for k, v in (configured_paths or {}).items() if v}
        self.installers = installers if installers is not None else dict(DEFAULT_INSTALLERS)
        self.search_path = search_path
        self._tools: dict[str, ProvisionedTool] = {}
        self._locks: dict[str, asyncio.Lock] = {
            name: asyncio.Lock() for name in (YTDLP, FFMPEG)
        }
        self._last_errors: dict[str, str] = {}

    def get(self, name: str) -> ProvisionedTool | None:
        return self._tools.get(name)

    def path_of(self, name: str) -> str:
        """Returns the binary path of a provisioned tool or raises ToolUnavailable."""
        tool = self._tools.get(name)
        if tool is None:
            raise ToolUnavailable(name, self._last_errors.get(name, "not provisioned"))
        return tool.binary_path

    def status(self) -> dict[str, dict]:
        report = {}
        for name in (YTDLP, FFMPEG):
            tool = self._tools.get(name)
            report[name] = {
                "ready": tool is not None,
                "path": tool.binary_path if tool else None,
                "source": tool.source if tool else None,
                "error": self._last_errors.get(name),
            }
        return report

    async def ensure_ready(self) -> dict[str, ProvisionedTool]:
        """Ensures every tool is available. Idempotent and cheap once done."""
        results = await asyncio.gather(
            self.ensure_tool(YTDLP), self.ensure_tool(FFMPEG)
        )
        return {tool.name: tool for tool in results}

    async def ensure_tool(self, name: str) -> ProvisionedTool:
        if tool := self._tools.get(name):
            return tool

        async with self._locks.setdefault(name, asyncio.Lock()):
            # Another waiter may have finished the install meanwhile
            if tool := self._tools.get(name):
                return tool
            tool = await self._resolve(name)
            self._tools[name] = tool
            self._last_errors.pop(name, None)
            log.info(f"[green]✓[/green] {name} ready ({tool.source}): {tool.binary_path}")
            return tool

    async def _resolve(self, name: str) -> ProvisionedTool:
        if configured := self.configured_paths.get(name):
            path = Path(configured).expanduser()
            if not _is_executable(path):
                self._last_errors[name] = f"configured path '{path}' is not executable"
                raise ToolUnavailable(name, self._last_errors[name])
            return ProvisionedTool(name, str(path), time.time(), "configured")

        if self.search_path and (found := shutil.which(name)):
            return ProvisionedTool(name, found, time.time(), "path")

        cached = self.tools_dir / name
        if _is_executable(cached):
            return ProvisionedTool(
                name, str(cached), cached.stat().st_mtime, "cache"
            )

        installer = self.installers.get(name)
        if installer is None:
            self._last_errors[name] = "no installer available"
            raise ToolUnavailable(name, self._last_errors[name])

        log.info(f"Installing {name} into {self.tools_dir}...")
        try:
            await asyncio.to_thread(self.tools_dir.mkdir, parents=True, exist_ok=True)
            path = await installer(self.downloader, self.tools_dir)
        except Exception as e:
            self._last_errors[name] = str(e) or type(e).__name__
            log.error(f"[red]✗ Failed to install {name}: {self._last_errors[name]}[/red]")
            raise ToolUnavailable(name, self._last_errors[name]) from e

        if not _is_executable(path):
            self._last_errors[name] = f"installed file '{path}' is not executable"
            raise ToolUnavailable(name, self._last_errors[name])
        return ProvisionedTool(name, str(path), time.time(), "installed")
