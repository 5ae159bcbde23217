"""
Keeps the extractor's session cookie file fresh.

The cookie file is downloaded from a private URL at startup and then on a
fixed interval, independently of pipeline traffic. A failed refresh is
logged and the previous file stays in use.
"""

import asyncio
import logging
import os
import time
from contextlib import suppress
from pathlib import Path

import aiofiles
import aiohttp

from trackgrab.media.downloader import Downloader

log = logging.getLogger(__name__)


class CredentialStore:
    """Owns the cookie file and its background refresh task."""

    def __init__(
        self,
        downloader: Downloader,
        cookies_path: Path,
        cookies_url: str = "",
        auth_token: str = "",
        refresh_interval_hours: float = 12.0,
    ):
        self.downloader = downloader
        self.cookies_path = cookies_path
        self.cookies_url = cookies_url
        self.auth_token = auth_token
        self.refresh_interval = refresh_interval_hours * 3600
        self.last_refreshed: float | None = None
        self.last_error: str | None = None
        self._refresh_task: asyncio.Task | None = None
        self._refresh_lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self.cookies_url)

    @property
    def cookies_file(self) -> str | None:
        """The cookie file to hand to the extractor, if one is available."""
        try:
            if self.cookies_path.stat().st_size > 0:
                return str(self.cookies_path)
        except OSError:
            pass
        return None

    def status(self) -> dict:
        return {
            "enabled": self.enabled,
            "available": self.cookies_file is not None,
            "last_refreshed": self.last_refreshed,
            "error": self.last_error,
        }

    async def refresh(self) -> bool:
        """
        Downloads the cookie file once. Never raises for network or disk
        errors; returns False and keeps the previous file instead.
        """
        if not self.enabled:
            return False

        headers = {"Authorization": f"token {self.auth_token}"} if self.auth_token else None
        async with self._refresh_lock:
            try:
                text = await self.downloader.fetch_text(
                    self.cookies_url, headers=headers, timeout=60
                )
                if not text.strip():
                    raise ValueError("cookie source returned an empty document")
                await self._write_atomically(text)
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as e:
                self.last_error = str(e) or type(e).__name__
                log.warning(
                    f"[yellow]Cookie refresh failed, keeping previous cookies: "
                    f"{self.last_error}[/yellow]"
                )
                return False

        self.last_refreshed = time.time()
        self.last_error = None
        log.info("Cookies updated.")
        return True

    async def _write_atomically(self, text: str) -> None:
        await asyncio.to_thread(self.cookies_path.parent.mkdir, parents=True, exist_ok=True)
        tmp_path = self.cookies_path.with_suffix(".tmp")
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(text)
        # Runs reading the old file keep their handle; new runs see the new one
        await asyncio.to_thread(os.replace, tmp_path, self.cookies_path)

    async def start_background_refresh(self) -> None:
        """Refreshes now and then every ``refresh_interval`` seconds."""
        if not self.enabled:
            log.debug("No cookie source configured; cookie refresh disabled.")
            return
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh_loop())
            log.debug("Started cookie refresh task.")

    async def _refresh_loop(self) -> None:
        while True:
            try:
                await self.refresh()
                await asyncio.sleep(self.refresh_interval)
            except asyncio.CancelledError:
                log.debug("Cookie refresh task cancelled.")
                break

    async def stop_background_refresh(self) -> None:
        """Stops the background refresh task gracefully."""
        if self._refresh_task and not self._refresh_task.done():
            self._refresh_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._refresh_task
            log.debug("Stopped cookie refresh task.")
        self._refresh_task = None
