"""
Single entry point gating every pipeline run: tools installed, catalog
token valid, cookie refresh running.
"""

import logging
from pathlib import Path

from trackgrab.api.auth import SpotifyAuthenticator
from trackgrab.media.downloader import Downloader
from trackgrab.models.config import AppConfig

from .credentials import CredentialStore
from .tools import FFMPEG, YTDLP, Installer, ToolProvisioner

log = logging.getLogger(__name__)


class Provisioner:
    """Facade over tool provisioning and credential material."""

    def __init__(
        self,
        tools: ToolProvisioner,
        credentials: CredentialStore,
        authenticator: SpotifyAuthenticator | None = None,
    ):
        self.tools = tools
        self.credentials = credentials
        self.authenticator = authenticator

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        downloader: Downloader,
        authenticator: SpotifyAuthenticator | None = None,
        installers: dict[str, Installer] | None = None,
    ) -> "Provisioner":
        tools_dir = Path(config.tools_dir).expanduser()
        tools = ToolProvisioner(
            tools_dir,
            downloader,
            configured_paths={YTDLP: config.ytdlp_path, FFMPEG: config.ffmpeg_path},
            installers=installers,
        )
        credentials = CredentialStore(
            downloader,
            tools_dir / "cookies.txt",
            cookies_url=config.cookies_url,
            auth_token=config.github_token,
            refresh_interval_hours=config.credential_refresh_hours,
        )
        return cls(tools, credentials, authenticator)

    @property
    def ytdlp_path(self) -> str:
        return self.tools.path_of(YTDLP)

    @property
    def ffmpeg_path(self) -> str:
        return self.tools.path_of(FFMPEG)

    @property
    def cookies_file(self) -> str | None:
        return self.credentials.cookies_file

    async def start(self) -> None:
        """
        Startup provisioning. Tool failures are logged, not raised: the
        service stays up and the next run retries the install.
        """
        await self.credentials.start_background_refresh()
        try:
            await self.tools.ensure_ready()
        except Exception as e:
            log.error(f"[red]✗ Tool provisioning failed at startup: {e}[/red]")

    async def stop(self) -> None:
        await self.credentials.stop_background_refresh()

    async def ensure_ready(self) -> None:
        """
        Raises ToolUnavailable or CredentialError when a run cannot start.
        Returns immediately once everything is in place.
        """
        await self.tools.ensure_ready()
        if self.authenticator is not None:
            await self.authenticator.get_token()

    def status(self) -> dict:
        token = self.authenticator.token if self.authenticator else None
        return {
            "tools": self.tools.status(),
            "cookies": self.credentials.status(),
            "catalog_token": bool(token and token.is_fresh()),
        }
