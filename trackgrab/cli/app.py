"""
Defines the command-line interface for the application using Typer.
"""

import asyncio
import logging
import os
import shutil
import time
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from trackgrab import __version__
from trackgrab.api.client import SpotifyCatalogClient
from trackgrab.core.pipeline import Pipeline
from trackgrab.core.run_registry import RunRegistry
from trackgrab.exceptions import ConfigurationError, PipelineError
from trackgrab.media.downloader import Downloader
from trackgrab.models.config import AUDIO_FORMATS
from trackgrab.models.track import SourceReference
from trackgrab.provisioning.provisioner import Provisioner
from trackgrab.storage.config_manager import ConfigManager
from trackgrab.utils.path import create_dir, is_probably_video_link
from trackgrab.web.server import run_server

from .formatters import (
    format_error_with_suggestions,
    print_config,
    print_download_summary,
    print_status_table,
    print_track,
)
from .progress_manager import ProgressManager

console = Console()

logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            show_level=False,
            markup=True,
        )
    ],
)
log = logging.getLogger("trackgrab")

app = typer.Typer(
    name="trackgrab",
    help=(
        "Turn a video link into a tagged audio file with the matching catalog"
        " metadata and cover art. Use 'trackgrab <command> --help' for more info."
    ),
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)


def get_config_dir() -> Path:
    if os.name == "nt":
        base_dir = Path(os.getenv("APPDATA", "~\\AppData\\Roaming"))
    else:
        base_dir = Path(os.getenv("XDG_CONFIG_HOME", "~/.config"))
    return base_dir.expanduser() / "trackgrab"


CONFIG_DIR = get_config_dir()
CONFIG_FILE = CONFIG_DIR / "config.ini"


def _load_config(cli_options: dict | None = None):
    return ConfigManager(CONFIG_FILE).load_config(cli_options)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase logging verbosity (-vv for debug).",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", is_eager=True
    ),
    show_config: bool = typer.Option(
        False, "--show-config", help="Display the current configuration."
    ),
):
    """Trackgrab CLI"""
    if version:
        console.print(f"[bold]trackgrab[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    log_level = "INFO"
    if verbose >= 2:
        log_level = "DEBUG"
    logging.getLogger("trackgrab").setLevel(log_level)
    # aiohttp's access log is noisy at INFO
    logging.getLogger("aiohttp.access").setLevel(
        "INFO" if verbose >= 1 else "WARNING"
    )

    if show_config:
        if not CONFIG_FILE.is_file():
            console.print(
                "[red]✗ Config file not found.[/] Run [cyan]trackgrab init[/cyan]"
                " first."
            )
            raise typer.Exit(code=1)
        print_config(CONFIG_FILE, ConfigManager(CONFIG_FILE).read_raw())
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def init(
    client_id: str = typer.Argument(..., help="Spotify application client ID."),
    client_secret: str = typer.Argument(..., help="Spotify application client secret."),
    cookies_url: str | None = typer.Option(
        None, "--cookies-url", help="URL of a Netscape cookie file for the extractor."
    ),
    github_token: str | None = typer.Option(
        None, "--github-token", help="Token sent when downloading the cookie file."
    ),
    audio_format: str | None = typer.Option(
        None,
        "--format",
        help=f"Output format: {', '.join(AUDIO_FORMATS)}.",
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite existing configuration without asking."
    ),
):
    """Initialize configuration with catalog credentials."""
    if (
        CONFIG_FILE.exists()
        and not force
        and not typer.confirm("Configuration file already exists. Overwrite it?")
    ):
        raise typer.Abort()

    settings = {
        key: value
        for key, value in {
            "spotify_client_id": client_id,
            "spotify_client_secret": client_secret,
            "cookies_url": cookies_url,
            "github_token": github_token,
            "audio_format": audio_format,
        }.items()
        if value is not None
    }
    config_manager = ConfigManager(CONFIG_FILE)
    config_manager.save_new_config(settings)
    # Validate what was written so mistakes surface now, not at the first run
    config_manager.load_config()
    console.print(f"\n[bold green]✓ Configuration saved to '{CONFIG_FILE}'[/bold green]")
    console.print("Ready! Try: [cyan]trackgrab download <URL>[/cyan]")


@app.command()
def serve(
    host: str | None = typer.Option(None, "--host", help="Interface to bind."),
    port: int | None = typer.Option(None, "--port", "-p", help="Port to listen on."),
):
    """Run the HTTP service."""
    config = _load_config({"host": host, "port": port})
    run_server(config)


def _warn_if_odd_source(source: str) -> None:
    if not is_probably_video_link(source):
        console.print(
            f"[yellow]⚠️  '{source}' does not look like a video link; trying anyway.[/yellow]"
        )


@app.command()
def preview(
    source: str = typer.Argument(..., help="Video link to identify."),
):
    """Show the catalog match for a link without downloading it."""
    config = _load_config()
    reference = SourceReference(source)
    _warn_if_odd_source(reference.value)

    async def _preview_async():
        downloader = Downloader()
        catalog = SpotifyCatalogClient(
            config.spotify_client_id, config.spotify_client_secret
        )
        provisioner = Provisioner.from_config(config, downloader, catalog.authenticator)
        pipeline = Pipeline(config, provisioner, catalog, downloader)
        try:
            await provisioner.credentials.refresh()
            with console.status("[cyan]Identifying track...[/cyan]"):
                return await pipeline.preview(reference)
        finally:
            await catalog.close()
            await downloader.close()

    print_track(asyncio.run(_preview_async()))


@app.command(name="download")
def download_command(
    source: str = typer.Argument(..., help="Video link to convert."),
    output_dir: Path = typer.Option(  # noqa: B008
        Path("."), "-o", "--output", help="Directory to save the tagged file in."
    ),
    audio_format: str | None = typer.Option(
        None, "--format", help=f"Output format: {', '.join(AUDIO_FORMATS)}."
    ),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Hide the progress bar."),
):
    """Download a link as a tagged audio file."""
    config = _load_config({"audio_format": audio_format})
    reference = SourceReference(source)
    _warn_if_odd_source(reference.value)

    async def _download_async() -> tuple[Path, float]:
        downloader = Downloader()
        catalog = SpotifyCatalogClient(
            config.spotify_client_id, config.spotify_client_secret
        )
        provisioner = Provisioner.from_config(config, downloader, catalog.authenticator)
        pipeline = Pipeline(config, provisioner, catalog, downloader)
        registry = RunRegistry(
            pipeline,
            Path(config.work_dir).expanduser(),
            artifact_ttl_seconds=config.artifact_ttl_seconds,
        )
        start_time = time.monotonic()
        try:
            await provisioner.credentials.refresh()
            run = registry.start_run(reference)
            with ProgressManager(console, quiet=quiet) as progress:
                async for event in registry.subscribe(run.run_id):
                    progress.handle(event)
            await registry.wait(run.run_id)

            if not run.succeeded:
                raise run.error or PipelineError("The run did not produce a file.")

            artifact = registry.take_artifact(run.run_id)
            create_dir(output_dir)
            destination = output_dir / artifact.filename
            await asyncio.to_thread(shutil.copyfile, artifact.path, destination)
            await registry.release(run.run_id)
            return destination, time.monotonic() - start_time
        finally:
            await registry.shutdown()
            await catalog.close()
            await downloader.close()

    destination, duration = asyncio.run(_download_async())
    print_download_summary(destination, destination.stat().st_size, duration)


@app.command()
def diagnose():
    """Check configuration, external tools and catalog credentials."""
    try:
        config = _load_config()
    except ConfigurationError as e:
        console.print(format_error_with_suggestions(e))
        raise typer.Exit(code=1) from e
    console.print("[green]✓ Configuration is valid.[/green]")

    async def _diagnose_async() -> tuple[dict, list[Exception]]:
        downloader = Downloader()
        catalog = SpotifyCatalogClient(
            config.spotify_client_id, config.spotify_client_secret
        )
        provisioner = Provisioner.from_config(config, downloader, catalog.authenticator)
        problems: list[Exception] = []
        try:
            await provisioner.credentials.refresh()
            results = await asyncio.gather(
                provisioner.tools.ensure_ready(),
                catalog.authenticator.get_token(),
                return_exceptions=True,
            )
            problems = [r for r in results if isinstance(r, Exception)]
            return provisioner.status(), problems
        finally:
            await catalog.close()
            await downloader.close()

    with console.status("[cyan]Checking tools and credentials...[/cyan]"):
        status, problems = asyncio.run(_diagnose_async())
    print_status_table(status)
    for problem in problems:
        console.print(format_error_with_suggestions(problem))
    if problems:
        raise typer.Exit(code=1)
