"""
Functions for formatting and displaying data in the console using Rich.
"""

from pathlib import Path
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from trackgrab.models.track import TrackMetadata
from trackgrab.storage.config_manager import SENSITIVE_KEYS
from trackgrab.utils.formatting import format_duration, format_size, redact

SUGGESTIONS = {
    "ConfigurationError": [
        "• Run `trackgrab init` to create a configuration file.",
        "• Or export SPOTIFY_CLIENT_ID and SPOTIFY_CLIENT_SECRET.",
    ],
    "CredentialError": [
        "• Check the catalog client id and secret.",
        "• The catalog may be temporarily unavailable; try again later.",
    ],
    "ToolUnavailable": [
        "• Install yt-dlp and ffmpeg, or make sure this machine can download them.",
        "• Set `ytdlp_path` / `ffmpeg_path` in the configuration file.",
    ],
    "SourceUnresolvable": [
        "• Check that the link opens in a browser and is not private.",
        "• Age-restricted videos need a cookie file (`cookies_url`).",
    ],
    "NoMatch": [
        "• The catalog has no track matching this video's title.",
        "• Videos with a clear 'Artist - Title' name match best.",
    ],
    "CatalogTransportError": [
        "• The catalog could not be reached. Try again in a few minutes.",
    ],
    "AcquisitionFailed": [
        "• yt-dlp may be outdated; delete the cached copy to fetch a new one.",
        "• Run with -vv to see the extractor output.",
    ],
    "ArtworkUnavailable": [
        "• The cover art could not be downloaded. Try again later.",
    ],
    "MuxFailed": [
        "• ffmpeg could not write the output file. Run with -vv for details.",
    ],
    "ProcessTimeout": [
        "• An external tool stalled. Raise the timeouts in the configuration.",
    ],
}


def format_error_with_suggestions(
    error: Exception, context: dict | None = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    suggestions = SUGGESTIONS.get(
        error_type, ["• Run the command with -vv for detailed logs."]
    )

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(str(error))

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(Text("\n".join(suggestions)))

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


def print_config(config_path: Path, config_data: dict[str, Any]):
    """Displays the current configuration, hiding sensitive data."""
    console = Console()
    lines = []
    for key, value in sorted(config_data.items()):
        if key in SENSITIVE_KEYS:
            value = redact(str(value))
        lines.append(f"{key} = {value}")

    console.print(
        Panel(
            "\n".join(lines) or "[dim](empty)[/dim]",
            title=f"Configuration ([dim]{config_path}[/dim])",
            border_style="cyan",
        )
    )


def print_track(track: TrackMetadata):
    """Displays the catalog match for a link."""
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()
    table.add_row("Title:", track.title)
    table.add_row("Artist:", track.artist_display)
    table.add_row("Album:", track.album)
    table.add_row("Cover:", track.artwork_url or "[red]none[/red]")
    console.print(Panel(table, title="[bold]🎵 Catalog Match[/bold]", border_style="green"))


def print_download_summary(path: Path, size_bytes: int, duration: float):
    console = Console()
    console.print(
        f"[bold green]✓ Saved[/bold green] [cyan]{path}[/cyan] "
        f"[dim]({format_size(size_bytes)} in {format_duration(duration)})[/dim]"
    )


def print_status_table(status: dict[str, Any]):
    """Displays tool and credential provisioning status."""
    console = Console()
    table = Table(title="Provisioning", show_lines=False)
    table.add_column("Item", style="bold cyan")
    table.add_column("Status")
    table.add_column("Detail", style="dim")

    for name, info in status.get("tools", {}).items():
        ok = info.get("ready")
        table.add_row(
            name,
            "[green]✓ ready[/green]" if ok else "[red]✗ missing[/red]",
            (f"{info.get('path')} ({info.get('source')})" if ok else info.get("error"))
            or "",
        )

    cookies = status.get("cookies", {})
    if not cookies.get("enabled"):
        cookie_state = "[dim]disabled[/dim]"
    elif cookies.get("available"):
        cookie_state = "[green]✓ available[/green]"
    else:
        cookie_state = "[yellow]⚠ unavailable[/yellow]"
    table.add_row("cookies", cookie_state, cookies.get("error") or "")

    token_ok = status.get("catalog_token")
    table.add_row(
        "catalog token",
        "[green]✓ valid[/green]" if token_ok else "[red]✗ missing[/red]",
        "",
    )
    console.print(table)
