"""
CLI for the resource cache.

Commands:
    rescache inspect - Summarize the cache snapshot on disk
    rescache config - Show current configuration
    rescache version - Print version
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from rescache import __version__
from rescache.cache.persistence import CachePersistence
from rescache.config import Settings, clear_settings_cache, get_settings
from rescache.exceptions import InvalidResourceError
from rescache.logging import setup_logging
from rescache.types import split_cache_key

app = typer.Typer(
    name="rescache",
    help="Resource cache - inspect snapshots and configuration",
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)


def _get_settings_safe() -> Settings | None:
    """Get settings, returning None if configuration is invalid."""
    try:
        clear_settings_cache()
        return get_settings()
    except Exception:
        return None


@app.callback()
def configure() -> None:
    """Apply LOG_LEVEL and LOG_FILE before any command runs."""
    settings = _get_settings_safe()
    if settings is not None:
        setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)


def _format_expiry(expires_at: int | None) -> str:
    if expires_at is None:
        return "never"
    return datetime.fromtimestamp(expires_at / 1000, tz=timezone.utc).isoformat()


@app.command()
def inspect(
    cache_dir: Annotated[
        Optional[Path],
        typer.Option("--cache-dir", "-d", help="Snapshot directory (defaults to CACHE_DIR)"),
    ] = None,
    filename: Annotated[
        Optional[str],
        typer.Option("--file", "-f", help="Snapshot file name (defaults to SNAPSHOT_FILENAME)"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", min=0, help="Maximum entries to list"),
    ] = 50,
) -> None:
    """Summarize the cache snapshot.

    Shows how many entries would be restored right now, how many have
    expired, and a table of the restorable entries.
    """
    settings = _get_settings_safe()
    if settings is None and (cache_dir is None or filename is None):
        error_console.print(
            "[red]Error:[/red] Configuration is invalid. "
            "Run 'rescache config' or pass --cache-dir and --file."
        )
        raise typer.Exit(1)

    persistence = CachePersistence(
        cache_dir or settings.CACHE_DIR,
        filename or settings.SNAPSHOT_FILENAME,
    )

    if not persistence.exists():
        console.print(f"[yellow]No snapshot found at {persistence.file_path}[/yellow]")
        raise typer.Exit(0)

    entries = asyncio.run(persistence.restore())
    stats = persistence.last_restore

    console.print()
    console.print(f"[bold]Snapshot:[/bold] {persistence.file_path}")
    console.print(f"[bold]Written:[/bold] {persistence.last_persist_time or 'unknown'}")
    console.print(
        f"[bold]Restorable:[/bold] {stats.restored}  "
        f"[bold]Expired:[/bold] {stats.expired}"
    )

    if not entries:
        console.print()
        return

    table = Table(title="Entries", show_header=True)
    table.add_column("Key", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Expires", style="green")
    table.add_column("Tags")

    for key, entry in list(entries.items())[:limit]:
        try:
            resource_type, _ = split_cache_key(key)
        except InvalidResourceError:
            resource_type = "[red]invalid key[/red]"
        table.add_row(
            key,
            resource_type,
            _format_expiry(entry.expires_at),
            ", ".join(entry.tags) or "[dim]none[/dim]",
        )

    console.print(table)
    if len(entries) > limit:
        console.print(f"[dim]... {len(entries) - limit} more[/dim]")
    console.print()


@app.command()
def config() -> None:
    """Show current configuration."""
    console.print()
    console.print("[bold]Resource Cache Configuration[/bold]")
    console.print()

    settings = _get_settings_safe()

    if settings is None:
        error_console.print("[red]Configuration is invalid.[/red]")
        error_console.print()
        error_console.print("Check these environment variables:")
        error_console.print("  - SNAPSHOT_FILENAME (file name only, no directories)")
        error_console.print("  - LOG_LEVEL (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
        raise typer.Exit(1)

    table = Table(title="Settings", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for key, value in settings.display().items():
        display_value = str(value) if value is not None else "[dim]not set[/dim]"
        table.add_row(key, display_value)

    console.print(table)
    console.print()


@app.command()
def version() -> None:
    """Print the version number."""
    console.print(f"resource-cache version {__version__}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
