"""
Senja Sync CLI - Command Line Interface.

Operates the local cache against the spreadsheet backend.

Commands:
    pull    Pull every collection into the local cache
    push    Push the local cache to the backend
    status  Show what the local cache holds
    show    List the records of one collection
    config  Manage configuration
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from senja_sync import __version__
from senja_sync.config import Settings, load_settings
from senja_sync.core.cache import create_cache
from senja_sync.core.engine import PullResult, SyncEngine
from senja_sync.core.schema import Collection
from senja_sync.utils.display import (
    print_counts,
    print_error,
    print_info,
    print_records,
    print_state_summary,
    print_success,
    print_warning,
)
from senja_sync.utils.logger import setup_logging


# Create the Typer app
app = typer.Typer(
    name="senja-sync",
    help="Offline-first cache and sync for the spreadsheet backend.",
    add_completion=False,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold cyan]senja-sync[/bold cyan] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Senja Sync - offline-first cache and sync for the spreadsheet backend."""
    pass


# Shared options
ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to config file.",
    exists=True,
    dir_okay=False,
)
EndpointOption = typer.Option(
    None,
    "--endpoint",
    "-e",
    help="Web app URL of the backend (overrides config).",
)
CacheDirOption = typer.Option(
    None,
    "--cache-dir",
    help="Directory of the local cache (overrides config).",
)
QuietOption = typer.Option(
    False,
    "--quiet",
    "-q",
    help="Minimal output.",
)


# =============================================================================
# PULL Command
# =============================================================================
@app.command()
def pull(
    config_file: Optional[Path] = ConfigOption,
    endpoint: Optional[str] = EndpointOption,
    cache_dir: Optional[Path] = CacheDirOption,
    quiet: bool = QuietOption,
) -> None:
    """
    Pull every collection from the backend into the local cache.

    Example:
        senja-sync pull --endpoint https://script.google.com/macros/s/.../exec
    """
    settings = _build_settings(config_file, endpoint=endpoint, cache_dir=cache_dir)
    _require_endpoint(settings)
    _setup_logging(settings, quiet)

    result, summary = asyncio.run(_run_pull(settings))

    if result.degraded:
        print_error(f"Pull failed, local cache left unchanged: {result.error}")
        raise typer.Exit(1)

    if not quiet:
        print_state_summary(summary, title="Pulled")
        console.print(f"[dim]Completed in {result.duration_seconds:.1f}s[/dim]")

    for collection, error in result.errors.items():
        print_warning(f"{collection.value}: {error}")
    for collection, fields in result.truncated.items():
        print_warning(
            f"{collection.value}: incomplete chunks in {', '.join(sorted(fields))}"
        )

    print_success("Pull completed")


async def _run_pull(settings: Settings) -> tuple[PullResult, dict]:
    engine = SyncEngine(settings)
    try:
        result = await engine.refresh()
        await engine.wait_idle()
        return result, engine.get_state_summary()
    finally:
        await engine.close()


# =============================================================================
# PUSH Command
# =============================================================================
@app.command()
def push(
    collections: Optional[list[str]] = typer.Argument(
        None,
        help="Collections to push (default: all).",
    ),
    config_file: Optional[Path] = ConfigOption,
    endpoint: Optional[str] = EndpointOption,
    cache_dir: Optional[Path] = CacheDirOption,
    quiet: bool = QuietOption,
) -> None:
    """
    Push the local cache to the backend, overwriting the remote sheets.

    Example:
        senja-sync push roster submissions
    """
    settings = _build_settings(config_file, endpoint=endpoint, cache_dir=cache_dir)
    _require_endpoint(settings)
    targets = [_parse_collection(name) for name in collections] if collections else None
    _setup_logging(settings, quiet)

    results, summary = asyncio.run(_run_push(settings, targets))

    if not quiet:
        print_state_summary(summary, title="Pushed")

    failed = [c.value for c, ok in results.items() if not ok]
    if failed:
        print_error(f"Push failed for: {', '.join(failed)}")
        raise typer.Exit(1)

    print_success(f"Pushed {len(results)} collection(s)")


async def _run_push(
    settings: Settings,
    targets: list[Collection] | None,
) -> tuple[dict[Collection, bool], dict]:
    engine = SyncEngine(settings)
    try:
        if targets is None:
            results = await engine.push_all()
        else:
            outcomes = await asyncio.gather(*(engine.push(c) for c in targets))
            results = dict(zip(targets, outcomes))
        return results, engine.get_state_summary()
    finally:
        await engine.close()


# =============================================================================
# STATUS Command
# =============================================================================
@app.command()
def status(
    config_file: Optional[Path] = ConfigOption,
    cache_dir: Optional[Path] = CacheDirOption,
) -> None:
    """Show what the local cache holds."""
    settings = _build_settings(config_file, cache_dir=cache_dir)
    cache = create_cache(settings.cache)

    print_counts({c.value: cache.count(c) for c in Collection})

    endpoint = settings.endpoint_url or "[dim]not set[/dim]"
    console.print(f"Endpoint: {endpoint}")
    console.print(f"Cache:    {settings.cache.directory} ({settings.cache.namespace})")


# =============================================================================
# SHOW Command
# =============================================================================
@app.command()
def show(
    collection: str = typer.Argument(..., help="Collection name, e.g. roster."),
    config_file: Optional[Path] = ConfigOption,
    cache_dir: Optional[Path] = CacheDirOption,
    limit: int = typer.Option(
        50,
        "--limit",
        "-l",
        min=1,
        help="Maximum records to list.",
    ),
) -> None:
    """
    List cached records of one collection.

    Example:
        senja-sync show roster --limit 20
    """
    target = _parse_collection(collection)
    settings = _build_settings(config_file, cache_dir=cache_dir)
    records = create_cache(settings.cache).get_all(target)

    if not records:
        print_info(f"{target.value} is empty.")
        return

    print_records(target.value, records[:limit])
    if len(records) > limit:
        print_info(f"... and {len(records) - limit} more")


# =============================================================================
# CONFIG Command
# =============================================================================
@app.command()
def config(
    show: bool = typer.Option(
        False,
        "--show",
        help="Show current configuration.",
    ),
    init: bool = typer.Option(
        False,
        "--init",
        help="Write a config file with the default settings.",
    ),
    output: Path = typer.Option(
        Path("config.toml"),
        "--output",
        "-o",
        help="Output path for config file.",
    ),
) -> None:
    """Manage configuration."""
    if init:
        if output.exists():
            print_error(f"Refusing to overwrite existing file: {output}")
            raise typer.Exit(1)
        Settings().to_file(output)
        print_success(f"Generated config file: {output}")
        return

    if show:
        settings = Settings()
        table = Table(title="Current Configuration", border_style="cyan")
        table.add_column("Setting", style="cyan")
        table.add_column("Value")

        table.add_row("Endpoint", settings.endpoint_url or "[dim]not set[/dim]")
        table.add_row("Chunk Size", f"{settings.limits.chunk_size:,} chars")
        table.add_row("Payload Warning", f"{settings.limits.max_payload_chars:,} chars")
        table.add_row("Timeout", f"{settings.transport.timeout_seconds:g}s")
        table.add_row("Retries", str(settings.transport.max_retries))
        table.add_row("Cache", f"{settings.cache.backend}: {settings.cache.directory}")
        table.add_row("Namespace", settings.cache.namespace)
        table.add_row("Keep Unpushed Writes", str(settings.sync.keep_unpushed_writes))

        console.print(table)
        return

    # Default: show help
    console.print("Use --show to view config or --init to create config file.")


# =============================================================================
# Helper Functions
# =============================================================================
def _build_settings(
    config_file: Path | None = None,
    endpoint: str | None = None,
    cache_dir: Path | None = None,
) -> Settings:
    """Build settings from config file and CLI overrides."""
    try:
        settings = load_settings(config_file)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1)

    if endpoint:
        settings.endpoint_url = endpoint.strip()
    if cache_dir:
        settings.cache.directory = cache_dir

    return settings


def _require_endpoint(settings: Settings) -> None:
    errors = settings.validate_endpoint()
    if errors:
        for err in errors:
            print_error(err)
        print_info("Set SENJA_SYNC_ENDPOINT_URL or pass --endpoint.")
        raise typer.Exit(1)


def _parse_collection(name: str) -> Collection:
    try:
        return Collection.parse(name)
    except ValueError as e:
        print_error(str(e))
        print_info(f"Known collections: {', '.join(c.value for c in Collection)}")
        raise typer.Exit(1)


def _setup_logging(settings: Settings, quiet: bool) -> None:
    setup_logging(
        level="WARNING" if quiet else settings.logging.level,
        log_file=settings.logging.file,
        format_style=settings.logging.format,
        max_file_size_mb=settings.logging.max_file_size_mb,
        backup_count=settings.logging.backup_count,
    )


if __name__ == "__main__":
    app()
