"""
Rich Terminal Display Components.

Provides console output for:
- Per-collection status tables
- Pull and push summaries
- Record listings
- Status messages
"""

from __future__ import annotations

import json
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table


console = Console()

# Longest cell rendered in record listings; data URLs run to megabytes
MAX_CELL_WIDTH = 40


def format_status(status: str) -> str:
    """Format status with color."""
    colors = {
        "idle": "[green]✓ idle[/green]",
        "pulling": "[yellow]⟳ pulling[/yellow]",
        "pushing": "[yellow]⟳ pushing[/yellow]",
        "failed": "[red]✗ failed[/red]",
    }
    return colors.get(status, status)


def shorten(value: Any, width: int = MAX_CELL_WIDTH) -> str:
    """Render a cell value on one line, cut to ``width`` characters."""
    text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
    text = text.replace("\n", " ")
    if len(text) <= width:
        return text
    return f"{text[: width - 1]}…"


def print_state_summary(summary: dict[str, Any], title: str = "Sync Status") -> None:
    """Print the per-collection table built from SyncEngine.get_state_summary()."""
    table = Table(title=title, border_style="blue")
    table.add_column("Collection", style="cyan")
    table.add_column("Status")
    table.add_column("Records", justify="right")
    table.add_column("Pending", justify="right")
    table.add_column("Last Error")

    for name, entry in summary["collections"].items():
        table.add_row(
            name,
            format_status(entry["status"]),
            f"{entry.get('records', 0):,}",
            str(entry["pending_writes"]),
            escape(entry["last_error"] or ""),
        )

    console.print(table)


def print_counts(counts: dict[str, int], title: str = "Local Cache") -> None:
    """Print a two-column table of record counts."""
    table = Table(title=title, border_style="green")
    table.add_column("Collection", style="cyan")
    table.add_column("Records", justify="right")

    for name, count in counts.items():
        table.add_row(name, f"{count:,}")

    console.print(table)


def print_records(
    title: str,
    records: list[dict[str, Any]],
    columns: list[str] | None = None,
) -> None:
    """Print records as a table, long values shortened."""
    if columns is None:
        columns = list(records[0]) if records else []

    table = Table(title=title, border_style="cyan")
    for column in columns:
        table.add_column(column, overflow="fold")

    for record in records:
        table.add_row(*(escape(shorten(record.get(column, ""))) for column in columns))

    console.print(table)


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[red bold]Error:[/red bold] {escape(message)}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green bold]✓[/green bold] {escape(message)}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow bold]⚠[/yellow bold] {escape(message)}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[blue]ℹ[/blue] {escape(message)}")
