"""Output formatting utilities for the Tenant Jobs CLI.

Every listing command prints either a Rich table for humans or JSON
(``--json``) for scripts.
"""

import json
from datetime import datetime
from typing import Any, Dict, List

from rich.console import Console
from rich.json import JSON as RichJSON
from rich.table import Table

# Default console for output
console = Console()

# Colour per job, execution and definition status
STATUS_STYLES = {
    "pending": "yellow",
    "claimed": "cyan",
    "running": "blue",
    "succeeded": "green",
    "failed": "red",
    "timed_out": "red",
    "abandoned": "magenta",
    "cancelled": "dim",
    "active": "green",
    "paused": "yellow",
    "completed": "cyan",
    "disabled": "dim",
}


def styled_status(status: str | None) -> str:
    """Wrap a status in its Rich colour markup."""
    if not status:
        return ""
    style = STATUS_STYLES.get(status)
    return f"[{style}]{status}[/{style}]" if style else status


def format_timestamp(value: str | datetime | None) -> str:
    """Format an ISO timestamp or datetime as ``YYYY-MM-DD HH:MM:SS``."""
    if value is None:
        return ""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return value
    return value.strftime("%Y-%m-%d %H:%M:%S")


def format_duration(seconds: float) -> str:
    """Format duration in human-readable format.

    Example:
        format_duration(90)  # Returns "1m 30s"
        format_duration(3661)  # Returns "1h 1m"
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m"


def print_json(data: Any, console_instance: Console | None = None) -> None:
    """Print data as formatted JSON."""
    prog_console = console_instance or console
    prog_console.print(RichJSON(json.dumps(data, indent=2, default=str)))


def print_table(
    data: List[Dict[str, Any]],
    columns: List[str],
    title: str | None = None,
    column_styles: Dict[str, str] | None = None,
    console_instance: Console | None = None,
) -> None:
    """Print data as a formatted table.

    Args:
        data: List of dictionaries containing row data
        columns: List of column keys to display
        title: Optional table title
        column_styles: Optional dict mapping column names to Rich styles
        console_instance: Optional custom console instance

    Example:
        print_table(page.items, ["id", "name", "state"], title="Definitions")
    """
    prog_console = console_instance or console
    column_styles = column_styles or {}

    table = Table(title=title)
    for col in columns:
        table.add_column(col.replace("_", " ").title(), style=column_styles.get(col))

    for row in data:
        values = []
        for col in columns:
            value = row.get(col, "")
            if value is None:
                value = ""
            elif isinstance(value, bool):
                value = "[green]Yes[/green]" if value else "[red]No[/red]"
            elif col in ("status", "state", "last_status", "last_execution_status"):
                value = styled_status(value)
            values.append(str(value))
        table.add_row(*values)

    prog_console.print(table)


def print_result(
    success: bool,
    message: str,
    details: Dict[str, Any] | None = None,
    console_instance: Console | None = None,
) -> None:
    """Print operation result with appropriate styling.

    Example:
        print_result(True, "Definition paused", {"id": definition.id})
    """
    prog_console = console_instance or console

    icon = "[green]✓[/green]" if success else "[red]✗[/red]"
    prog_console.print(f"{icon} {message}")

    if details:
        for key, value in details.items():
            if value is not None:
                prog_console.print(f"  [dim]{key}:[/dim] {value}")


def print_key_value(
    data: Dict[str, Any],
    title: str | None = None,
    key_style: str = "cyan",
    console_instance: Console | None = None,
) -> None:
    """Print data as aligned key-value pairs."""
    prog_console = console_instance or console

    if title:
        prog_console.print(f"[bold]{title}[/bold]")
        prog_console.print()

    max_key_len = max(len(str(k)) for k in data.keys()) if data else 0

    for key, value in data.items():
        if isinstance(value, bool):
            formatted = "[green]Yes[/green]" if value else "[red]No[/red]"
        elif isinstance(value, (int, float)):
            formatted = f"[yellow]{value}[/yellow]"
        elif isinstance(value, datetime):
            formatted = value.strftime("%Y-%m-%d %H:%M:%S")
        elif isinstance(value, (dict, list)):
            formatted = json.dumps(value, default=str)
        else:
            formatted = str(value) if value is not None else "[dim]N/A[/dim]"

        padded_key = str(key).ljust(max_key_len)
        prog_console.print(f"  [{key_style}]{padded_key}[/{key_style}] : {formatted}")

