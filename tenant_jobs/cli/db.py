"""Tenant Jobs db command - Database schema management."""

import typer
from rich.console import Console

from tenant_jobs.cli.error_handler import handle_errors

app = typer.Typer(help="Manage the Tenant Jobs database.")
console = Console()


@app.command("init")
@handle_errors
def init_db() -> None:
    """Create missing tables. Existing data is kept.

    Example:
        tenant-jobs db init
    """
    from tenant_jobs.config import ensure_directories, get_config
    from tenant_jobs.database.connection import create_tables

    config = get_config()
    ensure_directories(config)
    create_tables(config)
    console.print(f"[green]✓[/green] Database ready at {config.database_url}")


@app.command("reset")
@handle_errors
def reset_db(
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation."),
) -> None:
    """Drop and recreate all tables, deleting every definition and job."""
    from tenant_jobs.config import ensure_directories, get_config
    from tenant_jobs.database.connection import reset_database

    config = get_config()
    if not force:
        typer.confirm(f"Delete ALL data in {config.database_url}?", abort=True)
    ensure_directories(config)
    reset_database(config)
    console.print("[green]✓[/green] Database reset")
