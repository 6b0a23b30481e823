"""Tenant Jobs run command - Start the scheduler daemon."""

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from tenant_jobs.cli import context
from tenant_jobs.cli.error_handler import ConfigurationError, DaemonError, handle_errors
from tenant_jobs.cli.exit_codes import ExitCode

app = typer.Typer(help="Start and control the scheduler daemon.")
console = Console()


def _load(config_file: Optional[Path]):
    from tenant_jobs.config import ensure_directories, load_config, set_config, validate_config

    config = load_config(config_file)
    problems = [e for e in validate_config(config) if e.severity == "error"]
    if problems:
        raise ConfigurationError(
            "Configuration has errors",
            details={e.field: e.message for e in problems},
        )
    ensure_directories(config)
    set_config(config)
    return config


def _apply_logging(config, log_file: Optional[Path]) -> None:
    """Daemon logs at the configured level unless --verbose or --debug was given."""
    root = logging.getLogger()
    if not context.is_verbose() and not context.is_quiet():
        root.setLevel(config.logging.level)
        for handler in root.handlers:
            handler.setLevel(config.logging.level)
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file)
        handler.setFormatter(logging.Formatter(config.logging.format))
        root.addHandler(handler)


@app.callback(invoke_without_command=True)
@handle_errors
def run(
    ctx: typer.Context,
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to configuration file.",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
    ),
    daemon: bool = typer.Option(
        False,
        "--daemon",
        "-d",
        help="Run in background as daemon.",
    ),
    worker_only: bool = typer.Option(
        False,
        "--worker-only",
        help="Only claim and run jobs; do not dispatch cron definitions.",
    ),
    dispatcher_only: bool = typer.Option(
        False,
        "--dispatcher-only",
        help="Only dispatch cron definitions; do not run jobs.",
    ),
    max_concurrent: Optional[int] = typer.Option(
        None,
        "--max-concurrent",
        "-m",
        help="Maximum jobs run at once by this worker.",
        min=1,
        max=256,
    ),
) -> None:
    """Start the scheduler daemon.

    The daemon:
    - Turns due cron definitions into jobs (dispatcher)
    - Claims and runs jobs from the shared queue (worker)
    - Releases stale claims, recovers abandoned runs and prunes history

    Any number of daemons may share one database.

    Example:
        tenant-jobs run
        tenant-jobs run --daemon --max-concurrent 8
        tenant-jobs run --worker-only
    """
    if ctx.invoked_subcommand is not None:
        return

    from tenant_jobs.daemon.pid import PIDFile
    from tenant_jobs.daemon.service import daemonize, run_daemon

    if worker_only and dispatcher_only:
        raise DaemonError("--worker-only and --dispatcher-only are mutually exclusive")

    config = _load(config_file)
    if max_concurrent is not None:
        config.executor.max_concurrent_jobs = max_concurrent

    pid_file = PIDFile.for_data_dir(config.data_dir)
    if pid_file.is_running():
        raise DaemonError("Daemon is already running", details={"pid": pid_file.read()})
    pid_file.clear_if_stale()

    console.print("[bold green]Starting Tenant Jobs daemon...[/bold green]")
    console.print(f"[dim]Database: {config.database_url}[/dim]")
    console.print(f"[dim]Worker: {config.executor.worker_id}[/dim]")

    log_file = config.logging.file
    if daemon:
        if sys.platform == "win32":
            console.print("[yellow]Warning: Daemon mode not supported on Windows, running in foreground[/yellow]")
        else:
            log_file = config.logging.file or config.data_dir / "daemon.log"
            console.print(f"[dim]Forking to background, logging to {log_file}[/dim]")
            daemonize(log_file)
            # stderr now goes to the log file
            log_file = None

    _apply_logging(config, log_file)

    try:
        pid_file.create()
    except OSError as e:
        raise DaemonError(f"Failed to create PID file: {e}")

    try:
        asyncio.run(run_daemon(config, {
            "run_dispatcher": not worker_only,
            "run_worker": not dispatcher_only,
        }))
    finally:
        pid_file.remove()


@app.command()
@handle_errors
def status(
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to configuration file.",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
    ),
) -> None:
    """Check daemon status.

    Example:
        tenant-jobs run status
    """
    from tenant_jobs.config import load_config
    from tenant_jobs.daemon.pid import PIDFile

    config = load_config(config_file)
    pid_file = PIDFile.for_data_dir(config.data_dir)

    if pid_file.is_running():
        console.print(f"[green]● Daemon is running[/green] (PID: {pid_file.read()})")
        console.print(f"  Data directory: {config.data_dir}")
        console.print(f"  Database: {config.database_url}")
        return

    console.print("[yellow]○ Daemon is not running[/yellow]")
    if pid_file.clear_if_stale():
        console.print("[dim]  (removed stale PID file)[/dim]")
    raise typer.Exit(code=ExitCode.DAEMON_ERROR)


@app.command()
@handle_errors
def stop(
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to configuration file.",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
    ),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Force kill the daemon (SIGKILL).",
    ),
) -> None:
    """Stop the daemon.

    Sends SIGTERM so running jobs finish their current attempt, or SIGKILL
    with --force; killed jobs are recovered by the next daemon.

    Example:
        tenant-jobs run stop
        tenant-jobs run stop --force
    """
    from tenant_jobs.config import load_config
    from tenant_jobs.daemon.pid import PIDFile

    config = load_config(config_file)
    pid_file = PIDFile.for_data_dir(config.data_dir)

    pid = pid_file.read()
    if pid is None:
        console.print("[yellow]Daemon is not running (no PID file found)[/yellow]")
        raise typer.Exit()

    if not pid_file.is_running():
        console.print("[yellow]Daemon is not running (stale PID file)[/yellow]")
        pid_file.clear_if_stale()
        raise typer.Exit()

    sig = getattr(signal, "SIGKILL", signal.SIGTERM) if force else signal.SIGTERM
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        console.print("[yellow]Daemon process not found (already stopped)[/yellow]")
        pid_file.clear_if_stale()
        return
    except PermissionError:
        raise DaemonError(f"Permission denied: cannot signal process {pid}")

    if force:
        console.print(f"[red]Force killed daemon (PID: {pid})[/red]")
        pid_file.path.unlink(missing_ok=True)
    else:
        console.print(f"[green]Shutdown signal sent to daemon (PID: {pid})[/green]")
        console.print("[dim]Daemon will shut down gracefully...[/dim]")
