"""Root of the ``tenant-jobs`` command line.

Wires the command groups together and handles the options shared by
all of them: output mode (``--json``, ``--quiet``) and log verbosity.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from tenant_jobs import __app_name__, __version__
from tenant_jobs.cli import config, context, db, definitions, jobs, run
from tenant_jobs.cli.exit_codes import ExitCode
from tenant_jobs.config import LoggingConfig

app = typer.Typer(
    name=__app_name__,
    help="Cron definitions and a shared job queue for multi-tenant stores.",
    add_completion=True,
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

app.add_typer(definitions.app, name="definitions")
app.add_typer(jobs.app, name="jobs")
app.add_typer(run.app, name="run")
app.add_typer(config.app, name="config")
app.add_typer(db.app, name="db")

DEBUG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"


def version_callback(value: bool) -> None:
    if value:
        console.print(f"{__app_name__} v{__version__}")
        raise typer.Exit(code=ExitCode.SUCCESS)


def _setup_logging(
    verbose: bool = False,
    debug: bool = False,
    quiet: bool = False,
    log_file: Optional[Path] = None,
) -> None:
    """Configure the root logger for one CLI invocation.

    Console output goes to stderr so ``--json`` output on stdout stays
    parseable. The log file, when given, records everything at DEBUG.
    The daemon later raises or lowers the level from ``[logging]`` in
    the config file unless a flag was given.
    """
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    elif quiet:
        level = logging.ERROR
    else:
        level = logging.WARNING

    handlers: list[logging.Handler] = []
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        handlers.append(file_handler)

    if not quiet:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(level)
        handlers.append(stderr_handler)
    elif not log_file:
        handlers.append(logging.NullHandler())

    logging.basicConfig(
        level=level,
        format=DEBUG_FORMAT if debug else LoggingConfig.format,
        handlers=handlers,
        force=True,
    )

    # APScheduler logs every dispatcher tick at INFO
    logging.getLogger("apscheduler").setLevel(logging.DEBUG if debug else logging.WARNING)


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-V", help="Log dispatcher and worker activity (INFO)."),
    debug: bool = typer.Option(False, "--debug", help="Log everything, with source locations (DEBUG)."),
    json_output: bool = typer.Option(False, "--json", help="Print definitions, jobs and stats as JSON."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only log errors."),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Also write DEBUG logs to this file."),
) -> None:
    """Schedule tenant jobs from cron definitions and run them from a shared queue.

    [bold]Commands:[/bold]

    • [cyan]definitions[/cyan] - Recurring jobs: create, pause, resume, run now, history
    • [cyan]jobs[/cyan] - One-off jobs: submit, status, cancel, stats, prune
    • [cyan]run[/cyan] - The dispatcher and worker daemon
    • [cyan]config[/cyan] - The TOML configuration file
    • [cyan]db[/cyan] - The job database

    [bold]Examples:[/bold]

        tenant-jobs definitions create "Daily digest" "0 8 * * *" --type webhook \\
            --config '{"url": "https://example.com/digest"}' --tenant store-1
        tenant-jobs run --daemon --max-concurrent 8
        tenant-jobs --json jobs list --status failed
    """
    if quiet and (verbose or debug):
        flag = "--verbose" if verbose else "--debug"
        console.print(f"[red]Error:[/red] --quiet and {flag} are mutually exclusive")
        raise typer.Exit(code=ExitCode.INVALID_ARGUMENT)

    context.set_output_mode(json_output=json_output, verbose=verbose or debug, quiet=quiet)
    _setup_logging(verbose=verbose, debug=debug, quiet=quiet, log_file=log_file)
    logging.getLogger(__name__).debug(f"{__app_name__} v{__version__} starting")


if __name__ == "__main__":
    app()
