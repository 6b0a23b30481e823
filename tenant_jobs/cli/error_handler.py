"""Global exception handling for the Tenant Jobs CLI.

Engine exceptions (validation, not found, invalid state) and database
failures are turned into a one-line message on stderr and a stable
exit code.
"""

from functools import wraps
from typing import Callable, TypeVar, Any
import logging

import typer
from rich.console import Console
from sqlalchemy.exc import SQLAlchemyError

from tenant_jobs.cli.exit_codes import ExitCode
from tenant_jobs.scheduler import exceptions as engine

# Console for error output (stderr)
console = Console(stderr=True)

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class TenantJobsError(Exception):
    """Base exception for CLI-level errors.

    Attributes:
        message: Error message
        exit_code: Exit code to use when exiting
        details: Optional dictionary of additional error details
    """

    exit_code: int = ExitCode.GENERAL_ERROR

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if exit_code is not None:
            self.exit_code = exit_code
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ConfigurationError(TenantJobsError):
    """Invalid configuration file, value or environment variable."""

    exit_code = ExitCode.CONFIGURATION_ERROR


class DaemonError(TenantJobsError):
    """Daemon not running, already running, or failed to start."""

    exit_code = ExitCode.DAEMON_ERROR


class ValidationError(TenantJobsError):
    """Invalid user input (bad JSON payload, option combination)."""

    exit_code = ExitCode.INVALID_ARGUMENT


def _translate(exc: Exception) -> TenantJobsError | None:
    """Map engine and database exceptions onto CLI errors."""
    if isinstance(exc, TenantJobsError):
        return exc
    if isinstance(exc, engine.ValidationError):
        return TenantJobsError(
            exc.message,
            ExitCode.INVALID_ARGUMENT,
            {f"error {i + 1}": err for i, err in enumerate(exc.errors)} if len(exc.errors) > 1 else None,
        )
    if isinstance(exc, engine.NotFoundError):
        return TenantJobsError(exc.message, ExitCode.NOT_FOUND)
    if isinstance(exc, engine.InvalidStateError):
        return TenantJobsError(exc.message, ExitCode.INVALID_STATE)
    if isinstance(exc, SQLAlchemyError):
        return TenantJobsError(f"Database error: {exc}", ExitCode.DATABASE_ERROR)
    return None


def _report(error: TenantJobsError) -> None:
    logger.error(
        f"{type(error).__name__}: {error.message}",
        extra={"exit_code": error.exit_code, "details": error.details},
    )
    console.print(f"[red]Error:[/red] {error.message}")
    for key, value in error.details.items():
        console.print(f"  [dim]{key}:[/dim] {value}")


def handle_errors(func: F) -> F:
    """Decorator for consistent error handling across CLI commands.

    - Engine and CLI errors: message plus the matching exit code
    - KeyboardInterrupt: cancellation message, exit code 130
    - Anything else: generic error, exit code 1

    Example:
        @app.command()
        @handle_errors
        def pause(definition_id: str):
            service.pause(definition_id)
    """

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except (typer.Exit, typer.Abort):
            raise
        except KeyboardInterrupt:
            console.print("\n[yellow]Operation cancelled by user.[/yellow]")
            logger.info("Operation cancelled by user (KeyboardInterrupt)")
            raise typer.Exit(code=ExitCode.CANCELLED)
        except Exception as e:
            error = _translate(e)
            if error is None:
                logger.exception("Unexpected error occurred")
                console.print(f"[red]Unexpected error:[/red] {e}")
                console.print("[dim]Run with --verbose for more details[/dim]")
                raise typer.Exit(code=ExitCode.GENERAL_ERROR)
            _report(error)
            raise typer.Exit(code=error.exit_code)

    return wrapper  # type: ignore[return-value]
