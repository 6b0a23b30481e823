"""Shared state for CLI commands: the scheduler service and output mode."""

from typing import Dict, Optional

from tenant_jobs.scheduler.service import SchedulerService

_service: Optional[SchedulerService] = None

# Set by the root callback from --json, --verbose/--debug and --quiet
_output_mode: Dict[str, bool] = {"json": False, "verbose": False, "quiet": False}


def get_service() -> SchedulerService:
    """Service on the configured database, creating the schema on first use."""
    global _service
    if _service is None:
        from tenant_jobs.config import ensure_directories, get_config
        from tenant_jobs.database.connection import create_tables

        config = get_config()
        ensure_directories(config)
        create_tables(config)
        _service = SchedulerService.from_config(config)
    return _service


def set_service(service: Optional[SchedulerService]) -> None:
    """Replace the cached service (None forgets it)."""
    global _service
    _service = service


def set_output_mode(json_output: bool = False, verbose: bool = False, quiet: bool = False) -> None:
    _output_mode.update(json=json_output, verbose=verbose, quiet=quiet)


def is_json() -> bool:
    return _output_mode["json"]


def is_verbose() -> bool:
    """True if --verbose or --debug was given."""
    return _output_mode["verbose"]


def is_quiet() -> bool:
    return _output_mode["quiet"]


def wants_json(flag: bool = False) -> bool:
    """Whether to print JSON, from the command's flag or the global ``--json``."""
    return flag or is_json()
