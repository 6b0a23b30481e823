"""CLI command modules for Tenant Jobs.

This package contains the CLI command implementations and supporting
utilities for error handling and output formatting.
"""

from tenant_jobs.cli import config, db, definitions, jobs, run
from tenant_jobs.cli.exit_codes import ExitCode
from tenant_jobs.cli.error_handler import (
    TenantJobsError,
    ConfigurationError,
    DaemonError,
    ValidationError,
    handle_errors,
)

__all__ = [
    # Command modules
    "config",
    "db",
    "definitions",
    "jobs",
    "run",
    # Exit codes
    "ExitCode",
    # Error handling
    "TenantJobsError",
    "ConfigurationError",
    "DaemonError",
    "ValidationError",
    "handle_errors",
]
