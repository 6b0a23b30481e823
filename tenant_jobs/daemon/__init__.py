"""Daemon module for Tenant Jobs.

Runs the cron dispatcher and a worker as a long-lived background
service.
"""

from tenant_jobs.daemon.pid import PIDFile
from tenant_jobs.daemon.service import (
    SchedulerDaemon,
    daemonize,
    run_daemon,
)

__all__ = [
    "SchedulerDaemon",
    "PIDFile",
    "daemonize",
    "run_daemon",
]
