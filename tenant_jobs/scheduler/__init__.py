"""Job scheduling and execution engine.

Cron definitions are turned into jobs by the dispatcher; workers claim
jobs from the persisted queue and run the registered handlers.
"""

from tenant_jobs.scheduler.dispatcher import CronDispatcher, TickResult
from tenant_jobs.scheduler.job_executor import JobContext, JobExecutionResult, JobExecutor
from tenant_jobs.scheduler.queue import JobQueue, compute_backoff
from tenant_jobs.scheduler.registry import JobType, JobTypeRegistry, get_registry, reset_registry
from tenant_jobs.scheduler.schedule import compute_next_run
from tenant_jobs.scheduler.service import Page, SchedulerService
from tenant_jobs.scheduler.worker import Worker

__all__ = [
    "CronDispatcher",
    "TickResult",
    "JobContext",
    "JobExecutionResult",
    "JobExecutor",
    "JobQueue",
    "compute_backoff",
    "JobType",
    "JobTypeRegistry",
    "get_registry",
    "reset_registry",
    "compute_next_run",
    "Page",
    "SchedulerService",
    "Worker",
]
