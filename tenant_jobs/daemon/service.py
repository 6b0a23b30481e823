"""Main daemon service for Tenant Jobs.

This module provides the core daemon functionality including:
- Service lifecycle management (start/stop)
- Signal handling for graceful shutdown
- Background daemon mode with process forking
- Dispatcher ticks and queue maintenance on an APScheduler loop
- The worker that claims and runs jobs
"""

import asyncio
import logging
import os
import signal
import sys
from datetime import timedelta
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tenant_jobs.config import TenantJobsConfig
from tenant_jobs.scheduler.dispatcher import CronDispatcher
from tenant_jobs.scheduler.job_executor import JobExecutor
from tenant_jobs.scheduler.queue import JobQueue
from tenant_jobs.scheduler.registry import JobTypeRegistry, get_registry
from tenant_jobs.scheduler.schedule import utcnow
from tenant_jobs.scheduler.worker import Worker

logger = logging.getLogger(__name__)

DISPATCH_JOB_ID = "dispatcher-tick"
MAINTENANCE_JOB_ID = "queue-maintenance"


class SchedulerDaemon:
    """Daemon running the cron dispatcher and a worker.

    Several daemons may run against the same database; the dispatcher
    and the queue coordinate through conditional updates only.

    Example:
        daemon = SchedulerDaemon(config)

        # Start daemon
        await daemon.start()

        # Run until shutdown signal
        await daemon.run_until_shutdown()

        # Stop daemon
        await daemon.stop()
    """

    def __init__(
        self,
        config: TenantJobsConfig,
        run_dispatcher: bool = True,
        run_worker: bool = True,
        registry: Optional[JobTypeRegistry] = None,
        session_factory: Optional[Callable[[], Any]] = None,
    ):
        """Initialize the daemon service.

        Args:
            config: Tenant Jobs configuration
            run_dispatcher: Run dispatcher ticks and maintenance
            run_worker: Claim and run jobs
            registry: Job types (default: global registry)
            session_factory: Transaction scope factory (default: global database)
        """
        self._config = config
        self._run_dispatcher = run_dispatcher and config.scheduler.enabled
        self._run_worker = run_worker and config.executor.enabled
        self._registry = registry
        self._session_factory = session_factory

        self._queue: Optional[JobQueue] = None
        self._dispatcher: Optional[CronDispatcher] = None
        self._worker: Optional[Worker] = None
        self._worker_task: Optional[asyncio.Task] = None
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._ticks = 0

    async def start(self) -> None:
        """Start the daemon services.

        This initializes and starts all daemon components:
        1. Database schema and job type registry
        2. APScheduler loop with the dispatcher tick and maintenance
        3. The worker task
        """
        logger.info("Starting Tenant Jobs daemon...")

        if self._session_factory is None:
            from tenant_jobs.database.connection import create_tables, get_session_maker, session_scope

            create_tables(self._config)
            self._session_factory = partial(session_scope, get_session_maker(self._config))

        registry = self._registry or get_registry()
        self._registry = registry
        logger.info(f"Job types: {', '.join(registry.names) or 'none'}")

        scheduler_cfg = self._config.scheduler
        executor_cfg = self._config.executor

        self._queue = JobQueue(
            registry,
            self._session_factory,
            lease_seconds=scheduler_cfg.claim_lease_seconds,
            abandon_grace_seconds=scheduler_cfg.abandon_grace_seconds,
            backoff_base_seconds=executor_cfg.backoff_base_seconds,
            backoff_max_seconds=executor_cfg.backoff_max_seconds,
        )

        if self._run_dispatcher:
            self._dispatcher = CronDispatcher(
                self._queue,
                self._session_factory,
                batch_size=scheduler_cfg.batch_size,
                invalid_schedule_fallback_seconds=scheduler_cfg.invalid_schedule_fallback_seconds,
            )
            self._scheduler = self._create_scheduler()
            self._setup_listeners()
            self._scheduler.start()
            self._scheduler.add_job(
                self._tick,
                IntervalTrigger(seconds=scheduler_cfg.poll_interval),
                id=DISPATCH_JOB_ID,
                name="Cron dispatcher tick",
                next_run_time=utcnow(),
                replace_existing=True,
            )
            self._scheduler.add_job(
                self._maintenance,
                IntervalTrigger(seconds=scheduler_cfg.maintenance_interval),
                id=MAINTENANCE_JOB_ID,
                name="Queue maintenance",
                replace_existing=True,
            )
            logger.info(f"Dispatcher started (poll interval {scheduler_cfg.poll_interval}s)")

        if self._run_worker:
            self._worker = Worker(
                self._queue,
                JobExecutor(self._queue, registry, handler_threads=executor_cfg.max_concurrent_jobs),
                executor_cfg.worker_id,
                accepted_types=executor_cfg.accepted_types or None,
                max_concurrent_jobs=executor_cfg.max_concurrent_jobs,
                idle_sleep=executor_cfg.idle_sleep,
            )
            self._worker_task = asyncio.create_task(self._worker.run(), name="worker")

        self._running = True
        logger.info("Tenant Jobs daemon started successfully")

    async def stop(self) -> None:
        """Stop the daemon services.

        Stops ticking first, then lets in-flight jobs finish their
        current attempt.
        """
        logger.info("Stopping Tenant Jobs daemon...")

        self._running = False

        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Dispatcher stopped")

        if self._worker and self._worker_task:
            self._worker.stop()
            await self._worker_task
            self._worker_task = None
            self._worker.executor.shutdown()

        logger.info("Tenant Jobs daemon stopped")

    def _create_scheduler(self) -> AsyncIOScheduler:
        """Create and configure the APScheduler instance."""
        return AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,  # Combine missed ticks
                "max_instances": 1,  # Never overlap a tick with itself
                "misfire_grace_time": 30,
            },
            timezone="UTC",
        )

    def _setup_listeners(self) -> None:
        """Set up APScheduler event listeners."""
        if not self._scheduler:
            return

        def on_job_error(event: Any) -> None:
            exception = getattr(event, "exception", "Unknown error")
            logger.error(f"{event.job_id} failed: {exception}")

        def on_job_missed(event: Any) -> None:
            logger.warning(f"{event.job_id} missed its scheduled run")

        self._scheduler.add_listener(on_job_error, EVENT_JOB_ERROR)
        self._scheduler.add_listener(on_job_missed, EVENT_JOB_MISSED)

    async def _tick(self) -> None:
        result = await asyncio.to_thread(self._dispatcher.tick)
        self._ticks += 1
        if result.failed:
            logger.warning(f"Dispatcher tick failed for {len(result.failed)} definition(s)")

    async def _maintenance(self) -> None:
        """Release stale claims, recover abandoned runs, age and prune."""
        queue = self._queue
        await asyncio.to_thread(queue.reclaim_stale)
        await asyncio.to_thread(queue.recover_abandoned)

        aging = self._config.executor.priority_aging_seconds
        if aging > 0:
            await asyncio.to_thread(queue.boost_aged, aging)

        retention = self._config.retention
        if retention.prune_enabled:
            before = utcnow() - timedelta(days=retention.job_history_days)
            await asyncio.to_thread(queue.prune, before)

    async def run_until_shutdown(self) -> None:
        """Run daemon until shutdown signal received.

        This method blocks until request_shutdown() is called,
        typically via a signal handler.
        """
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        """Request daemon shutdown.

        This sets the shutdown event, which will cause run_until_shutdown()
        to return and allow the daemon to stop gracefully.
        """
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    @property
    def is_running(self) -> bool:
        """Check if the daemon is running."""
        return self._running

    @property
    def queue(self) -> Optional[JobQueue]:
        return self._queue

    @property
    def worker(self) -> Optional[Worker]:
        return self._worker

    @property
    def dispatcher(self) -> Optional[CronDispatcher]:
        return self._dispatcher

    def get_status(self) -> Dict[str, Any]:
        """Runtime status of the daemon's components."""
        return {
            "running": self._running,
            "dispatcher": self._dispatcher is not None,
            "ticks": self._ticks,
            "worker_id": self._worker.worker_id if self._worker else None,
            "jobs_in_flight": self._worker.in_flight if self._worker else 0,
            "jobs_run": self._worker.jobs_run if self._worker else 0,
        }


async def run_daemon(config: TenantJobsConfig, options: Dict[str, Any]) -> None:
    """Run the Tenant Jobs daemon with signal handling.

    This function sets up signal handlers for graceful shutdown and
    runs the daemon until a shutdown signal is received.

    Args:
        config: Tenant Jobs configuration
        options: Daemon options including:
            - run_dispatcher: Run the cron dispatcher (default True)
            - run_worker: Run a worker (default True)

    Example:
        await run_daemon(config, {"run_dispatcher": True, "run_worker": False})
    """
    daemon = SchedulerDaemon(
        config,
        run_dispatcher=options.get("run_dispatcher", True),
        run_worker=options.get("run_worker", True),
    )

    # Set up signal handlers
    loop = asyncio.get_running_loop()

    def handle_signal(sig: signal.Signals) -> None:
        """Handle shutdown signals.

        Args:
            sig: The signal that was received
        """
        logger.info(f"Received signal {sig.name}, initiating shutdown...")
        daemon.request_shutdown()

    # Register signal handlers
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            signal.signal(sig, lambda signum, frame: handle_signal(signal.Signals(signum)))

    try:
        await daemon.start()
        await daemon.run_until_shutdown()
    finally:
        await daemon.stop()


def daemonize(log_file: Optional[Path] = None) -> None:
    """Fork process to run as daemon.

    This function converts the current process into a background daemon
    by forking twice (standard Unix daemon technique) and redirecting
    standard file descriptors.

    Args:
        log_file: Path to log file for stdout/stderr redirection.
                 If None, output is redirected to /dev/null.

    Note:
        This function only works on Unix-like systems. On Windows,
        it returns without doing anything.
    """
    if sys.platform == "win32":
        logger.warning("Daemon mode not supported on Windows")
        return

    pid = os.fork()
    if pid > 0:
        sys.exit(0)

    os.setsid()

    pid = os.fork()
    if pid > 0:
        sys.exit(0)

    sys.stdout.flush()
    sys.stderr.flush()

    with open(os.devnull, "r") as devnull:
        os.dup2(devnull.fileno(), sys.stdin.fileno())

    target = log_file if log_file else Path(os.devnull)
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    with open(target, "a+") as out:
        os.dup2(out.fileno(), sys.stdout.fileno())
        os.dup2(out.fileno(), sys.stderr.fileno())

    logger.info(f"Daemon process started (PID: {os.getpid()})")
