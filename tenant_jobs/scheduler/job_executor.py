"""Job executor for running claimed jobs.

The JobExecutor takes a job a worker has claimed, moves it to
``running``, invokes the registered handler under the job's deadline
and records the outcome through the queue. Handler faults never
escape: every exception is classified as retryable or permanent and
the open Execution is always closed.
"""

import asyncio
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from tenant_jobs.database.models import ExecutionStatus, Job, JobStatus
from tenant_jobs.scheduler.exceptions import (
    ClaimConflict,
    JobCancelledError,
    JobTimeoutError,
    PermanentHandlerError,
    UnknownJobTypeError,
)
from tenant_jobs.scheduler.queue import JobQueue
from tenant_jobs.scheduler.registry import JobTypeRegistry
from tenant_jobs.scheduler.schedule import utcnow

logger = logging.getLogger(__name__)


class JobContext:
    """Handle passed to job handlers.

    Gives the handler its deadline, a way to report progress and a
    cancellation checkpoint. Cancellation is cooperative: long-running
    handlers should call :meth:`check_cancelled` between units of work.

    Example:
        async def import_catalog(payload, context):
            for i, batch in enumerate(batches):
                context.check_cancelled()
                await load(batch)
                context.report_progress(100 * (i + 1) // len(batches))
    """

    def __init__(self, queue: JobQueue, job: Job, attempt: int, deadline: datetime) -> None:
        self._queue = queue
        self.job_id = job.id
        self.job_type = job.job_type
        self.payload = job.payload
        self.tenant_id = job.tenant_id
        self.cron_definition_id = job.cron_definition_id
        self.attempt = attempt
        self.deadline = deadline

    def remaining(self) -> float:
        """Seconds left before the deadline (never negative)."""
        return max(0.0, (self.deadline - utcnow()).total_seconds())

    def report_progress(self, progress: int, message: Optional[str] = None) -> None:
        """Persist progress (0-100) and an optional status message."""
        self._queue.report_progress(self.job_id, progress, message)

    def check_cancelled(self) -> None:
        """Raise if the job was cancelled or its deadline passed.

        Raises:
            JobCancelledError: If cancellation was requested
            JobTimeoutError: If the deadline has passed
        """
        if self._queue.is_cancel_requested(self.job_id):
            raise JobCancelledError("Job was cancelled", job_id=self.job_id)
        if utcnow() >= self.deadline:
            raise JobTimeoutError("Deadline exceeded", job_id=self.job_id)


@dataclass
class JobExecutionResult:
    """Result of running one attempt of a job.

    Attributes:
        job_id: Job that ran
        job_type: Its type
        attempt: 1-based attempt number
        started_at: When the handler was invoked
        completed_at: When the outcome was recorded
        execution_status: Outcome of this attempt
        job_status: Job status afterwards (pending when a retry was scheduled);
            None when the attempt lost ownership of the job
        output: Handler result on success
        error: Error message on failure
    """

    job_id: str
    job_type: str
    attempt: int
    started_at: datetime
    completed_at: datetime
    execution_status: ExecutionStatus
    job_status: Optional[JobStatus] = None
    output: Any = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.execution_status == ExecutionStatus.SUCCEEDED

    @property
    def retry_scheduled(self) -> bool:
        return self.job_status == JobStatus.PENDING

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()


def _json_safe(value: Any) -> Any:
    """Coerce a handler result into something the JSON column accepts."""
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


class JobExecutor:
    """Runs claimed jobs.

    Example:
        executor = JobExecutor(queue, registry)
        job = queue.claim(worker_id)
        if job:
            result = await executor.run(job, worker_id)
    """

    def __init__(
        self,
        queue: JobQueue,
        registry: JobTypeRegistry,
        handler_threads: int = 4,
    ) -> None:
        """Initialize the job executor.

        Args:
            queue: Queue used to record transitions
            registry: Job types to dispatch to
            handler_threads: Size of the thread pool for blocking handlers
        """
        if handler_threads < 1:
            raise ValueError("handler_threads must be at least 1")

        self.queue = queue
        self.registry = registry
        self.handler_threads = handler_threads
        self._handler_pool: Optional[ThreadPoolExecutor] = None

    def _pool(self) -> ThreadPoolExecutor:
        if self._handler_pool is None:
            self._handler_pool = ThreadPoolExecutor(
                max_workers=self.handler_threads, thread_name_prefix="job-handler"
            )
        return self._handler_pool

    def shutdown(self) -> None:
        """Release the handler thread pool without waiting for stuck handlers."""
        if self._handler_pool is not None:
            self._handler_pool.shutdown(wait=False, cancel_futures=True)
            self._handler_pool = None

    async def run(self, job: Job, worker_id: str) -> Optional[JobExecutionResult]:
        """Run one attempt of a claimed job.

        Args:
            job: A job claimed by ``worker_id``
            worker_id: Identity of the worker holding the claim

        Returns:
            The attempt's result, or None if the claim was lost before
            the job could start
        """
        try:
            job, execution = await asyncio.to_thread(self.queue.mark_running, job.id, worker_id)
        except ClaimConflict as e:
            logger.info(f"Skipping job {job.id}: {e}")
            return None

        started_at = execution.started_at
        deadline = started_at + timedelta(seconds=job.timeout_seconds)
        context = JobContext(self.queue, job, execution.attempt, deadline)

        output = None
        error: Optional[str] = None
        retryable = True
        execution_status = ExecutionStatus.SUCCEEDED

        try:
            output = _json_safe(await self._invoke(job, context))
        except (asyncio.TimeoutError, JobTimeoutError):
            error = f"Timed out after {job.timeout_seconds}s"
            execution_status = ExecutionStatus.TIMED_OUT
        except JobCancelledError as e:
            error = str(e) or "Cancelled"
            execution_status = ExecutionStatus.CANCELLED
            retryable = False
        except UnknownJobTypeError as e:
            error = str(e)
            execution_status = ExecutionStatus.FAILED
            retryable = False
        except PermanentHandlerError as e:
            error = str(e)
            execution_status = ExecutionStatus.FAILED
            retryable = False
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            execution_status = ExecutionStatus.FAILED
            logger.debug(f"Job {job.id} handler raised", exc_info=True)

        if execution_status == ExecutionStatus.SUCCEEDED:
            owned = await asyncio.to_thread(self.queue.complete, job.id, execution.id, output)
            job_status = JobStatus.SUCCEEDED if owned else None
        else:
            job_status = await asyncio.to_thread(
                self.queue.fail,
                job.id,
                execution.id,
                error,
                retryable=retryable,
                execution_status=execution_status,
            )

        return JobExecutionResult(
            job_id=job.id,
            job_type=job.job_type,
            attempt=execution.attempt,
            started_at=started_at,
            completed_at=utcnow(),
            execution_status=execution_status,
            job_status=job_status,
            output=output,
            error=error,
        )

    async def _invoke(self, job: Job, context: JobContext) -> Any:
        """Call the handler bounded by the job's deadline."""
        job_type = self.registry.get(job.job_type)

        if job_type.is_async:
            call = job_type.handler(job.payload, context)
        else:
            # Blocking handlers run on the executor's own pool, never the
            # default pool used for queue calls. On timeout the thread is
            # abandoned and should stop at its next check_cancelled().
            loop = asyncio.get_running_loop()
            call = loop.run_in_executor(self._pool(), job_type.handler, job.payload, context)

        return await asyncio.wait_for(call, timeout=job.timeout_seconds)
