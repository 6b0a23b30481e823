"""Worker loop: claim jobs and run them with bounded concurrency."""

import asyncio
import logging
from typing import Iterable, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from tenant_jobs.database.models import Job
from tenant_jobs.scheduler.job_executor import JobExecutor
from tenant_jobs.scheduler.queue import JobQueue

logger = logging.getLogger(__name__)


class Worker:
    """Polls the queue and runs claimed jobs.

    At most ``max_concurrent_jobs`` jobs run at once. When nothing is
    claimable the worker sleeps ``idle_sleep`` seconds. :meth:`stop`
    lets in-flight jobs finish their current attempt.

    Example:
        worker = Worker(queue, executor, "host-1:4242", max_concurrent_jobs=4)
        task = asyncio.create_task(worker.run())
        ...
        worker.stop()
        await task
    """

    def __init__(
        self,
        queue: JobQueue,
        executor: JobExecutor,
        worker_id: str,
        accepted_types: Optional[Iterable[str]] = None,
        max_concurrent_jobs: int = 4,
        idle_sleep: float = 2.0,
    ) -> None:
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be at least 1")

        self.queue = queue
        self.executor = executor
        self.worker_id = worker_id
        self.accepted_types = list(accepted_types) if accepted_types else None
        self.max_concurrent_jobs = max_concurrent_jobs
        self.idle_sleep = idle_sleep

        self._semaphore = asyncio.Semaphore(max_concurrent_jobs)
        self._stopping = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()
        self._jobs_run = 0

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    @property
    def jobs_run(self) -> int:
        return self._jobs_run

    @property
    def is_stopping(self) -> bool:
        return self._stopping.is_set()

    async def run_once(self) -> int:
        """Claim jobs until every slot is busy or the queue is empty.

        Returns:
            Number of jobs claimed
        """
        claimed = 0
        while not self._stopping.is_set() and not self._semaphore.locked():
            await self._semaphore.acquire()
            try:
                job = await asyncio.to_thread(self.queue.claim, self.worker_id, self.accepted_types)
            except BaseException:
                self._semaphore.release()
                raise

            if job is None:
                self._semaphore.release()
                break

            task = asyncio.create_task(self._run_job(job), name=f"job-{job.id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            claimed += 1

        return claimed

    async def _run_job(self, job: Job) -> None:
        try:
            await self.executor.run(job, self.worker_id)
            self._jobs_run += 1
        except Exception as e:
            # Outcome could not be recorded; the job is recovered as abandoned later
            logger.error(f"Worker {self.worker_id} failed to record job {job.id}: {e}")
        finally:
            self._semaphore.release()

    async def run(self) -> None:
        """Run until :meth:`stop` is called."""
        logger.info(
            f"Worker {self.worker_id} started "
            f"(max_concurrent_jobs={self.max_concurrent_jobs})"
        )

        try:
            await asyncio.to_thread(self.queue.resume_interrupted, self.worker_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to recover interrupted jobs for {self.worker_id}: {e}")

        while not self._stopping.is_set():
            try:
                claimed = await self.run_once()
            except SQLAlchemyError as e:
                logger.error(f"Worker {self.worker_id} failed to claim jobs: {e}")
                claimed = 0

            if claimed == 0 or self._semaphore.locked():
                await self._wait(self.idle_sleep)

        await self.drain()
        logger.info(f"Worker {self.worker_id} stopped after {self._jobs_run} job(s)")

    async def _wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def drain(self) -> None:
        """Wait for in-flight jobs to finish."""
        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} in-flight job(s)")
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def stop(self) -> None:
        """Stop claiming new jobs."""
        self._stopping.set()
