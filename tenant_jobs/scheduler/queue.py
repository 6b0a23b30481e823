"""Persisted job queue with atomic claim.

The ``jobs`` table is the queue. Every state transition is a
conditional UPDATE guarded by the columns the caller last observed
(see :meth:`JobRepository.compare_and_set`), so any number of worker
processes can share one database without a lock service: when N
workers race for the same row exactly one update matches and the
others see a row count of zero and move on to the next candidate.

Job states:

    pending -> claimed -> running -> succeeded | failed | cancelled
                                  -> pending (retryable failure, with backoff)
    claimed (lease expired)       -> pending or re-claimed, retry_count unchanged
"""

import logging
from contextlib import AbstractContextManager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from tenant_jobs.database.models import (
    Execution,
    ExecutionStatus,
    Job,
    JobPriority,
    JobStatus,
    TriggerSource,
)
from tenant_jobs.database.repositories import RepositoryFactory
from tenant_jobs.scheduler.exceptions import (
    ClaimConflict,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from tenant_jobs.scheduler.lifecycle import apply_job_outcome
from tenant_jobs.scheduler.registry import JobTypeRegistry
from tenant_jobs.scheduler.schedule import ensure_utc, utcnow

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager]

# Candidates fetched per claim attempt; losers fall through to the next one
CLAIM_BATCH_SIZE = 10


def compute_backoff(retry_count: int, base: float = 5.0, cap: float = 1800.0) -> float:
    """Delay before retry number ``retry_count`` (1-based).

    Doubles with each retry until it reaches ``cap``.
    """
    if retry_count < 1:
        return 0.0
    return min(base * (2 ** (retry_count - 1)), cap)


def _duration_ms(started_at: Optional[datetime], completed_at: datetime) -> int:
    if started_at is None:
        return 0
    return max(0, int((completed_at - ensure_utc(started_at)).total_seconds() * 1000))


class JobQueue:
    """Queue operations over the ``jobs`` and ``executions`` tables.

    Every public method runs in its own transaction obtained from
    ``session_factory`` (a callable returning a context manager that
    yields a Session and commits on exit), except :meth:`enqueue`, which
    can join a caller's session.

    Example:
        queue = JobQueue(registry, partial(session_scope, session_maker))
        job = queue.enqueue("catalog_import", {"file": "s3://..."})
        claimed = queue.claim("worker-1")
    """

    def __init__(
        self,
        registry: JobTypeRegistry,
        session_factory: SessionFactory,
        clock: Callable[[], datetime] = utcnow,
        lease_seconds: float = 120,
        abandon_grace_seconds: float = 60,
        backoff_base_seconds: float = 5.0,
        backoff_max_seconds: float = 1800.0,
    ) -> None:
        self.registry = registry
        self._session_factory = session_factory
        self._clock = clock
        self.lease_seconds = lease_seconds
        self.abandon_grace_seconds = abandon_grace_seconds
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds

    def now(self) -> datetime:
        return ensure_utc(self._clock())

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(
        self,
        job_type: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        priority: Any = JobPriority.NORMAL,
        max_retries: Optional[int] = None,
        timeout_seconds: Optional[int] = None,
        scheduled_at: Optional[datetime] = None,
        cron_definition_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        requester_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        triggered_by: TriggerSource = TriggerSource.API,
        session: Optional[Session] = None,
    ) -> Job:
        """Insert a pending job.

        The job type must be registered and the payload must match its
        schema; retry budget and timeout default to the type's values.

        Args:
            job_type: Registered job type name
            payload: Handler payload
            priority: JobPriority, its name or its value
            max_retries: Retry budget override
            timeout_seconds: Deadline override
            scheduled_at: Earliest run time (default: now)
            cron_definition_id: Originating definition, if any
            tenant_id: Tenant/store the job belongs to
            requester_id: User who requested the job
            metadata: Free-form metadata
            triggered_by: What caused the job
            session: Join this session instead of opening a transaction

        Returns:
            The created job

        Raises:
            UnknownJobTypeError: If the type is not registered
            ValidationError: If the payload or overrides are invalid
        """
        payload = payload if payload is not None else {}
        registered = self.registry.validate_configuration(job_type, payload)

        try:
            priority = JobPriority.parse(priority)
        except ValueError as e:
            raise ValidationError(str(e), [str(e)]) from None

        errors: List[str] = []
        if max_retries is not None and max_retries < 0:
            errors.append("max_retries: must not be negative")
        if timeout_seconds is not None and timeout_seconds <= 0:
            errors.append("timeout_seconds: must be positive")
        if errors:
            raise ValidationError(f"Invalid job options for {job_type}", errors)

        job = Job(
            job_type=job_type,
            payload=payload,
            priority=int(priority),
            status=JobStatus.PENDING.value,
            retry_count=0,
            max_retries=registered.default_max_retries if max_retries is None else max_retries,
            timeout_seconds=timeout_seconds or registered.default_timeout_seconds,
            scheduled_at=ensure_utc(scheduled_at) if scheduled_at else self.now(),
            cron_definition_id=cron_definition_id,
            triggered_by=TriggerSource(triggered_by).value,
            tenant_id=tenant_id,
            requester_id=requester_id,
            job_metadata=metadata or {},
        )

        if session is not None:
            RepositoryFactory(session).jobs.add(job)
        else:
            with self._session_factory() as own_session:
                RepositoryFactory(own_session).jobs.add(job)

        logger.debug(
            f"Enqueued job {job.id} ({job_type}, priority={priority.name.lower()}, "
            f"scheduled_at={job.scheduled_at.isoformat()})"
        )
        return job

    # ------------------------------------------------------------------
    # Claim protocol
    # ------------------------------------------------------------------

    def claim(
        self,
        worker_id: str,
        accepted_types: Optional[Iterable[str]] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Job]:
        """Atomically take ownership of the next eligible job.

        Eligible jobs are pending and due, or claimed with an expired
        lease. They are tried in priority order; a lost race on one
        candidate moves on to the next.

        Args:
            worker_id: Identity of the claiming worker
            accepted_types: Job types this worker runs (None = all)
            now: Reference time (default: clock)

        Returns:
            The claimed job, or None if nothing is claimable
        """
        now = ensure_utc(now) if now else self.now()
        stale_before = now - timedelta(seconds=self.lease_seconds)
        types = list(accepted_types) if accepted_types else None

        with self._session_factory() as session:
            candidates = RepositoryFactory(session).jobs.find_claimable(
                now, stale_before, types, limit=CLAIM_BATCH_SIZE
            )

        for candidate in candidates:
            try:
                job = self._claim_one(candidate, worker_id, now)
            except ClaimConflict as e:
                logger.debug(f"Worker {worker_id} lost claim on job {candidate.id}: {e}")
                continue

            if candidate.status == JobStatus.CLAIMED.value:
                logger.warning(
                    f"Reclaimed stale job {job.id} from {candidate.claimed_by} "
                    f"(claimed at {candidate.claimed_at.isoformat()})"
                )
            logger.debug(f"Worker {worker_id} claimed job {job.id} ({job.job_type})")
            return job

        return None

    def _claim_one(self, candidate: Job, worker_id: str, now: datetime) -> Job:
        expected = {
            "status": candidate.status,
            "claimed_by": candidate.claimed_by,
            "claimed_at": candidate.claimed_at,
        }
        values = {
            "status": JobStatus.CLAIMED.value,
            "claimed_by": worker_id,
            "claimed_at": now,
        }

        with self._session_factory() as session:
            jobs = RepositoryFactory(session).jobs
            try:
                won = jobs.compare_and_set(candidate.id, expected, values)
            except OperationalError as e:
                # SQLite reports a contended write lock as "database is locked"
                raise ClaimConflict(f"Write contention: {e.orig}", job_id=candidate.id) from e
            if not won:
                raise ClaimConflict("Row changed since it was read", job_id=candidate.id)
            return jobs.get_by_id(candidate.id, refresh=True)

    def mark_running(
        self,
        job_id: str,
        worker_id: str,
        now: Optional[datetime] = None,
    ) -> Tuple[Job, Execution]:
        """Move a claimed job to running and open its Execution.

        Both writes happen in one transaction.

        Returns:
            Tuple of (job, opened execution)

        Raises:
            ClaimConflict: If the worker no longer holds the claim
        """
        now = ensure_utc(now) if now else self.now()

        with self._session_factory() as session:
            repos = RepositoryFactory(session)
            won = repos.jobs.compare_and_set(
                job_id,
                {"status": JobStatus.CLAIMED.value, "claimed_by": worker_id},
                {"status": JobStatus.RUNNING.value, "started_at": now},
            )
            if not won:
                raise ClaimConflict(
                    f"Job {job_id} is no longer claimed by {worker_id}", job_id=job_id
                )

            job = repos.jobs.get_by_id(job_id, refresh=True)
            execution = repos.executions.add(
                Execution(
                    job_id=job.id,
                    cron_definition_id=job.cron_definition_id,
                    attempt=job.retry_count + 1,
                    worker_id=worker_id,
                    triggered_by=job.triggered_by,
                    status=ExecutionStatus.RUNNING.value,
                    started_at=now,
                )
            )

        logger.info(f"Job {job.id} ({job.job_type}) started, attempt {execution.attempt}")
        return job, execution

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _load_attempt(
        self, repos: RepositoryFactory, job_id: str, execution_id: Optional[str]
    ) -> Tuple[Job, Optional[Execution]]:
        job = repos.jobs.get_by_id(job_id, refresh=True)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}", job_id=job_id)
        execution = repos.executions.get_by_id(execution_id) if execution_id else None
        return job, execution

    def complete(
        self,
        job_id: str,
        execution_id: Optional[str],
        result: Any = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Record a successful attempt.

        Returns:
            False if the attempt no longer owns the job (it was recovered
            as abandoned in the meantime), True otherwise
        """
        now = ensure_utc(now) if now else self.now()

        with self._session_factory() as session:
            repos = RepositoryFactory(session)
            job, execution = self._load_attempt(repos, job_id, execution_id)
            started_at = execution.started_at if execution else job.started_at

            won = repos.jobs.compare_and_set(
                job_id,
                {"status": JobStatus.RUNNING.value, "started_at": started_at},
                {
                    "status": JobStatus.SUCCEEDED.value,
                    "completed_at": now,
                    "result": result,
                    "progress": 100,
                    "last_error": None,
                },
            )
            if not won:
                logger.warning(f"Job {job_id} changed while running; discarding its result")
                return False

            if execution is not None:
                repos.executions.close(
                    execution.id,
                    ExecutionStatus.SUCCEEDED.value,
                    completed_at=now,
                    duration_ms=_duration_ms(execution.started_at, now),
                    output=result,
                )

            job = repos.jobs.get_by_id(job_id, refresh=True)
            apply_job_outcome(session, job, JobStatus.SUCCEEDED, None, now)

        logger.info(f"Job {job_id} ({job.job_type}) succeeded")
        return True

    def fail(
        self,
        job_id: str,
        execution_id: Optional[str],
        error: str,
        *,
        retryable: bool = True,
        execution_status: ExecutionStatus = ExecutionStatus.FAILED,
        now: Optional[datetime] = None,
    ) -> Optional[JobStatus]:
        """Record a failed attempt and apply the retry policy.

        A retryable failure with budget left puts the job back to
        ``pending`` with ``retry_count + 1`` and an exponential backoff.
        Otherwise the job fails terminally. A ``cancelled`` execution
        status, or a pending cancel request, cancels the job.

        Returns:
            The job's resulting status, or None if the attempt no longer
            owns the job
        """
        now = ensure_utc(now) if now else self.now()
        execution_status = ExecutionStatus(execution_status)

        with self._session_factory() as session:
            repos = RepositoryFactory(session)
            job, execution = self._load_attempt(repos, job_id, execution_id)
            started_at = execution.started_at if execution else job.started_at

            if execution_status == ExecutionStatus.CANCELLED or job.cancel_requested:
                # A failure after a cancel request ends the job; no retry
                outcome = JobStatus.CANCELLED
                values: Dict[str, Any] = {
                    "status": outcome.value,
                    "completed_at": now,
                    "last_error": error,
                }
            elif retryable and job.retry_count < job.max_retries:
                outcome = JobStatus.PENDING
                retry_count = job.retry_count + 1
                delay = compute_backoff(
                    retry_count, self.backoff_base_seconds, self.backoff_max_seconds
                )
                values = {
                    "status": outcome.value,
                    "retry_count": retry_count,
                    "scheduled_at": now + timedelta(seconds=delay),
                    "claimed_by": None,
                    "claimed_at": None,
                    "started_at": None,
                    "progress": 0,
                    "progress_message": None,
                    "last_error": error,
                }
            else:
                outcome = JobStatus.FAILED
                values = {
                    "status": outcome.value,
                    "completed_at": now,
                    "last_error": error,
                }

            won = repos.jobs.compare_and_set(
                job_id,
                {"status": JobStatus.RUNNING.value, "started_at": started_at},
                values,
            )
            if not won:
                logger.warning(f"Job {job_id} changed while running; discarding its failure")
                return None

            if execution is not None:
                repos.executions.close(
                    execution.id,
                    execution_status.value,
                    completed_at=now,
                    duration_ms=_duration_ms(execution.started_at, now),
                    error=error,
                )

            if outcome.is_terminal:
                job = repos.jobs.get_by_id(job_id, refresh=True)
                apply_job_outcome(session, job, outcome, error, now)

        if outcome == JobStatus.PENDING:
            logger.warning(
                f"Job {job_id} ({job.job_type}) failed: {error}; retry {values['retry_count']}"
                f"/{job.max_retries} scheduled at {values['scheduled_at'].isoformat()}"
            )
        elif outcome == JobStatus.CANCELLED:
            logger.info(f"Job {job_id} ({job.job_type}) cancelled")
        else:
            logger.error(f"Job {job_id} ({job.job_type}) failed permanently: {error}")
        return outcome

    # ------------------------------------------------------------------
    # Recovery and maintenance
    # ------------------------------------------------------------------

    def reclaim_stale(self, now: Optional[datetime] = None) -> int:
        """Return claims whose lease expired to ``pending``.

        The retry budget is not charged: the handler never ran.

        Returns:
            Number of jobs released
        """
        now = ensure_utc(now) if now else self.now()
        stale_before = now - timedelta(seconds=self.lease_seconds)
        released = 0

        with self._session_factory() as session:
            jobs = RepositoryFactory(session).jobs
            for job in jobs.find_stale_claims(stale_before):
                if jobs.compare_and_set(
                    job.id,
                    {
                        "status": JobStatus.CLAIMED.value,
                        "claimed_by": job.claimed_by,
                        "claimed_at": job.claimed_at,
                    },
                    {"status": JobStatus.PENDING.value, "claimed_by": None, "claimed_at": None},
                ):
                    released += 1
                    logger.warning(f"Released stale claim on job {job.id} held by {job.claimed_by}")

        return released

    def recover_abandoned(self, now: Optional[datetime] = None) -> int:
        """Fail running jobs whose worker stopped without reporting.

        A job is abandoned once ``started_at + timeout + grace`` has
        passed. Its open Execution is closed as ``abandoned`` and the job
        goes through the retry policy like any transient failure.

        Returns:
            Number of jobs recovered
        """
        now = ensure_utc(now) if now else self.now()
        grace = timedelta(seconds=self.abandon_grace_seconds)

        with self._session_factory() as session:
            repos = RepositoryFactory(session)
            abandoned = []
            for job in repos.jobs.find_running(started_before=now - grace):
                deadline = ensure_utc(job.started_at) + timedelta(seconds=job.timeout_seconds) + grace
                if deadline < now:
                    execution = repos.executions.get_open_for_job(job.id)
                    abandoned.append((job.id, job.claimed_by, execution.id if execution else None))

        return self._fail_abandoned(abandoned, now)

    def resume_interrupted(self, worker_id: str, now: Optional[datetime] = None) -> int:
        """Recover work left behind by a previous run of this worker.

        Claims still held by ``worker_id`` go back to ``pending``; jobs it
        was running are failed as abandoned.

        Returns:
            Number of jobs recovered
        """
        now = ensure_utc(now) if now else self.now()
        released = 0

        with self._session_factory() as session:
            repos = RepositoryFactory(session)
            for job in repos.jobs.find_claimed_by(worker_id):
                if repos.jobs.compare_and_set(
                    job.id,
                    {"status": JobStatus.CLAIMED.value, "claimed_by": worker_id},
                    {"status": JobStatus.PENDING.value, "claimed_by": None, "claimed_at": None},
                ):
                    released += 1

            interrupted = []
            for job in repos.jobs.find_running(started_before=now, worker_id=worker_id):
                execution = repos.executions.get_open_for_job(job.id)
                interrupted.append((job.id, worker_id, execution.id if execution else None))

        recovered = released + self._fail_abandoned(interrupted, now)
        if recovered:
            logger.warning(f"Recovered {recovered} interrupted job(s) for worker {worker_id}")
        return recovered

    def _fail_abandoned(self, abandoned: List[Tuple[str, Optional[str], Optional[str]]], now: datetime) -> int:
        recovered = 0
        for job_id, worker_id, execution_id in abandoned:
            outcome = self.fail(
                job_id,
                execution_id,
                f"Abandoned: worker {worker_id} stopped before finishing",
                retryable=True,
                execution_status=ExecutionStatus.ABANDONED,
                now=now,
            )
            if outcome is not None:
                recovered += 1
                logger.warning(f"Recovered abandoned job {job_id} from {worker_id}")
        return recovered

    def boost_aged(self, older_than_seconds: float, now: Optional[datetime] = None) -> int:
        """Raise the priority of pending jobs that waited too long.

        Each call promotes a job by at most one level; the wait is
        measured from the job's last update, so promotions are spaced
        ``older_than_seconds`` apart.

        Returns:
            Number of jobs promoted
        """
        if older_than_seconds <= 0:
            return 0
        now = ensure_utc(now) if now else self.now()
        waiting_since = now - timedelta(seconds=older_than_seconds)
        promoted = 0

        with self._session_factory() as session:
            jobs = RepositoryFactory(session).jobs
            for job in jobs.find_aged_pending(waiting_since, int(JobPriority.HIGH)):
                if jobs.compare_and_set(
                    job.id,
                    {"status": JobStatus.PENDING.value, "priority": job.priority},
                    {"priority": job.priority + 1},
                ):
                    promoted += 1

        if promoted:
            logger.info(f"Promoted {promoted} long-waiting job(s)")
        return promoted

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> Job:
        """Load a job.

        Raises:
            NotFoundError: If the job does not exist
        """
        with self._session_factory() as session:
            job = RepositoryFactory(session).jobs.get_by_id(job_id)
            if job is None:
                raise NotFoundError(f"Job not found: {job_id}", job_id=job_id)
            return job

    def cancel(self, job_id: str, strict: bool = False, now: Optional[datetime] = None) -> JobStatus:
        """Cancel a job.

        Pending and claimed jobs are cancelled immediately. A running job
        is flagged with ``cancel_requested``; its handler stops at its next
        ``check_cancelled()`` checkpoint.

        Args:
            job_id: Job ID
            strict: Reject cancelling a running job instead of flagging it
            now: Reference time

        Returns:
            CANCELLED, or RUNNING when cancellation was requested

        Raises:
            NotFoundError: If the job does not exist
            InvalidStateError: If the job is terminal, or running with strict
        """
        now = ensure_utc(now) if now else self.now()

        with self._session_factory() as session:
            jobs = RepositoryFactory(session).jobs
            job = jobs.get_by_id(job_id)
            if job is None:
                raise NotFoundError(f"Job not found: {job_id}", job_id=job_id)

            # Re-read and retry when the job moves between read and write
            while True:
                status = job.job_status
                if status.is_terminal:
                    raise InvalidStateError(f"Job {job_id} is already {status.value}", state=status.value)

                if status in (JobStatus.PENDING, JobStatus.CLAIMED):
                    if jobs.compare_and_set(
                        job_id,
                        {"status": status.value},
                        {
                            "status": JobStatus.CANCELLED.value,
                            "completed_at": now,
                            "claimed_by": None,
                            "claimed_at": None,
                            "last_error": "Cancelled before it ran",
                        },
                    ):
                        logger.info(f"Job {job_id} cancelled")
                        return JobStatus.CANCELLED
                else:
                    if strict:
                        raise InvalidStateError(f"Job {job_id} is running", state=status.value)
                    if jobs.compare_and_set(
                        job_id,
                        {"status": JobStatus.RUNNING.value},
                        {"cancel_requested": True},
                    ):
                        logger.info(f"Cancellation requested for running job {job_id}")
                        return JobStatus.RUNNING

                job = jobs.get_by_id(job_id, refresh=True)
                if job is None:
                    raise NotFoundError(f"Job not found: {job_id}", job_id=job_id)

    def is_cancel_requested(self, job_id: str) -> bool:
        with self._session_factory() as session:
            job = RepositoryFactory(session).jobs.get_by_id(job_id)
            return bool(job is not None and job.cancel_requested)

    def report_progress(self, job_id: str, progress: int, message: Optional[str] = None) -> bool:
        """Persist handler progress (0-100) on a running job."""
        progress = max(0, min(100, int(progress)))
        with self._session_factory() as session:
            return RepositoryFactory(session).jobs.compare_and_set(
                job_id,
                {"status": JobStatus.RUNNING.value},
                {"progress": progress, "progress_message": message},
            )

    def statistics(self, since: Optional[datetime] = None) -> Dict[str, Any]:
        """Job counts per status and the success rate of finished jobs.

        Args:
            since: Only count jobs created at or after this time
        """
        with self._session_factory() as session:
            counts = RepositoryFactory(session).jobs.count_by_status(since)

        finished = counts[JobStatus.SUCCEEDED.value] + counts[JobStatus.FAILED.value]
        stats: Dict[str, Any] = {"total": sum(counts.values())}
        stats.update(counts)
        stats["success_rate"] = (
            round(counts[JobStatus.SUCCEEDED.value] / finished * 100, 2) if finished else 0.0
        )
        return stats

    def prune(self, before: datetime, limit: Optional[int] = None) -> int:
        """Delete terminal jobs completed before ``before``.

        Returns:
            Number of jobs deleted
        """
        with self._session_factory() as session:
            deleted = RepositoryFactory(session).jobs.delete_terminal_before(ensure_utc(before), limit)
        if deleted:
            logger.info(f"Pruned {deleted} finished job(s) completed before {before.isoformat()}")
        return deleted
