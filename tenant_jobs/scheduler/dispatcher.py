"""Cron dispatcher.

Turns due cron definitions into jobs. Each tick scans definitions with
``next_run_at <= now`` and handles each one in its own transaction:

1. advance ``next_run_at`` with a conditional update against the value
   that was read (the losing dispatcher in a race skips the definition),
2. apply the run policy (no overlap, ``max_runs`` budget),
3. enqueue the job in the same transaction.

Advancing before enqueueing means a slow or crashed tick can never
fire the same occurrence twice. Missed occurrences are coalesced: the
next run is computed from the tick time, not from the old value.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from tenant_jobs.database.models import CronDefinition, JobPriority, TriggerSource
from tenant_jobs.database.repositories import RepositoryFactory
from tenant_jobs.scheduler.exceptions import UnknownJobTypeError, ValidationError
from tenant_jobs.scheduler.queue import JobQueue, SessionFactory
from tenant_jobs.scheduler.schedule import ensure_utc, next_run_or_fallback, utcnow

logger = logging.getLogger(__name__)

SKIP_OVERLAP = "overlap"
SKIP_MAX_RUNS = "max_runs"
SKIP_RACE = "advanced_elsewhere"
SKIP_INVALID = "invalid_configuration"


@dataclass
class TickResult:
    """Summary of one dispatcher tick.

    Attributes:
        enqueued: Job IDs created, keyed by definition ID
        skipped: Skip reason, keyed by definition ID
        degraded: Definitions flagged degraded during this tick
        failed: Error message, keyed by definition ID
    """

    enqueued: Dict[str, str] = field(default_factory=dict)
    skipped: Dict[str, str] = field(default_factory=dict)
    degraded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def processed(self) -> int:
        return len(self.enqueued) + len(self.skipped) + len(self.failed)


class CronDispatcher:
    """Enqueues jobs for due cron definitions.

    Safe to run in several processes against one database.

    Example:
        dispatcher = CronDispatcher(queue, session_factory)
        result = dispatcher.tick()
        print(f"{len(result.enqueued)} job(s) enqueued")
    """

    def __init__(
        self,
        queue: JobQueue,
        session_factory: SessionFactory,
        clock: Callable[[], datetime] = utcnow,
        batch_size: int = 100,
        invalid_schedule_fallback_seconds: int = 3600,
    ) -> None:
        self.queue = queue
        self._session_factory = session_factory
        self._clock = clock
        self.batch_size = batch_size
        self.invalid_schedule_fallback_seconds = invalid_schedule_fallback_seconds

    def tick(self, now: Optional[datetime] = None) -> TickResult:
        """Dispatch every definition due at ``now``.

        A failure on one definition is logged and reported; it does not
        stop the tick.
        """
        now = ensure_utc(now) if now else ensure_utc(self._clock())
        result = TickResult()

        with self._session_factory() as session:
            due = RepositoryFactory(session).definitions.get_due(now, limit=self.batch_size)

        if due:
            logger.debug(f"Dispatcher tick at {now.isoformat()}: {len(due)} due definition(s)")

        for definition_id, expected_next_run in due:
            try:
                self._dispatch(definition_id, expected_next_run, now, result)
            except SQLAlchemyError as e:
                logger.error(f"Failed to dispatch definition {definition_id}: {e}")
                result.failed[definition_id] = str(e)

        if result.enqueued:
            logger.info(f"Dispatcher enqueued {len(result.enqueued)} job(s)")
        return result

    def _dispatch(
        self,
        definition_id: str,
        expected_next_run: datetime,
        now: datetime,
        result: TickResult,
    ) -> None:
        with self._session_factory() as session:
            repos = RepositoryFactory(session)
            definition = repos.definitions.get_by_id(definition_id, refresh=True)
            if definition is None or definition.next_run_at != expected_next_run:
                result.skipped[definition_id] = SKIP_RACE
                return

            values = self._next_run_values(definition, now, result)
            if not repos.definitions.compare_and_set(
                definition_id,
                {
                    "next_run_at": expected_next_run,
                    "is_paused": False,
                    "is_active": True,
                    "completed_at": None,
                },
                values,
            ):
                result.skipped[definition_id] = SKIP_RACE
                return

            in_flight = repos.jobs.count_in_flight(definition_id)
            if in_flight and not definition.allow_concurrent_runs:
                logger.info(
                    f"Skipping run of {definition.name} ({definition_id}): "
                    f"{in_flight} job(s) still in flight"
                )
                result.skipped[definition_id] = SKIP_OVERLAP
                return

            if definition.max_runs is not None and definition.run_count + in_flight >= definition.max_runs:
                result.skipped[definition_id] = SKIP_MAX_RUNS
                return

            try:
                job = self.queue.enqueue(
                    definition.job_type,
                    definition.configuration,
                    priority=JobPriority.NORMAL,
                    max_retries=definition.max_retries,
                    timeout_seconds=definition.timeout_seconds,
                    scheduled_at=now,
                    cron_definition_id=definition.id,
                    tenant_id=definition.tenant_id,
                    requester_id=definition.owner_id,
                    metadata={"definition_name": definition.name},
                    triggered_by=TriggerSource.SCHEDULE,
                    session=session,
                )
            except UnknownJobTypeError as e:
                logger.error(f"Definition {definition.name} ({definition_id}) uses an unregistered job type")
                self._mark_degraded(repos, definition, str(e), result)
                result.skipped[definition_id] = SKIP_INVALID
                return
            except ValidationError as e:
                self._mark_degraded(repos, definition, str(e), result)
                result.skipped[definition_id] = SKIP_INVALID
                return

            result.enqueued[definition_id] = job.id
            logger.info(f"Enqueued job {job.id} for definition {definition.name} ({definition_id})")

    def _next_run_values(
        self, definition: CronDefinition, now: datetime, result: TickResult
    ) -> Dict[str, object]:
        if definition.is_one_time:
            return {"next_run_at": None}

        next_run, error = next_run_or_fallback(
            definition.cron_expression,
            definition.timezone,
            now,
            self.invalid_schedule_fallback_seconds,
        )
        values: Dict[str, object] = {"next_run_at": next_run}
        if error:
            values.update(is_degraded=True, degraded_reason=error)
            if not definition.is_degraded:
                result.degraded.append(definition.id)
                logger.warning(f"Definition {definition.name} ({definition.id}) degraded: {error}")
        return values

    @staticmethod
    def _mark_degraded(
        repos: RepositoryFactory, definition: CronDefinition, reason: str, result: TickResult
    ) -> None:
        repos.definitions.compare_and_set(
            definition.id, {}, {"is_degraded": True, "degraded_reason": reason}
        )
        if definition.id not in result.degraded:
            result.degraded.append(definition.id)
        logger.warning(f"Definition {definition.name} ({definition.id}) degraded: {reason}")
