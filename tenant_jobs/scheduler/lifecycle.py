"""Cron definition state machine.

States are derived from flags on the row:

    active -> paused     (manual, or once the failure budget is exhausted)
    paused -> active     (resume)
    active -> completed  (run_count reached max_runs, terminal)
    any    -> disabled   (soft delete, terminal)

Counters move only when a job spawned by the definition reaches a
terminal status, so a job that needed retries counts once.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from tenant_jobs.database.models import CronDefinition, DefinitionState, Job, JobStatus
from tenant_jobs.database.repositories import CronDefinitionRepository
from tenant_jobs.scheduler.exceptions import InvalidStateError

logger = logging.getLogger(__name__)

TERMINAL_STATES = frozenset({DefinitionState.COMPLETED, DefinitionState.DISABLED})


def ensure_mutable(definition: CronDefinition, action: str) -> None:
    """Reject ``action`` on completed or disabled definitions.

    Raises:
        InvalidStateError: If the definition is in a terminal state
    """
    state = definition.state
    if state in TERMINAL_STATES:
        raise InvalidStateError(
            f"Cannot {action} definition {definition.id}: it is {state.value}",
            state=state.value,
        )


def ensure_user_managed(definition: CronDefinition, action: str) -> None:
    """Reject ``action`` on system definitions, which are read-only.

    System definitions may still be paused, resumed and run on demand.

    Raises:
        InvalidStateError: If the definition is a system definition
    """
    if definition.is_system:
        raise InvalidStateError(
            f"Cannot {action} definition {definition.id}: it is a system definition",
            state=definition.state.value,
        )


def apply_job_outcome(
    session: Session,
    job: Job,
    status: JobStatus,
    error: Optional[str],
    now: datetime,
) -> Optional[CronDefinition]:
    """Reflect a job's terminal outcome onto its cron definition.

    Args:
        session: Session holding the job's transaction
        job: The job that reached a terminal status
        status: The terminal status
        error: Error message for failures
        now: Completion time

    Returns:
        The updated definition, or None for ad-hoc jobs
    """
    if job.cron_definition_id is None:
        return None

    repo = CronDefinitionRepository(session)
    definition = repo.get_by_id(job.cron_definition_id, refresh=True)
    if definition is None:
        return None

    definition.last_run_at = now
    definition.last_status = status.value

    # Counters are incremented in SQL so concurrent outcomes don't lose updates
    if status == JobStatus.SUCCEEDED:
        definition.run_count = CronDefinition.run_count + 1
        definition.success_count = CronDefinition.success_count + 1
        definition.consecutive_failure_count = 0
        definition.last_error = None
    elif status == JobStatus.FAILED:
        definition.consecutive_failure_count = CronDefinition.consecutive_failure_count + 1
        definition.failure_count = CronDefinition.failure_count + 1
        definition.last_error = error

    session.flush()
    session.refresh(definition)

    if status == JobStatus.FAILED and not definition.is_paused:
        if definition.consecutive_failure_count >= definition.max_failures:
            definition.is_paused = True
            logger.warning(
                f"Definition {definition.id} ({definition.name}) auto-paused after "
                f"{definition.consecutive_failure_count} consecutive failures"
            )

    if (
        definition.max_runs is not None
        and definition.run_count >= definition.max_runs
        and definition.completed_at is None
    ):
        definition.completed_at = now
        definition.next_run_at = None
        logger.info(
            f"Definition {definition.id} ({definition.name}) completed after "
            f"{definition.run_count} runs"
        )

    if definition.is_one_time and status != JobStatus.CANCELLED and definition.completed_at is None:
        definition.completed_at = now
        definition.next_run_at = None
        logger.info(f"One-time definition {definition.id} completed after its run")

    session.flush()
    return definition
