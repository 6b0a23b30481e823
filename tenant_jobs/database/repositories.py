"""Database repositories for Tenant Jobs.

Provides high-level data access patterns for cron definitions, jobs and
executions. Repositories never commit; the surrounding session scope
owns the transaction so that several repository calls can be made
atomically.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import desc, func, or_, select, update, delete
from sqlalchemy.orm import Session

from tenant_jobs.database.models import (
    CronDefinition,
    DefinitionState,
    Execution,
    IN_FLIGHT_STATUSES,
    Job,
    JobStatus,
    TERMINAL_STATUSES,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _apply_expected(stmt: Any, model: Any, expected: Dict[str, Any]) -> Any:
    for column, value in expected.items():
        attr = getattr(model, column)
        if value is None:
            stmt = stmt.where(attr.is_(None))
        else:
            stmt = stmt.where(attr == value)
    return stmt


class CronDefinitionRepository:
    """
    Repository for cron definition persistence.

    Provides CRUD operations plus the due-definition scan and the
    conditional ``next_run_at`` advance used by the dispatcher.
    """

    def __init__(self, session: Session):
        """
        Initialize repository with database session.

        Args:
            session: SQLAlchemy session
        """
        self.session = session

    def create(self, **kwargs: Any) -> CronDefinition:
        """
        Create a new definition.

        Args:
            **kwargs: Column values (``metadata`` maps to definition_metadata)

        Returns:
            Created CronDefinition instance (flushed, not committed)
        """
        if "metadata" in kwargs:
            kwargs["definition_metadata"] = kwargs.pop("metadata") or {}
        definition = CronDefinition(**kwargs)
        self.session.add(definition)
        self.session.flush()
        return definition

    def get_by_id(self, definition_id: str, refresh: bool = False) -> Optional[CronDefinition]:
        """
        Get a definition by ID.

        Args:
            definition_id: Definition ID
            refresh: Reload the row even if it is already in the session

        Returns:
            CronDefinition if found, None otherwise
        """
        options = {"populate_existing": True} if refresh else {}
        return self.session.get(CronDefinition, definition_id, **options)

    def list(
        self,
        tenant_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        state: Optional[DefinitionState] = None,
        job_type: Optional[str] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[CronDefinition], int]:
        """
        List definitions with filters.

        Returns:
            Tuple of (page of definitions newest first, total matching)
        """
        query = select(CronDefinition)

        if tenant_id:
            query = query.where(CronDefinition.tenant_id == tenant_id)
        if owner_id:
            query = query.where(CronDefinition.owner_id == owner_id)
        if job_type:
            query = query.where(CronDefinition.job_type == job_type)
        if search:
            pattern = f"%{search}%"
            query = query.where(
                or_(
                    CronDefinition.name.ilike(pattern),
                    CronDefinition.description.ilike(pattern),
                )
            )
        if state is not None:
            query = query.where(*self._state_filter(state))

        total = self.session.scalar(select(func.count()).select_from(query.subquery())) or 0
        items = self.session.scalars(
            query.order_by(desc(CronDefinition.created_at)).offset(offset).limit(limit)
        ).all()
        return list(items), total

    @staticmethod
    def _state_filter(state: DefinitionState) -> List[Any]:
        if state == DefinitionState.COMPLETED:
            return [CronDefinition.completed_at.is_not(None)]
        if state == DefinitionState.DISABLED:
            return [CronDefinition.completed_at.is_(None), CronDefinition.is_active.is_(False)]
        if state == DefinitionState.PAUSED:
            return [
                CronDefinition.completed_at.is_(None),
                CronDefinition.is_active.is_(True),
                CronDefinition.is_paused.is_(True),
            ]
        return [
            CronDefinition.completed_at.is_(None),
            CronDefinition.is_active.is_(True),
            CronDefinition.is_paused.is_(False),
        ]

    def get_due(self, now: datetime, limit: int = 100) -> List[Tuple[str, datetime]]:
        """
        Find definitions whose next run is due.

        Args:
            now: Reference time
            limit: Maximum number of definitions

        Returns:
            List of (definition id, next_run_at) ordered by next_run_at
        """
        rows = self.session.execute(
            select(CronDefinition.id, CronDefinition.next_run_at)
            .where(
                CronDefinition.is_active.is_(True),
                CronDefinition.is_paused.is_(False),
                CronDefinition.completed_at.is_(None),
                CronDefinition.next_run_at.is_not(None),
                CronDefinition.next_run_at <= now,
            )
            .order_by(CronDefinition.next_run_at)
            .limit(limit)
        ).all()
        return [(row[0], row[1]) for row in rows]

    def compare_and_set(
        self,
        definition_id: str,
        expected: Dict[str, Any],
        values: Dict[str, Any],
    ) -> bool:
        """
        Update a definition only if its current columns match ``expected``.

        Args:
            definition_id: Definition ID
            expected: Column values the row must currently have
            values: Column values to write

        Returns:
            True if exactly one row was updated
        """
        stmt = update(CronDefinition).where(CronDefinition.id == definition_id)
        stmt = _apply_expected(stmt, CronDefinition, expected)
        values = {"updated_at": _utcnow(), **values}
        result = self.session.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def delete(self, definition: CronDefinition) -> None:
        """
        Delete a definition. Jobs and executions cascade.

        Args:
            definition: Definition to delete
        """
        self.session.delete(definition)
        self.session.flush()


class JobRepository:
    """
    Repository for queue rows.

    ``compare_and_set`` is the single primitive every job state
    transition is built on: an UPDATE guarded by the expected current
    column values, whose row count tells the caller whether it won.
    """

    def __init__(self, session: Session):
        """
        Initialize repository with database session.

        Args:
            session: SQLAlchemy session
        """
        self.session = session

    def add(self, job: Job) -> Job:
        """Insert a job row."""
        self.session.add(job)
        self.session.flush()
        return job

    def get_by_id(self, job_id: str, refresh: bool = False) -> Optional[Job]:
        """
        Get a job by ID.

        Args:
            job_id: Job ID
            refresh: Reload the row even if it is already in the session

        Returns:
            Job if found, None otherwise
        """
        options = {"populate_existing": True} if refresh else {}
        return self.session.get(Job, job_id, **options)

    def compare_and_set(self, job_id: str, expected: Dict[str, Any], values: Dict[str, Any]) -> bool:
        """
        Update a job only if its current columns match ``expected``.

        Args:
            job_id: Job ID
            expected: Column values the row must currently have
            values: Column values to write

        Returns:
            True if exactly one row was updated
        """
        stmt = update(Job).where(Job.id == job_id)
        stmt = _apply_expected(stmt, Job, expected)
        values = {"updated_at": _utcnow(), **values}
        result = self.session.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def find_claimable(
        self,
        now: datetime,
        stale_before: datetime,
        accepted_types: Optional[Iterable[str]] = None,
        limit: int = 10,
    ) -> List[Job]:
        """
        Find claim candidates in claim order.

        Eligible rows are pending jobs that are due, and claimed jobs
        whose lease expired before ``stale_before``.

        Returns:
            Candidates ordered by priority DESC, scheduled_at ASC, created_at ASC
        """
        query = select(Job).where(
            or_(
                (Job.status == JobStatus.PENDING.value) & (Job.scheduled_at <= now),
                (Job.status == JobStatus.CLAIMED.value) & (Job.claimed_at < stale_before),
            )
        )
        types = list(accepted_types or [])
        if types:
            query = query.where(Job.job_type.in_(types))

        query = query.order_by(
            desc(Job.priority),
            Job.scheduled_at,
            Job.created_at,
        ).limit(limit)
        return list(self.session.scalars(query).all())

    def find_stale_claims(self, stale_before: datetime) -> List[Job]:
        """Claimed jobs whose lease expired."""
        return list(
            self.session.scalars(
                select(Job).where(
                    Job.status == JobStatus.CLAIMED.value,
                    Job.claimed_at < stale_before,
                )
            ).all()
        )

    def find_claimed_by(self, worker_id: str) -> List[Job]:
        """Jobs currently claimed (not yet running) by a worker."""
        return list(
            self.session.scalars(
                select(Job).where(
                    Job.status == JobStatus.CLAIMED.value,
                    Job.claimed_by == worker_id,
                )
            ).all()
        )

    def find_running(self, started_before: datetime, worker_id: Optional[str] = None) -> List[Job]:
        """Running jobs started before a given time, optionally for one worker."""
        query = select(Job).where(
            Job.status == JobStatus.RUNNING.value,
            Job.started_at < started_before,
        )
        if worker_id is not None:
            query = query.where(Job.claimed_by == worker_id)
        return list(self.session.scalars(query).all())

    def find_aged_pending(self, waiting_since: datetime, max_priority: int) -> List[Job]:
        """Pending jobs untouched since ``waiting_since`` below ``max_priority``."""
        return list(
            self.session.scalars(
                select(Job).where(
                    Job.status == JobStatus.PENDING.value,
                    Job.priority < max_priority,
                    Job.updated_at < waiting_since,
                )
            ).all()
        )

    def count_in_flight(self, cron_definition_id: str) -> int:
        """
        Count jobs for a definition that have not reached a terminal state.

        Args:
            cron_definition_id: Definition ID

        Returns:
            Number of pending, claimed or running jobs
        """
        return self.session.scalar(
            select(func.count(Job.id)).where(
                Job.cron_definition_id == cron_definition_id,
                Job.status.in_([s.value for s in IN_FLIGHT_STATUSES]),
            )
        ) or 0

    def list(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[str] = None,
        tenant_id: Optional[str] = None,
        cron_definition_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Job], int]:
        """
        List jobs with filters.

        Returns:
            Tuple of (page of jobs newest first, total matching)
        """
        query = select(Job)
        if status is not None:
            query = query.where(Job.status == JobStatus(status).value)
        if job_type:
            query = query.where(Job.job_type == job_type)
        if tenant_id:
            query = query.where(Job.tenant_id == tenant_id)
        if cron_definition_id:
            query = query.where(Job.cron_definition_id == cron_definition_id)

        total = self.session.scalar(select(func.count()).select_from(query.subquery())) or 0
        items = self.session.scalars(
            query.order_by(desc(Job.created_at)).offset(offset).limit(limit)
        ).all()
        return list(items), total

    def count_by_status(self, since: Optional[datetime] = None) -> Dict[str, int]:
        """
        Count jobs per status.

        Args:
            since: Only count jobs created at or after this time

        Returns:
            Dictionary mapping every status value to its count
        """
        query = select(Job.status, func.count(Job.id)).group_by(Job.status)
        if since is not None:
            query = query.where(Job.created_at >= since)

        counts = {status.value: 0 for status in JobStatus}
        for status, count in self.session.execute(query).all():
            counts[status] = count
        return counts

    def delete_terminal_before(self, before: datetime, limit: Optional[int] = None) -> int:
        """
        Delete terminal jobs completed before a given time.

        Their executions are removed with them.

        Args:
            before: Delete jobs completed before this time
            limit: Maximum number of jobs to delete (oldest first)

        Returns:
            Number of jobs deleted
        """
        job_ids = select(Job.id).where(
            Job.status.in_([s.value for s in TERMINAL_STATUSES]),
            Job.completed_at < before,
        )
        if limit is not None:
            job_ids = select(job_ids.order_by(Job.completed_at).limit(limit).subquery().c.id)
        self.session.execute(
            delete(Execution)
            .where(Execution.job_id.in_(job_ids))
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(
            delete(Job)
            .where(Job.id.in_(job_ids))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


class ExecutionRepository:
    """
    Repository for execution history.

    Provides methods for opening and closing attempts and querying
    history per job and per definition.
    """

    def __init__(self, session: Session):
        """
        Initialize repository with database session.

        Args:
            session: SQLAlchemy session
        """
        self.session = session

    def add(self, execution: Execution) -> Execution:
        """Insert an execution row."""
        self.session.add(execution)
        self.session.flush()
        return execution

    def get_by_id(self, execution_id: str) -> Optional[Execution]:
        """
        Get an execution by its ID.

        Args:
            execution_id: Execution ID

        Returns:
            Execution if found, None otherwise
        """
        return self.session.get(Execution, execution_id)

    def close(
        self,
        execution_id: str,
        status: str,
        completed_at: datetime,
        duration_ms: int,
        error: Optional[str] = None,
        output: Any = None,
    ) -> bool:
        """
        Close an open execution.

        Closed executions are never touched again, so the update only
        matches rows whose ``completed_at`` is still NULL.

        Returns:
            True if the execution was open and is now closed
        """
        result = self.session.execute(
            update(Execution)
            .where(Execution.id == execution_id, Execution.completed_at.is_(None))
            .values(
                status=status,
                completed_at=completed_at,
                duration_ms=duration_ms,
                error=error,
                output=output,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def get_open_for_job(self, job_id: str) -> Optional[Execution]:
        """Latest still-open execution of a job, if any."""
        return self.session.scalars(
            select(Execution)
            .where(Execution.job_id == job_id, Execution.completed_at.is_(None))
            .order_by(desc(Execution.attempt))
            .limit(1)
        ).first()

    def list_for_job(self, job_id: str) -> List[Execution]:
        """All executions of a job in attempt order."""
        return list(
            self.session.scalars(
                select(Execution).where(Execution.job_id == job_id).order_by(Execution.attempt)
            ).all()
        )

    def list_for_definition(
        self,
        cron_definition_id: str,
        status: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Execution], int]:
        """
        Get execution history of a definition.

        Returns:
            Tuple of (page of executions newest first, total matching)
        """
        query = select(Execution).where(Execution.cron_definition_id == cron_definition_id)
        if status:
            query = query.where(Execution.status == status)

        total = self.session.scalar(select(func.count()).select_from(query.subquery())) or 0
        items = self.session.scalars(
            query.order_by(desc(Execution.started_at), desc(Execution.attempt))
            .offset(offset)
            .limit(limit)
        ).all()
        return list(items), total

    def delete_closed_before(self, before: datetime, limit: Optional[int] = None) -> int:
        """
        Delete closed executions of terminal jobs, completed before a given time.

        Executions of jobs that may still retry are kept.

        Returns:
            Number of executions deleted
        """
        terminal_jobs = select(Job.id).where(Job.status.in_([s.value for s in TERMINAL_STATUSES]))
        ids = select(Execution.id).where(
            Execution.completed_at.is_not(None),
            Execution.completed_at < before,
            Execution.job_id.in_(terminal_jobs),
        )
        if limit is not None:
            ids = select(ids.order_by(Execution.completed_at).limit(limit).subquery().c.id)
        result = self.session.execute(
            delete(Execution)
            .where(Execution.id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def latest_for_definition(self, cron_definition_id: str) -> Optional[Execution]:
        """Most recent execution of a definition."""
        return self.session.scalars(
            select(Execution)
            .where(Execution.cron_definition_id == cron_definition_id)
            .order_by(desc(Execution.started_at), desc(Execution.attempt))
            .limit(1)
        ).first()


class RepositoryFactory:
    """
    Factory for creating repository instances.

    Usage:
        with get_db_session() as session:
            repos = RepositoryFactory(session)
            job = repos.jobs.get_by_id(job_id)
    """

    def __init__(self, session: Session):
        """
        Initialize factory with database session.

        Args:
            session: SQLAlchemy session
        """
        self.session = session
        self._definitions: Optional[CronDefinitionRepository] = None
        self._jobs: Optional[JobRepository] = None
        self._executions: Optional[ExecutionRepository] = None

    @property
    def definitions(self) -> CronDefinitionRepository:
        """Get cron definition repository."""
        if self._definitions is None:
            self._definitions = CronDefinitionRepository(self.session)
        return self._definitions

    @property
    def jobs(self) -> JobRepository:
        """Get job repository."""
        if self._jobs is None:
            self._jobs = JobRepository(self.session)
        return self._jobs

    @property
    def executions(self) -> ExecutionRepository:
        """Get execution repository."""
        if self._executions is None:
            self._executions = ExecutionRepository(self.session)
        return self._executions
