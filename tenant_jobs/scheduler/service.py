"""Scheduler service: definition management, control and job status.

The single entry point for everything outside the engine (CLI,
embedding web applications). Validation failures are raised
synchronously and nothing invalid is ever enqueued.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from tenant_jobs.config import TenantJobsConfig, get_config
from tenant_jobs.database.models import (
    CronDefinition,
    DefinitionState,
    ExecutionStatus,
    JobPriority,
    JobStatus,
    TriggerSource,
)
from tenant_jobs.database.repositories import RepositoryFactory
from tenant_jobs.scheduler.exceptions import NotFoundError, ValidationError
from tenant_jobs.scheduler.lifecycle import ensure_mutable, ensure_user_managed
from tenant_jobs.scheduler.queue import JobQueue, SessionFactory
from tenant_jobs.scheduler.registry import JobTypeRegistry, get_registry
from tenant_jobs.scheduler.schedule import (
    compute_next_run,
    ensure_utc,
    get_timezone,
    next_run_or_fallback,
    utcnow,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

TIME_RANGES = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}

SCHEDULE_TYPES = ("recurring", "once")

UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "cron_expression",
        "timezone",
        "job_type",
        "configuration",
        "tags",
        "max_runs",
        "max_failures",
        "max_retries",
        "timeout_seconds",
        "allow_concurrent_runs",
        "metadata",
    }
)


@dataclass
class Page:
    """One page of a listing."""

    items: List[Dict[str, Any]] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": self.items,
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
            "pages": self.pages,
        }


def _check_paging(page: int, limit: int) -> int:
    errors = []
    if page < 1:
        errors.append("page: must be >= 1")
    if limit < 1 or limit > MAX_PAGE_SIZE:
        errors.append(f"limit: must be between 1 and {MAX_PAGE_SIZE}")
    if errors:
        raise ValidationError("Invalid pagination", errors)
    return (page - 1) * limit


def _check_budgets(values: Dict[str, Any]) -> List[str]:
    errors = []
    if values.get("max_runs") is not None and values["max_runs"] < 1:
        errors.append("max_runs: must be >= 1")
    if values.get("max_failures") is not None and values["max_failures"] < 1:
        errors.append("max_failures: must be >= 1")
    if values.get("max_retries") is not None and values["max_retries"] < 0:
        errors.append("max_retries: must not be negative")
    if values.get("timeout_seconds") is not None and values["timeout_seconds"] <= 0:
        errors.append("timeout_seconds: must be positive")
    metadata = values.get("metadata") or {}
    if metadata.get("schedule_type", "recurring") not in SCHEDULE_TYPES:
        errors.append(f"metadata.schedule_type: must be one of {list(SCHEDULE_TYPES)}")
    return errors


class SchedulerService:
    """Control API over the scheduling engine.

    Example:
        service = SchedulerService.from_config()
        definition = service.create_definition(
            name="Abandoned cart reminder",
            cron_expression="0 9 * * *",
            timezone="Europe/Paris",
            job_type="webhook",
            configuration={"url": "https://shop.example/hooks/carts"},
            tenant_id="store-42",
        )
        job_id = service.execute_now(definition.id)
        print(service.get_job_status(job_id)["status"])
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        registry: JobTypeRegistry,
        config: Optional[TenantJobsConfig] = None,
        queue: Optional[JobQueue] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or get_config()
        self.registry = registry
        self._session_factory = session_factory
        self._clock = clock
        self.queue = queue or JobQueue(
            registry,
            session_factory,
            clock=clock,
            lease_seconds=self.config.scheduler.claim_lease_seconds,
            abandon_grace_seconds=self.config.scheduler.abandon_grace_seconds,
            backoff_base_seconds=self.config.executor.backoff_base_seconds,
            backoff_max_seconds=self.config.executor.backoff_max_seconds,
        )

    @classmethod
    def from_config(
        cls,
        config: Optional[TenantJobsConfig] = None,
        registry: Optional[JobTypeRegistry] = None,
    ) -> "SchedulerService":
        """Build a service on the global database engine."""
        from tenant_jobs.database.connection import get_session_maker, session_scope

        config = config or get_config()
        return cls(
            partial(session_scope, get_session_maker(config)),
            registry or get_registry(),
            config=config,
        )

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    @staticmethod
    def _require_definition(repos: RepositoryFactory, definition_id: str) -> CronDefinition:
        definition = repos.definitions.get_by_id(definition_id, refresh=True)
        if definition is None:
            raise NotFoundError(f"Definition not found: {definition_id}")
        return definition

    # ------------------------------------------------------------------
    # Definition management
    # ------------------------------------------------------------------

    def create_definition(
        self,
        name: str,
        cron_expression: str,
        job_type: str,
        configuration: Optional[Dict[str, Any]] = None,
        *,
        timezone: Optional[str] = None,
        description: Optional[str] = None,
        tenant_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        tags: Optional[List[str]] = None,
        max_runs: Optional[int] = None,
        max_failures: Optional[int] = None,
        max_retries: Optional[int] = None,
        timeout_seconds: Optional[int] = None,
        allow_concurrent_runs: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
        is_system: bool = False,
    ) -> CronDefinition:
        """Create a cron definition.

        Raises:
            ValidationError: Bad name, budget or configuration
            InvalidScheduleError: Unparsable expression or unknown timezone
            UnknownJobTypeError: Unregistered job type
        """
        configuration = configuration if configuration is not None else {}
        timezone = timezone or self.config.scheduler.default_timezone
        defaults = self.config.definitions

        values = {
            "max_runs": max_runs,
            "max_failures": max_failures if max_failures is not None else defaults.max_failures,
            "max_retries": max_retries,
            "timeout_seconds": timeout_seconds,
            "metadata": metadata or {},
        }
        errors = _check_budgets(values)
        if not name or not name.strip():
            errors.insert(0, "name: is required")
        if errors:
            raise ValidationError("Invalid definition", errors)

        self.registry.validate_configuration(job_type, configuration)
        next_run_at = compute_next_run(cron_expression, timezone, self._now())

        with self._session_factory() as session:
            definition = RepositoryFactory(session).definitions.create(
                name=name.strip(),
                description=description,
                cron_expression=cron_expression.strip(),
                timezone=timezone,
                job_type=job_type,
                configuration=configuration,
                tags=list(tags or []),
                tenant_id=tenant_id,
                owner_id=owner_id,
                next_run_at=next_run_at,
                allow_concurrent_runs=allow_concurrent_runs,
                is_system=is_system,
                **values,
            )

        logger.info(
            f"Created definition {definition.id} ({definition.name}), "
            f"next run {next_run_at.isoformat()}"
        )
        return definition

    def list_definitions(
        self,
        tenant_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        state: Optional[str] = None,
        job_type: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page:
        """List definitions newest first.

        Each row carries the last execution's status and error.
        """
        offset = _check_paging(page, limit)
        try:
            state_filter = DefinitionState(state) if state else None
        except ValueError:
            raise ValidationError(
                f"Invalid state: {state}", [f"state: must be one of {[s.value for s in DefinitionState]}"]
            ) from None

        with self._session_factory() as session:
            repos = RepositoryFactory(session)
            definitions, total = repos.definitions.list(
                tenant_id=tenant_id,
                owner_id=owner_id,
                state=state_filter,
                job_type=job_type,
                search=search,
                offset=offset,
                limit=limit,
            )
            items = []
            for definition in definitions:
                row = definition.to_dict()
                last = repos.executions.latest_for_definition(definition.id)
                row["last_execution_status"] = last.status if last else None
                row["last_execution_error"] = last.error if last else None
                items.append(row)

        return Page(items=items, total=total, page=page, limit=limit)

    def get_definition(self, definition_id: str) -> CronDefinition:
        """Load a definition.

        Raises:
            NotFoundError: If it does not exist
        """
        with self._session_factory() as session:
            return self._require_definition(RepositoryFactory(session), definition_id)

    def update_definition(self, definition_id: str, **changes: Any) -> CronDefinition:
        """Update a definition's fields.

        Changing the expression or timezone recomputes ``next_run_at``;
        changing the job type or configuration re-validates it. Either
        clears the degraded flag.

        Raises:
            NotFoundError: If it does not exist
            InvalidStateError: If it is completed, disabled or a system definition
            ValidationError: Unknown fields or invalid values
        """
        unknown = sorted(set(changes) - UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError("Cannot update fields", [f"{key}: not updatable" for key in unknown])

        with self._session_factory() as session:
            definition = self._require_definition(RepositoryFactory(session), definition_id)
            ensure_user_managed(definition, "update")
            ensure_mutable(definition, "update")

            merged = {
                "max_runs": changes.get("max_runs", definition.max_runs),
                "max_failures": changes.get("max_failures", definition.max_failures),
                "max_retries": changes.get("max_retries", definition.max_retries),
                "timeout_seconds": changes.get("timeout_seconds", definition.timeout_seconds),
                "metadata": changes.get("metadata", definition.definition_metadata),
            }
            errors = _check_budgets(merged)
            if "name" in changes and not (changes["name"] or "").strip():
                errors.append("name: is required")
            for key in ("cron_expression", "timezone", "job_type"):
                if key in changes and not (isinstance(changes[key], str) and changes[key].strip()):
                    errors.append(f"{key}: is required")
            if merged["max_runs"] is not None and merged["max_runs"] <= definition.run_count:
                errors.append(f"max_runs: must be greater than the current run count ({definition.run_count})")
            if errors:
                raise ValidationError("Invalid definition", errors)

            job_type = changes.get("job_type", definition.job_type)
            configuration = changes.get("configuration", definition.configuration)
            if "job_type" in changes or "configuration" in changes:
                self.registry.validate_configuration(job_type, configuration)
                definition.is_degraded = False
                definition.degraded_reason = None

            cron_expression = changes.get("cron_expression", definition.cron_expression).strip()
            timezone = changes.get("timezone", definition.timezone)
            if "cron_expression" in changes or "timezone" in changes:
                get_timezone(timezone)
                definition.next_run_at = compute_next_run(cron_expression, timezone, self._now())
                definition.is_degraded = False
                definition.degraded_reason = None

            for key, value in changes.items():
                if key == "metadata":
                    definition.definition_metadata = value or {}
                elif key == "name":
                    definition.name = value.strip()
                elif key == "cron_expression":
                    definition.cron_expression = cron_expression
                elif key == "tags":
                    definition.tags = list(value or [])
                else:
                    setattr(definition, key, value)

            session.flush()

        logger.info(f"Updated definition {definition_id}: {', '.join(sorted(changes)) or 'no changes'}")
        return definition

    def delete_definition(self, definition_id: str) -> None:
        """Delete a definition with its jobs and executions.

        Raises:
            NotFoundError: If it does not exist
            InvalidStateError: If it is a system definition
        """
        with self._session_factory() as session:
            repos = RepositoryFactory(session)
            definition = self._require_definition(repos, definition_id)
            ensure_user_managed(definition, "delete")
            repos.definitions.delete(definition)
        logger.info(f"Deleted definition {definition_id}")

    def disable_definition(self, definition_id: str) -> CronDefinition:
        """Soft-delete a definition: it keeps its history and never runs again."""
        with self._session_factory() as session:
            definition = self._require_definition(RepositoryFactory(session), definition_id)
            ensure_user_managed(definition, "disable")
            ensure_mutable(definition, "disable")
            definition.is_active = False
            definition.next_run_at = None
            session.flush()
        logger.info(f"Disabled definition {definition_id}")
        return definition

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def pause(self, definition_id: str) -> CronDefinition:
        """Stop scheduling a definition until it is resumed."""
        with self._session_factory() as session:
            definition = self._require_definition(RepositoryFactory(session), definition_id)
            ensure_mutable(definition, "pause")
            definition.is_paused = True
            session.flush()
        logger.info(f"Paused definition {definition_id}")
        return definition

    def resume(self, definition_id: str) -> CronDefinition:
        """Resume a paused definition.

        The failure streak is reset and the next run is computed from now,
        so occurrences missed while paused are not replayed.
        """
        now = self._now()
        with self._session_factory() as session:
            definition = self._require_definition(RepositoryFactory(session), definition_id)
            ensure_mutable(definition, "resume")

            next_run, error = next_run_or_fallback(
                definition.cron_expression,
                definition.timezone,
                now,
                self.config.scheduler.invalid_schedule_fallback_seconds,
            )
            definition.is_paused = False
            definition.consecutive_failure_count = 0
            definition.next_run_at = next_run
            if error:
                definition.is_degraded = True
                definition.degraded_reason = error
            session.flush()

        logger.info(f"Resumed definition {definition_id}, next run {next_run.isoformat()}")
        return definition

    def execute_now(self, definition_id: str, requester_id: Optional[str] = None) -> str:
        """Enqueue a high-priority run of a definition right away.

        Works on paused definitions and ignores the overlap policy; the
        schedule (``next_run_at``) is left untouched.

        Returns:
            The created job's ID

        Raises:
            NotFoundError: If the definition does not exist
            InvalidStateError: If it is completed or disabled
            ValidationError: If its configuration is no longer valid
        """
        with self._session_factory() as session:
            definition = self._require_definition(RepositoryFactory(session), definition_id)
            ensure_mutable(definition, "execute")

            job = self.queue.enqueue(
                definition.job_type,
                definition.configuration,
                priority=JobPriority.HIGH,
                max_retries=definition.max_retries,
                timeout_seconds=definition.timeout_seconds,
                scheduled_at=self._now(),
                cron_definition_id=definition.id,
                tenant_id=definition.tenant_id,
                requester_id=requester_id or definition.owner_id,
                metadata={"definition_name": definition.name, "manual": True},
                triggered_by=TriggerSource.MANUAL,
                session=session,
            )

        logger.info(f"Manual run of definition {definition_id} enqueued as job {job.id}")
        return job.id

    # ------------------------------------------------------------------
    # History and jobs
    # ------------------------------------------------------------------

    def get_executions(
        self,
        definition_id: str,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page:
        """Execution history of a definition, newest first."""
        offset = _check_paging(page, limit)
        if status is not None:
            try:
                status = ExecutionStatus(status).value
            except ValueError:
                raise ValidationError(
                    f"Invalid status: {status}",
                    [f"status: must be one of {[s.value for s in ExecutionStatus]}"],
                ) from None

        with self._session_factory() as session:
            repos = RepositoryFactory(session)
            self._require_definition(repos, definition_id)
            executions, total = repos.executions.list_for_definition(
                definition_id, status=status, offset=offset, limit=limit
            )
            items = [execution.to_dict() for execution in executions]

        return Page(items=items, total=total, page=page, limit=limit)

    def schedule_job(
        self,
        job_type: str,
        payload: Optional[Dict[str, Any]] = None,
        priority: Any = JobPriority.NORMAL,
        max_retries: Optional[int] = None,
        timeout_seconds: Optional[int] = None,
        tenant_id: Optional[str] = None,
        requester_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        delay_seconds: float = 0,
    ) -> str:
        """Enqueue an ad-hoc job.

        Returns:
            The created job's ID
        """
        if delay_seconds < 0:
            raise ValidationError("Invalid delay", ["delay_seconds: must not be negative"])

        job = self.queue.enqueue(
            job_type,
            payload,
            priority=priority,
            max_retries=max_retries,
            timeout_seconds=timeout_seconds,
            scheduled_at=self._now() + timedelta(seconds=delay_seconds),
            tenant_id=tenant_id,
            requester_id=requester_id,
            metadata=metadata,
            triggered_by=TriggerSource.API,
        )
        logger.info(f"Scheduled {job_type} job {job.id}")
        return job.id

    def get_job_status(self, job_id: str) -> Dict[str, Any]:
        """Status of a job for polling callers.

        Returns:
            Dictionary with ``status``, ``progress``, ``progress_message``,
            ``result`` and ``error`` plus retry and timing details
        """
        with self._session_factory() as session:
            repos = RepositoryFactory(session)
            job = repos.jobs.get_by_id(job_id, refresh=True)
            if job is None:
                raise NotFoundError(f"Job not found: {job_id}", job_id=job_id)
            attempts = [execution.to_dict() for execution in repos.executions.list_for_job(job_id)]

        return {
            "id": job.id,
            "job_type": job.job_type,
            "status": job.status,
            "progress": job.progress,
            "progress_message": job.progress_message,
            "result": job.result,
            "error": job.last_error,
            "priority": job.job_priority.name.lower(),
            "retry_count": job.retry_count,
            "max_retries": job.max_retries,
            "cancel_requested": job.cancel_requested,
            "cron_definition_id": job.cron_definition_id,
            "scheduled_at": job.scheduled_at.isoformat(),
            "started_at": job.started_at.isoformat() if job.started_at else None,
            "completed_at": job.completed_at.isoformat() if job.completed_at else None,
            "created_at": job.created_at.isoformat(),
            "attempts": attempts,
        }

    def cancel_job(self, job_id: str, strict: bool = False) -> str:
        """Cancel a job.

        Returns:
            ``cancelled``, or ``running`` when a running job was asked to stop
        """
        return self.queue.cancel(job_id, strict=strict, now=self._now()).value

    def list_jobs(
        self,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        tenant_id: Optional[str] = None,
        cron_definition_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page:
        """List jobs newest first."""
        offset = _check_paging(page, limit)
        try:
            status_filter = JobStatus(status) if status else None
        except ValueError:
            raise ValidationError(
                f"Invalid status: {status}", [f"status: must be one of {[s.value for s in JobStatus]}"]
            ) from None

        with self._session_factory() as session:
            jobs, total = RepositoryFactory(session).jobs.list(
                status=status_filter,
                job_type=job_type,
                tenant_id=tenant_id,
                cron_definition_id=cron_definition_id,
                offset=offset,
                limit=limit,
            )
            items = [job.to_dict() for job in jobs]

        return Page(items=items, total=total, page=page, limit=limit)

    def get_statistics(self, time_range: str = "24h") -> Dict[str, Any]:
        """Job counts and success rate over ``1h``, ``24h``, ``7d`` or ``30d``."""
        if time_range not in TIME_RANGES:
            raise ValidationError(
                f"Invalid time range: {time_range}",
                [f"time_range: must be one of {list(TIME_RANGES)}"],
            )
        since = self._now() - TIME_RANGES[time_range]
        stats = self.queue.statistics(since)
        return {"time_range": time_range, "since": since.isoformat(), **stats}

    def prune_history(self, days: Optional[int] = None) -> int:
        """Delete finished jobs older than ``days`` (default: retention setting)."""
        days = self.config.retention.job_history_days if days is None else days
        if days < 1:
            raise ValidationError("Invalid retention", ["days: must be >= 1"])
        return self.queue.prune(self._now() - timedelta(days=days))
