"""
SQLAlchemy models for the Tenant Jobs database.

Three tables are the sole source of truth for scheduling state:
cron definitions, jobs (the work table workers claim from) and
executions (one immutable row per run attempt).
"""

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Optional, List, Any, Dict
from uuid import uuid4

from sqlalchemy import (
    Integer,
    String,
    Boolean,
    ForeignKey,
    DateTime,
    Text,
    JSON,
    Index,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column, declarative_base
from sqlalchemy.types import TypeDecorator

# Create base class for all models
Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class UTCDateTime(TypeDecorator):
    """DateTime stored as naive UTC and returned as aware UTC.

    SQLite has no timezone support, so values are normalised to UTC on
    the way in and tagged with UTC on the way out.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class JobStatus(str, Enum):
    """Lifecycle status of a job."""

    PENDING = "pending"
    CLAIMED = "claimed"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED})
IN_FLIGHT_STATUSES = frozenset({JobStatus.PENDING, JobStatus.CLAIMED, JobStatus.RUNNING})


class JobPriority(IntEnum):
    """Job priority; higher values are claimed first."""

    LOW = 0
    NORMAL = 1
    HIGH = 2

    @classmethod
    def parse(cls, value: "str | int | JobPriority") -> "JobPriority":
        """Parse a priority from its name or numeric value."""
        if isinstance(value, JobPriority):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValueError(
                f"Invalid priority {value!r}. Choose from: low, normal, high"
            ) from None


class ExecutionStatus(str, Enum):
    """Outcome of a single run attempt."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    ABANDONED = "abandoned"


class TriggerSource(str, Enum):
    """What caused a job to be enqueued."""

    SCHEDULE = "schedule"
    MANUAL = "manual"
    API = "api"


class DefinitionState(str, Enum):
    """Derived state of a cron definition."""

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    DISABLED = "disabled"


class CronDefinition(Base):
    """
    Recurring schedule owned by a tenant.

    Stores the cron expression and timezone, the job type and its
    configuration, the run/failure budgets, and the counters the
    dispatcher and executor maintain.
    """

    __tablename__ = "cron_definitions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)

    # Ownership
    tenant_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    owner_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)

    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Schedule
    cron_expression: Mapped[str] = mapped_column(String, nullable=False)
    timezone: Mapped[str] = mapped_column(String, nullable=False, default="UTC")
    next_run_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True, index=True)

    # What to run
    job_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
    configuration: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    tags: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    # Budgets and policy
    max_runs: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    max_retries: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    timeout_seconds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    allow_concurrent_runs: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Counters
    run_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    consecutive_failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Flags
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_degraded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    degraded_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Last outcome
    last_run_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_status: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Named 'definition_metadata' to avoid conflict with SQLAlchemy's reserved 'metadata' attribute
    definition_metadata: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )

    jobs: Mapped[List["Job"]] = relationship(
        "Job",
        back_populates="cron_definition",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def state(self) -> DefinitionState:
        """Current lifecycle state."""
        if self.completed_at is not None:
            return DefinitionState.COMPLETED
        if not self.is_active:
            return DefinitionState.DISABLED
        if self.is_paused:
            return DefinitionState.PAUSED
        return DefinitionState.ACTIVE

    @property
    def is_one_time(self) -> bool:
        return (self.definition_metadata or {}).get("schedule_type") == "once"

    def to_dict(self) -> Dict[str, Any]:
        """Convert definition to dictionary representation."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "owner_id": self.owner_id,
            "name": self.name,
            "description": self.description,
            "cron_expression": self.cron_expression,
            "timezone": self.timezone,
            "job_type": self.job_type,
            "configuration": self.configuration,
            "tags": self.tags,
            "state": self.state.value,
            "max_runs": self.max_runs,
            "max_failures": self.max_failures,
            "max_retries": self.max_retries,
            "timeout_seconds": self.timeout_seconds,
            "allow_concurrent_runs": self.allow_concurrent_runs,
            "next_run_at": _iso(self.next_run_at),
            "run_count": self.run_count,
            "consecutive_failure_count": self.consecutive_failure_count,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "is_active": self.is_active,
            "is_paused": self.is_paused,
            "is_system": self.is_system,
            "is_degraded": self.is_degraded,
            "degraded_reason": self.degraded_reason,
            "completed_at": _iso(self.completed_at),
            "last_run_at": _iso(self.last_run_at),
            "last_status": self.last_status,
            "last_error": self.last_error,
            "metadata": self.definition_metadata,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Job(Base):
    """
    One unit of work in the queue.

    Jobs are either spawned by the dispatcher from a cron definition or
    enqueued directly (imports, migrations, backfills). Workers claim
    rows with a conditional update on ``status``.
    """

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    job_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=int(JobPriority.NORMAL))
    status: Mapped[str] = mapped_column(String, nullable=False, default=JobStatus.PENDING.value)

    # Retry budget and deadline
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=300)

    # Scheduling and claim
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    claimed_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Origin
    cron_definition_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("cron_definitions.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    triggered_by: Mapped[str] = mapped_column(String, nullable=False, default=TriggerSource.API.value)
    tenant_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    requester_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    job_metadata: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)

    # Progress reporting and outcome
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )

    cron_definition: Mapped[Optional[CronDefinition]] = relationship(
        "CronDefinition", back_populates="jobs"
    )
    executions: Mapped[List["Execution"]] = relationship(
        "Execution",
        back_populates="job",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Execution.attempt",
    )

    @property
    def job_status(self) -> JobStatus:
        return JobStatus(self.status)

    @property
    def job_priority(self) -> JobPriority:
        return JobPriority(self.priority)

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary representation."""
        return {
            "id": self.id,
            "job_type": self.job_type,
            "payload": self.payload,
            "priority": self.job_priority.name.lower(),
            "status": self.status,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "timeout_seconds": self.timeout_seconds,
            "scheduled_at": _iso(self.scheduled_at),
            "claimed_at": _iso(self.claimed_at),
            "claimed_by": self.claimed_by,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "cancel_requested": self.cancel_requested,
            "cron_definition_id": self.cron_definition_id,
            "triggered_by": self.triggered_by,
            "tenant_id": self.tenant_id,
            "requester_id": self.requester_id,
            "metadata": self.job_metadata,
            "progress": self.progress,
            "progress_message": self.progress_message,
            "result": self.result,
            "last_error": self.last_error,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Execution(Base):
    """
    Record of one run attempt of a job.

    Opened when a job moves to running and closed exactly once when the
    handler returns, raises or times out.
    """

    __tablename__ = "executions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    job_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Denormalised for per-definition history queries
    cron_definition_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("cron_definitions.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )

    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    worker_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    triggered_by: Mapped[str] = mapped_column(String, nullable=False, default=TriggerSource.API.value)

    status: Mapped[str] = mapped_column(String, nullable=False, default=ExecutionStatus.RUNNING.value)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    output: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    job: Mapped[Job] = relationship("Job", back_populates="executions")

    def to_dict(self) -> Dict[str, Any]:
        """Convert execution to dictionary representation."""
        return {
            "id": self.id,
            "job_id": self.job_id,
            "cron_definition_id": self.cron_definition_id,
            "attempt": self.attempt,
            "worker_id": self.worker_id,
            "triggered_by": self.triggered_by,
            "status": self.status,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_ms": self.duration_ms,
            "error": self.error,
            "output": self.output,
        }


# Claim order: status filter, then priority DESC, scheduled_at ASC
Index("ix_jobs_claim_order", Job.status, Job.priority.desc(), Job.scheduled_at)
Index("ix_cron_definitions_due", CronDefinition.is_active, CronDefinition.is_paused, CronDefinition.next_run_at)
Index("ix_executions_started_at", Execution.started_at.desc())
