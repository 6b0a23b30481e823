"""Tests for the scheduler service."""

from datetime import datetime, timedelta, timezone

import pytest

from tenant_jobs.database.models import DefinitionState, JobPriority, JobStatus, TriggerSource
from tenant_jobs.scheduler.dispatcher import CronDispatcher
from tenant_jobs.scheduler.exceptions import (
    InvalidScheduleError,
    InvalidStateError,
    NotFoundError,
    UnknownJobTypeError,
    ValidationError,
)
from tenant_jobs.scheduler.service import Page


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def finish(queue, job_id, succeed=True):
    queue.claim("worker-1")
    _, execution = queue.mark_running(job_id, "worker-1")
    if succeed:
        queue.complete(job_id, execution.id)
    else:
        queue.fail(job_id, execution.id, "broken", retryable=False)


class TestPage:
    """Tests for the Page helper."""

    def test_pages(self):
        """Page count rounds up."""
        assert Page(total=41, limit=20).pages == 3
        assert Page(total=0, limit=20).pages == 0
        assert Page(items=[{"a": 1}], total=1).to_dict()["pages"] == 1


class TestCreateDefinition:
    """Tests for SchedulerService.create_definition."""

    def test_create(self, service):
        """A valid definition is stored with its first run computed."""
        definition = service.create_definition(
            "  Digest  ",
            "0 8 * * *",
            "echo",
            {"message": "morning"},
            timezone="America/New_York",
            tenant_id="store-1",
            owner_id="user-1",
            tags=["email"],
        )

        assert definition.name == "Digest"
        assert definition.state == DefinitionState.ACTIVE
        # 08:00 EST is 13:00 UTC
        assert definition.next_run_at == utc(2024, 1, 15, 13, 0)
        assert definition.max_failures == 5
        assert definition.tags == ["email"]

    def test_default_timezone_from_config(self, service, config):
        """The configured default timezone is used when none is given."""
        config.scheduler.default_timezone = "Asia/Tokyo"
        definition = service.create_definition("Tokyo", "0 9 * * *", "noop")
        assert definition.timezone == "Asia/Tokyo"
        # 09:00 JST is 00:00 UTC
        assert definition.next_run_at == utc(2024, 1, 16, 0, 0)

    def test_rejects_invalid_expression(self, service):
        """Bad cron expressions are rejected."""
        with pytest.raises(InvalidScheduleError):
            service.create_definition("Bad", "every morning", "noop")

    def test_rejects_unknown_timezone(self, service):
        """Unknown timezones are rejected."""
        with pytest.raises(InvalidScheduleError):
            service.create_definition("Bad", "0 * * * *", "noop", timezone="Atlantis/Capital")

    def test_rejects_unknown_type(self, service):
        """Unregistered job types are rejected."""
        with pytest.raises(UnknownJobTypeError):
            service.create_definition("Bad", "0 * * * *", "teleport")

    def test_rejects_invalid_configuration(self, service):
        """Configurations must match the job type's schema."""
        with pytest.raises(ValidationError):
            service.create_definition("Bad", "0 * * * *", "echo", {"message": 42})

    def test_rejects_bad_budgets(self, service):
        """Budgets and the name are validated together."""
        with pytest.raises(ValidationError) as exc_info:
            service.create_definition(
                "",
                "0 * * * *",
                "noop",
                max_runs=0,
                max_failures=0,
                max_retries=-1,
                timeout_seconds=0,
                metadata={"schedule_type": "sometimes"},
            )
        errors = exc_info.value.errors
        assert errors[0] == "name: is required"
        assert "max_runs: must be >= 1" in errors
        assert "max_failures: must be >= 1" in errors
        assert "max_retries: must not be negative" in errors
        assert "timeout_seconds: must be positive" in errors
        assert len(errors) == 6

    def test_nothing_stored_on_rejection(self, service):
        """Rejected definitions leave no trace."""
        with pytest.raises(ValidationError):
            service.create_definition("Bad", "0 * * * *", "echo", {"message": 42})
        assert service.list_definitions().total == 0


class TestListAndGet:
    """Tests for listing and loading definitions."""

    def test_get_missing(self, service):
        """Unknown IDs raise NotFoundError."""
        with pytest.raises(NotFoundError):
            service.get_definition("missing")

    def test_filters_and_pagination(self, service):
        """Listings filter by tenant, state, type and text."""
        for i in range(5):
            service.create_definition(f"Store A job {i}", "0 * * * *", "noop", tenant_id="a")
        paused = service.create_definition("Store B report", "0 * * * *", "echo", tenant_id="b")
        service.pause(paused.id)

        page = service.list_definitions(tenant_id="a", page=2, limit=2)
        assert page.total == 5
        assert page.pages == 3
        assert len(page.items) == 2

        assert service.list_definitions(state="paused").items[0]["id"] == paused.id
        assert service.list_definitions(state="active").total == 5
        assert service.list_definitions(job_type="echo").total == 1
        assert service.list_definitions(search="report").total == 1

    def test_invalid_listing_arguments(self, service):
        """Bad paging and unknown states are rejected."""
        with pytest.raises(ValidationError):
            service.list_definitions(page=0)
        with pytest.raises(ValidationError):
            service.list_definitions(limit=101)
        with pytest.raises(ValidationError):
            service.list_definitions(state="sleeping")

    def test_listing_includes_last_execution(self, service):
        """Rows carry the status of the last execution."""
        definition = service.create_definition("Runs", "0 * * * *", "noop")
        job_id = service.execute_now(definition.id)
        finish(service.queue, job_id, succeed=False)

        [row] = service.list_definitions().items
        assert row["last_execution_status"] == "failed"
        assert row["last_execution_error"] == "broken"


class TestUpdateDefinition:
    """Tests for SchedulerService.update_definition."""

    def test_schedule_change_recomputes_next_run(self, service):
        """Changing the expression recomputes next_run_at."""
        definition = service.create_definition("Hourly", "0 * * * *", "noop")
        updated = service.update_definition(definition.id, cron_expression="30 * * * *")
        assert updated.next_run_at == utc(2024, 1, 15, 10, 30)

    def test_update_clears_degraded(self, service, session_factory):
        """A fixed configuration clears the degraded flag."""
        definition = service.create_definition("Echo", "0 * * * *", "echo")
        service.update_definition(definition.id, configuration={"message": "fixed"}, name="Echo 2")

        stored = service.get_definition(definition.id)
        assert stored.configuration == {"message": "fixed"}
        assert stored.name == "Echo 2"
        assert not stored.is_degraded

    def test_rejects_unknown_fields(self, service):
        """Only updatable fields may change."""
        definition = service.create_definition("Hourly", "0 * * * *", "noop")
        with pytest.raises(ValidationError) as exc_info:
            service.update_definition(definition.id, run_count=10)
        assert exc_info.value.errors == ["run_count: not updatable"]

    def test_max_runs_above_run_count(self, service):
        """max_runs cannot drop to or below runs already made."""
        definition = service.create_definition("Hourly", "0 * * * *", "noop")
        finish(service.queue, service.execute_now(definition.id))

        with pytest.raises(ValidationError):
            service.update_definition(definition.id, max_runs=1)
        assert service.update_definition(definition.id, max_runs=2).max_runs == 2

    @pytest.mark.parametrize("field", ["cron_expression", "timezone", "job_type"])
    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_rejects_missing_required_values(self, service, field, value):
        """Clearing the expression, timezone or job type is a validation error."""
        definition = service.create_definition("Hourly", "0 * * * *", "noop")

        with pytest.raises(ValidationError) as exc_info:
            service.update_definition(definition.id, **{field: value})

        assert exc_info.value.errors == [f"{field}: is required"]
        stored = service.get_definition(definition.id)
        assert stored.cron_expression == "0 * * * *"
        assert stored.timezone == definition.timezone

    def test_completed_definition_is_immutable(self, service):
        """Completed definitions reject changes."""
        definition = service.create_definition("Once", "0 * * * *", "noop", max_runs=1)
        finish(service.queue, service.execute_now(definition.id))
        assert service.get_definition(definition.id).state == DefinitionState.COMPLETED

        with pytest.raises(InvalidStateError):
            service.update_definition(definition.id, name="Again")
        with pytest.raises(InvalidStateError):
            service.resume(definition.id)
        with pytest.raises(InvalidStateError):
            service.execute_now(definition.id)


class TestControl:
    """Tests for pause, resume, disable, delete and manual runs."""

    def test_pause_and_resume(self, service, clock):
        """Resume resets the failure streak and skips missed runs."""
        definition = service.create_definition("Hourly", "0 * * * *", "noop", max_failures=1)
        finish(service.queue, service.execute_now(definition.id), succeed=False)
        assert service.get_definition(definition.id).state == DefinitionState.PAUSED

        clock.set(utc(2024, 1, 15, 17, 45))
        resumed = service.resume(definition.id)

        assert resumed.state == DefinitionState.ACTIVE
        assert resumed.consecutive_failure_count == 0
        assert resumed.next_run_at == utc(2024, 1, 15, 18, 0)

    def test_execute_now_on_paused_definition(self, service):
        """Manual runs work on paused definitions and leave the schedule alone."""
        definition = service.create_definition("Hourly", "0 * * * *", "echo", {"message": "now"})
        service.pause(definition.id)

        job_id = service.execute_now(definition.id, requester_id="admin")

        job = service.queue.get(job_id)
        assert job.priority == int(JobPriority.HIGH)
        assert job.triggered_by == TriggerSource.MANUAL.value
        assert job.requester_id == "admin"
        assert job.payload == {"message": "now"}
        stored = service.get_definition(definition.id)
        assert stored.state == DefinitionState.PAUSED
        assert stored.next_run_at == definition.next_run_at

    def test_execute_now_ignores_overlap(self, service):
        """Manual runs are enqueued even while another run is in flight."""
        definition = service.create_definition("Hourly", "0 * * * *", "noop")
        service.execute_now(definition.id)
        service.execute_now(definition.id)
        assert service.list_jobs(cron_definition_id=definition.id).total == 2

    def test_disable(self, service, session_factory, clock):
        """Disabled definitions keep history and never run again."""
        definition = service.create_definition("Hourly", "0 * * * *", "noop")
        finish(service.queue, service.execute_now(definition.id))

        disabled = service.disable_definition(definition.id)
        assert disabled.state == DefinitionState.DISABLED
        assert disabled.next_run_at is None

        clock.set(utc(2024, 1, 15, 12, 0))
        assert CronDispatcher(service.queue, session_factory, clock=clock).tick().processed == 0
        assert service.get_executions(definition.id).total == 1
        with pytest.raises(InvalidStateError):
            service.pause(definition.id)

    def test_delete_cascades(self, service):
        """Deleting a definition removes its jobs."""
        definition = service.create_definition("Hourly", "0 * * * *", "noop")
        job_id = service.execute_now(definition.id)

        service.delete_definition(definition.id)

        with pytest.raises(NotFoundError):
            service.get_definition(definition.id)
        with pytest.raises(NotFoundError):
            service.get_job_status(job_id)


    def test_system_definitions_are_read_only(self, service):
        """System definitions cannot be edited, disabled or deleted."""
        definition = service.create_definition("Nightly cleanup", "0 3 * * *", "noop", is_system=True)

        with pytest.raises(InvalidStateError, match="system definition"):
            service.update_definition(definition.id, name="Renamed")
        with pytest.raises(InvalidStateError, match="system definition"):
            service.disable_definition(definition.id)
        with pytest.raises(InvalidStateError, match="system definition"):
            service.delete_definition(definition.id)

        stored = service.get_definition(definition.id)
        assert stored.name == "Nightly cleanup"
        assert stored.state == DefinitionState.ACTIVE

    def test_system_definitions_can_be_paused_and_run(self, service):
        """Pause, resume and manual runs stay available for system definitions."""
        definition = service.create_definition("Nightly cleanup", "0 3 * * *", "noop", is_system=True)

        assert service.pause(definition.id).state == DefinitionState.PAUSED
        assert service.resume(definition.id).state == DefinitionState.ACTIVE
        assert service.queue.get(service.execute_now(definition.id)).cron_definition_id == definition.id


class TestJobs:
    """Tests for ad-hoc jobs, status and statistics."""

    def test_schedule_job_with_delay(self, service, clock):
        """Delayed jobs are scheduled in the future."""
        job_id = service.schedule_job("noop", delay_seconds=60, priority="low", tenant_id="t")
        status = service.get_job_status(job_id)

        assert status["status"] == "pending"
        assert status["priority"] == "low"
        assert status["scheduled_at"] == (clock() + timedelta(seconds=60)).isoformat()
        assert status["attempts"] == []

    def test_negative_delay_rejected(self, service):
        """Delays cannot be negative."""
        with pytest.raises(ValidationError):
            service.schedule_job("noop", delay_seconds=-1)

    def test_job_status_after_run(self, service):
        """Status includes the result and every attempt."""
        job_id = service.schedule_job("noop")
        finish(service.queue, job_id)

        status = service.get_job_status(job_id)
        assert status["status"] == JobStatus.SUCCEEDED.value
        assert status["progress"] == 100
        assert len(status["attempts"]) == 1
        assert status["attempts"][0]["status"] == "succeeded"

    def test_job_status_missing(self, service):
        """Unknown jobs raise NotFoundError."""
        with pytest.raises(NotFoundError):
            service.get_job_status("missing")

    def test_cancel_job(self, service):
        """Cancelling returns the resulting state."""
        pending = service.schedule_job("noop")
        assert service.cancel_job(pending) == "cancelled"

        running = service.schedule_job("noop")
        service.queue.claim("worker-1")
        service.queue.mark_running(running, "worker-1")
        assert service.cancel_job(running) == "running"

    def test_list_jobs(self, service):
        """Jobs can be filtered by status and type."""
        service.schedule_job("noop")
        service.schedule_job("echo")
        cancelled = service.schedule_job("noop")
        service.cancel_job(cancelled)

        assert service.list_jobs().total == 3
        assert service.list_jobs(status="cancelled").items[0]["id"] == cancelled
        assert service.list_jobs(job_type="echo").total == 1
        with pytest.raises(ValidationError):
            service.list_jobs(status="lost")

    def test_statistics(self, service):
        """Statistics cover the requested range."""
        finish(service.queue, service.schedule_job("noop"))
        finish(service.queue, service.schedule_job("noop"), succeed=False)

        stats = service.get_statistics("7d")
        assert stats["time_range"] == "7d"
        assert stats["total"] == 2
        assert stats["success_rate"] == 50.0
        with pytest.raises(ValidationError):
            service.get_statistics("1y")

    def test_prune_history(self, service, clock):
        """Old finished jobs are removed."""
        finish(service.queue, service.schedule_job("noop"))
        clock.advance(days=31)

        assert service.prune_history() == 1
        with pytest.raises(ValidationError):
            service.prune_history(days=0)
