"""Tests for the database repositories."""

from datetime import datetime, timedelta, timezone

import pytest

from tenant_jobs.database.models import (
    CronDefinition,
    DefinitionState,
    Execution,
    ExecutionStatus,
    Job,
    JobPriority,
    JobStatus,
)
from tenant_jobs.database.repositories import RepositoryFactory

BASE = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def repos(session_factory):
    """Repositories on one open session; committed when the test ends."""
    with session_factory() as session:
        yield RepositoryFactory(session)


def add_job(repos, **values) -> Job:
    values.setdefault("job_type", "noop")
    values.setdefault("scheduled_at", BASE)
    return repos.jobs.add(Job(**values))


class TestCronDefinitionRepository:
    """Tests for CronDefinitionRepository."""

    def test_create_maps_metadata(self, repos):
        """The metadata keyword lands in definition_metadata."""
        definition = repos.definitions.create(
            name="Nightly", cron_expression="0 2 * * *", job_type="noop", metadata={"schedule_type": "once"}
        )

        assert definition.id
        assert definition.is_one_time
        assert definition.state == DefinitionState.ACTIVE
        assert repos.definitions.get_by_id(definition.id) is definition

    def test_list_filters_and_state(self, repos):
        """Listings filter by tenant, search text and derived state."""
        repos.definitions.create(name="Cart reminder", cron_expression="* * * * *", job_type="noop", tenant_id="a")
        paused = repos.definitions.create(
            name="Digest", cron_expression="* * * * *", job_type="noop", tenant_id="a", is_paused=True
        )
        repos.definitions.create(
            name="Old", cron_expression="* * * * *", job_type="noop", tenant_id="b", completed_at=BASE
        )

        items, total = repos.definitions.list(tenant_id="a")
        assert total == 2

        items, total = repos.definitions.list(state=DefinitionState.PAUSED)
        assert [d.id for d in items] == [paused.id]

        items, total = repos.definitions.list(search="cart")
        assert [d.name for d in items] == ["Cart reminder"]

        _, total = repos.definitions.list(state=DefinitionState.COMPLETED)
        assert total == 1

    def test_get_due(self, repos):
        """Only active, unpaused definitions that are due are returned, earliest first."""
        later = repos.definitions.create(
            name="Later", cron_expression="* * * * *", job_type="noop", next_run_at=BASE - timedelta(minutes=1)
        )
        earlier = repos.definitions.create(
            name="Earlier", cron_expression="* * * * *", job_type="noop", next_run_at=BASE - timedelta(minutes=5)
        )
        repos.definitions.create(
            name="Future", cron_expression="* * * * *", job_type="noop", next_run_at=BASE + timedelta(minutes=1)
        )
        repos.definitions.create(
            name="Paused", cron_expression="* * * * *", job_type="noop", next_run_at=BASE, is_paused=True
        )

        due = repos.definitions.get_due(BASE)

        assert [definition_id for definition_id, _ in due] == [earlier.id, later.id]
        assert due[0][1] == BASE - timedelta(minutes=5)

    def test_compare_and_set(self, repos):
        """Updates apply only when the expected values match, None meaning NULL."""
        definition = repos.definitions.create(name="D", cron_expression="* * * * *", job_type="noop")

        assert repos.definitions.compare_and_set(definition.id, {"next_run_at": None}, {"next_run_at": BASE})
        assert not repos.definitions.compare_and_set(definition.id, {"next_run_at": None}, {"run_count": 5})
        assert repos.definitions.compare_and_set(definition.id, {"next_run_at": BASE}, {"run_count": 5})

        stored = repos.definitions.get_by_id(definition.id, refresh=True)
        assert stored.run_count == 5
        assert stored.next_run_at == BASE


class TestJobRepository:
    """Tests for JobRepository."""

    def test_compare_and_set(self, repos):
        """A transition succeeds only from the expected status."""
        job = add_job(repos)

        assert repos.jobs.compare_and_set(
            job.id, {"status": JobStatus.PENDING.value}, {"status": JobStatus.CLAIMED.value, "claimed_by": "w1"}
        )
        assert not repos.jobs.compare_and_set(
            job.id, {"status": JobStatus.PENDING.value}, {"status": JobStatus.CLAIMED.value, "claimed_by": "w2"}
        )
        assert repos.jobs.get_by_id(job.id, refresh=True).claimed_by == "w1"

    def test_find_claimable_order(self, repos):
        """Candidates come by priority, then scheduled time; future jobs are excluded."""
        normal_early = add_job(repos, scheduled_at=BASE - timedelta(minutes=10))
        normal_late = add_job(repos, scheduled_at=BASE - timedelta(minutes=1))
        high = add_job(repos, priority=int(JobPriority.HIGH))
        add_job(repos, scheduled_at=BASE + timedelta(minutes=1))
        add_job(repos, status=JobStatus.SUCCEEDED.value)

        found = repos.jobs.find_claimable(BASE, stale_before=BASE - timedelta(minutes=2))

        assert [job.id for job in found] == [high.id, normal_early.id, normal_late.id]

    def test_find_claimable_includes_stale_claims(self, repos):
        """Claims older than the lease are claimable again; fresh ones are not."""
        stale = add_job(
            repos, status=JobStatus.CLAIMED.value, claimed_by="dead", claimed_at=BASE - timedelta(minutes=5)
        )
        add_job(repos, status=JobStatus.CLAIMED.value, claimed_by="alive", claimed_at=BASE)

        found = repos.jobs.find_claimable(BASE, stale_before=BASE - timedelta(minutes=2))

        assert [job.id for job in found] == [stale.id]

    def test_find_claimable_types(self, repos):
        """accepted_types restricts candidates."""
        add_job(repos, job_type="webhook")
        wanted = add_job(repos, job_type="cleanup")

        found = repos.jobs.find_claimable(BASE, BASE, accepted_types=["cleanup"])

        assert [job.id for job in found] == [wanted.id]

    def test_count_in_flight(self, repos):
        """Only non-terminal jobs of the definition count."""
        definition = repos.definitions.create(name="D", cron_expression="* * * * *", job_type="noop")
        add_job(repos, cron_definition_id=definition.id)
        add_job(repos, cron_definition_id=definition.id, status=JobStatus.RUNNING.value)
        add_job(repos, cron_definition_id=definition.id, status=JobStatus.FAILED.value)
        add_job(repos)

        assert repos.jobs.count_in_flight(definition.id) == 2

    def test_count_by_status(self, repos):
        """Every status is reported, including zeros."""
        add_job(repos)
        add_job(repos, status=JobStatus.FAILED.value)
        add_job(repos, status=JobStatus.FAILED.value)

        counts = repos.jobs.count_by_status()

        assert counts[JobStatus.PENDING.value] == 1
        assert counts[JobStatus.FAILED.value] == 2
        assert counts[JobStatus.CANCELLED.value] == 0
        assert set(counts) == {status.value for status in JobStatus}

    def test_list_filters(self, repos):
        """Listings filter by status and tenant."""
        add_job(repos, tenant_id="a")
        add_job(repos, tenant_id="a", status=JobStatus.SUCCEEDED.value)
        add_job(repos, tenant_id="b")

        items, total = repos.jobs.list(tenant_id="a", status=JobStatus.PENDING)

        assert total == 1
        assert items[0].tenant_id == "a"

    def test_delete_terminal_before(self, repos):
        """Old terminal jobs go with their executions; recent or open jobs stay."""
        old = add_job(repos, status=JobStatus.SUCCEEDED.value, completed_at=BASE - timedelta(days=40))
        repos.executions.add(
            Execution(
                job_id=old.id,
                started_at=BASE - timedelta(days=40),
                completed_at=BASE - timedelta(days=40),
                status=ExecutionStatus.SUCCEEDED.value,
            )
        )
        recent = add_job(repos, status=JobStatus.FAILED.value, completed_at=BASE - timedelta(days=1))
        waiting = add_job(repos)

        deleted = repos.jobs.delete_terminal_before(BASE - timedelta(days=30))

        assert deleted == 1
        repos.session.expire_all()
        assert repos.jobs.get_by_id(old.id) is None
        assert repos.executions.list_for_job(old.id) == []
        assert repos.jobs.get_by_id(recent.id) is not None
        assert repos.jobs.get_by_id(waiting.id) is not None


class TestExecutionRepository:
    """Tests for ExecutionRepository."""

    def test_close_only_once(self, repos):
        """A closed execution is never rewritten."""
        job = add_job(repos, status=JobStatus.RUNNING.value)
        execution = repos.executions.add(Execution(job_id=job.id, started_at=BASE))

        assert repos.executions.get_open_for_job(job.id).id == execution.id
        assert repos.executions.close(execution.id, ExecutionStatus.FAILED.value, BASE, 1000, error="boom")
        assert not repos.executions.close(execution.id, ExecutionStatus.SUCCEEDED.value, BASE, 5)

        repos.session.expire_all()
        stored = repos.executions.get_by_id(execution.id)
        assert stored.status == ExecutionStatus.FAILED.value
        assert stored.error == "boom"
        assert repos.executions.get_open_for_job(job.id) is None

    def test_history_for_definition(self, repos):
        """Definition history is newest first and filterable."""
        definition = repos.definitions.create(name="D", cron_expression="* * * * *", job_type="noop")
        job = add_job(repos, cron_definition_id=definition.id)
        first = repos.executions.add(
            Execution(
                job_id=job.id,
                cron_definition_id=definition.id,
                attempt=1,
                started_at=BASE,
                status=ExecutionStatus.FAILED.value,
            )
        )
        second = repos.executions.add(
            Execution(
                job_id=job.id,
                cron_definition_id=definition.id,
                attempt=2,
                started_at=BASE + timedelta(seconds=5),
                status=ExecutionStatus.SUCCEEDED.value,
            )
        )

        items, total = repos.executions.list_for_definition(definition.id)
        assert total == 2
        assert [e.id for e in items] == [second.id, first.id]
        assert repos.executions.latest_for_definition(definition.id).id == second.id

        items, total = repos.executions.list_for_definition(definition.id, status=ExecutionStatus.FAILED.value)
        assert [e.id for e in items] == [first.id]

    def test_delete_closed_before_keeps_retrying_jobs(self, repos):
        """Executions of jobs that may still retry are kept."""
        finished = add_job(repos, status=JobStatus.SUCCEEDED.value, completed_at=BASE)
        retrying = add_job(repos, retry_count=1)
        for job in (finished, retrying):
            repos.executions.add(
                Execution(
                    job_id=job.id,
                    started_at=BASE - timedelta(days=10),
                    completed_at=BASE - timedelta(days=10),
                    status=ExecutionStatus.FAILED.value,
                )
            )

        assert repos.executions.delete_closed_before(BASE) == 1
        assert len(repos.executions.list_for_job(retrying.id)) == 1


class TestModels:
    """Tests for model helpers."""

    def test_datetimes_come_back_aware(self, session_factory):
        """Stored datetimes are returned as UTC-aware values."""
        with session_factory() as session:
            job = RepositoryFactory(session).jobs.add(Job(job_type="noop", scheduled_at=BASE))
            job_id = job.id

        with session_factory() as session:
            stored = RepositoryFactory(session).jobs.get_by_id(job_id)
            assert stored.scheduled_at == BASE
            assert stored.scheduled_at.tzinfo is not None
            assert stored.created_at.tzinfo is not None

    def test_definition_states(self):
        """State derives from the completed, active and paused flags."""
        definition = CronDefinition(
            name="D", cron_expression="* * * * *", job_type="noop", is_active=True, is_paused=False
        )
        assert definition.state == DefinitionState.ACTIVE
        definition.is_paused = True
        assert definition.state == DefinitionState.PAUSED
        definition.is_active = False
        assert definition.state == DefinitionState.DISABLED
        definition.completed_at = BASE
        assert definition.state == DefinitionState.COMPLETED

    def test_job_to_dict(self, session_factory):
        """Serialised jobs use lower-case priorities and ISO timestamps."""
        with session_factory() as session:
            job = RepositoryFactory(session).jobs.add(
                Job(job_type="noop", scheduled_at=BASE, priority=int(JobPriority.LOW))
            )
            data = job.to_dict()

        assert data["priority"] == "low"
        assert data["status"] == JobStatus.PENDING.value
        assert data["scheduled_at"] == BASE.isoformat()
