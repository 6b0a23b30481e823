"""Shared fixtures: a file-backed SQLite database, a fixed clock and test job types."""

import asyncio
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Optional

import pytest
from pydantic import BaseModel, ConfigDict

from tenant_jobs.config import TenantJobsConfig
from tenant_jobs.database.connection import create_db_engine, create_session_maker, create_tables, session_scope
from tenant_jobs.scheduler.exceptions import PermanentHandlerError
from tenant_jobs.scheduler.queue import JobQueue
from tenant_jobs.scheduler.registry import JobTypeRegistry
from tenant_jobs.scheduler.service import SchedulerService


class EchoConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    message: Optional[str] = None


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> datetime:
        self.current += timedelta(**delta)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def config(tmp_path):
    config = TenantJobsConfig(config_dir=tmp_path / "config", data_dir=tmp_path / "data")
    config.executor.worker_id = "test-worker"
    return config


@pytest.fixture
def engine(tmp_path):
    # A file database so that several threads see the same data
    engine = create_db_engine(f"sqlite:///{tmp_path}/tenant_jobs.db")
    create_tables(engine=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return partial(session_scope, create_session_maker(engine))


def _noop(payload, context):
    return {"ok": True}


async def _echo(payload, context):
    return {"echo": payload}


def _always_fails(payload, context):
    raise RuntimeError("boom")


def _rejects(payload, context):
    raise PermanentHandlerError("payload rejected")


async def _sleeps(payload, context):
    await asyncio.sleep(payload.get("seconds", 5))
    return {"slept": True}


@pytest.fixture
def registry():
    registry = JobTypeRegistry()
    registry.register("noop", _noop)
    registry.register(
        "echo",
        _echo,
        config_schema=EchoConfig,
        default_timeout_seconds=30,
        default_max_retries=2,
    )
    registry.register("flaky", _always_fails, default_max_retries=2)
    registry.register("fatal", _rejects)
    registry.register("slow", _sleeps, default_timeout_seconds=1, default_max_retries=0)
    registry.freeze()
    return registry


@pytest.fixture
def queue(registry, session_factory, clock):
    return JobQueue(registry, session_factory, clock=clock)


@pytest.fixture
def live_queue(registry, session_factory):
    """Queue on the real clock, for tests that run handlers under deadlines."""
    return JobQueue(registry, session_factory)


@pytest.fixture
def service(registry, session_factory, config, clock):
    return SchedulerService(session_factory, registry, config=config, clock=clock)
