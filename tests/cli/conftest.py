"""Fixtures for CLI tests."""

import logging

import pytest
from typer.testing import CliRunner

from tenant_jobs.cli import context
from tenant_jobs.config import clear_config_cache
from tenant_jobs.database.connection import dispose_engine


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def restore_logging():
    """The CLI callback reconfigures the root logger; put it back afterwards."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    context.set_output_mode()


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Point configuration and data directories at a temporary location."""
    config_dir = tmp_path / "cli-config"
    data_dir = tmp_path / "cli-data"
    monkeypatch.setenv("TENANT_JOBS_CONFIG_DIR", str(config_dir))
    monkeypatch.setenv("TENANT_JOBS_DATA_DIR", str(data_dir))
    clear_config_cache()
    dispose_engine()
    yield {"config_dir": config_dir, "data_dir": data_dir}
    context.set_service(None)
    dispose_engine()
    clear_config_cache()


@pytest.fixture
def cli_service(service):
    """Serve CLI commands from the test scheduler service."""
    context.set_service(service)
    yield service
    context.set_service(None)
