"""Tests for the top-level CLI app."""

import logging

import pytest

from tenant_jobs import __version__
from tenant_jobs.cli import context
from tenant_jobs.cli.exit_codes import ExitCode
from tenant_jobs.main import _setup_logging, app


class TestMainApp:
    """Tests for global options."""

    def test_version(self, runner):
        """--version prints the version and exits."""
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert f"v{__version__}" in result.output

    def test_help_lists_groups(self, runner):
        """Help lists every command group."""
        result = runner.invoke(app, ["--help"])

        assert result.exit_code == 0
        for group in ("definitions", "jobs", "run", "config", "db"):
            assert group in result.output

    @pytest.mark.parametrize("flag", ["--verbose", "--debug"])
    def test_quiet_conflicts(self, runner, cli_env, flag):
        """--quiet cannot be combined with --verbose or --debug."""
        result = runner.invoke(app, ["--quiet", flag, "config", "path"])

        assert result.exit_code == ExitCode.INVALID_ARGUMENT
        assert f"--quiet and {flag} are mutually exclusive" in result.output

    def test_output_mode_is_recorded(self, runner, cli_env):
        """Global flags are remembered for subcommands and reset on the next call."""
        runner.invoke(app, ["--json", "--debug", "config", "path"])
        assert context.is_json()
        assert context.is_verbose()
        assert context.wants_json()

        runner.invoke(app, ["--quiet", "config", "path"])
        assert not context.is_json()
        assert not context.is_verbose()
        assert context.is_quiet()
        assert context.wants_json(True)


class TestSetupLogging:
    """Tests for _setup_logging."""

    def test_levels(self):
        """Verbose means INFO, debug means DEBUG, quiet means ERROR."""
        _setup_logging(verbose=True)
        assert logging.getLogger().level == logging.INFO

        _setup_logging(debug=True)
        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("apscheduler").level == logging.DEBUG

        _setup_logging(quiet=True)
        assert logging.getLogger().level == logging.ERROR
        assert logging.getLogger("apscheduler").level == logging.WARNING

    def test_log_file(self, tmp_path):
        """A log file gets its directory created and receives records."""
        log_file = tmp_path / "logs" / "cli.log"

        _setup_logging(log_file=log_file)
        logging.getLogger("tenant_jobs.test").warning("written to file")
        for handler in logging.getLogger().handlers:
            handler.flush()

        line = log_file.read_text().strip()
        assert line.endswith("tenant_jobs.test - WARNING - written to file")

    def test_debug_format_has_source_location(self, tmp_path):
        """Debug logs carry the file and line of the call."""
        log_file = tmp_path / "debug.log"

        _setup_logging(debug=True, log_file=log_file)
        logging.getLogger("tenant_jobs.test").debug("where")
        for handler in logging.getLogger().handlers:
            handler.flush()

        assert "[test_main.py:" in log_file.read_text()
