"""Tests for the definitions CLI commands."""

import json

from tenant_jobs.cli.exit_codes import ExitCode
from tenant_jobs.database.models import DefinitionState, JobPriority, TriggerSource
from tenant_jobs.main import app


class TestCreateCommand:
    """Tests for `definitions create`."""

    def test_create_json(self, runner, cli_service):
        """A created definition is printed as JSON."""
        result = runner.invoke(
            app,
            [
                "definitions", "create", "Cart reminder", "0 * * * *",
                "--type", "echo",
                "--config", '{"message": "hi"}',
                "--tenant", "store-1",
                "--tags", "carts, email",
                "--json",
            ],
        )

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["name"] == "Cart reminder"
        assert data["configuration"] == {"message": "hi"}
        assert data["tenant_id"] == "store-1"
        assert data["tags"] == ["carts", "email"]
        assert data["state"] == DefinitionState.ACTIVE.value
        assert data["next_run_at"].startswith("2024-01-15T11:00:00")

    def test_create_human_output(self, runner, cli_service):
        """Without --json a confirmation line is printed."""
        result = runner.invoke(app, ["definitions", "create", "Nightly", "0 2 * * *", "--type", "noop"])

        assert result.exit_code == 0, result.output
        assert "Created definition Nightly" in result.output
        assert cli_service.list_definitions().total == 1

    def test_create_once(self, runner, cli_service):
        """--once marks the definition as a one-time run."""
        result = runner.invoke(
            app, ["definitions", "create", "Launch", "0 12 20 1 *", "--type", "noop", "--once", "--json"]
        )

        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["metadata"] == {"schedule_type": "once"}

    def test_invalid_config_json(self, runner, cli_service):
        """A --config that is not JSON is rejected before reaching the service."""
        result = runner.invoke(
            app, ["definitions", "create", "Bad", "0 * * * *", "--type", "echo", "--config", "{nope"]
        )

        assert result.exit_code == ExitCode.INVALID_ARGUMENT
        assert "--config is not valid JSON" in result.output
        assert cli_service.list_definitions().total == 0

    def test_config_must_be_object(self, runner, cli_service):
        """A JSON array is not a configuration."""
        result = runner.invoke(
            app, ["definitions", "create", "Bad", "0 * * * *", "--type", "echo", "--config", "[1, 2]"]
        )

        assert result.exit_code == ExitCode.INVALID_ARGUMENT
        assert "must be a JSON object" in result.output

    def test_invalid_cron_expression(self, runner, cli_service):
        """Validation failures from the service exit with INVALID_ARGUMENT."""
        result = runner.invoke(app, ["definitions", "create", "Bad", "61 * * * *", "--type", "noop"])

        assert result.exit_code == ExitCode.INVALID_ARGUMENT
        assert "Error:" in result.output

    def test_schema_violation(self, runner, cli_service):
        """Configurations are checked against the job type's schema."""
        result = runner.invoke(
            app,
            ["definitions", "create", "Bad", "0 * * * *", "--type", "echo", "--config", '{"other": 1}'],
        )

        assert result.exit_code == ExitCode.INVALID_ARGUMENT


class TestListAndShowCommands:
    """Tests for `definitions list` and `definitions show`."""

    def test_list_empty(self, runner, cli_service):
        """An empty listing says so."""
        result = runner.invoke(app, ["definitions", "list"])

        assert result.exit_code == 0
        assert "No definitions found." in result.output

    def test_list_json(self, runner, cli_service):
        """The JSON listing carries paging information."""
        cli_service.create_definition("First", "0 * * * *", "noop", tenant_id="store-1")
        cli_service.create_definition("Second", "0 * * * *", "noop", tenant_id="store-2")

        result = runner.invoke(app, ["definitions", "list", "--tenant", "store-2", "--json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["total"] == 1
        assert data["pages"] == 1
        assert [item["name"] for item in data["items"]] == ["Second"]

    def test_global_json_flag(self, runner, cli_service):
        """The global --json option applies to subcommands."""
        cli_service.create_definition("First", "0 * * * *", "noop")

        result = runner.invoke(app, ["--json", "definitions", "list"])

        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["total"] == 1

    def test_list_table(self, runner, cli_service):
        """The table listing ends with the page summary."""
        cli_service.create_definition("First", "0 * * * *", "noop")

        result = runner.invoke(app, ["definitions", "list"])

        assert result.exit_code == 0, result.output
        assert "Cron Definitions" in result.output
        assert "Page 1 of 1 (1 total)" in result.output

    def test_invalid_state_filter(self, runner, cli_service):
        """Unknown states are rejected."""
        result = runner.invoke(app, ["definitions", "list", "--state", "sleeping"])

        assert result.exit_code == ExitCode.INVALID_ARGUMENT

    def test_show(self, runner, cli_service):
        """show prints one definition."""
        definition = cli_service.create_definition("First", "0 * * * *", "noop")

        result = runner.invoke(app, ["definitions", "show", definition.id, "--json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["id"] == definition.id
        assert data["run_count"] == 0

    def test_show_not_found(self, runner, cli_service):
        """A missing definition exits with NOT_FOUND."""
        result = runner.invoke(app, ["definitions", "show", "missing"])

        assert result.exit_code == ExitCode.NOT_FOUND
        assert "Definition not found: missing" in result.output


class TestUpdateCommand:
    """Tests for `definitions update`."""

    def test_update_fields(self, runner, cli_service):
        """Only the given options change."""
        definition = cli_service.create_definition("First", "0 * * * *", "noop")

        result = runner.invoke(
            app, ["definitions", "update", definition.id, "--name", "Renamed", "--max-failures", "9"]
        )

        assert result.exit_code == 0, result.output
        assert f"Updated definition {definition.id}" in result.output
        stored = cli_service.get_definition(definition.id)
        assert stored.name == "Renamed"
        assert stored.max_failures == 9
        assert stored.cron_expression == "0 * * * *"

    def test_update_schedule_moves_next_run(self, runner, cli_service):
        """A new expression recomputes the next run."""
        definition = cli_service.create_definition("First", "0 * * * *", "noop")

        result = runner.invoke(app, ["definitions", "update", definition.id, "--cron", "30 10 * * *", "--json"])

        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["next_run_at"].startswith("2024-01-15T10:30:00")

    def test_nothing_to_update(self, runner, cli_service):
        """At least one option is required."""
        definition = cli_service.create_definition("First", "0 * * * *", "noop")

        result = runner.invoke(app, ["definitions", "update", definition.id])

        assert result.exit_code == ExitCode.INVALID_ARGUMENT
        assert "Nothing to update" in result.output


class TestControlCommands:
    """Tests for pause, resume, run, disable and delete."""

    def test_pause_and_resume(self, runner, cli_service):
        """pause and resume toggle scheduling."""
        definition = cli_service.create_definition("First", "0 * * * *", "noop")

        result = runner.invoke(app, ["definitions", "pause", definition.id])
        assert result.exit_code == 0, result.output
        assert f"Paused definition {definition.id}" in result.output
        assert cli_service.get_definition(definition.id).state == DefinitionState.PAUSED

        result = runner.invoke(app, ["definitions", "resume", definition.id])
        assert result.exit_code == 0, result.output
        assert cli_service.get_definition(definition.id).state == DefinitionState.ACTIVE

    def test_run_now(self, runner, cli_service):
        """run enqueues a high-priority manual job."""
        definition = cli_service.create_definition("First", "0 * * * *", "noop", owner_id="u-1")

        result = runner.invoke(app, ["definitions", "run", definition.id, "--json"])

        assert result.exit_code == 0, result.output
        job = cli_service.queue.get(json.loads(result.output)["job_id"])
        assert job.cron_definition_id == definition.id
        assert job.priority == JobPriority.HIGH
        assert job.triggered_by == TriggerSource.MANUAL.value
        assert job.requester_id == "u-1"

    def test_disabled_definition_rejects_control(self, runner, cli_service):
        """Disabled definitions cannot be paused."""
        definition = cli_service.create_definition("First", "0 * * * *", "noop")

        result = runner.invoke(app, ["definitions", "disable", definition.id])
        assert result.exit_code == 0, result.output

        result = runner.invoke(app, ["definitions", "pause", definition.id])
        assert result.exit_code == ExitCode.INVALID_STATE

    def test_delete_requires_confirmation(self, runner, cli_service):
        """Declining the prompt keeps the definition."""
        definition = cli_service.create_definition("First", "0 * * * *", "noop")

        result = runner.invoke(app, ["definitions", "delete", definition.id], input="n\n")

        assert result.exit_code != 0
        assert cli_service.list_definitions().total == 1

    def test_delete_force(self, runner, cli_service):
        """--force deletes without asking."""
        definition = cli_service.create_definition("First", "0 * * * *", "noop")

        result = runner.invoke(app, ["definitions", "delete", definition.id, "--force"])

        assert result.exit_code == 0, result.output
        assert cli_service.list_definitions().total == 0

    def test_history(self, runner, cli_service):
        """history lists the executions of a definition."""
        definition = cli_service.create_definition("First", "0 * * * *", "noop")
        result = runner.invoke(app, ["definitions", "history", definition.id])
        assert result.exit_code == 0, result.output
        assert "No executions recorded." in result.output

        queue = cli_service.queue
        job_id = cli_service.execute_now(definition.id)
        queue.claim("worker-1")
        _, execution = queue.mark_running(job_id, "worker-1")
        queue.complete(job_id, execution.id, {"ok": True})

        result = runner.invoke(app, ["definitions", "history", definition.id, "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["total"] == 1
        assert data["items"][0]["job_id"] == job_id
        assert data["items"][0]["status"] == "succeeded"
