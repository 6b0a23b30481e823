"""Tenant Jobs definitions command - Manage cron definitions."""

import json
from typing import Any, Dict, List, Optional

import typer

from tenant_jobs.cli import context
from tenant_jobs.cli.error_handler import ValidationError, handle_errors
from tenant_jobs.cli.output import console, print_json, print_key_value, print_result, print_table

app = typer.Typer(help="Manage cron definitions.")

LIST_COLUMNS = ["id", "name", "job_type", "cron_expression", "timezone", "state", "next_run_at", "last_execution_status"]
HISTORY_COLUMNS = ["id", "job_id", "attempt", "status", "triggered_by", "started_at", "duration_ms", "error"]


def _parse_json_option(value: Optional[str], option: str) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise ValidationError(f"{option} is not valid JSON: {e.msg}")
    if not isinstance(parsed, dict):
        raise ValidationError(f"{option} must be a JSON object")
    return parsed


def _split_tags(tags: Optional[str]) -> Optional[List[str]]:
    if tags is None:
        return None
    return [t.strip() for t in tags.split(",") if t.strip()]


def _show_definition(data: Dict[str, Any], json_output: bool) -> None:
    if context.wants_json(json_output):
        print_json(data)
    else:
        print_key_value(data, title=f"Definition {data['id']}")


@app.command("list")
@handle_errors
def list_definitions(
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Only this tenant's definitions."),
    owner: Optional[str] = typer.Option(None, "--owner", help="Only definitions of this owner."),
    state: Optional[str] = typer.Option(
        None,
        "--state",
        "-s",
        help="Filter by state (active, paused, completed, disabled).",
    ),
    job_type: Optional[str] = typer.Option(None, "--type", help="Filter by job type."),
    search: Optional[str] = typer.Option(None, "--search", help="Match name or description."),
    page: int = typer.Option(1, "--page", "-p", help="Page number."),
    limit: int = typer.Option(20, "--limit", "-l", help="Definitions per page (max 100)."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """List cron definitions, newest first.

    Example:
        tenant-jobs definitions list
        tenant-jobs definitions list --tenant store-42 --state paused
    """
    result = context.get_service().list_definitions(
        tenant_id=tenant,
        owner_id=owner,
        state=state,
        job_type=job_type,
        search=search,
        page=page,
        limit=limit,
    )

    if context.wants_json(json_output):
        print_json(result.to_dict())
        return

    if not result.items:
        console.print("[yellow]No definitions found.[/yellow]")
        return

    print_table(result.items, LIST_COLUMNS, title="Cron Definitions", column_styles={"id": "dim"})
    console.print(f"[dim]Page {result.page} of {result.pages} ({result.total} total)[/dim]")


@app.command("show")
@handle_errors
def show_definition(
    definition_id: str = typer.Argument(..., help="Definition ID."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Show a definition with its counters and schedule."""
    definition = context.get_service().get_definition(definition_id)
    _show_definition(definition.to_dict(), json_output)


@app.command("create")
@handle_errors
def create_definition(
    name: str = typer.Argument(..., help="Definition name."),
    cron_expression: str = typer.Argument(..., help='Cron expression, e.g. "0 9 * * *".'),
    job_type: str = typer.Option(..., "--type", help="Registered job type to run."),
    config_json: Optional[str] = typer.Option(None, "--config", "-c", help="Job configuration as a JSON object."),
    timezone: Optional[str] = typer.Option(None, "--timezone", "-z", help="IANA timezone (default from settings)."),
    description: Optional[str] = typer.Option(None, "--description", "-d", help="Free-text description."),
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Owning tenant."),
    owner: Optional[str] = typer.Option(None, "--owner", help="Owning user."),
    tags: Optional[str] = typer.Option(None, "--tags", help="Comma-separated tags."),
    max_runs: Optional[int] = typer.Option(None, "--max-runs", help="Complete after this many runs."),
    max_failures: Optional[int] = typer.Option(None, "--max-failures", help="Pause after this many failures in a row."),
    max_retries: Optional[int] = typer.Option(None, "--max-retries", help="Retries per run (default from job type)."),
    timeout: Optional[int] = typer.Option(None, "--timeout", help="Seconds per attempt (default from job type)."),
    allow_concurrent: bool = typer.Option(False, "--allow-concurrent", help="Allow overlapping runs."),
    once: bool = typer.Option(False, "--once", help="Run a single time, then complete."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Create a cron definition.

    Example:
        tenant-jobs definitions create "Nightly export" "0 2 * * *" --type api_call \\
            --config '{"endpoint": "/exports", "method": "POST"}' --tenant store-42
    """
    definition = context.get_service().create_definition(
        name,
        cron_expression,
        job_type,
        _parse_json_option(config_json, "--config"),
        timezone=timezone,
        description=description,
        tenant_id=tenant,
        owner_id=owner,
        tags=_split_tags(tags),
        max_runs=max_runs,
        max_failures=max_failures,
        max_retries=max_retries,
        timeout_seconds=timeout,
        allow_concurrent_runs=allow_concurrent,
        metadata={"schedule_type": "once"} if once else None,
    )

    if context.wants_json(json_output):
        print_json(definition.to_dict())
        return
    print_result(
        True,
        f"Created definition {definition.name}",
        {"id": definition.id, "next run": definition.next_run_at},
    )


@app.command("update")
@handle_errors
def update_definition(
    definition_id: str = typer.Argument(..., help="Definition ID."),
    name: Optional[str] = typer.Option(None, "--name", help="New name."),
    cron_expression: Optional[str] = typer.Option(None, "--cron", help="New cron expression."),
    timezone: Optional[str] = typer.Option(None, "--timezone", "-z", help="New timezone."),
    job_type: Optional[str] = typer.Option(None, "--type", help="New job type."),
    config_json: Optional[str] = typer.Option(None, "--config", "-c", help="New configuration (JSON object)."),
    description: Optional[str] = typer.Option(None, "--description", "-d", help="New description."),
    tags: Optional[str] = typer.Option(None, "--tags", help="Comma-separated tags."),
    max_runs: Optional[int] = typer.Option(None, "--max-runs", help="New run budget."),
    max_failures: Optional[int] = typer.Option(None, "--max-failures", help="New failure threshold."),
    max_retries: Optional[int] = typer.Option(None, "--max-retries", help="New retries per run."),
    timeout: Optional[int] = typer.Option(None, "--timeout", help="New seconds per attempt."),
    allow_concurrent: Optional[bool] = typer.Option(
        None,
        "--allow-concurrent/--no-concurrent",
        help="Allow or forbid overlapping runs.",
    ),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Update fields of a definition.

    Only the given options change. A new expression or timezone moves the
    next run.
    """
    changes: Dict[str, Any] = {
        "name": name,
        "cron_expression": cron_expression,
        "timezone": timezone,
        "job_type": job_type,
        "configuration": _parse_json_option(config_json, "--config"),
        "description": description,
        "tags": _split_tags(tags),
        "max_runs": max_runs,
        "max_failures": max_failures,
        "max_retries": max_retries,
        "timeout_seconds": timeout,
        "allow_concurrent_runs": allow_concurrent,
    }
    changes = {key: value for key, value in changes.items() if value is not None}
    if not changes:
        raise ValidationError("Nothing to update: pass at least one option")

    definition = context.get_service().update_definition(definition_id, **changes)

    if context.wants_json(json_output):
        print_json(definition.to_dict())
        return
    print_result(True, f"Updated definition {definition.id}", {"fields": ", ".join(sorted(changes))})


@app.command("delete")
@handle_errors
def delete_definition(
    definition_id: str = typer.Argument(..., help="Definition ID."),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation."),
) -> None:
    """Delete a definition together with its jobs and history.

    Use ``disable`` to stop it while keeping its history.
    """
    if not force:
        typer.confirm(f"Delete definition {definition_id} and its history?", abort=True)
    context.get_service().delete_definition(definition_id)
    print_result(True, f"Deleted definition {definition_id}")


@app.command("disable")
@handle_errors
def disable_definition(
    definition_id: str = typer.Argument(..., help="Definition ID."),
) -> None:
    """Disable a definition permanently, keeping its history."""
    context.get_service().disable_definition(definition_id)
    print_result(True, f"Disabled definition {definition_id}")


@app.command("pause")
@handle_errors
def pause_definition(
    definition_id: str = typer.Argument(..., help="Definition ID."),
) -> None:
    """Stop scheduling a definition until it is resumed."""
    context.get_service().pause(definition_id)
    print_result(True, f"Paused definition {definition_id}")


@app.command("resume")
@handle_errors
def resume_definition(
    definition_id: str = typer.Argument(..., help="Definition ID."),
) -> None:
    """Resume a paused definition from the next occurrence after now."""
    definition = context.get_service().resume(definition_id)
    print_result(True, f"Resumed definition {definition_id}", {"next run": definition.next_run_at})


@app.command("run")
@handle_errors
def run_definition(
    definition_id: str = typer.Argument(..., help="Definition ID."),
    requester: Optional[str] = typer.Option(None, "--requester", help="User requesting the run."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Run a definition now, at high priority.

    Works on paused definitions and leaves the schedule untouched.
    """
    job_id = context.get_service().execute_now(definition_id, requester_id=requester)
    if context.wants_json(json_output):
        print_json({"job_id": job_id})
        return
    print_result(True, "Run enqueued", {"job": job_id})


@app.command("history")
@handle_errors
def definition_history(
    definition_id: str = typer.Argument(..., help="Definition ID."),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by execution status."),
    page: int = typer.Option(1, "--page", "-p", help="Page number."),
    limit: int = typer.Option(20, "--limit", "-l", help="Executions per page (max 100)."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Show a definition's execution history, newest first."""
    result = context.get_service().get_executions(definition_id, status=status, page=page, limit=limit)

    if context.wants_json(json_output):
        print_json(result.to_dict())
        return

    if not result.items:
        console.print("[yellow]No executions recorded.[/yellow]")
        return

    print_table(result.items, HISTORY_COLUMNS, title=f"Executions of {definition_id}")
    console.print(f"[dim]Page {result.page} of {result.pages} ({result.total} total)[/dim]")
