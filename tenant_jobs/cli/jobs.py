"""Tenant Jobs jobs command - Submit, inspect and cancel jobs."""

import json
from typing import Optional

import typer

from tenant_jobs.cli import context
from tenant_jobs.cli.error_handler import ValidationError, handle_errors
from tenant_jobs.cli.output import (
    console,
    print_json,
    print_key_value,
    print_result,
    print_table,
    styled_status,
)

app = typer.Typer(help="Submit, inspect and cancel jobs.")

JOB_COLUMNS = ["id", "job_type", "status", "priority", "retry_count", "scheduled_at", "tenant_id", "last_error"]
ATTEMPT_COLUMNS = ["attempt", "status", "worker_id", "started_at", "duration_ms", "error"]


@app.command("list")
@handle_errors
def list_jobs(
    status: Optional[str] = typer.Option(
        None,
        "--status",
        "-s",
        help="Filter by status (pending, claimed, running, succeeded, failed, cancelled).",
    ),
    job_type: Optional[str] = typer.Option(None, "--type", help="Filter by job type."),
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Only this tenant's jobs."),
    definition: Optional[str] = typer.Option(None, "--definition", help="Only jobs of this definition."),
    page: int = typer.Option(1, "--page", "-p", help="Page number."),
    limit: int = typer.Option(20, "--limit", "-l", help="Jobs per page (max 100)."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """List jobs, newest first.

    Example:
        tenant-jobs jobs list
        tenant-jobs jobs list --status failed --tenant store-42
    """
    result = context.get_service().list_jobs(
        status=status,
        job_type=job_type,
        tenant_id=tenant,
        cron_definition_id=definition,
        page=page,
        limit=limit,
    )

    if context.wants_json(json_output):
        print_json(result.to_dict())
        return

    if not result.items:
        console.print("[yellow]No jobs found.[/yellow]")
        return

    print_table(result.items, JOB_COLUMNS, title="Jobs", column_styles={"id": "dim"})
    console.print(f"[dim]Page {result.page} of {result.pages} ({result.total} total)[/dim]")


@app.command("submit")
@handle_errors
def submit_job(
    job_type: str = typer.Argument(..., help="Registered job type."),
    payload: Optional[str] = typer.Option(None, "--payload", "-P", help="Job payload as a JSON object."),
    priority: str = typer.Option("normal", "--priority", help="low, normal or high."),
    max_retries: Optional[int] = typer.Option(None, "--max-retries", help="Retries (default from job type)."),
    timeout: Optional[int] = typer.Option(None, "--timeout", help="Seconds per attempt (default from job type)."),
    delay: float = typer.Option(0, "--delay", help="Seconds to wait before the job is due."),
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Owning tenant."),
    requester: Optional[str] = typer.Option(None, "--requester", help="Requesting user."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Enqueue an ad-hoc job.

    Example:
        tenant-jobs jobs submit webhook --payload '{"url": "https://example.com/hook"}'
    """
    parsed = None
    if payload is not None:
        try:
            parsed = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ValidationError(f"--payload is not valid JSON: {e.msg}")
        if not isinstance(parsed, dict):
            raise ValidationError("--payload must be a JSON object")

    job_id = context.get_service().schedule_job(
        job_type,
        parsed,
        priority=priority,
        max_retries=max_retries,
        timeout_seconds=timeout,
        tenant_id=tenant,
        requester_id=requester,
        delay_seconds=delay,
    )

    if context.wants_json(json_output):
        print_json({"job_id": job_id})
        return
    print_result(True, f"Submitted {job_type} job", {"id": job_id})


@app.command("status")
@handle_errors
def job_status(
    job_id: str = typer.Argument(..., help="Job ID."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Show a job's status, progress, result and attempts."""
    status = context.get_service().get_job_status(job_id)

    if context.wants_json(json_output):
        print_json(status)
        return

    attempts = status.pop("attempts")
    status["status"] = styled_status(status["status"])
    print_key_value(status, title=f"Job {job_id}")
    if attempts:
        console.print()
        print_table(attempts, ATTEMPT_COLUMNS, title="Attempts")


@app.command("cancel")
@handle_errors
def cancel_job(
    job_id: str = typer.Argument(..., help="Job ID."),
    strict: bool = typer.Option(
        False,
        "--strict",
        help="Fail instead of requesting cancellation of a running job.",
    ),
) -> None:
    """Cancel a job.

    Pending jobs are cancelled at once; a running job is asked to stop
    and finishes as cancelled when its handler checks in.
    """
    outcome = context.get_service().cancel_job(job_id, strict=strict)
    if outcome == "cancelled":
        print_result(True, f"Cancelled job {job_id}")
    else:
        print_result(True, f"Cancellation requested for running job {job_id}")


@app.command("stats")
@handle_errors
def job_stats(
    time_range: str = typer.Option("24h", "--range", "-r", help="1h, 24h, 7d or 30d."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Show job counts and success rate."""
    stats = context.get_service().get_statistics(time_range)

    if context.wants_json(json_output):
        print_json(stats)
        return

    stats["success_rate"] = f"{stats['success_rate']}%"
    print_key_value(stats, title=f"Job statistics ({time_range})")


@app.command("prune")
@handle_errors
def prune_jobs(
    days: Optional[int] = typer.Option(None, "--days", help="Age in days (default from retention settings)."),
) -> None:
    """Delete finished jobs and their executions older than the retention."""
    deleted = context.get_service().prune_history(days)
    print_result(True, f"Pruned {deleted} job(s)")


@app.command("types")
@handle_errors
def list_types(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """List registered job types."""
    registry = context.get_service().registry
    rows = [
        {
            "name": job_type.name,
            "mode": "async" if job_type.is_async else "sync",
            "timeout": job_type.default_timeout_seconds,
            "retries": job_type.default_max_retries,
            "description": job_type.description or "",
        }
        for job_type in registry
    ]

    if context.wants_json(json_output):
        print_json(rows)
        return
    print_table(rows, ["name", "mode", "timeout", "retries", "description"], title="Job Types")
