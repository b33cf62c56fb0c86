"""CLI commands for job queue management."""

from __future__ import annotations

import importlib
import json
import logging
from typing import Any

import click

from taskrelay.db.types import Job, JobStatus
from taskrelay.jobs.exceptions import TaskRelayError, ValidationError
from taskrelay.jobs.scheduler import HEALTH_HEALTHY, HEALTH_WARNING, JobScheduler
from taskrelay.jobs.widget import Widget

logger = logging.getLogger(__name__)

JOB_STATUS_COLORS = {
    JobStatus.PENDING: "yellow",
    JobStatus.PROCESSING: "blue",
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "red",
    JobStatus.PAUSED: "bright_black",
}

HEALTH_COLORS = {HEALTH_HEALTHY: "green", HEALTH_WARNING: "yellow"}

_STATUS_CHOICES = [s.value for s in JobStatus] + ["all"]


def _scheduler(ctx: click.Context) -> JobScheduler:
    scheduler = ctx.obj.get("scheduler")
    if scheduler is None:
        raise click.ClickException("Failed to connect to database.")
    return scheduler


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _load_widget(spec: str) -> Widget:
    """Instantiate a widget from a 'package.module:ClassName' string."""
    module_name, sep, class_name = spec.partition(":")
    if not sep or not module_name or not class_name:
        raise click.BadParameter(
            "Expected 'package.module:ClassName'", param_hint="--widget"
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise click.BadParameter(
            f"Cannot import {module_name}: {e}", param_hint="--widget"
        ) from e

    widget_cls = getattr(module, class_name, None)
    if not isinstance(widget_cls, type) or not issubclass(widget_cls, Widget):
        raise click.BadParameter(
            f"{spec} is not a Widget subclass", param_hint="--widget"
        )
    try:
        return widget_cls()
    except TypeError as e:
        raise click.BadParameter(
            f"Cannot instantiate {spec}: {e}", param_hint="--widget"
        ) from e


def _register_widget(scheduler: JobScheduler, job_type: str, spec: str) -> None:
    try:
        scheduler.register(job_type, _load_widget(spec))
    except ValidationError as e:
        raise click.ClickException(f"Invalid widget: {e}") from e


def _format_job_row(job: Job) -> str:
    status_formatted = f"{job.status.value:<11}"
    status_colored = click.style(status_formatted, fg=JOB_STATUS_COLORS[job.status])
    created = job.created_at[:19].replace("T", " ")
    progress = (job.progress_message or "-")[:40]
    return (
        f"{job.id:<8} {status_colored} {job.job_type:<20} "
        f"{job.priority:>4} {job.attempts}/{job.max_attempts:<4} "
        f"{created:<20} {progress}"
    )


@click.group("jobs")
def jobs_group() -> None:
    """Manage the job queue.

    Examples:

        # List failed jobs of a type
        taskrelay jobs list --type report --status failed

        # Show queue status for a job type
        taskrelay jobs status report

        # Stop workers from picking up new jobs
        taskrelay jobs stop report

        # Process queued jobs with a widget
        taskrelay jobs run report --widget myapp.widgets:ReportWidget
    """


@jobs_group.command("list")
@click.option("--type", "-t", "job_type", default=None, help="Filter by job type.")
@click.option(
    "--status",
    "-s",
    type=click.Choice(_STATUS_CHOICES),
    default="all",
    help="Filter by job status.",
)
@click.option(
    "--limit",
    "-n",
    type=int,
    default=50,
    help="Maximum number of jobs to show.",
)
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format.")
@click.pass_context
def list_jobs(
    ctx: click.Context,
    job_type: str | None,
    status: str,
    limit: int,
    json_output: bool,
) -> None:
    """List jobs, newest first."""
    scheduler = _scheduler(ctx)
    jobs = scheduler.get_jobs(
        job_type=job_type,
        status=None if status == "all" else JobStatus(status),
        limit=limit,
    )

    if json_output:
        _echo_json([job.to_dict() for job in jobs])
        return

    if not jobs:
        click.echo("No jobs found.")
        return

    click.echo(
        f"{'ID':<8} {'STATUS':<11} {'TYPE':<20} {'PRIO':>4} {'TRY':<6} "
        f"{'CREATED':<20} PROGRESS"
    )
    click.echo("-" * 100)
    for job in jobs:
        click.echo(_format_job_row(job))


@jobs_group.command("show")
@click.argument("job_id", type=int)
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format.")
@click.pass_context
def show_job(ctx: click.Context, job_id: int, json_output: bool) -> None:
    """Show detailed information about a job."""
    job = _scheduler(ctx).get_job(job_id)
    if job is None:
        raise click.ClickException(f"Job not found: {job_id}")

    if json_output:
        _echo_json(job.to_dict())
        return

    status_colored = click.style(
        job.status.value.upper(), fg=JOB_STATUS_COLORS[job.status]
    )
    click.echo(f"\nJob: {job.id}")
    click.echo("-" * 50)
    click.echo(f"  Status:      {status_colored}")
    click.echo(f"  Type:        {job.job_type}")
    click.echo(f"  Priority:    {job.priority}")
    click.echo(f"  Attempts:    {job.attempts}/{job.max_attempts}")
    click.echo("")
    click.echo(f"  Created:     {job.created_at}")
    if job.scheduled_at:
        click.echo(f"  Scheduled:   {job.scheduled_at}")
    if job.started_at:
        click.echo(f"  Started:     {job.started_at}")
    if job.completed_at:
        click.echo(f"  Completed:   {job.completed_at}")
    if job.progress_message:
        click.echo(f"  Progress:    {job.progress_message}")

    if job.error_message:
        click.echo("")
        click.echo(f"  Error:       {click.style(job.error_message, fg='red')}")

    if job.payload:
        click.echo("")
        click.echo("  Payload:")
        for key, value in job.payload.items():
            click.echo(f"    {key}: {value}")

    if job.result_data:
        click.echo("")
        click.echo("  Result:")
        for key, value in job.result_data.items():
            click.echo(f"    {key}: {value}")

    click.echo("")


@jobs_group.command("status")
@click.argument("job_type")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format.")
@click.pass_context
def show_status(ctx: click.Context, job_type: str, json_output: bool) -> None:
    """Show queue statistics for a job type."""
    status = _scheduler(ctx).queue_status(job_type)
    if "error" in status:
        raise click.ClickException(status["error"])

    if json_output:
        _echo_json(status)
        return

    click.echo(f"Queue Status: {job_type}")
    click.echo("-" * 30)
    for job_status in JobStatus:
        label = f"{job_status.value.capitalize()}:"
        click.echo(f"  {label:<12}{status[job_status.value]:>5}")
    click.echo("-" * 30)
    click.echo(f"  {'Total:':<12}{status['total']:>5}")
    click.echo(f"  {'Done:':<12}{status['progress_percentage']:>5}%")
    if status["is_stopped"]:
        click.echo(click.style("  Stopped", fg="red"))
    elif status["is_paused"]:
        click.echo(click.style("  Paused", fg="yellow"))


@jobs_group.command("stats")
@click.argument("job_type")
@click.option("--days", "-d", type=int, default=7, help="Look-back window in days.")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format.")
@click.pass_context
def show_stats(ctx: click.Context, job_type: str, days: int, json_output: bool) -> None:
    """Show completion statistics for a job type."""
    stats = _scheduler(ctx).processing_stats(job_type, days=days)
    if "error" in stats:
        raise click.ClickException(stats["error"])

    if json_output:
        _echo_json(stats)
        return

    click.echo(f"Processing Statistics: {job_type} (last {days} days)")
    click.echo("-" * 40)
    click.echo(f"  Completed:        {stats['completed']}")
    click.echo(f"  Failed:           {stats['failed']}")
    click.echo(f"  Success rate:     {stats['success_rate']}%")
    click.echo(f"  Avg time:         {stats['avg_processing_time']}s")
    click.echo(f"  Avg attempts:     {stats['avg_attempts']}")


@jobs_group.command("health")
@click.option("--force", is_flag=True, help="Bypass the cached report.")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format.")
@click.pass_context
def show_health(ctx: click.Context, force: bool, json_output: bool) -> None:
    """Check queue health."""
    report = _scheduler(ctx).health_check(force=force)

    if json_output:
        _echo_json(report)
    else:
        status = report["status"]
        color = HEALTH_COLORS.get(status, "red")
        click.echo(f"Health: {click.style(status.upper(), fg=color)}")
        metrics = report["metrics"]
        if metrics:
            click.echo(f"  Jobs (window):  {metrics['total_jobs']}")
            click.echo(f"  Failure rate:   {metrics['failure_rate']}%")
            click.echo(f"  Avg attempts:   {metrics['avg_attempts']}")
            click.echo(f"  Stuck jobs:     {metrics['stuck_jobs']}")
        for issue in report["issues"]:
            click.echo(click.style(f"  ! {issue}", fg="yellow"))
        for recommendation in report["recommendations"]:
            click.echo(f"  - {recommendation}")

    if report["status"] != HEALTH_HEALTHY:
        ctx.exit(1)


@jobs_group.command("stop")
@click.argument("job_type")
@click.pass_context
def stop_jobs(ctx: click.Context, job_type: str) -> None:
    """Stop workers from picking up jobs of a type."""
    if not _scheduler(ctx).stop(job_type):
        raise click.ClickException(f"Failed to stop {job_type}")
    click.echo(f"Stop requested for {job_type}.")


@jobs_group.command("pause")
@click.argument("job_type")
@click.pass_context
def pause_jobs(ctx: click.Context, job_type: str) -> None:
    """Pause processing of a job type."""
    if not _scheduler(ctx).pause(job_type):
        raise click.ClickException(f"Failed to pause {job_type}")
    click.echo(f"Pause requested for {job_type}.")


@jobs_group.command("resume")
@click.argument("job_type")
@click.pass_context
def resume_jobs(ctx: click.Context, job_type: str) -> None:
    """Clear stop and pause requests for a job type."""
    if not _scheduler(ctx).resume(job_type):
        raise click.ClickException(f"Failed to resume {job_type}")
    click.echo(f"Resumed {job_type}.")


@jobs_group.command("cancel")
@click.argument("job_id", type=int)
@click.pass_context
def cancel_job_cmd(ctx: click.Context, job_id: int) -> None:
    """Cancel a pending or processing job."""
    scheduler = _scheduler(ctx)
    job = scheduler.get_job(job_id)
    if job is None:
        raise click.ClickException(f"Job not found: {job_id}")

    if scheduler.cancel(job_id):
        click.echo(f"Job {job_id} cancelled.")
    else:
        raise click.ClickException(
            f"Cannot cancel job {job_id} with status {job.status.value}"
        )


@jobs_group.command("retry-failed")
@click.argument("job_type")
@click.pass_context
def retry_failed_cmd(ctx: click.Context, job_type: str) -> None:
    """Requeue all failed jobs of a type."""
    count = _scheduler(ctx).retry_failed(job_type)
    click.echo(f"Requeued {count} failed job(s).")


@jobs_group.command("clear")
@click.argument("job_type")
@click.option(
    "--status",
    "-s",
    type=click.Choice(_STATUS_CHOICES),
    default="all",
    help="Only clear jobs in this status.",
)
@click.option("--yes", "-y", is_flag=True, help="Don't ask for confirmation.")
@click.pass_context
def clear_jobs(ctx: click.Context, job_type: str, status: str, yes: bool) -> None:
    """Delete jobs of a type."""
    if not yes and not click.confirm(f"Clear {status} {job_type} jobs?"):
        click.echo("Cancelled.")
        return

    status_filter = None if status == "all" else JobStatus(status)
    count = _scheduler(ctx).clear_queue(job_type, status_filter)
    click.echo(f"Cleared {count} job(s).")


@jobs_group.command("purge")
@click.option(
    "--days",
    "-d",
    type=click.IntRange(min=1),
    default=None,
    help="Retention period in days (default from config).",
)
@click.pass_context
def purge_jobs(ctx: click.Context, days: int | None) -> None:
    """Delete finished jobs older than the retention period."""
    count = _scheduler(ctx).purge_old_jobs(days)
    click.echo(f"Purged {count} job(s).")


@jobs_group.command("enqueue")
@click.argument("job_type")
@click.option(
    "--widget",
    "-w",
    "widget_spec",
    required=True,
    help="Widget class as 'package.module:ClassName'.",
)
@click.option("--payload", "-p", default=None, help="Job payload as a JSON object.")
@click.option(
    "--priority",
    type=click.IntRange(1, 100),
    default=None,
    help="Priority 1-100 (higher runs first).",
)
@click.pass_context
def enqueue_cmd(
    ctx: click.Context,
    job_type: str,
    widget_spec: str,
    payload: str | None,
    priority: int | None,
) -> None:
    """Queue a job."""
    scheduler = _scheduler(ctx)
    _register_widget(scheduler, job_type, widget_spec)

    data = None
    if payload:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise click.BadParameter(
                f"Invalid JSON: {e}", param_hint="--payload"
            ) from e

    try:
        job_id = scheduler.enqueue(job_type, data, priority=priority)
    except ValidationError as e:
        raise click.ClickException(f"Invalid job: {e}") from e
    click.echo(f"Enqueued job {job_id}.")


@jobs_group.command("run")
@click.argument("job_type")
@click.option(
    "--widget",
    "-w",
    "widget_spec",
    required=True,
    help="Widget class as 'package.module:ClassName'.",
)
@click.option(
    "--populate",
    is_flag=True,
    help="Enqueue the widget's discovered items before processing.",
)
@click.option(
    "--max-jobs",
    "-n",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum number of jobs to execute.",
)
@click.pass_context
def run_cmd(
    ctx: click.Context,
    job_type: str,
    widget_spec: str,
    populate: bool,
    max_jobs: int | None,
) -> None:
    """Process queued jobs of a type until the queue is empty.

    Stops early when the job type is stopped or paused.
    """
    scheduler = _scheduler(ctx)
    _register_widget(scheduler, job_type, widget_spec)

    try:
        if populate:
            added = scheduler.populate_queue(job_type)
            click.echo(f"Enqueued {added} discovered item(s).")
        executed = scheduler.run(job_type, max_jobs=max_jobs)
    except TaskRelayError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Executed {executed} job(s).")
