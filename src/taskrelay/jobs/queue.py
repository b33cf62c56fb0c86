"""Job queue operations for taskrelay.

This module provides queue operations with SQLite-based job management:
- Compare-and-swap job locking inside BEGIN IMMEDIATE transactions
- Status changes validated against the transition table
- Stale job recovery for abandoned executions
- Aggregate reads for status and health reporting

Mutations go through an OutboxConnection so every change to a job row is
announced on the "job" channel once it is durable.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any

from taskrelay.db.connection import is_lock_error
from taskrelay.db.outbox import OutboxConnection
from taskrelay.db.queries import (
    JOB_COLUMNS,
    count_jobs_by_status,
    delete_jobs,
    delete_old_jobs,
    get_job,
    row_to_job,
)
from taskrelay.db.types import Job, JobStatus, encode_json, to_iso
from taskrelay.jobs.classification import backoff_delay
from taskrelay.jobs.exceptions import LockContentionError, StalenessTimeout
from taskrelay.jobs.transitions import JobEvent, can_transition, transition

logger = logging.getLogger(__name__)

JOBS_TABLE = "jobs"
JOB_ENTITY = "job"

_JSON_COLUMNS = ("payload", "result_data")


def _encode_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    encoded: dict[str, Any] = {}
    for column, value in fields.items():
        if column in _JSON_COLUMNS:
            value = encode_json(value)
        elif isinstance(value, JobStatus):
            value = value.value
        encoded[column] = value
    return encoded


def enqueue_job(outbox: OutboxConnection, job: Job) -> int:
    """Insert a new job row.

    Returns:
        The new job ID.
    """
    row = _encode_fields(job.to_dict())
    row.pop("id")
    return outbox.insert(JOBS_TABLE, row, entity=JOB_ENTITY)


def claim_job(outbox: OutboxConnection, job_id: int, now: datetime) -> Job:
    """Lock a pending job for processing.

    Re-reads the status inside a write transaction and only moves the job
    to processing if it is still pending. Of several concurrent callers,
    exactly one succeeds.

    Args:
        outbox: Outbox-wrapped database connection.
        job_id: Job to lock.
        now: Current time.

    Returns:
        The locked job.

    Raises:
        LockContentionError: If the job is no longer pending or the database
            was too busy to take the write lock.
    """
    timestamp = to_iso(now)
    target = transition(JobStatus.PENDING, JobEvent.LOCK).next_status

    try:
        with outbox.transaction():
            row = outbox.conn.execute(
                "SELECT status FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()
            if row is None or row[0] != JobStatus.PENDING.value:
                raise LockContentionError(job_id)

            updated = outbox.update(
                JOBS_TABLE,
                {
                    "status": target.value,
                    "started_at": timestamp,
                    "updated_at": timestamp,
                    "progress_message": "Job locked for processing",
                },
                {"id": job_id, "status": JobStatus.PENDING.value},
                entity=JOB_ENTITY,
                changed_columns=["status", "started_at", "progress_message"],
            )
            if updated != 1:
                raise LockContentionError(job_id)
    except sqlite3.OperationalError as e:
        if is_lock_error(e):
            logger.warning("Lock contention while claiming job %d: %s", job_id, e)
            raise LockContentionError(job_id, str(e)) from e
        logger.error("Database operational error while claiming job %d: %s", job_id, e)
        raise

    job = get_job(outbox.conn, job_id)
    if job is None:
        raise LockContentionError(job_id, f"Job {job_id} vanished after locking")
    return job


def release_job_lock(outbox: OutboxConnection, job_id: int, now: datetime) -> bool:
    """Touch a job that is still processing after its execution ended.

    A job that has already moved past processing is left untouched.

    Returns:
        True if the job was still processing.
    """
    updated = outbox.update(
        JOBS_TABLE,
        {"updated_at": to_iso(now), "progress_message": "Job lock released"},
        {"id": job_id, "status": JobStatus.PROCESSING.value},
        entity=JOB_ENTITY,
    )
    return updated > 0


def apply_transition(
    outbox: OutboxConnection,
    job: Job,
    event: JobEvent,
    now: datetime,
    fields: Mapping[str, Any] | None = None,
) -> bool:
    """Move a job to the status the transition table dictates.

    The update only applies while the row still has job.status, so a
    concurrent change is never overwritten.

    Raises:
        InvalidTransitionError: If event is not allowed from job.status.

    Returns:
        True if the row was updated.
    """
    step = transition(job.status, event)
    data = _encode_fields(fields or {})
    data["status"] = step.next_status.value
    data["updated_at"] = to_iso(now)

    updated = outbox.update(
        JOBS_TABLE,
        data,
        {"id": job.id, "status": job.status.value},
        entity=JOB_ENTITY,
    )
    if not updated:
        logger.warning(
            "Job %s changed concurrently; %s not applied", job.id, event.value
        )
    return updated > 0


def find_stale_jobs(conn: sqlite3.Connection, cutoff: datetime) -> list[Job]:
    """Jobs in processing whose started_at is before the cutoff."""
    cursor = conn.execute(
        f"""
        SELECT {JOB_COLUMNS} FROM jobs
        WHERE status = 'processing'
            AND started_at IS NOT NULL
            AND started_at < ?
        ORDER BY started_at ASC
        """,
        (to_iso(cutoff),),
    )
    return [row_to_job(row) for row in cursor.fetchall()]


def recover_stale_jobs(
    outbox: OutboxConnection,
    now: datetime,
    threshold_seconds: int = 600,
    base_delay: int = 30,
    max_delay: int = 300,
) -> tuple[int, int]:
    """Recover jobs abandoned in processing.

    A stale job with attempts left goes back to pending with a backoff
    delay; one at its attempt ceiling is marked failed.

    Args:
        outbox: Outbox-wrapped database connection.
        now: Current time.
        threshold_seconds: Processing time after which a job is stale.
        base_delay: Backoff base in seconds.
        max_delay: Backoff cap in seconds.

    Returns:
        Tuple of (rescheduled, failed) counts.
    """
    minutes = threshold_seconds // 60
    rescheduled = failed = 0

    for job in find_stale_jobs(outbox.conn, now - timedelta(seconds=threshold_seconds)):
        stale = StalenessTimeout(job.id, minutes)
        if job.attempts < job.max_attempts:
            delay = backoff_delay(job.attempts, base_delay, max_delay)
            ok = apply_transition(
                outbox,
                job,
                JobEvent.STALE_RETRY,
                now,
                {
                    "started_at": None,
                    "attempts": job.attempts + 1,
                    "scheduled_at": to_iso(now + timedelta(seconds=delay)),
                    "progress_message": (
                        f"Auto-recovered after {minutes} minutes, "
                        f"retry in {delay} seconds"
                    ),
                },
            )
            if ok:
                rescheduled += 1
                logger.warning("%s; rescheduled in %d seconds", stale, delay)
        else:
            ok = apply_transition(
                outbox,
                job,
                JobEvent.STALE_FAIL,
                now,
                {
                    "attempts": job.attempts + 1,
                    "completed_at": to_iso(now),
                    "error_message": (
                        f"Job timed out after {minutes} minutes and exceeded "
                        f"maximum retry attempts ({job.max_attempts})"
                    ),
                },
            )
            if ok:
                failed += 1
                logger.error("%s; attempts exhausted, marked failed", stale)

    if rescheduled or failed:
        logger.info(
            "Recovered %d stale job(s), failed %d", rescheduled, failed
        )
    return rescheduled, failed


def cancel_job(outbox: OutboxConnection, job_id: int, now: datetime) -> bool:
    """Move a pending or processing job to paused.

    Returns:
        True if the job was cancelled, False if not found or not cancellable.
    """
    job = get_job(outbox.conn, job_id)
    if job is None or not can_transition(job.status, JobEvent.CANCEL):
        return False
    return apply_transition(
        outbox, job, JobEvent.CANCEL, now, {"progress_message": "Job cancelled"}
    )


def reset_failed_jobs(outbox: OutboxConnection, job_type: str, now: datetime) -> int:
    """Return all failed jobs of a type to pending with a fresh attempt count.

    Returns:
        Number of jobs reset.
    """
    target = transition(JobStatus.FAILED, JobEvent.RESET).next_status

    def _reset(conn: sqlite3.Connection) -> int:
        cursor = conn.execute(
            """
            UPDATE jobs
            SET status = ?,
                attempts = 0,
                error_message = NULL,
                started_at = NULL,
                completed_at = NULL,
                scheduled_at = NULL,
                progress_message = 'Queued for retry',
                updated_at = ?
            WHERE job_type = ? AND status = 'failed'
            """,
            (target.value, to_iso(now), job_type),
        )
        return cursor.rowcount

    return outbox.bulk_operation("retry_failed", _reset, entity=JOB_ENTITY)


def clear_jobs(
    outbox: OutboxConnection, job_type: str, status: JobStatus | None = None
) -> int:
    """Delete jobs of a type, optionally only those in one status."""
    return outbox.bulk_operation(
        "clear_queue",
        lambda conn: delete_jobs(conn, job_type, status),
        entity=JOB_ENTITY,
    )


def purge_old_jobs(
    outbox: OutboxConnection,
    now: datetime,
    retention_days: int,
    *,
    include_paused: bool = False,
) -> int:
    """Delete finished jobs older than the retention period.

    Args:
        outbox: Outbox-wrapped database connection.
        now: Current time.
        retention_days: Days to retain jobs before purging.
        include_paused: Also purge cancelled (paused) jobs.

    Returns:
        Number of jobs deleted.
    """
    cutoff = to_iso(now - timedelta(days=retention_days))
    count = outbox.bulk_operation(
        "purge",
        lambda conn: delete_old_jobs(conn, cutoff, include_paused=include_paused),
        entity=JOB_ENTITY,
    )
    if count:
        logger.info("Purged %d job(s) older than %d days", count, retention_days)
    return count


def get_queue_stats(
    conn: sqlite3.Connection, job_type: str | None = None
) -> dict[str, int]:
    """Get queue statistics.

    Returns:
        Dictionary with counts per status plus 'total'.
    """
    stats = count_jobs_by_status(conn, job_type)
    stats["total"] = sum(stats.values())
    return stats


def get_health_metrics(conn: sqlite3.Connection, since: datetime) -> dict[str, Any]:
    """Aggregate job counts and average attempts for jobs created since."""
    row = conn.execute(
        """
        SELECT
            COUNT(*),
            SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END),
            SUM(CASE WHEN status = 'processing' THEN 1 ELSE 0 END),
            SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END),
            SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END),
            AVG(attempts)
        FROM jobs
        WHERE created_at >= ?
        """,
        (to_iso(since),),
    ).fetchone()
    return {
        "total_jobs": row[0] or 0,
        "pending_jobs": row[1] or 0,
        "processing_jobs": row[2] or 0,
        "completed_jobs": row[3] or 0,
        "failed_jobs": row[4] or 0,
        "avg_attempts": round(row[5] or 0.0, 2),
    }


def count_stuck_jobs(conn: sqlite3.Connection, cutoff: datetime) -> int:
    """Count jobs in processing that started before the cutoff."""
    row = conn.execute(
        """
        SELECT COUNT(*) FROM jobs
        WHERE status = 'processing' AND started_at < ?
        """,
        (to_iso(cutoff),),
    ).fetchone()
    return row[0] or 0


def get_processing_stats(
    conn: sqlite3.Connection, job_type: str, since: datetime
) -> dict[str, Any]:
    """Completion statistics for one job type since a point in time."""
    row = conn.execute(
        """
        SELECT
            SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END),
            SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END),
            AVG(CASE WHEN status = 'completed'
                THEN json_extract(result_data, '$.processing_time') END),
            AVG(attempts)
        FROM jobs
        WHERE job_type = ? AND updated_at >= ?
        """,
        (job_type, to_iso(since)),
    ).fetchone()
    completed = row[0] or 0
    failed = row[1] or 0
    finished = completed + failed
    return {
        "job_type": job_type,
        "completed": completed,
        "failed": failed,
        "avg_processing_time": round(row[2] or 0.0, 3),
        "avg_attempts": round(row[3] or 0.0, 2),
        "success_rate": round(completed / finished * 100, 1) if finished else 0.0,
    }
