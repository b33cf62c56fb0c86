"""Job store queries.

Parameterized reads and writes against the jobs table. None of these
functions commit; callers own the transaction.
"""

from __future__ import annotations

import sqlite3
from typing import Any

from taskrelay.db.types import Job, JobStatus, decode_json, encode_json

JOB_COLUMNS = """
    id, job_type, status, priority, attempts, max_attempts, payload,
    scheduled_at, started_at, completed_at, created_at, updated_at,
    error_message, progress_message, result_data, created_by
"""

# Columns accepted by get_jobs() for ordering
ALLOWED_ORDER_BY = frozenset(
    {
        "id",
        "job_type",
        "status",
        "priority",
        "attempts",
        "created_at",
        "updated_at",
        "scheduled_at",
        "started_at",
        "completed_at",
    }
)

MAX_QUERY_LIMIT = 1000


def row_to_job(row: sqlite3.Row) -> Job:
    """Convert a database row to a Job object.

    Args:
        row: sqlite3.Row from a SELECT query on the jobs table.

    Returns:
        Job instance populated from the row.
    """
    return Job(
        id=row["id"],
        job_type=row["job_type"],
        status=JobStatus(row["status"]),
        priority=row["priority"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        payload=decode_json(row["payload"]),
        scheduled_at=row["scheduled_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        error_message=row["error_message"],
        progress_message=row["progress_message"],
        result_data=decode_json(row["result_data"]),
        created_by=row["created_by"],
    )


def insert_job(conn: sqlite3.Connection, job: Job) -> int:
    """Insert a new job record.

    Args:
        conn: Database connection.
        job: Job to insert (its id is ignored).

    Returns:
        The ID of the inserted job.

    Note:
        This function does NOT commit. Caller must manage transactions.
    """
    cursor = conn.execute(
        """
        INSERT INTO jobs (
            job_type, status, priority, attempts, max_attempts, payload,
            scheduled_at, started_at, completed_at, created_at, updated_at,
            error_message, progress_message, result_data, created_by
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            job.job_type,
            job.status.value,
            job.priority,
            job.attempts,
            job.max_attempts,
            encode_json(job.payload),
            job.scheduled_at,
            job.started_at,
            job.completed_at,
            job.created_at,
            job.updated_at,
            job.error_message,
            job.progress_message,
            encode_json(job.result_data),
            job.created_by,
        ),
    )
    return int(cursor.lastrowid)


def get_job(conn: sqlite3.Connection, job_id: int) -> Job | None:
    """Get a job by ID.

    Returns:
        Job if found, None otherwise.
    """
    cursor = conn.execute(f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,))
    row = cursor.fetchone()
    if row is None:
        return None
    return row_to_job(row)


def get_jobs(
    conn: sqlite3.Connection,
    *,
    job_type: str | None = None,
    status: JobStatus | None = None,
    created_by: int | None = None,
    order_by: str = "created_at",
    order: str = "desc",
    limit: int = 50,
    offset: int = 0,
) -> list[Job]:
    """Get jobs with filtering and ordering.

    Unknown order_by columns fall back to created_at; limit is clamped
    to 1-1000.

    Args:
        conn: Database connection.
        job_type: Filter by job type (None = all types).
        status: Filter by status (None = all statuses).
        created_by: Filter by creating user (None = all users).
        order_by: Column to order by.
        order: 'asc' or 'desc'.
        limit: Maximum number of jobs to return.
        offset: Number of jobs to skip.

    Returns:
        List of Job objects.
    """
    conditions: list[str] = []
    params: list[Any] = []

    if job_type is not None:
        conditions.append("job_type = ?")
        params.append(job_type)
    if status is not None:
        conditions.append("status = ?")
        params.append(status.value)
    if created_by is not None:
        conditions.append("created_by = ?")
        params.append(created_by)

    if order_by not in ALLOWED_ORDER_BY:
        order_by = "created_at"
    direction = "ASC" if order.casefold() == "asc" else "DESC"
    limit = max(1, min(MAX_QUERY_LIMIT, int(limit)))
    offset = max(0, int(offset))

    where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
    query = (
        f"SELECT {JOB_COLUMNS} FROM jobs {where} "
        f"ORDER BY {order_by} {direction}, id {direction} LIMIT ? OFFSET ?"
    )
    params.extend([limit, offset])
    cursor = conn.execute(query, params)
    return [row_to_job(row) for row in cursor.fetchall()]


def select_next_eligible(
    conn: sqlite3.Connection, job_type: str, now: str
) -> Job | None:
    """Select the single best eligible pending job of a type.

    Eligible means pending, under the attempt ceiling, and not scheduled
    in the future. Highest priority wins, then oldest.
    """
    cursor = conn.execute(
        f"""
        SELECT {JOB_COLUMNS} FROM jobs
        WHERE job_type = ?
            AND status = 'pending'
            AND attempts < max_attempts
            AND (scheduled_at IS NULL OR scheduled_at <= ?)
        ORDER BY priority DESC, created_at ASC, id ASC
        LIMIT 1
        """,
        (job_type, now),
    )
    row = cursor.fetchone()
    return row_to_job(row) if row else None


def update_job_fields(
    conn: sqlite3.Connection,
    job_id: int,
    fields: dict[str, Any],
    *,
    expected_status: JobStatus | None = None,
) -> bool:
    """Update arbitrary job columns, optionally guarded by current status.

    Args:
        conn: Database connection.
        job_id: Job ID.
        fields: Column -> value mapping. JSON columns are encoded.
        expected_status: If set, only update while the row has this status.

    Returns:
        True if a row was updated.
    """
    assignments = []
    params: list[Any] = []
    for column, value in fields.items():
        if column in ("payload", "result_data"):
            value = encode_json(value)
        elif isinstance(value, JobStatus):
            value = value.value
        assignments.append(f"{column} = ?")
        params.append(value)

    query = f"UPDATE jobs SET {', '.join(assignments)} WHERE id = ?"
    params.append(job_id)
    if expected_status is not None:
        query += " AND status = ?"
        params.append(expected_status.value)

    cursor = conn.execute(query, params)
    return cursor.rowcount > 0


def update_job_status(
    conn: sqlite3.Connection,
    job_id: int,
    status: JobStatus,
    updated_at: str,
    error_message: str | None = None,
    progress_message: str | None = None,
) -> bool:
    """Update a job's status.

    Returns:
        True if job was updated, False if not found.
    """
    fields: dict[str, Any] = {"status": status, "updated_at": updated_at}
    if error_message is not None:
        fields["error_message"] = error_message
    if progress_message is not None:
        fields["progress_message"] = progress_message
    return update_job_fields(conn, job_id, fields)


def count_jobs_by_status(
    conn: sqlite3.Connection, job_type: str | None = None
) -> dict[str, int]:
    """Count jobs grouped by status.

    Returns:
        Dictionary with a count for every status (zero when absent).
    """
    counts = {status.value: 0 for status in JobStatus}
    if job_type is None:
        cursor = conn.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status")
    else:
        cursor = conn.execute(
            "SELECT status, COUNT(*) FROM jobs WHERE job_type = ? GROUP BY status",
            (job_type,),
        )
    for status, count in cursor.fetchall():
        counts[status] = count
    return counts


def delete_jobs(
    conn: sqlite3.Connection, job_type: str, status: JobStatus | None = None
) -> int:
    """Delete jobs of a type, optionally restricted to one status.

    Returns:
        Number of rows deleted.
    """
    if status is None:
        cursor = conn.execute("DELETE FROM jobs WHERE job_type = ?", (job_type,))
    else:
        cursor = conn.execute(
            "DELETE FROM jobs WHERE job_type = ? AND status = ?",
            (job_type, status.value),
        )
    return cursor.rowcount


def delete_old_jobs(
    conn: sqlite3.Connection, cutoff: str, *, include_paused: bool = False
) -> int:
    """Delete finished jobs last updated before the cutoff.

    Args:
        conn: Database connection.
        cutoff: ISO-8601 UTC timestamp.
        include_paused: Also delete cancelled (paused) jobs.

    Returns:
        Number of rows deleted.
    """
    statuses = [JobStatus.COMPLETED.value, JobStatus.FAILED.value]
    if include_paused:
        statuses.append(JobStatus.PAUSED.value)
    placeholders = ", ".join("?" for _ in statuses)
    cursor = conn.execute(
        f"DELETE FROM jobs WHERE status IN ({placeholders}) AND updated_at < ?",
        (*statuses, cutoff),
    )
    return cursor.rowcount
