"""SQLite job store for taskrelay."""

from taskrelay.db.connection import (
    check_database_connectivity,
    execute_with_retry,
    get_connection,
    get_default_db_path,
    open_connection,
)
from taskrelay.db.outbox import ChangeRecord, OutboxConnection
from taskrelay.db.queries import (
    count_jobs_by_status,
    delete_jobs,
    delete_old_jobs,
    get_job,
    get_jobs,
    insert_job,
    select_next_eligible,
    update_job_fields,
    update_job_status,
)
from taskrelay.db.schema import initialize_database
from taskrelay.db.types import Job, JobStatus, from_iso, to_iso, utc_now

__all__ = [
    "ChangeRecord",
    "Job",
    "JobStatus",
    "OutboxConnection",
    "check_database_connectivity",
    "count_jobs_by_status",
    "delete_jobs",
    "delete_old_jobs",
    "execute_with_retry",
    "from_iso",
    "get_connection",
    "get_default_db_path",
    "get_job",
    "get_jobs",
    "initialize_database",
    "insert_job",
    "open_connection",
    "select_next_eligible",
    "to_iso",
    "update_job_fields",
    "update_job_status",
    "utc_now",
]
