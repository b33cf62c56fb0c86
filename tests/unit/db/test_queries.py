"""Unit tests for job store queries."""

import sqlite3

import pytest

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
from taskrelay.db.schema import SCHEMA_VERSION, get_schema_version, initialize_database
from taskrelay.db.types import Job, JobStatus, decode_json, encode_json

NOW = "2024-06-01T12:00:00.000000+00:00"


def create_test_job(
    job_type: str = "report",
    status: JobStatus = JobStatus.PENDING,
    priority: int = 10,
    created_at: str = NOW,
    **kwargs,
) -> Job:
    """Create a test job with defaults."""
    return Job(
        id=None,
        job_type=job_type,
        status=status,
        priority=priority,
        attempts=kwargs.pop("attempts", 0),
        max_attempts=kwargs.pop("max_attempts", 3),
        payload=kwargs.pop("payload", {"report_id": 1}),
        created_at=created_at,
        updated_at=kwargs.pop("updated_at", created_at),
        **kwargs,
    )


class TestSchema:
    """Tests for schema initialization."""

    def test_creates_tables(self, db_conn):
        """All tables exist after initialization."""
        tables = {
            row[0]
            for row in db_conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table'"
            )
        }
        assert {"_meta", "jobs", "job_control"} <= tables

    def test_records_schema_version(self, db_conn):
        """Schema version is stored in _meta."""
        assert get_schema_version(db_conn) == SCHEMA_VERSION

    def test_initialize_is_idempotent(self, db_conn):
        """Initializing twice keeps existing rows."""
        insert_job(db_conn, create_test_job())
        db_conn.commit()

        initialize_database(db_conn)

        assert db_conn.execute("SELECT COUNT(*) FROM jobs").fetchone()[0] == 1

    def test_fresh_database_has_no_version(self):
        """A database without _meta reports no version."""
        conn = sqlite3.connect(":memory:")
        assert get_schema_version(conn) is None
        conn.close()

    def test_rejects_invalid_priority(self, db_conn):
        """Priority outside 1-100 violates the table constraint."""
        with pytest.raises(sqlite3.IntegrityError):
            insert_job(db_conn, create_test_job(priority=101))


class TestInsertAndGet:
    """Tests for insert_job and get_job."""

    def test_round_trips_fields(self, db_conn):
        """Stored job reads back with decoded JSON columns."""
        job_id = insert_job(
            db_conn,
            create_test_job(
                payload={"report_id": 7, "tags": ["a"]},
                result_data={"success": True},
                created_by=3,
            ),
        )
        db_conn.commit()

        job = get_job(db_conn, job_id)

        assert job.id == job_id
        assert job.status == JobStatus.PENDING
        assert job.payload == {"report_id": 7, "tags": ["a"]}
        assert job.result_data == {"success": True}
        assert job.created_by == 3

    def test_missing_job_returns_none(self, db_conn):
        """Unknown id returns None."""
        assert get_job(db_conn, 999) is None

    def test_does_not_commit(self, db_conn):
        """insert_job leaves the transaction open."""
        insert_job(db_conn, create_test_job())
        assert db_conn.in_transaction
        db_conn.rollback()
        assert db_conn.execute("SELECT COUNT(*) FROM jobs").fetchone()[0] == 0


class TestSelectNextEligible:
    """Tests for select_next_eligible."""

    def test_highest_priority_first(self, db_conn):
        """Higher priority number wins."""
        insert_job(db_conn, create_test_job(priority=5))
        high = insert_job(db_conn, create_test_job(priority=50))
        db_conn.commit()

        assert select_next_eligible(db_conn, "report", NOW).id == high

    def test_oldest_first_for_same_priority(self, db_conn):
        """Older created_at wins among equal priorities."""
        insert_job(db_conn, create_test_job(created_at=NOW))
        older = insert_job(
            db_conn, create_test_job(created_at="2024-06-01T11:00:00.000000+00:00")
        )
        db_conn.commit()

        assert select_next_eligible(db_conn, "report", NOW).id == older

    def test_skips_future_scheduled(self, db_conn):
        """Jobs scheduled after now are not eligible."""
        insert_job(
            db_conn, create_test_job(scheduled_at="2024-06-01T12:05:00.000000+00:00")
        )
        db_conn.commit()

        assert select_next_eligible(db_conn, "report", NOW) is None

    def test_includes_due_scheduled(self, db_conn):
        """Jobs scheduled at or before now are eligible."""
        job_id = insert_job(db_conn, create_test_job(scheduled_at=NOW))
        db_conn.commit()

        assert select_next_eligible(db_conn, "report", NOW).id == job_id

    def test_skips_exhausted_attempts(self, db_conn):
        """Jobs at their attempt ceiling are not eligible."""
        insert_job(db_conn, create_test_job(attempts=3, max_attempts=3))
        db_conn.commit()

        assert select_next_eligible(db_conn, "report", NOW) is None

    def test_filters_by_type_and_status(self, db_conn):
        """Only pending jobs of the requested type are considered."""
        insert_job(db_conn, create_test_job(job_type="email"))
        insert_job(db_conn, create_test_job(status=JobStatus.PAUSED))
        insert_job(db_conn, create_test_job(status=JobStatus.PROCESSING))
        db_conn.commit()

        assert select_next_eligible(db_conn, "report", NOW) is None


class TestGetJobs:
    """Tests for get_jobs filtering and ordering."""

    def test_filters(self, db_conn):
        """Filters combine with AND."""
        insert_job(db_conn, create_test_job(created_by=1))
        insert_job(db_conn, create_test_job(created_by=2))
        insert_job(db_conn, create_test_job(job_type="email", created_by=1))
        insert_job(db_conn, create_test_job(status=JobStatus.FAILED, created_by=1))
        db_conn.commit()

        jobs = get_jobs(
            db_conn, job_type="report", status=JobStatus.PENDING, created_by=1
        )

        assert len(jobs) == 1
        assert jobs[0].created_by == 1

    def test_unknown_order_by_falls_back(self, db_conn):
        """An unknown column orders by created_at instead of failing."""
        first = insert_job(
            db_conn, create_test_job(created_at="2024-06-01T10:00:00.000000+00:00")
        )
        second = insert_job(db_conn, create_test_job())
        db_conn.commit()

        jobs = get_jobs(db_conn, order_by="payload; DROP TABLE jobs", order="asc")

        assert [j.id for j in jobs] == [first, second]

    def test_limit_is_clamped(self, db_conn):
        """Limit below 1 still returns one row."""
        insert_job(db_conn, create_test_job())
        insert_job(db_conn, create_test_job())
        db_conn.commit()

        assert len(get_jobs(db_conn, limit=0)) == 1

    def test_offset(self, db_conn):
        """Offset skips rows."""
        for _ in range(3):
            insert_job(db_conn, create_test_job())
        db_conn.commit()

        assert len(get_jobs(db_conn, limit=10, offset=2)) == 1


class TestUpdates:
    """Tests for update_job_fields and update_job_status."""

    def test_guarded_update_requires_status(self, db_conn):
        """expected_status blocks the update when the row has moved on."""
        job_id = insert_job(db_conn, create_test_job())

        updated = update_job_fields(
            db_conn,
            job_id,
            {"status": JobStatus.COMPLETED},
            expected_status=JobStatus.PROCESSING,
        )

        assert updated is False
        assert get_job(db_conn, job_id).status == JobStatus.PENDING

    def test_encodes_json_columns(self, db_conn):
        """result_data is stored as JSON."""
        job_id = insert_job(db_conn, create_test_job())

        update_job_fields(db_conn, job_id, {"result_data": {"rows": 3}})

        assert get_job(db_conn, job_id).result_data == {"rows": 3}

    def test_update_status(self, db_conn):
        """update_job_status sets status and messages."""
        job_id = insert_job(db_conn, create_test_job())

        assert update_job_status(
            db_conn, job_id, JobStatus.PAUSED, NOW, progress_message="Held"
        )
        job = get_job(db_conn, job_id)
        assert job.status == JobStatus.PAUSED
        assert job.progress_message == "Held"

    def test_update_status_missing_job(self, db_conn):
        """Returns False for an unknown id."""
        assert update_job_status(db_conn, 42, JobStatus.PAUSED, NOW) is False


class TestCountsAndDeletes:
    """Tests for aggregate counts and deletes."""

    def test_counts_are_zero_filled(self, db_conn):
        """Every status appears in the result."""
        insert_job(db_conn, create_test_job())
        db_conn.commit()

        counts = count_jobs_by_status(db_conn, "report")

        assert counts == {
            "pending": 1,
            "processing": 0,
            "completed": 0,
            "failed": 0,
            "paused": 0,
        }

    def test_delete_jobs_by_status(self, db_conn):
        """Only jobs in the given status are deleted."""
        insert_job(db_conn, create_test_job())
        insert_job(db_conn, create_test_job(status=JobStatus.FAILED))
        db_conn.commit()

        assert delete_jobs(db_conn, "report", JobStatus.FAILED) == 1
        assert count_jobs_by_status(db_conn)["pending"] == 1

    def test_delete_old_jobs_excludes_paused_by_default(self, db_conn):
        """Paused jobs survive purge unless include_paused is set."""
        old = "2024-01-01T00:00:00.000000+00:00"
        for status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PAUSED):
            insert_job(db_conn, create_test_job(status=status, created_at=old))
        insert_job(db_conn, create_test_job(status=JobStatus.PENDING, created_at=old))
        db_conn.commit()

        assert delete_old_jobs(db_conn, NOW) == 2
        assert delete_old_jobs(db_conn, NOW, include_paused=True) == 1
        assert count_jobs_by_status(db_conn)["pending"] == 1

    def test_delete_old_jobs_keeps_recent(self, db_conn):
        """Jobs updated after the cutoff are kept."""
        insert_job(db_conn, create_test_job(status=JobStatus.COMPLETED))
        db_conn.commit()

        assert delete_old_jobs(db_conn, "2024-05-01T00:00:00.000000+00:00") == 0


class TestJsonColumns:
    """Tests for JSON column helpers."""

    def test_corrupt_json_is_preserved(self):
        """Undecodable values come back wrapped instead of raising."""
        assert decode_json("{not json") == {"raw": "{not json"}

    def test_non_object_json_is_wrapped(self):
        """A JSON scalar is wrapped in a dict."""
        assert decode_json("5") == {"value": 5}

    def test_none_passthrough(self):
        """None encodes and decodes as None."""
        assert encode_json(None) is None
        assert decode_json(None) is None
