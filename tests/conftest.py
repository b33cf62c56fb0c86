"""Shared test fixtures for taskrelay."""

from __future__ import annotations

import os
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from taskrelay.db.connection import open_connection
from taskrelay.db.schema import initialize_database
from taskrelay.events.channels import channel_for
from taskrelay.events.emitter import EventEmitter, set_event_emitter
from taskrelay.events.registry import ListenerRegistry
from taskrelay.metrics import get_metrics_store


class FakeClock:
    """Controllable wall clock and monotonic clock for tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
        self.elapsed = 0.0

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return self.elapsed

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)
        self.elapsed += seconds


@pytest.fixture
def db_conn():
    """Create an in-memory database with schema."""
    conn = open_connection(":memory:")
    initialize_database(conn)
    yield conn
    conn.close()


@pytest.fixture
def file_db(tmp_path):
    """Path to an initialized on-disk database (for multi-connection tests)."""
    db_path = tmp_path / "jobs.db"
    conn = open_connection(db_path)
    initialize_database(conn)
    conn.close()
    return db_path


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> ListenerRegistry:
    return ListenerRegistry()


@pytest.fixture
def emitter(registry: ListenerRegistry) -> EventEmitter:
    """Emitter with an isolated registry."""
    return EventEmitter(registry=registry)


@pytest.fixture
def job_events(emitter: EventEmitter) -> list[dict[str, Any]]:
    """Collect every payload dispatched on the job channel."""
    received: list[dict[str, Any]] = []
    emitter.registry.subscribe(channel_for("job"), received.append)
    return received


@pytest.fixture(autouse=True)
def isolated_globals(tmp_path):
    """Reset process-wide state and keep config lookups away from $HOME."""
    get_metrics_store().clear()
    set_event_emitter(None)
    env = {"TASKRELAY_CONFIG_PATH": str(tmp_path / "missing-config.toml")}
    with patch.dict(os.environ, env):
        yield
    get_metrics_store().clear()
    set_event_emitter(None)


def insert_raw_job(conn: sqlite3.Connection, **overrides: Any) -> int:
    """Insert a job row directly, bypassing the scheduler."""
    now = "2024-06-01T12:00:00.000000+00:00"
    row: dict[str, Any] = {
        "job_type": "report",
        "status": "pending",
        "priority": 10,
        "attempts": 0,
        "max_attempts": 3,
        "payload": None,
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    columns = ", ".join(row)
    placeholders = ", ".join("?" for _ in row)
    cursor = conn.execute(
        f"INSERT INTO jobs ({columns}) VALUES ({placeholders})", list(row.values())
    )
    conn.commit()
    return int(cursor.lastrowid)


@pytest.fixture
def raw_job():
    """Factory inserting job rows directly: raw_job(conn, status=..., ...)."""
    return insert_raw_job


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()
