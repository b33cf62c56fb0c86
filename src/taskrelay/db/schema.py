"""Database schema definition for taskrelay.

This module contains the schema DDL and schema creation logic for the
job store.
"""

import sqlite3

SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS _meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

-- Job queue
CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    priority INTEGER NOT NULL DEFAULT 10,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,

    -- Job-type specific input (JSON)
    payload TEXT,

    -- Timing
    scheduled_at TEXT,
    started_at TEXT,
    completed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,

    -- Outcome
    error_message TEXT,
    progress_message TEXT,
    result_data TEXT,

    created_by INTEGER,

    CONSTRAINT valid_status CHECK (
        status IN ('pending', 'processing', 'completed', 'failed', 'paused')
    ),
    CONSTRAINT valid_priority CHECK (
        priority >= 1 AND priority <= 100
    ),
    CONSTRAINT valid_attempts CHECK (
        attempts >= 0 AND max_attempts >= 1
    )
);

CREATE INDEX IF NOT EXISTS idx_jobs_eligible
    ON jobs(job_type, status, priority, created_at);
CREATE INDEX IF NOT EXISTS idx_jobs_status_started ON jobs(status, started_at);
CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs(created_at);

-- Cooperative stop/pause flags per job type
CREATE TABLE IF NOT EXISTS job_control (
    job_type TEXT NOT NULL,
    flag TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    PRIMARY KEY (job_type, flag),
    CONSTRAINT valid_flag CHECK (flag IN ('stop', 'pause'))
);
"""


def get_schema_version(conn: sqlite3.Connection) -> int | None:
    """Return the stored schema version, or None for a fresh database."""
    try:
        row = conn.execute(
            "SELECT value FROM _meta WHERE key = 'schema_version'"
        ).fetchone()
    except sqlite3.OperationalError:
        return None
    return int(row[0]) if row else None


def initialize_database(conn: sqlite3.Connection) -> None:
    """Create the database schema if it doesn't exist.

    Safe to call repeatedly.

    Args:
        conn: An open database connection.
    """
    if get_schema_version(conn) == SCHEMA_VERSION:
        return

    conn.executescript(SCHEMA_SQL)
    conn.execute(
        "INSERT OR IGNORE INTO _meta (key, value) VALUES ('schema_version', ?)",
        (str(SCHEMA_VERSION),),
    )
    # executescript() commits implicitly; the INSERT above opens a new
    # implicit transaction that must be closed before BEGIN IMMEDIATE.
    conn.commit()
