"""Cooperative cancellation for the scheduler.

Cancellation is only observed between jobs. A running execution is never
interrupted; a cancelled token only stops the next one from starting.

Stop and pause flags are stored in the job_control table so an admin
process can halt a worker running elsewhere. Flags expire after a TTL.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable
from datetime import datetime, timedelta

from taskrelay.db.connection import execute_with_retry
from taskrelay.db.types import from_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_FLAG_TTL = 3600  # 1 hour

FLAG_STOP = "stop"
FLAG_PAUSE = "pause"


class CancellationToken:
    """Token checked by the scheduler before it selects a job.

    A token is cancelled either explicitly via cancel() or when its
    optional condition returns a reason.

    Args:
        condition: Callable returning a reason string when work should stop,
            or None to continue.
    """

    def __init__(self, condition: Callable[[], str | None] | None = None) -> None:
        self._event = threading.Event()
        self._reason: str | None = None
        self._condition = condition

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation."""
        self._reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._condition is not None:
            reason = self._condition()
            if reason:
                self._reason = reason
                return True
        return False

    @property
    def reason(self) -> str | None:
        """Why the token was cancelled, once it has been."""
        return self._reason


class ControlFlags:
    """Per job type stop/pause flags that expire after a TTL.

    Args:
        conn: Database connection holding the job_control table.
        ttl_seconds: Lifetime of a flag once set.
        clock: Time source (injectable for tests).
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        ttl_seconds: int = DEFAULT_FLAG_TTL,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.conn = conn
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def stop(self, job_type: str) -> None:
        self._set(job_type, FLAG_STOP)
        logger.info("Stop requested for %s jobs", job_type)

    def pause(self, job_type: str) -> None:
        self._set(job_type, FLAG_PAUSE)
        logger.info("Pause requested for %s jobs", job_type)

    def resume(self, job_type: str) -> None:
        """Clear both the stop and pause flag for a job type."""

        def _delete() -> None:
            self.conn.execute(
                "DELETE FROM job_control WHERE job_type = ?", (job_type,)
            )
            self.conn.commit()

        execute_with_retry(_delete)
        logger.info("Resumed %s jobs", job_type)

    def is_stopped(self, job_type: str) -> bool:
        return self._is_set(job_type, FLAG_STOP)

    def is_paused(self, job_type: str) -> bool:
        return self._is_set(job_type, FLAG_PAUSE)

    def reason(self, job_type: str) -> str | None:
        """Return 'stopped' or 'paused' if a flag is active, else None."""
        if self.is_stopped(job_type):
            return "stopped"
        if self.is_paused(job_type):
            return "paused"
        return None

    def token_for(self, job_type: str) -> CancellationToken:
        """Create a token that cancels while a flag for job_type is active."""
        return CancellationToken(lambda: self.reason(job_type))

    def _set(self, job_type: str, flag: str) -> None:
        expires_at = self._clock() + timedelta(seconds=self.ttl_seconds)

        def _write() -> None:
            self.conn.execute(
                """
                INSERT OR REPLACE INTO job_control (job_type, flag, expires_at)
                VALUES (?, ?, ?)
                """,
                (job_type, flag, to_iso(expires_at)),
            )
            self.conn.commit()

        execute_with_retry(_write)

    def _is_set(self, job_type: str, flag: str) -> bool:
        row = self.conn.execute(
            "SELECT expires_at FROM job_control WHERE job_type = ? AND flag = ?",
            (job_type, flag),
        ).fetchone()
        if row is None:
            return False
        expires_at = from_iso(row[0])
        if expires_at is None or self._clock() >= expires_at:
            self.conn.execute(
                "DELETE FROM job_control WHERE job_type = ? AND flag = ?",
                (job_type, flag),
            )
            self.conn.commit()
            return False
        return True
