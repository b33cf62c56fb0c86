"""Database record types for taskrelay."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class JobStatus(Enum):
    """Status of a job in the queue."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Format a datetime as an ISO-8601 UTC string for storage."""
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    """Parse a stored ISO-8601 timestamp, treating naive values as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Job:
    """Database record for jobs table."""

    id: int | None  # None until inserted
    job_type: str
    status: JobStatus
    priority: int  # 1-100, higher runs first
    attempts: int
    max_attempts: int

    # Job-type specific input, JSON-serializable
    payload: dict[str, Any] | None

    # Timing (all ISO-8601 UTC)
    created_at: str
    updated_at: str
    scheduled_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None

    # Outcome
    error_message: str | None = None
    progress_message: str | None = None
    result_data: dict[str, Any] | None = None

    created_by: int | None = None

    @property
    def can_retry(self) -> bool:
        """Whether another attempt is allowed by the attempt ceiling."""
        return self.attempts < self.max_attempts

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "id": self.id,
            "job_type": self.job_type,
            "status": self.status.value,
            "priority": self.priority,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "payload": self.payload,
            "scheduled_at": self.scheduled_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error_message": self.error_message,
            "progress_message": self.progress_message,
            "result_data": self.result_data,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def encode_json(value: dict[str, Any] | None) -> str | None:
    """Serialize a JSON column value."""
    if value is None:
        return None
    return json.dumps(value, default=str)


def decode_json(value: str | None) -> dict[str, Any] | None:
    """Deserialize a JSON column value, tolerating corrupt data."""
    if not value:
        return None
    try:
        decoded = json.loads(value)
    except json.JSONDecodeError:
        return {"raw": value}
    if isinstance(decoded, dict):
        return decoded
    return {"value": decoded}
