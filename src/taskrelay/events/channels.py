"""Change event types and channel names.

Listeners subscribe to a per-entity channel; the emitter derives the channel
from the entity of each change record.
"""

from __future__ import annotations

from enum import Enum

CHANNEL_PREFIX = "taskrelay"


class ChangeType(Enum):
    """Kind of durable state change carried by an event."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    BULK = "bulk"


VALID_CHANGE_TYPES = frozenset(t.value for t in ChangeType)


def channel_for(entity: str) -> str:
    """Return the notification channel name for an entity.

    Example:
        channel_for("job") -> "taskrelay.job.changed"
    """
    return f"{CHANNEL_PREFIX}.{entity}.changed"
