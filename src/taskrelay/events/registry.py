"""Listener registry for change notifications.

The registry tracks listeners per channel, delivers payloads to them with
per-listener failure isolation, and keeps a short history of recent events
for polling consumers.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

Listener = Callable[[dict[str, Any]], Any]

MAX_RECENT_EVENTS = 50
DEFAULT_RECENT_LIMIT = 10
MAX_RECENT_LIMIT = 100


@dataclass
class RecordedEvent:
    """A dispatched payload kept for polling consumers."""

    channel: str
    payload: dict[str, Any]
    recorded_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @property
    def event_id(self) -> str:
        """Event id of the payload."""
        return str(self.payload.get("event_id", ""))


class ListenerRegistry:
    """Channel-based publish/subscribe registry."""

    def __init__(self, max_recent: int = MAX_RECENT_EVENTS) -> None:
        self._lock = threading.RLock()
        self._listeners: dict[str, list[Listener]] = {}
        self._recent: deque[RecordedEvent] = deque(maxlen=max_recent)

    def subscribe(self, channel: str, listener: Listener) -> None:
        """Register a listener for a channel.

        Subscribing the same listener twice to one channel is a no-op.
        """
        with self._lock:
            listeners = self._listeners.setdefault(channel, [])
            if listener in listeners:
                logger.debug("Listener already subscribed to %s", channel)
                return
            listeners.append(listener)
        logger.debug("Subscribed listener to %s", channel)

    def unsubscribe(self, channel: str, listener: Listener) -> bool:
        """Remove a listener from a channel.

        Returns:
            True if the listener was subscribed.
        """
        with self._lock:
            listeners = self._listeners.get(channel, [])
            if listener not in listeners:
                return False
            listeners.remove(listener)
            return True

    def listeners_for(self, channel: str) -> list[Listener]:
        """Return a snapshot of the listeners on a channel."""
        with self._lock:
            return list(self._listeners.get(channel, []))

    def dispatch(self, channel: str, payload: dict[str, Any]) -> int:
        """Deliver a payload to every listener on a channel.

        A listener that raises is logged and skipped; remaining listeners
        still receive the payload.

        Returns:
            Number of listeners that accepted the payload without error.
        """
        with self._lock:
            self._recent.append(RecordedEvent(channel=channel, payload=payload))
        delivered = 0
        for listener in self.listeners_for(channel):
            try:
                listener(payload)
                delivered += 1
            except Exception:
                logger.exception(
                    "Listener %r failed for event %s on %s",
                    listener,
                    payload.get("event_id"),
                    channel,
                )
        return delivered

    def recent_events(
        self,
        channel: str | None = None,
        since_event_id: str | None = None,
        limit: int = DEFAULT_RECENT_LIMIT,
    ) -> dict[str, Any]:
        """Return recently dispatched events, newest last.

        Args:
            channel: Only events on this channel (None = all channels).
            since_event_id: Only events recorded after this event id.
            limit: Maximum events to return, clamped to 1-100.

        Returns:
            Dict with 'events' (payload list) and 'last_event_id'.
        """
        limit = max(1, min(MAX_RECENT_LIMIT, int(limit)))
        with self._lock:
            recorded = list(self._recent)

        if since_event_id:
            for index, event in enumerate(recorded):
                if event.event_id == since_event_id:
                    recorded = recorded[index + 1 :]
                    break

        if channel is not None:
            recorded = [e for e in recorded if e.channel == channel]

        recorded = recorded[-limit:]
        return {
            "events": [e.payload for e in recorded],
            "last_event_id": recorded[-1].event_id if recorded else since_event_id,
        }

    def clear(self) -> None:
        """Remove all listeners and history (for testing)."""
        with self._lock:
            self._listeners.clear()
            self._recent.clear()
