"""Event emitter: builds change payloads and dispatches them to listeners.

Every emit is timed and its memory delta recorded into a rolling window so
callers can ask whether event delivery is keeping up.
"""

from __future__ import annotations

import logging
import threading
import time
import tracemalloc
from collections.abc import Iterable, Mapping
from typing import Any

from taskrelay.config.models import EmitterConfig
from taskrelay.events.channels import ChangeType, channel_for
from taskrelay.events.payload import EventPayloadBuilder
from taskrelay.events.registry import Listener, ListenerRegistry
from taskrelay.metrics import MetricsStore

logger = logging.getLogger(__name__)

TIME_METRIC = "emit.time_ms"
MEMORY_METRIC = "emit.memory_bytes"

STATUS_GOOD = "good"
STATUS_WARN = "warn"
STATUS_CRITICAL = "critical"

_BYTES_PER_MB = 1024 * 1024


class EventEmitter:
    """Dispatches change events to channel listeners.

    Args:
        registry: Listener registry to dispatch through.
        builder: Payload builder (defaults to one using config's id strategy).
        config: Emitter configuration.
    """

    def __init__(
        self,
        registry: ListenerRegistry | None = None,
        builder: EventPayloadBuilder | None = None,
        config: EmitterConfig | None = None,
    ) -> None:
        self.config = config or EmitterConfig()
        self.registry = registry or ListenerRegistry()
        self.builder = builder or EventPayloadBuilder(self.config.event_id_strategy)
        self._metrics = MetricsStore(max_samples=self.config.metrics_window)
        if self.config.track_memory and not tracemalloc.is_tracing():
            tracemalloc.start()

    def subscribe(self, entity: str, listener: Listener) -> None:
        """Register a listener for an entity's change channel."""
        self.registry.subscribe(channel_for(entity), listener)

    def emit(
        self,
        entity: str,
        entity_id: int,
        change_type: ChangeType | str,
        row_before: Mapping[str, Any] | None = None,
        row_after: Mapping[str, Any] | None = None,
        changed_columns: Iterable[str] | None = None,
        actor: int | None = None,
    ) -> bool:
        """Build a payload and dispatch it to the entity's listeners.

        Returns:
            True if a payload was built and dispatched, False if the inputs
            were invalid.
        """
        start = time.perf_counter()
        memory_before = _traced_memory()

        payload = self.builder.build(
            entity,
            entity_id,
            change_type,
            row_before,
            row_after,
            changed_columns,
            actor,
        )
        if payload is None:
            self._metrics.increment_counter("emit.rejected")
            return False

        delivered = self.registry.dispatch(channel_for(entity), payload)

        elapsed_ms = (time.perf_counter() - start) * 1000
        self._metrics.record_value(TIME_METRIC, elapsed_ms)
        self._metrics.record_value(
            MEMORY_METRIC, max(0, _traced_memory() - memory_before)
        )
        self._metrics.increment_counter("emit.dispatched")

        logger.debug(
            "Emitted %s for %s/%s to %d listener(s) in %.2fms",
            payload["type"],
            entity,
            entity_id,
            delivered,
            elapsed_ms,
        )
        return True

    def performance_metrics(self) -> dict[str, Any]:
        """Return averages over the rolling window."""
        return {
            "samples": self._metrics.get_sample_count(TIME_METRIC),
            "avg_time_ms": round(self._metrics.get_average(TIME_METRIC), 3),
            "avg_memory_mb": round(
                self._metrics.get_average(MEMORY_METRIC) / _BYTES_PER_MB, 4
            ),
            "dispatched": self._metrics.get_counter("emit.dispatched"),
            "rejected": self._metrics.get_counter("emit.rejected"),
        }

    def performance_status(self) -> dict[str, Any]:
        """Classify average cost as good, warn or critical."""
        metrics = self.performance_metrics()
        time_ms = metrics["avg_time_ms"]
        memory_mb = metrics["avg_memory_mb"]

        if time_ms >= self.config.critical_time_ms or (
            memory_mb >= self.config.critical_memory_mb
        ):
            status = STATUS_CRITICAL
        elif time_ms >= self.config.warn_time_ms or (
            memory_mb >= self.config.warn_memory_mb
        ):
            status = STATUS_WARN
        else:
            status = STATUS_GOOD

        return {"status": status, **metrics}

    def reset_metrics(self) -> None:
        """Clear the performance window."""
        self._metrics.clear()


def _traced_memory() -> int:
    if not tracemalloc.is_tracing():
        return 0
    current, _peak = tracemalloc.get_traced_memory()
    return current


# Module-level default instance
_default_emitter: EventEmitter | None = None
_emitter_lock = threading.Lock()


def get_event_emitter() -> EventEmitter:
    """Get the process-wide default emitter."""
    global _default_emitter
    if _default_emitter is None:
        with _emitter_lock:
            if _default_emitter is None:
                _default_emitter = EventEmitter()
    return _default_emitter


def set_event_emitter(emitter: EventEmitter | None) -> None:
    """Replace the process-wide default emitter (None resets it)."""
    global _default_emitter
    with _emitter_lock:
        _default_emitter = emitter
