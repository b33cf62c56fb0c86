"""Simple in-memory metrics for taskrelay observability.

This module provides lightweight metrics collection without external dependencies.
Used for scheduler timings and event emitter performance status.

Key patterns:
- Thread-safe in-memory storage
- Rolling windows for samples (last 1000 per metric by default)
- UTC timestamps for all timing data
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

MAX_SAMPLES = 1000  # Per metric name


@dataclass
class Sample:
    """A single measurement."""

    value: float
    timestamp: str  # ISO-8601 UTC
    labels: dict[str, str] = field(default_factory=dict)


class MetricsStore:
    """Thread-safe in-memory metrics storage.

    Stores counters and rolling sample windows. A process-wide instance is
    available via get_metrics_store(); components that need an isolated
    window (such as the event emitter) construct their own.
    """

    def __init__(self, max_samples: int = MAX_SAMPLES) -> None:
        self.max_samples = max_samples
        self._lock = threading.Lock()
        self._counters: dict[str, int] = defaultdict(int)
        self._samples: dict[str, list[Sample]] = defaultdict(list)

    def increment_counter(self, name: str, value: int = 1, **labels: str) -> None:
        """Increment a counter metric.

        Args:
            name: Metric name (e.g., 'jobs.completed')
            value: Amount to increment (default: 1)
            **labels: Optional labels (e.g., job_type='report')
        """
        key = self._build_key(name, labels)
        with self._lock:
            self._counters[key] += value

    def record_value(self, name: str, value: float, **labels: str) -> None:
        """Record a sample into the metric's rolling window."""
        sample = Sample(
            value=value,
            timestamp=datetime.now(timezone.utc).isoformat(),
            labels=dict(labels),
        )
        key = self._build_key(name, labels)
        with self._lock:
            samples = self._samples[key]
            samples.append(sample)
            if len(samples) > self.max_samples:
                self._samples[key] = samples[-self.max_samples :]

    def record_duration(
        self,
        name: str,
        duration_seconds: float,
        **labels: str,
    ) -> None:
        """Record a duration measurement in seconds."""
        self.record_value(name, duration_seconds, **labels)

    def get_counter(self, name: str, **labels: str) -> int:
        """Return the current value of a counter (0 if never incremented)."""
        key = self._build_key(name, labels)
        with self._lock:
            return self._counters.get(key, 0)

    def get_average(self, name: str, **labels: str) -> float:
        """Return the mean of a metric's window (0.0 when empty)."""
        key = self._build_key(name, labels)
        with self._lock:
            samples = self._samples.get(key) or []
            if not samples:
                return 0.0
            return sum(s.value for s in samples) / len(samples)

    def get_sample_count(self, name: str, **labels: str) -> int:
        """Return how many samples a metric's window holds."""
        key = self._build_key(name, labels)
        with self._lock:
            return len(self._samples.get(key) or [])

    def get_summary(self) -> dict[str, Any]:
        """Get metrics summary.

        Returns:
            Dict with counters and sample stats suitable for JSON serialization.
        """
        with self._lock:
            result: dict[str, Any] = {
                "counters": dict(self._counters),
                "samples": {},
            }
            for key, samples in self._samples.items():
                if samples:
                    values = [s.value for s in samples]
                    result["samples"][key] = {
                        "count": len(values),
                        "avg": sum(values) / len(values),
                        "max": max(values),
                        "min": min(values),
                    }
            return result

    def clear(self) -> None:
        """Clear all metrics (for testing)."""
        with self._lock:
            self._counters.clear()
            self._samples.clear()

    @staticmethod
    def _build_key(name: str, labels: dict[str, str]) -> str:
        """Build a unique key from name and labels."""
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


# Module-level singleton
_metrics_store: MetricsStore | None = None
_store_lock = threading.Lock()


def get_metrics_store() -> MetricsStore:
    """Get the global metrics store singleton."""
    global _metrics_store
    if _metrics_store is None:
        with _store_lock:
            if _metrics_store is None:
                _metrics_store = MetricsStore()
    return _metrics_store


def increment_counter(name: str, value: int = 1, **labels: str) -> None:
    """Increment a counter in the global store."""
    get_metrics_store().increment_counter(name, value, **labels)


@contextmanager
def record_duration(name: str, **labels: str) -> Generator[None, None, None]:
    """Context manager for timing operations.

    Usage:
        with record_duration("jobs.execution", job_type="report"):
            widget.execute(item)
    """
    start = time.monotonic()
    try:
        yield
    finally:
        duration = time.monotonic() - start
        get_metrics_store().record_duration(name, duration, **labels)


def get_metrics_summary() -> dict[str, Any]:
    """Get metrics summary from the global store."""
    return get_metrics_store().get_summary()
