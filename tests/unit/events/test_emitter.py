"""Unit tests for the listener registry and event emitter."""

from unittest.mock import MagicMock, patch

import pytest

from taskrelay.config.models import EmitterConfig
from taskrelay.events.channels import channel_for
from taskrelay.events.emitter import (
    MEMORY_METRIC,
    TIME_METRIC,
    EventEmitter,
    get_event_emitter,
    set_event_emitter,
)
from taskrelay.events.registry import ListenerRegistry


def make_payload(event_id: str) -> dict:
    return {"event_id": event_id, "entity": "job", "id": 1, "type": "updated"}


class TestListenerRegistry:
    """Tests for ListenerRegistry."""

    def test_dispatch_reaches_channel_listeners_only(self, registry):
        """Listeners on other channels are not called."""
        jobs, users = [], []
        registry.subscribe("taskrelay.job.changed", jobs.append)
        registry.subscribe("taskrelay.user.changed", users.append)

        delivered = registry.dispatch("taskrelay.job.changed", make_payload("e1"))

        assert delivered == 1
        assert len(jobs) == 1
        assert users == []

    def test_subscribe_is_idempotent(self, registry):
        """The same listener is only called once per event."""
        received = []
        registry.subscribe("c", received.append)
        registry.subscribe("c", received.append)

        registry.dispatch("c", make_payload("e1"))

        assert len(received) == 1

    def test_unsubscribe(self, registry):
        """Unsubscribed listeners stop receiving events."""
        listener = MagicMock()
        registry.subscribe("c", listener)

        assert registry.unsubscribe("c", listener) is True
        assert registry.unsubscribe("c", listener) is False
        registry.dispatch("c", make_payload("e1"))
        listener.assert_not_called()

    def test_failing_listener_is_isolated(self, registry):
        """A raising listener does not stop delivery to the next one."""
        received = []
        registry.subscribe("c", MagicMock(side_effect=RuntimeError("boom")))
        registry.subscribe("c", received.append)

        delivered = registry.dispatch("c", make_payload("e1"))

        assert delivered == 1
        assert len(received) == 1

    def test_recent_events_since(self, registry):
        """Polling from an event id returns only later events."""
        for i in range(5):
            registry.dispatch("c", make_payload(f"e{i}"))

        result = registry.recent_events(since_event_id="e2")

        assert [e["event_id"] for e in result["events"]] == ["e3", "e4"]
        assert result["last_event_id"] == "e4"

    def test_recent_events_limit_is_clamped(self, registry):
        """Limit is clamped to 1-100 and keeps the newest events."""
        for i in range(5):
            registry.dispatch("c", make_payload(f"e{i}"))

        assert len(registry.recent_events(limit=0)["events"]) == 1
        assert registry.recent_events(limit=2)["events"][-1]["event_id"] == "e4"

    def test_recent_events_by_channel(self, registry):
        """History can be filtered by channel."""
        registry.dispatch("a", make_payload("e1"))
        registry.dispatch("b", make_payload("e2"))

        result = registry.recent_events(channel="b")

        assert [e["event_id"] for e in result["events"]] == ["e2"]

    def test_history_is_bounded(self):
        """Only the newest max_recent events are kept."""
        registry = ListenerRegistry(max_recent=3)
        for i in range(10):
            registry.dispatch("c", make_payload(f"e{i}"))

        events = registry.recent_events(limit=100)["events"]
        assert [e["event_id"] for e in events] == ["e7", "e8", "e9"]

    def test_empty_history(self, registry):
        """With nothing recorded the cursor is echoed back."""
        assert registry.recent_events(since_event_id="x") == {
            "events": [],
            "last_event_id": "x",
        }


class TestEventEmitter:
    """Tests for EventEmitter."""

    def test_emit_dispatches_to_entity_channel(self, emitter):
        """Payloads go to taskrelay.<entity>.changed."""
        received = []
        emitter.subscribe("job", received.append)

        assert emitter.emit("job", 3, "created", row_after={"status": "pending"})

        assert received[0]["id"] == 3
        assert emitter.registry.listeners_for(channel_for("job"))

    def test_invalid_input_is_rejected(self, emitter):
        """Invalid inputs are counted and nothing is dispatched."""
        listener = MagicMock()
        emitter.subscribe("job", listener)

        assert emitter.emit("job", -1, "created") is False

        listener.assert_not_called()
        assert emitter.performance_metrics()["rejected"] == 1

    def test_metrics_track_emits(self, emitter):
        """Every successful emit adds a time and memory sample."""
        for i in range(1, 4):
            emitter.emit("job", i, "created", row_after={})

        metrics = emitter.performance_metrics()
        assert metrics["samples"] == 3
        assert metrics["dispatched"] == 3
        assert metrics["avg_time_ms"] >= 0

    def test_metrics_window_is_rolling(self):
        """Only the configured number of samples is kept."""
        emitter = EventEmitter(config=EmitterConfig(metrics_window=2))
        for i in range(1, 6):
            emitter.emit("job", i, "created", row_after={})

        assert emitter.performance_metrics()["samples"] == 2

    def test_status_good(self, emitter):
        """Cheap emits report good."""
        emitter.emit("job", 1, "created", row_after={})
        assert emitter.performance_status()["status"] == "good"

    @pytest.mark.parametrize(
        ("time_ms", "memory_bytes", "expected"),
        [
            (60.0, 0, "warn"),
            (250.0, 0, "critical"),
            (1.0, 2 * 1024 * 1024, "warn"),
            (1.0, 6 * 1024 * 1024, "critical"),
        ],
    )
    def test_status_thresholds(self, emitter, time_ms, memory_bytes, expected):
        """Averages above the thresholds raise the status."""
        emitter._metrics.record_value(TIME_METRIC, time_ms)
        emitter._metrics.record_value(MEMORY_METRIC, memory_bytes)

        assert emitter.performance_status()["status"] == expected

    def test_reset_metrics(self, emitter):
        """reset_metrics empties the window."""
        emitter.emit("job", 1, "created", row_after={})
        emitter.reset_metrics()
        assert emitter.performance_metrics()["samples"] == 0

    def test_memory_tracking_starts_tracemalloc(self):
        """track_memory turns on tracemalloc."""
        with patch("taskrelay.events.emitter.tracemalloc") as tracemalloc:
            tracemalloc.is_tracing.return_value = False
            EventEmitter(config=EmitterConfig(track_memory=True))
            tracemalloc.start.assert_called_once()


class TestDefaultEmitter:
    """Tests for the process-wide emitter accessor."""

    def test_returns_same_instance(self):
        """get_event_emitter is a lazy singleton."""
        assert get_event_emitter() is get_event_emitter()

    def test_set_replaces_instance(self, emitter):
        """set_event_emitter swaps the default."""
        set_event_emitter(emitter)
        assert get_event_emitter() is emitter
