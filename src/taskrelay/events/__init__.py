"""Change-event payloads, listener registry and emitter."""

from taskrelay.events.channels import CHANNEL_PREFIX, ChangeType, channel_for
from taskrelay.events.emitter import (
    EventEmitter,
    get_event_emitter,
    set_event_emitter,
)
from taskrelay.events.payload import (
    EventIdStrategy,
    EventPayloadBuilder,
    is_sensitive_field,
)
from taskrelay.events.registry import ListenerRegistry

__all__ = [
    "CHANNEL_PREFIX",
    "ChangeType",
    "EventEmitter",
    "EventIdStrategy",
    "EventPayloadBuilder",
    "ListenerRegistry",
    "channel_for",
    "get_event_emitter",
    "is_sensitive_field",
    "set_event_emitter",
]
