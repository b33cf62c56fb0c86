"""Event payload construction.

Turns a raw before/after state change into an envelope that is:
- Validated (entity name, positive id, known change type)
- Sanitized (sensitive keys removed, strings and containers bounded)
- Filtered for the actor (non-privileged actors see an allowlist only)
"""

from __future__ import annotations

import hashlib
import json
import logging
import random
import re
import secrets
import time
import uuid
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from taskrelay.events.channels import VALID_CHANGE_TYPES, ChangeType

logger = logging.getLogger(__name__)

SENSITIVE_FIELDS = (
    "api_key",
    "password",
    "secret",
    "token",
    "private_key",
    "auth_key",
    "encryption_key",
    "hash",
    "salt",
    "nonce",
    "session_id",
    "cookie",
)

# Row fields a non-privileged actor may see
ACTOR_ALLOWED_FIELDS = frozenset(
    {"id", "status", "created_at", "updated_at", "type", "title", "name"}
)

REQUIRED_FIELDS = ("entity", "id", "type", "occurred_at", "event_id")

ENTITY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
MAX_ENTITY_LENGTH = 50
MAX_STRING_LENGTH = 1000
MAX_DEPTH = 3
MAX_BULK_DETAIL_DEPTH = 2
MAX_CONTAINER_ITEMS = 50

TRUNCATION_KEY = "..."
CONTAINER_TRUNCATED = "[Array truncated]"
CONTAINER_TOO_DEEP = "[Array too deep]"


class EventIdStrategy(Enum):
    """How event ids are generated."""

    UUID = "uuid"
    TIMESTAMP = "timestamp"
    HASH = "hash"


def is_sensitive_field(name: str) -> bool:
    """Return True if a key name contains a sensitive substring (any case)."""
    lowered = str(name).casefold()
    return any(sensitive in lowered for sensitive in SENSITIVE_FIELDS)


def validate_input(entity: Any, entity_id: Any, change_type: Any) -> list[str]:
    """Check build inputs and return a list of problems (empty when valid).

    A bulk change may use id 0 to mean "no single row".
    """
    errors: list[str] = []

    if not isinstance(entity, str) or not entity:
        errors.append("Entity must be a non-empty string")
    elif len(entity) > MAX_ENTITY_LENGTH:
        errors.append(f"Entity name too long (max {MAX_ENTITY_LENGTH} characters)")
    elif not ENTITY_PATTERN.match(entity):
        errors.append("Entity name contains invalid characters")

    if isinstance(entity_id, bool) or not isinstance(entity_id, int):
        errors.append("ID must be an integer")
    elif entity_id < 0 or (entity_id == 0 and change_type != ChangeType.BULK.value):
        errors.append("ID must be a positive integer")

    if change_type not in VALID_CHANGE_TYPES:
        errors.append(
            "Type must be one of: " + ", ".join(sorted(VALID_CHANGE_TYPES))
        )

    return errors


class EventPayloadBuilder:
    """Builds sanitized, permission-filtered event envelopes.

    Args:
        id_strategy: Event id generation strategy.
        is_privileged: Callable deciding whether an actor sees full rows.
            Defaults to treating every actor as non-privileged.
    """

    def __init__(
        self,
        id_strategy: EventIdStrategy | str = EventIdStrategy.UUID,
        is_privileged: Callable[[int], bool] | None = None,
    ) -> None:
        try:
            self.id_strategy = EventIdStrategy(id_strategy)
        except ValueError:
            logger.warning(
                "Unknown event id strategy %r, using uuid", id_strategy
            )
            self.id_strategy = EventIdStrategy.UUID
        self._is_privileged = is_privileged or (lambda actor: False)

    def build(
        self,
        entity: str,
        entity_id: int,
        change_type: ChangeType | str,
        row_before: Mapping[str, Any] | None = None,
        row_after: Mapping[str, Any] | None = None,
        changed_columns: Iterable[str] | None = None,
        actor: int | None = None,
    ) -> dict[str, Any] | None:
        """Build an event envelope.

        Returns:
            The envelope dict, or None if the inputs are invalid.
        """
        type_value = (
            change_type.value if isinstance(change_type, ChangeType) else change_type
        )
        errors = validate_input(entity, entity_id, type_value)
        if errors:
            logger.error(
                "Invalid event payload parameters for %r/%r/%r: %s",
                entity,
                entity_id,
                type_value,
                "; ".join(errors),
            )
            return None

        event_id = self.generate_event_id()
        payload: dict[str, Any] = {
            "entity": entity,
            "id": entity_id,
            "type": type_value,
            "occurred_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "event_id": event_id,
            "actor": actor if actor else None,
        }

        if type_value == ChangeType.CREATED.value:
            payload["row_after"] = self.sanitize_row(row_after)
        elif type_value == ChangeType.UPDATED.value:
            payload["row_before"] = self.sanitize_row(row_before)
            payload["row_after"] = self.sanitize_row(row_after)
            payload["changed_columns"] = self.sanitize_changed_columns(
                changed_columns
            )
        elif type_value == ChangeType.DELETED.value:
            payload["row_before"] = self.sanitize_row(row_before)
        else:
            if row_after is not None:
                payload["affected_count"] = int(row_after.get("affected_rows", 0))
                payload["operation_details"] = _sanitize_container(
                    row_after, 0, MAX_BULK_DETAIL_DEPTH
                )

        payload = self._filter_for_actor(payload, actor)

        logger.debug(
            "Built %s event %s for %s/%d (%d bytes)",
            type_value,
            event_id,
            entity,
            entity_id,
            payload_size(payload),
        )
        return payload

    def generate_event_id(self) -> str:
        """Generate a unique event id using the configured strategy."""
        if self.id_strategy is EventIdStrategy.TIMESTAMP:
            return f"evt_{int(time.time())}_{random.randint(1000, 9999)}"  # nosec B311
        if self.id_strategy is EventIdStrategy.HASH:
            seed = f"{time.time_ns()}{secrets.token_hex(8)}"
            return "evt_" + hashlib.sha256(seed.encode()).hexdigest()
        return str(uuid.uuid4())

    def sanitize_row(self, row: Mapping[str, Any] | None) -> dict[str, Any] | None:
        """Strip sensitive keys and bound every value in a row map."""
        if row is None or not isinstance(row, Mapping):
            return None
        return {
            str(key): _sanitize_value(value, 0)
            for key, value in row.items()
            if not is_sensitive_field(key)
        }

    @staticmethod
    def sanitize_changed_columns(columns: Iterable[str] | None) -> list[str]:
        """Drop sensitive and non-string column names, preserving order."""
        if not columns:
            return []
        seen: dict[str, None] = {}
        for column in columns:
            if isinstance(column, str) and not is_sensitive_field(column):
                seen.setdefault(column, None)
        return list(seen)

    def _filter_for_actor(
        self, payload: dict[str, Any], actor: int | None
    ) -> dict[str, Any]:
        if not actor or self._is_privileged(actor):
            return payload
        for key in ("row_before", "row_after"):
            row = payload.get(key)
            if isinstance(row, dict):
                payload[key] = {
                    k: v for k, v in row.items() if k in ACTOR_ALLOWED_FIELDS
                }
        return payload

    @staticmethod
    def validate(payload: Any) -> bool:
        """Re-check required fields and the change type of a built payload."""
        if not isinstance(payload, Mapping):
            return False
        for field in REQUIRED_FIELDS:
            if field not in payload or payload[field] in (None, ""):
                return False
        if not isinstance(payload["entity"], str) or not isinstance(
            payload["type"], str
        ):
            return False
        if isinstance(payload["id"], bool) or not isinstance(payload["id"], int):
            return False
        return payload["type"] in VALID_CHANGE_TYPES


def payload_size(payload: Mapping[str, Any]) -> int:
    """Return the serialized size of a payload in bytes."""
    return len(json.dumps(payload, default=str).encode("utf-8"))


def _sanitize_value(value: Any, depth: int, max_depth: int = MAX_DEPTH) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        if len(value) > MAX_STRING_LENGTH:
            return value[: MAX_STRING_LENGTH - 3] + "..."
        return value
    if isinstance(value, (Mapping, list, tuple, set)):
        return _sanitize_container(value, depth, max_depth)
    return _sanitize_value(str(value), depth, max_depth)


def _sanitize_container(container: Any, depth: int, max_depth: int) -> Any:
    if depth >= max_depth:
        return CONTAINER_TOO_DEEP

    if isinstance(container, Mapping):
        result: dict[str, Any] = {}
        for count, (key, value) in enumerate(container.items()):
            if count >= MAX_CONTAINER_ITEMS:
                result[TRUNCATION_KEY] = CONTAINER_TRUNCATED
                break
            if is_sensitive_field(key):
                continue
            result[str(key)] = _sanitize_value(value, depth + 1, max_depth)
        return result

    items = list(container)
    bounded = [
        _sanitize_value(item, depth + 1, max_depth)
        for item in items[:MAX_CONTAINER_ITEMS]
    ]
    if len(items) > MAX_CONTAINER_ITEMS:
        bounded.append(CONTAINER_TRUNCATED)
    return bounded
