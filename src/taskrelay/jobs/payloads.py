"""Typed job payload schemas.

A widget may declare a Pydantic model for its payload. The scheduler
validates payloads against that model at enqueue time and hands the parsed
model to the widget at execution time, so widgets never decode raw dicts.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from taskrelay.jobs.exceptions import ValidationError


class JobPayload(BaseModel):
    """Base class for job payload schemas.

    Example:
        class ReportPayload(JobPayload):
            report_id: int
            format: Literal["pdf", "csv"] = "pdf"
    """

    model_config = ConfigDict(extra="forbid", frozen=True)


def _format_validation_error(error: PydanticValidationError) -> str:
    """Render Pydantic errors as a single readable line."""
    parts = []
    for detail in error.errors():
        location = ".".join(str(p) for p in detail.get("loc", ())) or "payload"
        parts.append(f"{location}: {detail.get('msg', 'invalid value')}")
    return "; ".join(parts)


def validate_payload(
    model: type[BaseModel] | None, payload: Any
) -> dict[str, Any]:
    """Validate and normalize a payload for storage.

    Args:
        model: The widget's payload schema, or None for free-form payloads.
        payload: A mapping or an instance of the model.

    Returns:
        JSON-compatible dict to store.

    Raises:
        ValidationError: If the payload does not match the schema.
    """
    if isinstance(payload, BaseModel):
        if model is not None and not isinstance(payload, model):
            raise ValidationError(
                f"Payload must be {model.__name__}, got {type(payload).__name__}",
                field="payload",
            )
        return payload.model_dump(mode="json")

    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise ValidationError("Payload must be a mapping", field="payload")

    if model is None:
        return dict(payload)

    try:
        return model.model_validate(dict(payload)).model_dump(mode="json")
    except PydanticValidationError as e:
        raise ValidationError(_format_validation_error(e), field="payload") from e


def parse_payload(
    model: type[BaseModel] | None, stored: Mapping[str, Any] | None
) -> Any:
    """Turn a stored payload back into what the widget executes.

    Raises:
        ValidationError: If a stored payload no longer matches the schema.
    """
    data = dict(stored or {})
    if model is None:
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(_format_validation_error(e), field="payload") from e
