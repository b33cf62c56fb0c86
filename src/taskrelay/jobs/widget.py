"""Unit-of-work contract for job types.

A widget supplies the domain logic for one job type: its configuration,
how to discover work items, how to execute one item, and lifecycle hooks.
The scheduler owns persistence, locking and retries.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from taskrelay.jobs.exceptions import ValidationError

if TYPE_CHECKING:
    from taskrelay.db.types import Job

ProgressCallback = Callable[[int, int], None]


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True)
class WidgetConfig:
    """Validated descriptor of a job type.

    Attributes:
        name: Human-readable name.
        description: What the job type does.
        batch_size: Items the widget would like per batch (scheduler runs 1).
        priority: Default priority for new jobs, 1-100 (higher runs first).
        max_attempts: Default attempt ceiling for new jobs.
    """

    name: str
    description: str
    batch_size: int = 1
    priority: int = 10
    max_attempts: int = 3

    def __post_init__(self) -> None:
        """Validate configuration."""
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValidationError("Widget name must be a non-empty string", "name")
        if not isinstance(self.description, str) or not self.description.strip():
            raise ValidationError(
                "Widget description must be a non-empty string", "description"
            )
        if not _is_int(self.batch_size) or self.batch_size < 1:
            raise ValidationError("batch_size must be an integer >= 1", "batch_size")
        if not _is_int(self.priority) or not 1 <= self.priority <= 100:
            raise ValidationError(
                "priority must be an integer between 1 and 100", "priority"
            )
        if not _is_int(self.max_attempts) or self.max_attempts < 1:
            raise ValidationError(
                "max_attempts must be an integer >= 1", "max_attempts"
            )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> WidgetConfig:
        """Build a config from a plain mapping.

        Raises:
            ValidationError: If a required key is missing or a value is invalid.
        """
        for key in ("name", "description"):
            if key not in data:
                raise ValidationError(f"Missing required config key: {key}", key)
        known = {"name", "description", "batch_size", "priority", "max_attempts"}
        return cls(**{k: v for k, v in data.items() if k in known})


class Widget(ABC):
    """Base class for job type implementations.

    Subclass and implement config(), discover_items() and execute(). Raise
    RecoverableExecutionError or NonRecoverableExecutionError from execute()
    to control retries; any other exception is classified by the scheduler.

    Optional attributes:
        payload_model: Pydantic model validating this job type's payload.

    Example:
        class ReportWidget(Widget):
            payload_model = ReportPayload

            def config(self):
                return WidgetConfig(name="Reports", description="Build reports")

            def discover_items(self):
                return [ReportPayload(report_id=i) for i in pending_reports()]

            def execute(self, item):
                return render(item.report_id)
    """

    payload_model: type[BaseModel] | None = None

    def __init__(self) -> None:
        self._logger = logging.getLogger(f"taskrelay.widget.{type(self).__name__}")
        self._current_job: Job | None = None
        self._progress_callback: ProgressCallback | None = None

    @property
    def logger(self) -> logging.Logger:
        """Get the widget's logger."""
        return self._logger

    @property
    def current_job(self) -> Job | None:
        """The job being executed, if any."""
        return self._current_job

    @abstractmethod
    def config(self) -> WidgetConfig | Mapping[str, Any]:
        """Return the job type descriptor."""

    @abstractmethod
    def discover_items(self) -> Iterable[Any]:
        """Return the work items that should be enqueued (may be empty)."""

    @abstractmethod
    def execute(self, item: Any) -> Any:
        """Execute one item and return its result."""

    def on_error(self, item: Any, error: BaseException) -> bool:
        """Return False to veto a retry for this error.

        The scheduler only retries when this returns True and the error is
        classified as recoverable.
        """
        return True

    def on_complete(self) -> None:
        """Called after an item completes successfully."""

    def on_failure(self) -> None:
        """Called once when a job fails permanently."""

    def before_batch(self, items: list[Any]) -> None:
        """Called before executing a batch of items."""

    def after_batch(self, items: list[Any], results: list[Any]) -> None:
        """Called after a batch executes without raising."""

    def report_progress(self, completed: int, total: int) -> None:
        """Report progress on the current job.

        Safe to call outside of execution; it is ignored there.
        """
        if self._progress_callback is None:
            return
        try:
            self._progress_callback(completed, total)
        except Exception:
            self._logger.exception("Failed to record progress")

    def bind(self, job: Job, progress_callback: ProgressCallback | None) -> None:
        """Attach the job being executed (called by the scheduler)."""
        self._current_job = job
        self._progress_callback = progress_callback

    def unbind(self) -> None:
        """Detach the current job (called by the scheduler)."""
        self._current_job = None
        self._progress_callback = None
