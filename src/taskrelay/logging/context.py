"""Job context for structured logging.

Provides context propagation using contextvars, enabling automatic
injection of job_id and job_type into log records emitted while a job
executes.
"""

from __future__ import annotations

import contextvars
import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Generator

_job_id: contextvars.ContextVar[int | None] = contextvars.ContextVar(
    "job_id", default=None
)
_job_type: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "job_type", default=None
)


def set_job_context(job_id: int | None, job_type: str | None) -> None:
    """Set the current job context."""
    _job_id.set(job_id)
    _job_type.set(job_type)


def clear_job_context() -> None:
    """Clear the current job context."""
    _job_id.set(None)
    _job_type.set(None)


@contextmanager
def job_context(
    job_id: int | None, job_type: str | None
) -> Generator[None, None, None]:
    """Context manager for job execution context.

    Sets job context on entry, restores the previous context on exit.

    Example:
        with job_context(42, "report"):
            logger.info("Rendering")  # Tagged [report:42]
    """
    old_job_id = _job_id.get()
    old_job_type = _job_type.get()
    try:
        set_job_context(job_id, job_type)
        yield
    finally:
        _job_id.set(old_job_id)
        _job_type.set(old_job_type)


def get_job_context() -> tuple[int | None, str | None]:
    """Get current job context as (job_id, job_type)."""
    return _job_id.get(), _job_type.get()


class JobContextFilter(logging.Filter):
    """Logging filter that injects job context into log records.

    Adds job_id and job_type attributes, plus a compact job_tag such as
    "[report:42] " for the text format.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        """Inject job context into log record. Never filters records out."""
        job_id, job_type = get_job_context()

        record.job_id = job_id
        record.job_type = job_type

        if job_type and job_id is not None:
            record.job_tag = f"[{job_type}:{job_id}] "
        elif job_type:
            record.job_tag = f"[{job_type}] "
        else:
            record.job_tag = ""

        return True
