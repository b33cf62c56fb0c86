"""Structured logging module for taskrelay.

Provides configurable logging with JSON format support and file rotation.
Includes job context support so records emitted during execution are tagged.
"""

from taskrelay.logging.config import configure_logging
from taskrelay.logging.context import (
    JobContextFilter,
    clear_job_context,
    get_job_context,
    job_context,
    set_job_context,
)
from taskrelay.logging.handlers import JSONFormatter

__all__ = [
    "JSONFormatter",
    "JobContextFilter",
    "clear_job_context",
    "configure_logging",
    "get_job_context",
    "job_context",
    "set_job_context",
]
