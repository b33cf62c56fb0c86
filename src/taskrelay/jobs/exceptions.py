"""Custom exceptions for job scheduling.

This module provides specific exception types for scheduler operations,
enabling callers to handle different error conditions appropriately.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(Enum):
    """Structured classification of an execution failure."""

    RECOVERABLE = "recoverable"
    NON_RECOVERABLE = "non_recoverable"


class TaskRelayError(Exception):
    """Base exception for taskrelay errors.

    All scheduler-related exceptions inherit from this class, allowing
    callers to catch all of them with a single except clause if desired.
    """


class ValidationError(TaskRelayError):
    """Raised when registration or enqueue input is malformed.

    Never persisted as a job; fails fast at the call site.

    Attributes:
        field: Name of the offending field, if known.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        self.message = message
        self.field = field
        super().__init__(message)


class UnknownJobTypeError(TaskRelayError):
    """Raised when an operation names a job type with no registered widget.

    Attributes:
        job_type: The unregistered job type.
    """

    def __init__(self, job_type: str) -> None:
        self.job_type = job_type
        super().__init__(f"No widget registered for job type '{job_type}'")


class ExecutionError(TaskRelayError):
    """Base for failures raised by a widget while executing an item.

    Attributes:
        kind: Structured classification used to decide on retry.
    """

    kind: ErrorKind = ErrorKind.RECOVERABLE


class RecoverableExecutionError(ExecutionError):
    """Transient failure (network, timeout, rate limit, storage).

    Drives a backoff retry while attempts remain.
    """

    kind = ErrorKind.RECOVERABLE


class NonRecoverableExecutionError(ExecutionError):
    """Structural failure (credentials, permissions, malformed request).

    Produces an immediate permanent failure.
    """

    kind = ErrorKind.NON_RECOVERABLE


class LockContentionError(TaskRelayError):
    """Raised when another worker already claimed the job.

    Attributes:
        job_id: The ID of the contended job.
    """

    def __init__(self, job_id: int, message: str | None = None) -> None:
        """Initialize the exception.

        Args:
            job_id: The ID of the contended job.
            message: Optional custom message describing the conflict.
        """
        self.job_id = job_id
        default_msg = f"Job {job_id} was claimed by another worker"
        super().__init__(message or default_msg)


class StalenessTimeout(TaskRelayError):
    """Marks a job that stayed in processing past the staleness threshold.

    Handled internally by the recovery scan; never surfaced to callers.

    Attributes:
        job_id: The ID of the stale job.
        minutes: How long the job had been processing.
    """

    def __init__(self, job_id: int, minutes: int) -> None:
        self.job_id = job_id
        self.minutes = minutes
        super().__init__(f"Job {job_id} stuck in processing for {minutes} minutes")


class ExecutionTimeout(RecoverableExecutionError):
    """Raised when an execution exceeds its wall-clock time limit."""

    def __init__(self, seconds: int) -> None:
        self.seconds = seconds
        super().__init__(f"Job execution timed out after {seconds} seconds")
