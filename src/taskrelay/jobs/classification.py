"""Failure classification and retry backoff.

Widgets signal intent by raising RecoverableExecutionError or
NonRecoverableExecutionError. Plain exceptions are mapped by type, and
optionally by message text for producers that only raise generic errors.
"""

from __future__ import annotations

import logging
import sqlite3

from taskrelay.jobs.exceptions import ErrorKind, ExecutionError

logger = logging.getLogger(__name__)

# Message fragments that indicate a problem no retry can fix
NON_RECOVERABLE_PATTERNS = (
    "invalid api key",
    "no api key configured",
    "api key format",
    "please configure your api key",
    "authentication failed",
    "quota exceeded",
    "permission denied",
    "invalid request format",
    "malformed data",
)

# Message fragments that indicate a transient problem
RECOVERABLE_PATTERNS = (
    "timeout",
    "timed out",
    "connection",
    "network",
    "server error",
    "service unavailable",
    "rate limit",
    "database",
    "locked",
)

_RECOVERABLE_TYPES: tuple[type[BaseException], ...] = (
    TimeoutError,
    ConnectionError,
    sqlite3.OperationalError,
)

_NON_RECOVERABLE_TYPES: tuple[type[BaseException], ...] = (
    PermissionError,
    NotImplementedError,
)


def classify_error(error: BaseException, *, legacy_matching: bool = True) -> ErrorKind:
    """Decide whether a failed execution may be retried.

    Order of precedence:
    1. ErrorKind carried by an ExecutionError
    2. Built-in exception types
    3. Message substrings (when legacy_matching is enabled)
    4. Recoverable by default

    Args:
        error: The exception raised during execution.
        legacy_matching: Inspect the message text of untyped errors.

    Returns:
        The error kind.
    """
    if isinstance(error, ExecutionError):
        return error.kind

    if isinstance(error, _NON_RECOVERABLE_TYPES):
        return ErrorKind.NON_RECOVERABLE
    if isinstance(error, _RECOVERABLE_TYPES):
        return ErrorKind.RECOVERABLE

    if legacy_matching:
        message = str(error).casefold()
        for pattern in NON_RECOVERABLE_PATTERNS:
            if pattern in message:
                logger.debug("Error matched non-recoverable pattern %r", pattern)
                return ErrorKind.NON_RECOVERABLE
        for pattern in RECOVERABLE_PATTERNS:
            if pattern in message:
                return ErrorKind.RECOVERABLE

    return ErrorKind.RECOVERABLE


def backoff_delay(attempts: int, base_delay: int, max_delay: int = 300) -> int:
    """Exponential backoff: min(max_delay, base_delay * 2**attempts) seconds.

    Example:
        backoff_delay(1, 10) -> 20
        backoff_delay(5, 10) -> 300
    """
    attempts = max(0, attempts)
    # Bound the exponent; the result is clamped anyway
    return int(min(max_delay, base_delay * (2 ** min(attempts, 32))))
