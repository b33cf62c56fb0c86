"""Job system for taskrelay.

This module provides the job processing engine:
- widget: Contract implemented by each job type
- payloads: Typed payload schemas validated at enqueue time
- scheduler: Registers widgets and runs their jobs
- queue: Job queue operations (enqueue, claim, recover, purge)
- transitions: Allowed job status changes
- classification: Error classification and retry backoff
- control: Stop/pause flags and cancellation tokens
- exceptions: Error taxonomy
"""

from taskrelay.jobs.classification import backoff_delay, classify_error
from taskrelay.jobs.control import CancellationToken, ControlFlags
from taskrelay.jobs.exceptions import (
    ErrorKind,
    ExecutionError,
    ExecutionTimeout,
    LockContentionError,
    NonRecoverableExecutionError,
    RecoverableExecutionError,
    StalenessTimeout,
    TaskRelayError,
    UnknownJobTypeError,
    ValidationError,
)
from taskrelay.jobs.payloads import JobPayload, parse_payload, validate_payload
from taskrelay.jobs.scheduler import (
    BatchOutcome,
    BatchResult,
    JobScheduler,
    Registration,
)
from taskrelay.jobs.transitions import (
    InvalidTransitionError,
    JobEvent,
    SideEffect,
    Transition,
    allowed_events,
    can_transition,
    transition,
)
from taskrelay.jobs.widget import Widget, WidgetConfig

__all__ = [
    # Scheduler
    "BatchOutcome",
    "BatchResult",
    "JobScheduler",
    "Registration",
    # Widgets
    "JobPayload",
    "Widget",
    "WidgetConfig",
    "parse_payload",
    "validate_payload",
    # Control
    "CancellationToken",
    "ControlFlags",
    # Transitions
    "InvalidTransitionError",
    "JobEvent",
    "SideEffect",
    "Transition",
    "allowed_events",
    "can_transition",
    "transition",
    # Errors
    "ErrorKind",
    "ExecutionError",
    "ExecutionTimeout",
    "LockContentionError",
    "NonRecoverableExecutionError",
    "RecoverableExecutionError",
    "StalenessTimeout",
    "TaskRelayError",
    "UnknownJobTypeError",
    "ValidationError",
    "backoff_delay",
    "classify_error",
]
