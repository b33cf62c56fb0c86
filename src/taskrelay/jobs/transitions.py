"""Job state machine.

Every status change the scheduler makes is looked up here first. A pair
missing from the table is an illegal transition.

    pending    --lock-->         processing
    pending    --cancel-->       paused
    processing --complete-->     completed
    processing --retry-->        pending
    processing --fail-->         failed
    processing --stale_retry-->  pending
    processing --stale_fail-->   failed
    processing --cancel-->       paused
    failed     --reset-->        pending
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from taskrelay.db.types import JobStatus
from taskrelay.jobs.exceptions import TaskRelayError


class JobEvent(Enum):
    """Something that happens to a job."""

    LOCK = "lock"
    COMPLETE = "complete"
    RETRY = "retry"
    FAIL = "fail"
    STALE_RETRY = "stale_retry"
    STALE_FAIL = "stale_fail"
    CANCEL = "cancel"
    RESET = "reset"


class SideEffect(Enum):
    """What the scheduler does alongside the status change."""

    MARK_STARTED = "mark_started"
    RECORD_RESULT = "record_result"
    SCHEDULE_RETRY = "schedule_retry"
    RECORD_FAILURE = "record_failure"
    NOTIFY_FAILURE = "notify_failure"
    CLEAR_OUTCOME = "clear_outcome"
    NONE = "none"


@dataclass(frozen=True)
class Transition:
    """Outcome of applying an event to a status."""

    next_status: JobStatus
    side_effect: SideEffect


class InvalidTransitionError(TaskRelayError):
    """Raised when an event is not allowed from the current status.

    Attributes:
        status: Current status.
        event: Rejected event.
    """

    def __init__(self, status: JobStatus, event: JobEvent) -> None:
        self.status = status
        self.event = event
        super().__init__(f"Cannot apply '{event.value}' to a {status.value} job")


TRANSITIONS: dict[tuple[JobStatus, JobEvent], Transition] = {
    (JobStatus.PENDING, JobEvent.LOCK): Transition(
        JobStatus.PROCESSING, SideEffect.MARK_STARTED
    ),
    (JobStatus.PENDING, JobEvent.CANCEL): Transition(
        JobStatus.PAUSED, SideEffect.NONE
    ),
    (JobStatus.PROCESSING, JobEvent.COMPLETE): Transition(
        JobStatus.COMPLETED, SideEffect.RECORD_RESULT
    ),
    (JobStatus.PROCESSING, JobEvent.RETRY): Transition(
        JobStatus.PENDING, SideEffect.SCHEDULE_RETRY
    ),
    (JobStatus.PROCESSING, JobEvent.FAIL): Transition(
        JobStatus.FAILED, SideEffect.NOTIFY_FAILURE
    ),
    (JobStatus.PROCESSING, JobEvent.STALE_RETRY): Transition(
        JobStatus.PENDING, SideEffect.SCHEDULE_RETRY
    ),
    (JobStatus.PROCESSING, JobEvent.STALE_FAIL): Transition(
        JobStatus.FAILED, SideEffect.RECORD_FAILURE
    ),
    (JobStatus.PROCESSING, JobEvent.CANCEL): Transition(
        JobStatus.PAUSED, SideEffect.NONE
    ),
    (JobStatus.FAILED, JobEvent.RESET): Transition(
        JobStatus.PENDING, SideEffect.CLEAR_OUTCOME
    ),
}


def transition(status: JobStatus, event: JobEvent) -> Transition:
    """Look up the transition for an event.

    Raises:
        InvalidTransitionError: If the event is not allowed from status.
    """
    try:
        return TRANSITIONS[(status, event)]
    except KeyError:
        raise InvalidTransitionError(status, event) from None


def can_transition(status: JobStatus, event: JobEvent) -> bool:
    """Return True if the event is allowed from status."""
    return (status, event) in TRANSITIONS


def allowed_events(status: JobStatus) -> list[JobEvent]:
    """Events accepted by a job in the given status."""
    return [event for (source, event) in TRANSITIONS if source is status]
