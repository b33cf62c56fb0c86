"""Job scheduler for taskrelay.

The scheduler registers widgets, enqueues jobs and runs them one at a time:
- Stale processing jobs are recovered before each batch
- Stop/pause requests are honoured between jobs, never during one
- Jobs are locked with a compare-and-swap so only one worker runs each job
- Failures are classified and retried with exponential backoff

Construct one scheduler per process and pass it to whatever needs it.
The scheduler and its connection are meant to be used from one thread.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, NamedTuple

from pydantic import BaseModel

from taskrelay.config.models import SchedulerConfig, TaskRelayConfig
from taskrelay.db.connection import (
    check_database_connectivity,
    get_default_db_path,
    open_connection,
)
from taskrelay.db.outbox import OutboxConnection
from taskrelay.db.queries import get_job, get_jobs, select_next_eligible
from taskrelay.db.schema import initialize_database
from taskrelay.db.types import Job, JobStatus, encode_json, to_iso, utc_now
from taskrelay.events.emitter import EventEmitter
from taskrelay.jobs import queue
from taskrelay.jobs.classification import backoff_delay, classify_error
from taskrelay.jobs.control import CancellationToken, ControlFlags
from taskrelay.jobs.exceptions import (
    ErrorKind,
    ExecutionTimeout,
    LockContentionError,
    NonRecoverableExecutionError,
    UnknownJobTypeError,
    ValidationError,
)
from taskrelay.jobs.payloads import parse_payload, validate_payload
from taskrelay.jobs.transitions import JobEvent
from taskrelay.jobs.widget import Widget, WidgetConfig
from taskrelay.logging.context import job_context
from taskrelay.metrics import increment_counter, record_duration

logger = logging.getLogger(__name__)

HEALTH_HEALTHY = "healthy"
HEALTH_WARNING = "warning"
HEALTH_CRITICAL = "critical"


class BatchOutcome(Enum):
    """What a single process_batch() call did."""

    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    IDLE = "idle"
    STOPPED = "stopped"
    CONTENDED = "contended"
    CANCELLED = "cancelled"
    UNKNOWN_TYPE = "unknown_type"
    ERROR = "error"


@dataclass
class BatchResult:
    """Result of one scheduling step."""

    job_type: str
    outcome: BatchOutcome
    job_id: int | None = None
    message: str | None = None

    @property
    def executed(self) -> bool:
        """True if a job was executed (whatever its outcome)."""
        return self.outcome in (
            BatchOutcome.COMPLETED,
            BatchOutcome.RETRY_SCHEDULED,
            BatchOutcome.FAILED,
            BatchOutcome.CANCELLED,
        )


@dataclass
class Registration:
    """A widget registered for a job type."""

    job_type: str
    widget: Widget
    config: WidgetConfig


class _CacheEntry(NamedTuple):
    """Cached report with its monotonic expiry."""

    expires_at: float
    value: dict[str, Any]


def _check_int_range(
    value: Any, field: str, minimum: int, maximum: int | None = None
) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer", field)
    if value < minimum or (maximum is not None and value > maximum):
        bounds = f"between {minimum} and {maximum}" if maximum else f">= {minimum}"
        raise ValidationError(f"{field} must be {bounds}", field)
    return value


class JobScheduler:
    """Registers widgets and runs their jobs.

    Args:
        conn: Database connection (schema must be initialized).
        config: Scheduler configuration.
        emitter: Emitter that receives job change events.
        clock: Wall-clock source returning aware UTC datetimes.
        monotonic: Monotonic clock used for timeouts and caches.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: SchedulerConfig | None = None,
        emitter: EventEmitter | None = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.conn = conn
        self.config = config or SchedulerConfig()
        self.outbox = OutboxConnection(conn, emitter)
        self.control = ControlFlags(conn, self.config.control_flag_ttl_seconds, clock)
        self._clock = clock
        self._monotonic = monotonic
        self._registrations: dict[str, Registration] = {}
        self._health_cache: _CacheEntry | None = None
        self._status_cache: dict[str, _CacheEntry] = {}

    @classmethod
    def from_config(
        cls, config: TaskRelayConfig, db_path: Path | str | None = None
    ) -> JobScheduler:
        """Open the configured database and build a scheduler for it."""
        path = db_path or config.database_path
        if path is None:
            path = get_default_db_path()
        conn = open_connection(path)
        initialize_database(conn)
        return cls(conn, config.scheduler, EventEmitter(config=config.emitter))

    # Registration

    def register(self, job_type: str, widget: Widget) -> bool:
        """Register a widget for a job type.

        Registering a job type a second time is a no-op.

        Returns:
            True if registered, False if the job type already had a widget.

        Raises:
            ValidationError: If the job type or the widget config is invalid.
        """
        if not isinstance(job_type, str) or not job_type.strip():
            raise ValidationError("job_type must be a non-empty string", "job_type")

        if job_type in self._registrations:
            existing = self._registrations[job_type]
            logger.warning(
                "Job type '%s' already registered (%s). Skipping duplicate (%s).",
                job_type,
                type(existing.widget).__name__,
                type(widget).__name__,
            )
            return False

        raw = widget.config()
        if isinstance(raw, WidgetConfig):
            config = raw
        elif isinstance(raw, Mapping):
            config = WidgetConfig.from_mapping(
                {
                    "priority": self.config.default_priority,
                    "max_attempts": self.config.default_max_attempts,
                    **raw,
                }
            )
        else:
            raise ValidationError(
                f"Widget config must be a WidgetConfig or mapping, got "
                f"{type(raw).__name__}",
                "config",
            )

        self._registrations[job_type] = Registration(job_type, widget, config)
        logger.info(
            "Registered widget %s for job type '%s'", type(widget).__name__, job_type
        )
        return True

    def is_registered(self, job_type: str) -> bool:
        return job_type in self._registrations

    def get_registration(self, job_type: str) -> Registration | None:
        return self._registrations.get(job_type)

    @property
    def job_types(self) -> list[str]:
        """Registered job types, in registration order."""
        return list(self._registrations)

    # Enqueueing

    def enqueue(
        self,
        job_type: str,
        payload: Mapping[str, Any] | BaseModel | None = None,
        *,
        priority: int | None = None,
        max_attempts: int | None = None,
        scheduled_at: datetime | None = None,
        created_by: int | None = None,
    ) -> int | None:
        """Queue a job.

        Options left as None take the widget's defaults.

        Returns:
            The new job ID, or None if the job type is not registered.

        Raises:
            ValidationError: If the payload or options are invalid.
        """
        registration = self._registrations.get(job_type)
        if registration is None:
            logger.error("Cannot enqueue job: unknown job type '%s'", job_type)
            return None

        job = self._build_job(
            registration, payload, priority, max_attempts, scheduled_at, created_by
        )
        job_id = queue.enqueue_job(self.outbox, job)
        self._invalidate_status(job_type)
        logger.info(
            "Enqueued %s job %d (priority %d, max attempts %d)",
            job_type,
            job_id,
            job.priority,
            job.max_attempts,
        )
        return job_id

    def enqueue_many(
        self,
        job_type: str,
        payloads: Iterable[Mapping[str, Any] | BaseModel],
        **options: Any,
    ) -> list[int]:
        """Queue several jobs in one transaction.

        Either all jobs are inserted or none are.

        Returns:
            New job IDs, or an empty list if the job type is not registered.

        Raises:
            ValidationError: If any payload is invalid (nothing is inserted).
        """
        registration = self._registrations.get(job_type)
        if registration is None:
            logger.error("Cannot enqueue jobs: unknown job type '%s'", job_type)
            return []

        jobs = [
            self._build_job(
                registration,
                payload,
                options.get("priority"),
                options.get("max_attempts"),
                options.get("scheduled_at"),
                options.get("created_by"),
            )
            for payload in payloads
        ]
        if not jobs:
            return []

        with self.outbox.transaction():
            job_ids = [queue.enqueue_job(self.outbox, job) for job in jobs]

        self._invalidate_status(job_type)
        logger.info("Enqueued %d %s job(s)", len(job_ids), job_type)
        return job_ids

    def populate_queue(self, job_type: str) -> int:
        """Enqueue one job per item the widget discovers.

        Returns:
            Number of jobs enqueued.
        """
        registration = self._registrations.get(job_type)
        if registration is None:
            logger.error("Cannot populate queue: unknown job type '%s'", job_type)
            return 0

        items = list(registration.widget.discover_items())
        if not items:
            logger.info("No items discovered for %s", job_type)
            return 0
        return len(self.enqueue_many(job_type, items))

    def _build_job(
        self,
        registration: Registration,
        payload: Mapping[str, Any] | BaseModel | None,
        priority: int | None,
        max_attempts: int | None,
        scheduled_at: datetime | None,
        created_by: int | None,
    ) -> Job:
        config = registration.config
        priority = _check_int_range(
            config.priority if priority is None else priority, "priority", 1, 100
        )
        max_attempts = _check_int_range(
            config.max_attempts if max_attempts is None else max_attempts,
            "max_attempts",
            1,
        )
        data = validate_payload(registration.widget.payload_model, payload)
        now = to_iso(self._clock())
        return Job(
            id=None,
            job_type=registration.job_type,
            status=JobStatus.PENDING,
            priority=priority,
            attempts=0,
            max_attempts=max_attempts,
            payload=data,
            created_at=now,
            updated_at=now,
            scheduled_at=to_iso(scheduled_at) if scheduled_at else None,
            progress_message="Queued",
            created_by=created_by,
        )

    # Processing

    def process_batch(
        self,
        job_type: str,
        batch_size: int = 1,
        token: CancellationToken | None = None,
    ) -> BatchResult:
        """Run at most one eligible job of a type.

        Batches are always a single job regardless of batch_size.

        Args:
            job_type: Job type to process.
            batch_size: Requested batch size (clamped to 1).
            token: Cancellation token; defaults to one following the
                stop/pause flags for job_type.

        Returns:
            What happened. Never raises for execution failures.
        """
        if batch_size != 1:
            logger.debug("Batch size %d clamped to 1 for %s", batch_size, job_type)

        registration = self._registrations.get(job_type)
        if registration is None:
            logger.error("Cannot process batch: unknown job type '%s'", job_type)
            return BatchResult(job_type, BatchOutcome.UNKNOWN_TYPE)

        self.recover_stale_jobs()

        if token is None:
            token = self.control.token_for(job_type)
        if token.is_cancelled:
            logger.info("Processing of %s jobs halted: %s", job_type, token.reason)
            return BatchResult(job_type, BatchOutcome.STOPPED, message=token.reason)

        now = self._clock()
        try:
            candidate = select_next_eligible(self.conn, job_type, to_iso(now))
        except sqlite3.Error as e:
            logger.exception("Failed to select next %s job", job_type)
            return BatchResult(job_type, BatchOutcome.ERROR, message=str(e))
        if candidate is None:
            return BatchResult(job_type, BatchOutcome.IDLE)

        try:
            job = queue.claim_job(self.outbox, candidate.id, now)
        except LockContentionError as e:
            logger.debug("Skipping job %d: %s", candidate.id, e)
            return BatchResult(job_type, BatchOutcome.CONTENDED, candidate.id)
        self._invalidate_status(job_type)

        try:
            return self.execute_job(job)
        except sqlite3.Error as e:
            logger.exception("Failed to record outcome of job %d", job.id)
            return BatchResult(job_type, BatchOutcome.ERROR, job.id, str(e))
        finally:
            try:
                queue.release_job_lock(self.outbox, job.id, self._clock())
            except sqlite3.Error:
                logger.exception("Failed to release lock on job %d", job.id)
            self._invalidate_status(job_type)

    def run(
        self,
        job_type: str,
        token: CancellationToken | None = None,
        max_jobs: int | None = None,
    ) -> int:
        """Process jobs until the queue is empty, cancelled, or max_jobs ran.

        Returns:
            Number of jobs executed.
        """
        executed = 0
        logger.info("Starting %s worker (max_jobs=%s)", job_type, max_jobs)
        while max_jobs is None or executed < max_jobs:
            result = self.process_batch(job_type, token=token)
            if result.executed:
                executed += 1
                continue
            if result.outcome is BatchOutcome.CONTENDED:
                continue
            break
        logger.info("%s worker finished: %d job(s) executed", job_type, executed)
        return executed

    def execute_job(self, job: Job) -> BatchResult:
        """Execute a locked job and persist its outcome.

        The job must already be in processing.

        Raises:
            UnknownJobTypeError: If no widget is registered for the job type.
        """
        registration = self._registrations.get(job.job_type)
        if registration is None:
            raise UnknownJobTypeError(job.job_type)

        widget = registration.widget
        timeout = self.config.execution_timeout_seconds
        item: Any = None
        widget.bind(job, lambda done, total: self._record_progress(job, done, total))
        start = self._monotonic()
        try:
            with job_context(job.id, job.job_type):
                try:
                    try:
                        item = parse_payload(widget.payload_model, job.payload)
                    except ValidationError as e:
                        raise NonRecoverableExecutionError(
                            f"Invalid payload: {e}"
                        ) from e
                    widget.before_batch([item])
                    with record_duration("jobs.execution", job_type=job.job_type):
                        result = widget.execute(item)
                    elapsed = self._monotonic() - start
                    if elapsed > timeout:
                        raise ExecutionTimeout(timeout)
                    widget.after_batch([item], [result])
                    elapsed = self._monotonic() - start
                    result_data = self._build_result_data(job, result, elapsed)
                except Exception as e:
                    return self._handle_failure(widget, job, item, e)
                return self._handle_success(widget, job, result_data, elapsed)
        finally:
            widget.unbind()

    def _build_result_data(
        self, job: Job, result: Any, elapsed: float
    ) -> dict[str, Any]:
        """Build the record stored in result_data.

        Raises:
            NonRecoverableExecutionError: If the result cannot be stored as JSON.
        """
        if isinstance(result, BaseModel):
            result = result.model_dump(mode="json")
        result_data = {
            "success": True,
            "message": "Job completed successfully",
            "result": result,
            "processing_time": round(elapsed, 3),
            "job_id": job.id,
            "completed_at": to_iso(self._clock()),
        }
        try:
            encode_json(result_data)
        except (TypeError, ValueError) as e:
            raise NonRecoverableExecutionError(
                f"Result not serializable: {e}"
            ) from e
        return result_data

    def _handle_success(
        self,
        widget: Widget,
        job: Job,
        result_data: dict[str, Any],
        elapsed: float,
    ) -> BatchResult:
        now = self._clock()
        completed = queue.apply_transition(
            self.outbox,
            job,
            JobEvent.COMPLETE,
            now,
            {
                "completed_at": to_iso(now),
                "result_data": result_data,
                "error_message": None,
                "progress_message": "Job completed",
            },
        )
        if not completed:
            return self._discarded(job, JobEvent.COMPLETE)
        if elapsed > self.config.slow_job_seconds:
            logger.warning(
                "Slow job %d (%s) took %.1f seconds", job.id, job.job_type, elapsed
            )
        increment_counter("jobs.completed", job_type=job.job_type)
        logger.info("Job %d (%s) completed in %.2fs", job.id, job.job_type, elapsed)
        self._call_hook(widget.on_complete, "on_complete", job)
        return BatchResult(job.job_type, BatchOutcome.COMPLETED, job.id)

    def _handle_failure(
        self,
        widget: Widget,
        job: Job,
        item: Any,
        error: Exception,
    ) -> BatchResult:
        """Record a failed execution as a retry or a permanent failure.

        attempts counts this execution, so a retry needs attempts + 1 to stay
        below max_attempts: with max_attempts=3 the third execution fails
        permanently even when its error is recoverable.
        """
        now = self._clock()
        attempts = job.attempts + 1
        message = str(error) or type(error).__name__
        kind = classify_error(
            error, legacy_matching=self.config.legacy_error_matching
        )
        wants_retry = self._ask_retry(widget, item, error)

        retryable = kind is ErrorKind.RECOVERABLE and wants_retry
        if retryable and attempts < job.max_attempts:
            delay = backoff_delay(
                attempts, self.config.retry_base_delay, self.config.max_retry_delay
            )
            retried = queue.apply_transition(
                self.outbox,
                job,
                JobEvent.RETRY,
                now,
                {
                    "attempts": attempts,
                    "error_message": message,
                    "started_at": None,
                    "scheduled_at": to_iso(now + timedelta(seconds=delay)),
                    "progress_message": (
                        f"Retry scheduled in {delay} seconds "
                        f"(attempt {attempts}/{job.max_attempts})"
                    ),
                },
            )
            if not retried:
                return self._discarded(job, JobEvent.RETRY)
            increment_counter("jobs.retried", job_type=job.job_type)
            logger.warning(
                "Job %d (%s) failed on attempt %d/%d, retrying in %ds: %s",
                job.id,
                job.job_type,
                attempts,
                job.max_attempts,
                delay,
                message,
            )
            return BatchResult(
                job.job_type, BatchOutcome.RETRY_SCHEDULED, job.id, message
            )

        failed = queue.apply_transition(
            self.outbox,
            job,
            JobEvent.FAIL,
            now,
            {
                "attempts": attempts,
                "error_message": message,
                "completed_at": to_iso(now),
                "progress_message": "Job failed permanently",
            },
        )
        if not failed:
            return self._discarded(job, JobEvent.FAIL)
        increment_counter("jobs.failed", job_type=job.job_type)
        logger.error(
            "Job %d (%s) failed permanently after %d attempt(s) (%s): %s",
            job.id,
            job.job_type,
            attempts,
            kind.value,
            message,
        )
        self._call_hook(widget.on_failure, "on_failure", job)
        return BatchResult(job.job_type, BatchOutcome.FAILED, job.id, message)

    @staticmethod
    def _discarded(job: Job, event: JobEvent) -> BatchResult:
        logger.info(
            "Job %d (%s) changed while running; %s outcome discarded",
            job.id,
            job.job_type,
            event.value,
        )
        return BatchResult(job.job_type, BatchOutcome.CANCELLED, job.id)

    @staticmethod
    def _ask_retry(widget: Widget, item: Any, error: Exception) -> bool:
        try:
            return bool(widget.on_error(item, error))
        except Exception:
            logger.exception("%s.on_error raised; not retrying", type(widget).__name__)
            return False

    @staticmethod
    def _call_hook(hook: Callable[[], None], name: str, job: Job) -> None:
        try:
            hook()
        except Exception:
            logger.exception("%s hook failed for job %d", name, job.id)

    def _record_progress(self, job: Job, completed: int, total: int) -> None:
        percentage = int(completed / total * 100) if total > 0 else 0
        self.outbox.update(
            queue.JOBS_TABLE,
            {
                "progress_message": f"Processed {completed}/{total} ({percentage}%)",
                "updated_at": to_iso(self._clock()),
            },
            {"id": job.id, "status": JobStatus.PROCESSING.value},
            entity=queue.JOB_ENTITY,
        )

    def recover_stale_jobs(self) -> tuple[int, int]:
        """Recover jobs stuck in processing.

        Returns:
            Tuple of (rescheduled, failed) counts.
        """
        try:
            counts = queue.recover_stale_jobs(
                self.outbox,
                self._clock(),
                threshold_seconds=self.config.stale_threshold_seconds,
                base_delay=self.config.stale_retry_base_delay,
                max_delay=self.config.max_retry_delay,
            )
        except sqlite3.Error:
            logger.exception("Stale job recovery failed")
            return 0, 0
        if any(counts):
            self._invalidate_status()
        return counts

    # Control

    def stop(self, job_type: str) -> bool:
        """Ask workers to stop picking up jobs of this type."""
        return self._control(self.control.stop, job_type)

    def pause(self, job_type: str) -> bool:
        """Ask workers to pause this job type."""
        return self._control(self.control.pause, job_type)

    def resume(self, job_type: str) -> bool:
        """Clear stop and pause requests for this job type."""
        return self._control(self.control.resume, job_type)

    def _control(self, action: Callable[[str], None], job_type: str) -> bool:
        try:
            action(job_type)
        except sqlite3.Error:
            logger.exception("Failed to update control flag for %s", job_type)
            return False
        self._invalidate_status(job_type)
        return True

    # Administration

    def cancel(self, job_id: int) -> bool:
        """Cancel a pending or processing job (it becomes paused).

        A processing job keeps running to completion; its outcome is
        discarded because the row is no longer processing.
        """
        try:
            cancelled = queue.cancel_job(self.outbox, job_id, self._clock())
        except sqlite3.Error:
            logger.exception("Failed to cancel job %d", job_id)
            return False
        if cancelled:
            logger.info("Cancelled job %d", job_id)
            self._invalidate_status()
        return cancelled

    def retry_failed(self, job_type: str) -> int:
        """Requeue every failed job of a type with a fresh attempt count."""
        try:
            count = queue.reset_failed_jobs(self.outbox, job_type, self._clock())
        except sqlite3.Error:
            logger.exception("Failed to retry failed %s jobs", job_type)
            return 0
        logger.info("Requeued %d failed %s job(s)", count, job_type)
        self._invalidate_status(job_type)
        return count

    def clear_queue(self, job_type: str, status: JobStatus | None = None) -> int:
        """Delete jobs of a type, optionally only those in one status."""
        try:
            count = queue.clear_jobs(self.outbox, job_type, status)
        except sqlite3.Error:
            logger.exception("Failed to clear %s queue", job_type)
            return 0
        logger.info(
            "Cleared %d %s job(s)%s",
            count,
            job_type,
            f" with status {status.value}" if status else "",
        )
        self._invalidate_status(job_type)
        return count

    def purge_old_jobs(self, retention_days: int | None = None) -> int:
        """Delete finished jobs older than the retention period."""
        if retention_days is None:
            retention_days = self.config.retention_days
        try:
            count = queue.purge_old_jobs(
                self.outbox,
                self._clock(),
                retention_days,
                include_paused=self.config.purge_include_paused,
            )
        except sqlite3.Error:
            logger.exception("Failed to purge old jobs")
            return 0
        self._invalidate_status()
        return count

    def get_job(self, job_id: int) -> Job | None:
        try:
            return get_job(self.conn, job_id)
        except sqlite3.Error:
            logger.exception("Failed to load job %d", job_id)
            return None

    def get_jobs(self, **filters: Any) -> list[Job]:
        """List jobs; accepts the filters of taskrelay.db.queries.get_jobs."""
        try:
            return get_jobs(self.conn, **filters)
        except sqlite3.Error:
            logger.exception("Failed to list jobs")
            return []

    def queue_status(self, job_type: str) -> dict[str, Any]:
        """Per-status counts and control flags for a job type.

        Cached briefly; any change made through this scheduler clears it.
        """
        cached = self._status_cache.get(job_type)
        if cached is not None and cached.expires_at > self._monotonic():
            return cached.value

        try:
            stats = queue.get_queue_stats(self.conn, job_type)
            is_stopped = self.control.is_stopped(job_type)
            is_paused = self.control.is_paused(job_type)
        except sqlite3.Error:
            logger.exception("Failed to read %s queue status", job_type)
            return {"job_type": job_type, "error": "Queue status unavailable"}

        total = stats["total"]
        status = {
            "job_type": job_type,
            **stats,
            "progress_percentage": (
                round(stats[JobStatus.COMPLETED.value] / total * 100, 1)
                if total
                else 0.0
            ),
            "is_stopped": is_stopped,
            "is_paused": is_paused,
        }
        self._status_cache[job_type] = _CacheEntry(
            self._monotonic() + self.config.status_cache_ttl_seconds, status
        )
        return status

    def processing_stats(self, job_type: str, days: int = 7) -> dict[str, Any]:
        """Completion statistics for a job type over the last days."""
        since = self._clock() - timedelta(days=days)
        try:
            return queue.get_processing_stats(self.conn, job_type, since)
        except sqlite3.Error:
            logger.exception("Failed to compute %s statistics", job_type)
            return {"job_type": job_type, "error": "Statistics unavailable"}

    def health_check(self, force: bool = False) -> dict[str, Any]:
        """Summarize queue health as healthy, warning or critical.

        Cached for health_cache_ttl_seconds unless force is set.
        """
        cached = self._health_cache
        if not force and cached is not None and cached.expires_at > self._monotonic():
            return cached.value

        now = self._clock()
        config = self.config
        status = HEALTH_HEALTHY
        metrics: dict[str, Any] = {}
        issues: list[str] = []
        recommendations: list[str] = []

        try:
            if not check_database_connectivity(self.conn):
                status = HEALTH_CRITICAL
                issues.append("Database connectivity check failed")
            else:
                metrics = queue.get_health_metrics(
                    self.conn, now - timedelta(hours=config.health_window_hours)
                )
                stuck = queue.count_stuck_jobs(
                    self.conn, now - timedelta(seconds=config.stale_threshold_seconds)
                )
                total = metrics["total_jobs"]
                failure_rate = (
                    round(metrics["failed_jobs"] / total * 100, 1) if total else 0.0
                )
                metrics["stuck_jobs"] = stuck
                metrics["failure_rate"] = failure_rate

                if stuck:
                    status = HEALTH_WARNING
                    issues.append(f"{stuck} job(s) stuck in processing")
                    recommendations.append(
                        "Stuck jobs are recovered on the next batch; "
                        "check for crashed workers"
                    )
                if failure_rate > config.failure_rate_warning:
                    status = HEALTH_WARNING
                    issues.append(f"High failure rate: {failure_rate}%")
                    recommendations.append("Review error messages of failed jobs")
                if metrics["avg_attempts"] > config.avg_attempts_warning:
                    recommendations.append(
                        f"Jobs need {metrics['avg_attempts']} attempts on average; "
                        "check the reliability of external services"
                    )
        except sqlite3.Error as e:
            logger.exception("Health check failed")
            status = HEALTH_CRITICAL
            issues.append(f"Health check failed: {e}")

        report = {
            "status": status,
            "timestamp": to_iso(now),
            "metrics": metrics,
            "issues": issues,
            "recommendations": recommendations,
        }
        if status != HEALTH_HEALTHY:
            logger.warning("Queue health %s: %s", status, "; ".join(issues))
        self._health_cache = _CacheEntry(
            self._monotonic() + config.health_cache_ttl_seconds, report
        )
        return report

    def _invalidate_status(self, job_type: str | None = None) -> None:
        if job_type is None:
            self._status_cache.clear()
        else:
            self._status_cache.pop(job_type, None)
