"""Configuration data models.

This module defines dataclasses for taskrelay configuration options.
"""

from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class SchedulerConfig:
    """Configuration for the job scheduler."""

    # Jobs in processing longer than this are treated as abandoned
    stale_threshold_seconds: int = 600

    # Wall-clock limit for one execution
    execution_timeout_seconds: int = 300

    # Executions slower than this log a warning
    slow_job_seconds: float = 30.0

    # Backoff bases: delay = min(max_retry_delay, base * 2**attempts)
    retry_base_delay: int = 10
    stale_retry_base_delay: int = 30
    max_retry_delay: int = 300

    # Defaults applied when a widget config omits them
    default_priority: int = 10
    default_max_attempts: int = 3

    # Stop/pause flags expire after this long
    control_flag_ttl_seconds: int = 3600

    # Cache lifetimes for read-mostly reports
    health_cache_ttl_seconds: int = 300
    status_cache_ttl_seconds: int = 10

    # Health check thresholds
    health_window_hours: int = 24
    failure_rate_warning: float = 20.0
    avg_attempts_warning: float = 2.0

    # Retention
    retention_days: int = 30
    purge_include_paused: bool = False

    # Classify plain exceptions by message text when no ErrorKind is given
    legacy_error_matching: bool = True

    def __post_init__(self) -> None:
        """Validate configuration."""
        for name in (
            "stale_threshold_seconds",
            "execution_timeout_seconds",
            "retry_base_delay",
            "stale_retry_base_delay",
            "max_retry_delay",
            "default_max_attempts",
            "retention_days",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")
        if not 1 <= self.default_priority <= 100:
            raise ValueError("default_priority must be between 1 and 100")
        if not 0.0 <= self.failure_rate_warning <= 100.0:
            raise ValueError("failure_rate_warning must be a percentage")


@dataclass
class EmitterConfig:
    """Configuration for the event emitter."""

    # uuid, timestamp or hash
    event_id_strategy: str = "uuid"

    # Number of emits kept in the rolling performance window
    metrics_window: int = 100

    # Average time/memory thresholds for the performance status
    warn_time_ms: float = 50.0
    critical_time_ms: float = 200.0
    warn_memory_mb: float = 1.0
    critical_memory_mb: float = 5.0

    # Measure memory deltas with tracemalloc
    track_memory: bool = False

    def __post_init__(self) -> None:
        """Validate configuration."""
        valid_strategies = {"uuid", "timestamp", "hash"}
        if self.event_id_strategy not in valid_strategies:
            raise ValueError(
                f"event_id_strategy must be one of {valid_strategies}, "
                f"got {self.event_id_strategy}"
            )
        if self.metrics_window < 1:
            raise ValueError("metrics_window must be at least 1")
        if self.warn_time_ms > self.critical_time_ms:
            raise ValueError("warn_time_ms must not exceed critical_time_ms")
        if self.warn_memory_mb > self.critical_memory_mb:
            raise ValueError("warn_memory_mb must not exceed critical_memory_mb")


@dataclass
class LoggingConfig:
    """Configuration for structured logging."""

    # Log level: debug, info, warning, error
    level: str = "info"

    # Log file path (None = stderr only)
    file: Path | None = None

    # Log format: text or json
    format: str = "text"

    # Also log to stderr when file is set
    include_stderr: bool = False

    # Rotation threshold in bytes (default 10MB)
    max_bytes: int = 10_485_760

    # Number of rotated files to keep
    backup_count: int = 5

    def __post_init__(self) -> None:
        """Validate configuration."""
        valid_levels = {"debug", "info", "warning", "error"}
        if self.level.lower() not in valid_levels:
            raise ValueError(f"level must be one of {valid_levels}, got {self.level}")
        valid_formats = {"text", "json"}
        if self.format.lower() not in valid_formats:
            raise ValueError(
                f"format must be one of {valid_formats}, got {self.format}"
            )


@dataclass
class TaskRelayConfig:
    """Top-level taskrelay configuration."""

    database_path: Path | None = None
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    emitter: EmitterConfig = field(default_factory=EmitterConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
