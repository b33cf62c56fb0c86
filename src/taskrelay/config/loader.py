"""Configuration loader with precedence handling.

Configuration is loaded with the following precedence (highest to lowest):
1. Explicit overrides (CLI arguments passed to get_config)
2. Environment variables (TASKRELAY_*)
3. Config file (~/.taskrelay/config.toml)
4. Default values

Environment variables:
- TASKRELAY_CONFIG_PATH: Path to config file
- TASKRELAY_DATABASE_PATH: Path to database file
- TASKRELAY_STALE_THRESHOLD: Seconds before a processing job is stale
- TASKRELAY_EXECUTION_TIMEOUT: Execution time limit in seconds
- TASKRELAY_RETRY_BASE_DELAY: Retry backoff base in seconds
- TASKRELAY_MAX_RETRY_DELAY: Retry backoff cap in seconds
- TASKRELAY_RETENTION_DAYS: Days to keep finished jobs
- TASKRELAY_PURGE_INCLUDE_PAUSED: Also purge cancelled jobs
- TASKRELAY_LEGACY_ERROR_MATCHING: Classify errors by message text
- TASKRELAY_EVENT_ID_STRATEGY: uuid, timestamp or hash
- TASKRELAY_LOG_LEVEL / TASKRELAY_LOG_FORMAT / TASKRELAY_LOG_FILE
"""

from __future__ import annotations

import logging
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from taskrelay.config.env import EnvReader
from taskrelay.config.models import (
    EmitterConfig,
    LoggingConfig,
    SchedulerConfig,
    TaskRelayConfig,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".taskrelay"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.toml"


def get_default_config_path(env: EnvReader | None = None) -> Path:
    """Get the config file path, honouring TASKRELAY_CONFIG_PATH."""
    reader = env or EnvReader()
    return reader.get_path("TASKRELAY_CONFIG_PATH") or DEFAULT_CONFIG_FILE


def load_config_file(path: Path | None = None) -> dict[str, Any]:
    """Load configuration from TOML file.

    Args:
        path: Path to config file. If None, uses default location.

    Returns:
        Parsed configuration dict. Empty dict if file doesn't exist or
        cannot be parsed.
    """
    if path is None:
        path = get_default_config_path()

    if not path.exists():
        logger.debug("Config file not found: %s", path)
        return {}

    try:
        with path.open("rb") as f:
            config = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.warning("Failed to load config file %s: %s", path, e)
        return {}

    logger.debug("Loaded config from %s", path)
    return config


def get_config(
    config_path: Path | None = None,
    # CLI overrides (highest precedence)
    database_path: Path | None = None,
    log_level: str | None = None,
    env: Mapping[str, str] | None = None,
) -> TaskRelayConfig:
    """Get taskrelay configuration with full precedence handling.

    Args:
        config_path: Path to config file (overrides TASKRELAY_CONFIG_PATH).
        database_path: Override for the database path.
        log_level: Override for the log level.
        env: Environment mapping (defaults to os.environ).

    Returns:
        TaskRelayConfig with merged configuration.
    """
    reader = EnvReader(env)
    file_config = load_config_file(config_path or get_default_config_path(reader))

    scheduler_file = file_config.get("scheduler", {})
    defaults = SchedulerConfig()
    scheduler = SchedulerConfig(
        stale_threshold_seconds=reader.get_int(
            "TASKRELAY_STALE_THRESHOLD",
            scheduler_file.get(
                "stale_threshold_seconds", defaults.stale_threshold_seconds
            ),
        ),
        execution_timeout_seconds=reader.get_int(
            "TASKRELAY_EXECUTION_TIMEOUT",
            scheduler_file.get(
                "execution_timeout_seconds", defaults.execution_timeout_seconds
            ),
        ),
        slow_job_seconds=scheduler_file.get(
            "slow_job_seconds", defaults.slow_job_seconds
        ),
        retry_base_delay=reader.get_int(
            "TASKRELAY_RETRY_BASE_DELAY",
            scheduler_file.get("retry_base_delay", defaults.retry_base_delay),
        ),
        stale_retry_base_delay=scheduler_file.get(
            "stale_retry_base_delay", defaults.stale_retry_base_delay
        ),
        max_retry_delay=reader.get_int(
            "TASKRELAY_MAX_RETRY_DELAY",
            scheduler_file.get("max_retry_delay", defaults.max_retry_delay),
        ),
        default_priority=scheduler_file.get(
            "default_priority", defaults.default_priority
        ),
        default_max_attempts=scheduler_file.get(
            "default_max_attempts", defaults.default_max_attempts
        ),
        control_flag_ttl_seconds=scheduler_file.get(
            "control_flag_ttl_seconds", defaults.control_flag_ttl_seconds
        ),
        health_cache_ttl_seconds=scheduler_file.get(
            "health_cache_ttl_seconds", defaults.health_cache_ttl_seconds
        ),
        status_cache_ttl_seconds=scheduler_file.get(
            "status_cache_ttl_seconds", defaults.status_cache_ttl_seconds
        ),
        health_window_hours=scheduler_file.get(
            "health_window_hours", defaults.health_window_hours
        ),
        failure_rate_warning=scheduler_file.get(
            "failure_rate_warning", defaults.failure_rate_warning
        ),
        avg_attempts_warning=scheduler_file.get(
            "avg_attempts_warning", defaults.avg_attempts_warning
        ),
        retention_days=reader.get_int(
            "TASKRELAY_RETENTION_DAYS",
            scheduler_file.get("retention_days", defaults.retention_days),
        ),
        purge_include_paused=reader.get_bool(
            "TASKRELAY_PURGE_INCLUDE_PAUSED",
            scheduler_file.get("purge_include_paused", defaults.purge_include_paused),
        ),
        legacy_error_matching=reader.get_bool(
            "TASKRELAY_LEGACY_ERROR_MATCHING",
            scheduler_file.get(
                "legacy_error_matching", defaults.legacy_error_matching
            ),
        ),
    )

    emitter_file = file_config.get("emitter", {})
    emitter_defaults = EmitterConfig()
    emitter = EmitterConfig(
        event_id_strategy=reader.get_str(
            "TASKRELAY_EVENT_ID_STRATEGY",
            emitter_file.get("event_id_strategy", emitter_defaults.event_id_strategy),
        ),
        metrics_window=emitter_file.get(
            "metrics_window", emitter_defaults.metrics_window
        ),
        warn_time_ms=emitter_file.get("warn_time_ms", emitter_defaults.warn_time_ms),
        critical_time_ms=emitter_file.get(
            "critical_time_ms", emitter_defaults.critical_time_ms
        ),
        warn_memory_mb=emitter_file.get(
            "warn_memory_mb", emitter_defaults.warn_memory_mb
        ),
        critical_memory_mb=emitter_file.get(
            "critical_memory_mb", emitter_defaults.critical_memory_mb
        ),
        track_memory=emitter_file.get("track_memory", emitter_defaults.track_memory),
    )

    logging_file = file_config.get("logging", {})
    log_file = reader.get_path("TASKRELAY_LOG_FILE") or (
        Path(logging_file["file"]).expanduser() if logging_file.get("file") else None
    )
    logging_config = LoggingConfig(
        level=log_level
        or reader.get_str("TASKRELAY_LOG_LEVEL", logging_file.get("level", "info")),
        file=log_file,
        format=reader.get_str(
            "TASKRELAY_LOG_FORMAT", logging_file.get("format", "text")
        ),
        include_stderr=logging_file.get("include_stderr", False),
        max_bytes=logging_file.get("max_bytes", 10_485_760),
        backup_count=logging_file.get("backup_count", 5),
    )

    db_path = (
        database_path
        or reader.get_path("TASKRELAY_DATABASE_PATH")
        or (
            Path(file_config["database_path"]).expanduser()
            if file_config.get("database_path")
            else None
        )
    )

    return TaskRelayConfig(
        database_path=db_path,
        scheduler=scheduler,
        emitter=emitter,
        logging=logging_config,
    )
