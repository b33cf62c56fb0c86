"""Configuration management for taskrelay.

This module provides configuration loading with precedence handling:
1. CLI flags (highest priority)
2. Environment variables (TASKRELAY_*)
3. Config file (~/.taskrelay/config.toml)
4. Default values (lowest priority)
"""

from taskrelay.config.env import EnvReader
from taskrelay.config.loader import (
    get_config,
    get_default_config_path,
    load_config_file,
)
from taskrelay.config.models import (
    EmitterConfig,
    LoggingConfig,
    SchedulerConfig,
    TaskRelayConfig,
)

__all__ = [
    "EmitterConfig",
    "EnvReader",
    "LoggingConfig",
    "SchedulerConfig",
    "TaskRelayConfig",
    "get_config",
    "get_default_config_path",
    "load_config_file",
]
