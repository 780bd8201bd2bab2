"""Configuration management: YAML settings plus environment variables."""

from .environment import EnvironmentConfig, load_environment_config
from .exceptions import ConfigurationError
from .loader import load_config, parse_config_dict, validate_config_file
from .models import (
    AppConfig,
    AuditConfig,
    LimiterConfig,
    LogFormat,
    LogLevel,
    LoggingConfig,
    MatchingConfig,
    QueueConfig,
    ScheduleConfig,
    SearchConfig,
    WorkerSettings,
)

__all__ = [
    # Loader functions
    "load_config",
    "parse_config_dict",
    "validate_config_file",
    "load_environment_config",
    # Configuration models
    "AppConfig",
    "AuditConfig",
    "LimiterConfig",
    "LoggingConfig",
    "MatchingConfig",
    "QueueConfig",
    "ScheduleConfig",
    "SearchConfig",
    "WorkerSettings",
    "EnvironmentConfig",
    # Enums
    "LogLevel",
    "LogFormat",
    # Exceptions
    "ConfigurationError",
]
