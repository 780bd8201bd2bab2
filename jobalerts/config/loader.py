"""Configuration loader."""

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from pydantic import ValidationError

from .environment import EnvironmentConfig, load_environment_config
from .exceptions import ConfigurationError
from .models import AppConfig
from .validators import check_for_warnings, emit_warnings

DEFAULT_CONFIG_LOCATIONS = (
    Path("config.yaml"),
    Path("config") / "config.yaml",
)


def load_config(config_path: Optional[Path] = None) -> Tuple[AppConfig, EnvironmentConfig]:
    """
    Load and validate configuration from a YAML file and environment variables.

    Lookup order for the file:
    1. ``config_path`` if given (must exist)
    2. config.yaml in the current directory
    3. ./config/config.yaml
    4. Built-in defaults when neither default location exists

    Args:
        config_path: Optional explicit path to the configuration file

    Returns:
        Tuple of (AppConfig, EnvironmentConfig)

    Raises:
        ConfigurationError: If the file is unreadable or fails validation
    """
    config_file = _find_config_file(config_path)
    config_dict = _read_yaml(config_file) if config_file else {}

    warnings = check_for_warnings(config_dict)
    if warnings:
        emit_warnings(warnings)

    app_config = parse_config_dict(config_dict)
    env_config = load_environment_config()

    return app_config, env_config


def parse_config_dict(config_dict: Dict[str, Any]) -> AppConfig:
    """Validate a raw configuration mapping.

    Raises:
        ConfigurationError: With one entry per pydantic validation error
    """
    try:
        return AppConfig.model_validate(config_dict)
    except ValidationError as e:
        raise ConfigurationError(
            "Configuration validation failed",
            errors=_format_validation_errors(e),
            suggestions=[
                "Review config.example.yaml for the expected layout",
                "Durations accept values like '30s', '15m', '1h' or 'PT15M'",
                "Cron patterns use five fields: minute hour day month weekday",
            ],
        ) from e


def _format_validation_errors(error: ValidationError) -> List[str]:
    messages = []
    for item in error.errors():
        field_path = " -> ".join(str(loc) for loc in item["loc"]) or "<root>"
        error_type = item["type"]

        if error_type == "missing":
            messages.append(f"Missing required field: {field_path}")
        elif error_type.endswith("_type") or error_type.endswith("_parsing"):
            messages.append(
                f"Invalid type for '{field_path}': {item['msg']} (got {item.get('input')!r})"
            )
        elif error_type == "extra_forbidden":
            messages.append(f"Unknown field: {field_path}")
        else:
            messages.append(f"{field_path}: {item['msg']}")
    return messages


def _read_yaml(config_file: Path) -> Dict[str, Any]:
    try:
        with open(config_file, "r", encoding="utf-8") as f:
            config_dict = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Failed to parse YAML configuration: {e}",
            suggestions=[
                "Check YAML syntax in your config file",
                "Ensure proper indentation (use spaces, not tabs)",
            ],
        ) from e
    except OSError as e:
        raise ConfigurationError(
            f"Failed to read configuration file: {e}",
            suggestions=[f"Ensure {config_file} is readable"],
        ) from e

    if config_dict is None:
        return {}

    if not isinstance(config_dict, dict):
        raise ConfigurationError(
            f"Configuration file {config_file} must contain a mapping at the top level",
            suggestions=["Start the file with section names such as 'queue:' or 'matching:'"],
        )

    return config_dict


def _find_config_file(config_path: Optional[Path] = None) -> Optional[Path]:
    """
    Resolve the configuration file to read.

    Returns:
        Path to the configuration file, or None to use built-in defaults

    Raises:
        ConfigurationError: If an explicitly requested file does not exist
    """
    if config_path:
        config_path = Path(config_path)
        if not config_path.exists():
            raise ConfigurationError(
                f"Specified configuration file not found: {config_path}",
                suggestions=[
                    f"Ensure {config_path} exists",
                    "Omit --config to run with built-in defaults",
                ],
            )
        return config_path

    for candidate in DEFAULT_CONFIG_LOCATIONS:
        if candidate.exists():
            return candidate

    return None


def validate_config_file(config_path: Path) -> Tuple[bool, str]:
    """
    Validate a configuration file without touching the environment.

    Returns:
        Tuple of (is_valid, human-readable report)
    """
    try:
        parse_config_dict(_read_yaml(Path(config_path)))
    except ConfigurationError as e:
        return False, f"Configuration validation failed:\n{e}"
    return True, f"Configuration file {config_path} is valid"
