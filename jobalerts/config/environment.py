"""Environment variable loading and validation."""

import os
import socket
from typing import Optional

from .exceptions import ConfigurationError

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class EnvironmentConfig:
    """Environment variable configuration holder."""

    def __init__(
        self,
        database_url: Optional[str] = None,
        typesense_url: Optional[str] = None,
        typesense_api_key: Optional[str] = None,
        log_level: Optional[str] = None,
        environment: Optional[str] = None,
        worker_id: Optional[str] = None,
        broker_url: Optional[str] = None,
        result_backend: Optional[str] = None,
    ):
        self.database_url = database_url or "sqlite:///./data/job_alerts.db"
        self.typesense_url = (typesense_url or "http://localhost:8108").rstrip("/")
        self.typesense_api_key = typesense_api_key
        self.log_level = log_level
        self.environment = environment or "local"
        self.worker_id = worker_id or f"{socket.gethostname()}:{os.getpid()}"
        self.broker_url = broker_url or "redis://localhost:6379/0"
        # Task results live next to the application tables unless told otherwise
        self.result_backend = result_backend or f"db+{self.database_url}"


def load_environment_config() -> EnvironmentConfig:
    """
    Load and validate environment variables.

    All variables are optional:
    - DATABASE_URL: SQLAlchemy URL (default: sqlite:///./data/job_alerts.db)
    - TYPESENSE_URL: Search node base URL (default: http://localhost:8108)
    - TYPESENSE_API_KEY: API key sent with every search request
    - LOG_LEVEL: Override log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - ENVIRONMENT: Label attached to every log record (default: local)
    - WORKER_ID: Node name suffix for the embedded Celery workers (default: host:pid)
    - CELERY_BROKER_URL: Broker the queues live on (default: redis://localhost:6379/0)
    - CELERY_RESULT_BACKEND: Where task states are stored (default: db+DATABASE_URL)

    Raises:
        ConfigurationError: If a variable is set to an invalid value
    """
    errors = []

    typesense_url = os.getenv("TYPESENSE_URL")
    log_level = os.getenv("LOG_LEVEL")
    broker_url = os.getenv("CELERY_BROKER_URL")

    if typesense_url and not typesense_url.startswith(("http://", "https://")):
        errors.append(
            f"Invalid TYPESENSE_URL: '{typesense_url}'. Must start with http:// or https://"
        )

    if log_level and log_level.upper() not in VALID_LOG_LEVELS:
        errors.append(
            f"Invalid LOG_LEVEL: '{log_level}'. Must be one of: {', '.join(VALID_LOG_LEVELS)}"
        )

    if broker_url is not None and "://" not in broker_url:
        errors.append(
            f"Invalid CELERY_BROKER_URL: '{broker_url}'. Must be a URL such as redis://host:6379/0"
        )

    if errors:
        raise ConfigurationError(
            "Environment variable validation failed",
            errors=errors,
            suggestions=[
                "Copy .env.example to .env and adjust the values",
                "Unset variables to fall back to their defaults",
            ],
        )

    return EnvironmentConfig(
        database_url=os.getenv("DATABASE_URL"),
        typesense_url=typesense_url,
        typesense_api_key=os.getenv("TYPESENSE_API_KEY"),
        log_level=log_level.upper() if log_level else None,
        environment=os.getenv("ENVIRONMENT"),
        worker_id=os.getenv("WORKER_ID"),
        broker_url=broker_url,
        result_backend=os.getenv("CELERY_RESULT_BACKEND"),
    )
