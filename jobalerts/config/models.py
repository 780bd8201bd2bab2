"""Configuration schema models using Pydantic."""

from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from jobalerts.queue.cron import parse_pattern

from .duration import DurationParseError, parse_duration, validate_duration_range


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Log output formats."""

    JSON = "json"
    KEY_VALUE = "key-value"


def _check_duration(value: str, min_seconds: int, max_seconds: int, label: str) -> str:
    try:
        seconds = parse_duration(value)
        validate_duration_range(seconds, min_seconds=min_seconds, max_seconds=max_seconds, label=label)
    except DurationParseError as e:
        raise ValueError(str(e)) from e
    return value


class LimiterConfig(BaseModel):
    """Throughput ceiling for one queue: at most ``max`` jobs per ``duration``."""

    max: int = Field(..., ge=1, le=10000, description="Jobs allowed per window")
    duration: str = Field("60s", description="Rolling window length")

    @field_validator("duration")
    @classmethod
    def validate_window(cls, v: str) -> str:
        return _check_duration(v, 1, 86400, "Limiter window")

    @property
    def duration_seconds(self) -> int:
        return parse_duration(self.duration)


class WorkerSettings(BaseModel):
    """Worker pool settings for a single queue."""

    concurrency: int = Field(1, ge=1, le=64, description="Parallel in-flight jobs")
    limiter: Optional[LimiterConfig] = Field(None, description="Optional throughput ceiling")


def _default_workers() -> Dict[str, WorkerSettings]:
    return {
        "alert-matching": WorkerSettings(
            concurrency=2, limiter=LimiterConfig(max=10, duration="60s")
        ),
        "notifications": WorkerSettings(
            concurrency=5, limiter=LimiterConfig(max=50, duration="60s")
        ),
        "job-index": WorkerSettings(
            concurrency=5, limiter=LimiterConfig(max=50, duration="60s")
        ),
        "audit-cleanup": WorkerSettings(
            concurrency=1, limiter=LimiterConfig(max=10, duration="60s")
        ),
        "invitation-expiration": WorkerSettings(concurrency=1),
    }


class QueueConfig(BaseModel):
    """Queue runtime settings."""

    poll_interval: str = Field("2s", description="Broker polling interval for polling transports")
    stalled_timeout: str = Field(
        "5m", description="Unacknowledged jobs are re-delivered after this"
    )
    misfire_grace: str = Field(
        "1h", description="Scheduled runs not started within this window expire"
    )
    shutdown_timeout: str = Field("30s", description="Grace period for in-flight jobs on stop")
    job_key_retention: str = Field("7d", description="Deduplication keys older than this are pruned")
    default_attempts: int = Field(5, ge=1, le=50, description="Delivery attempts per job")
    backoff_delay_ms: int = Field(
        1000, ge=0, le=3_600_000, description="Base delay for exponential retry backoff"
    )
    workers: Dict[str, WorkerSettings] = Field(default_factory=_default_workers)

    @field_validator("poll_interval")
    @classmethod
    def validate_poll_interval(cls, v: str) -> str:
        return _check_duration(v, 1, 300, "Poll interval")

    @field_validator("stalled_timeout", "misfire_grace", "shutdown_timeout")
    @classmethod
    def validate_windows(cls, v: str) -> str:
        return _check_duration(v, 1, 7 * 86400, "Queue window")

    @field_validator("job_key_retention")
    @classmethod
    def validate_key_retention(cls, v: str) -> str:
        return _check_duration(v, 86400, 90 * 86400, "Job key retention")

    @model_validator(mode="after")
    def merge_default_workers(self):
        """Queues missing from the file keep their built-in worker settings."""
        self.workers = {**_default_workers(), **self.workers}
        return self

    @property
    def poll_interval_seconds(self) -> int:
        return parse_duration(self.poll_interval)

    @property
    def stalled_timeout_seconds(self) -> int:
        return parse_duration(self.stalled_timeout)

    @property
    def misfire_grace_seconds(self) -> int:
        return parse_duration(self.misfire_grace)

    @property
    def shutdown_timeout_seconds(self) -> int:
        return parse_duration(self.shutdown_timeout)

    @property
    def job_key_retention_seconds(self) -> int:
        return parse_duration(self.job_key_retention)

    def worker_settings(self, queue_name: str) -> WorkerSettings:
        """Settings for ``queue_name``, falling back to a single unthrottled worker."""
        return self.workers.get(queue_name) or WorkerSettings()


class ScheduleConfig(BaseModel):
    """Cron patterns (UTC) for the recurring registrations."""

    alert_matching_daily: str = "0 8 * * *"
    alert_matching_weekly: str = "0 8 * * 1"
    alert_matching_monthly: str = "0 8 1 * *"
    alert_match_redelivery: str = "0 * * * *"
    audit_cleanup: str = "0 2 * * *"
    invitation_expiration: str = "0 6 * * *"

    @field_validator("*")
    @classmethod
    def validate_cron(cls, v: str) -> str:
        try:
            parse_pattern(v)
        except ValueError as e:
            raise ValueError(f"Invalid cron pattern '{v}': {e}") from e
        return v.strip()


class MatchingConfig(BaseModel):
    """Alert matching orchestrator settings."""

    page_size: int = Field(50, ge=1, le=250, description="Search hits fetched per alert")
    drift_tolerance: str = Field(
        "1h", description="Slack allowed when re-checking time since the last send"
    )
    redelivery_grace: str = Field(
        "10m", description="Unsent matches older than this are re-enqueued"
    )

    @field_validator("drift_tolerance", "redelivery_grace")
    @classmethod
    def validate_windows(cls, v: str) -> str:
        return _check_duration(v, 1, 86400, "Matching window")

    @property
    def drift_tolerance_seconds(self) -> int:
        return parse_duration(self.drift_tolerance)

    @property
    def redelivery_grace_seconds(self) -> int:
        return parse_duration(self.redelivery_grace)


class SearchConfig(BaseModel):
    """Search index settings."""

    collection: str = Field("jobs", min_length=1)
    query_by: str = Field("title,description,company,skills", min_length=1)
    query_by_weights: Optional[str] = Field("3,2,1,2")
    timeout: int = Field(10, ge=1, le=120, description="Request timeout in seconds")

    @field_validator("collection", "query_by")
    @classmethod
    def strip_whitespace(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("Field cannot be empty or whitespace-only")
        return stripped


class AuditConfig(BaseModel):
    """Audit log retention."""

    retention_days: int = Field(90, ge=1, le=3650)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: LogLevel = Field(LogLevel.INFO, description="Log level")
    format: LogFormat = Field(LogFormat.KEY_VALUE, description="Log output format")

    model_config = {"use_enum_values": True}


class AppConfig(BaseModel):
    """Root configuration object. Every section has working defaults."""

    queue: QueueConfig = Field(default_factory=QueueConfig)
    schedules: ScheduleConfig = Field(default_factory=ScheduleConfig)
    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
