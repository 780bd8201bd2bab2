"""Data models for queued jobs, job options and worker options."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional


class JobState(str, Enum):
    """Job lifecycle: waiting -> active -> completed | waiting (retry) | failed."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


BACKOFF_TYPES = ("exponential", "fixed")


@dataclass(frozen=True)
class Backoff:
    """Retry delay policy.

    Exponential backoff waits ``delay_ms * 2 ** (attempts_made - 1)``, so the
    first retry waits ``delay_ms``.
    """

    type: str = "exponential"
    delay_ms: int = 1000

    def __post_init__(self):
        if self.type not in BACKOFF_TYPES:
            raise ValueError(f"Unknown backoff type '{self.type}'")
        if self.delay_ms < 0:
            raise ValueError("Backoff delay cannot be negative")

    def delay_for(self, attempts_made: int) -> timedelta:
        if self.type == "fixed":
            return timedelta(milliseconds=self.delay_ms)
        exponent = max(attempts_made - 1, 0)
        return timedelta(milliseconds=self.delay_ms * (2 ** exponent))


@dataclass(frozen=True)
class RepeatOptions:
    """Recurring registration. ``pattern`` is a five-field cron expression in UTC."""

    pattern: str


@dataclass(frozen=True)
class JobOptions:
    """Per-job delivery options.

    Attributes:
        attempts: Total delivery attempts before the job fails for good
        backoff: Delay policy between attempts
        repeat: Register a recurring schedule instead of a one-off job
        job_id: Deterministic id; enqueueing an id that already exists is a no-op
        delay_ms: Initial delay before a one-off job becomes available
    """

    attempts: int = 5
    backoff: Backoff = field(default_factory=Backoff)
    repeat: Optional[RepeatOptions] = None
    job_id: Optional[str] = None
    delay_ms: int = 0

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")
        if self.delay_ms < 0:
            raise ValueError("delay_ms cannot be negative")

    def copy_with(self, **changes) -> "JobOptions":
        return replace(self, **changes)


@dataclass(frozen=True)
class Limiter:
    """At most ``max`` jobs started per rolling ``duration_seconds`` window."""

    max: int
    duration_seconds: float

    def __post_init__(self):
        if self.max < 1 or self.duration_seconds <= 0:
            raise ValueError("Limiter needs max >= 1 and a positive duration")


@dataclass(frozen=True)
class WorkerOptions:
    concurrency: int = 1
    limiter: Optional[Limiter] = None

    def __post_init__(self):
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")


@dataclass
class QueueJob:
    """A job as seen by handlers and event subscribers."""

    id: str
    queue_name: str
    name: str
    payload: Dict[str, Any]
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    max_attempts: int = 5
    backoff: Backoff = field(default_factory=Backoff)
    available_at: Optional[datetime] = None
    job_key: Optional[str] = None
    schedule_id: Optional[str] = None
    locked_by: Optional[str] = None
    last_error: Optional[str] = None
    result: Any = None
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def has_attempts_left(self) -> bool:
        return self.attempts_made < self.max_attempts


@dataclass(frozen=True)
class Schedule:
    """A repeatable registration: spawns one job per cron occurrence."""

    id: str
    queue_name: str
    job_name: str
    payload: Dict[str, Any]
    pattern: str
    next_run_at: datetime
    last_run_at: Optional[datetime] = None
    max_attempts: int = 5
    backoff: Backoff = field(default_factory=Backoff)


Handler = Callable[[QueueJob], Any]
