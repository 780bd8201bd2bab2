"""Named job queues with retries, repeatable schedules and lifecycle events."""

from .durable import DurableQueueRuntime
from .events import EventRegistry, JobCompleted, JobFailed, QueueEvent, ScheduleFired
from .exceptions import (
    EnqueueError,
    QueueError,
    QueueFatalError,
    UnknownQueueError,
    UnrecoverableJobError,
    WorkerAlreadyRegisteredError,
)
from .limiter import RateLimiter
from .memory import InMemoryQueueRuntime
from .models import (
    Backoff,
    Handler,
    JobOptions,
    JobState,
    Limiter,
    QueueJob,
    RepeatOptions,
    Schedule,
    WorkerOptions,
)
from .monitoring import QueueMonitor
from .runtime import QueueRuntime

__all__ = [
    "QueueRuntime",
    "DurableQueueRuntime",
    "InMemoryQueueRuntime",
    "EventRegistry",
    "QueueEvent",
    "JobCompleted",
    "JobFailed",
    "ScheduleFired",
    "QueueMonitor",
    "RateLimiter",
    "Backoff",
    "Handler",
    "JobOptions",
    "JobState",
    "Limiter",
    "QueueJob",
    "RepeatOptions",
    "Schedule",
    "WorkerOptions",
    "QueueError",
    "EnqueueError",
    "UnknownQueueError",
    "WorkerAlreadyRegisteredError",
    "QueueFatalError",
    "UnrecoverableJobError",
]
