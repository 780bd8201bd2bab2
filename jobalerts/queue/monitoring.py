"""Default event subscribers: per-queue counters and failure logging."""

import threading
from collections import defaultdict
from typing import Dict

from jobalerts.logging import get_logger

from .events import EventRegistry, JobCompleted, JobFailed, ScheduleFired

logger = get_logger(__name__, component="monitoring")


class QueueMonitor:
    """Counts job outcomes per queue and logs terminal failures.

    Example:
        >>> monitor = QueueMonitor().attach(runtime.events)
        >>> monitor.snapshot()["alert-matching"]["completed"]
    """

    def __init__(self) -> None:
        self._counts: Dict[str, Dict[str, int]] = defaultdict(
            lambda: {"completed": 0, "retried": 0, "failed": 0, "schedules_fired": 0}
        )
        self._lock = threading.Lock()

    def attach(self, events: EventRegistry) -> "QueueMonitor":
        events.on(JobCompleted, self.on_completed)
        events.on(JobFailed, self.on_failed)
        events.on(ScheduleFired, self.on_schedule_fired)
        return self

    def _bump(self, queue_name: str, key: str) -> None:
        with self._lock:
            self._counts[queue_name][key] += 1

    def on_completed(self, event: JobCompleted) -> None:
        self._bump(event.job.queue_name, "completed")

    def on_failed(self, event: JobFailed) -> None:
        if event.will_retry:
            self._bump(event.job.queue_name, "retried")
            return

        self._bump(event.job.queue_name, "failed")
        logger.error(
            f"Job {event.job.id} ({event.job.queue_name}/{event.job.name}) failed permanently: {event.error}",
            extra={
                "event": "monitoring.job.failed",
                "queue": event.job.queue_name,
                "queue_job_id": event.job.id,
                "attempts": event.job.attempts_made,
            },
        )

    def on_schedule_fired(self, event: ScheduleFired) -> None:
        if not event.skipped:
            self._bump(event.queue_name, "schedules_fired")

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        with self._lock:
            return {queue: dict(counts) for queue, counts in self._counts.items()}
