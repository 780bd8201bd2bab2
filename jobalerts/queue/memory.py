"""In-process queue runtime for tests and single-shot runs.

Nothing runs in the background: callers drive processing explicitly with
process_next(), run_until_idle(), run_due_schedules() or fire_schedule().
The clock is injectable, so retries and cron occurrences can be reached by
moving time forward instead of sleeping. Semantics match
DurableQueueRuntime: key deduplication, backoff, terminal failure events,
rate limits and misfire handling. Job ids are decimal strings, the way
Celery task ids are strings.
"""

import itertools
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from jobalerts.logging import get_logger
from jobalerts.utils.timestamps import utc_now

from .cron import next_fire_time, occurrence_key, parse_pattern, plan_fire
from .events import EventRegistry, ScheduleFired
from .exceptions import EnqueueError, QueueError, UnknownQueueError
from .limiter import RateLimiter
from .models import JobOptions, JobState, QueueJob, Schedule
from .runtime import QueueRuntime, WorkerRegistration, ensure_json_payload

logger = get_logger(__name__, component="queue")


class InMemoryQueueRuntime(QueueRuntime):
    """Queue runtime holding all state in dictionaries.

    Events are delivered synchronously on the calling thread.
    """

    worker_id = "in-memory"

    def __init__(
        self,
        clock: Callable[[], datetime] = utc_now,
        default_attempts: int = 5,
        backoff_delay_ms: int = 1000,
        misfire_grace_seconds: float = 3600,
        events: Optional[EventRegistry] = None,
    ) -> None:
        super().__init__(
            default_attempts=default_attempts,
            backoff_delay_ms=backoff_delay_ms,
            clock=clock,
            events=events if events is not None else EventRegistry(synchronous=True),
        )
        self.misfire_grace_seconds = misfire_grace_seconds
        self._jobs: Dict[str, QueueJob] = {}
        self._keys: Dict[Tuple[str, str], str] = {}
        self._schedules: Dict[str, Schedule] = {}
        self._ids = itertools.count(1)
        self._lock = threading.RLock()
        self.started = False

    def _on_worker_registered(self, registration: WorkerRegistration) -> None:
        if registration.options.limiter is not None:
            registration.limiter = RateLimiter(registration.options.limiter)

    # Producers

    def enqueue(
        self,
        queue_name: str,
        job_name: str,
        payload: Optional[Dict[str, Any]] = None,
        options: Optional[JobOptions] = None,
    ) -> Optional[QueueJob]:
        options = self._resolve_options(options)
        payload = ensure_json_payload(payload)
        now = self.now()

        if options.repeat is not None:
            self._register_schedule(queue_name, job_name, payload, options, now)
            return None

        return self._add_job(
            queue_name,
            job_name,
            payload,
            options,
            available_at=now + timedelta(milliseconds=options.delay_ms),
            job_key=options.job_id,
        )

    def _add_job(
        self,
        queue_name: str,
        job_name: str,
        payload: Dict[str, Any],
        options: JobOptions,
        available_at: datetime,
        job_key: Optional[str] = None,
        schedule_id: Optional[str] = None,
    ) -> QueueJob:
        with self._lock:
            if job_key is not None and (queue_name, job_key) in self._keys:
                return self._jobs[self._keys[(queue_name, job_key)]]

            job = QueueJob(
                id=str(next(self._ids)),
                queue_name=queue_name,
                name=job_name,
                payload=payload,
                max_attempts=options.attempts,
                backoff=options.backoff,
                available_at=available_at,
                job_key=job_key,
                schedule_id=schedule_id,
                created_at=self.now(),
            )
            self._jobs[job.id] = job
            if job_key is not None:
                self._keys[(queue_name, job_key)] = job.id
            return job

    def _register_schedule(
        self,
        queue_name: str,
        job_name: str,
        payload: Dict[str, Any],
        options: JobOptions,
        now: datetime,
    ) -> None:
        pattern = options.repeat.pattern
        try:
            parse_pattern(pattern)
        except ValueError as e:
            raise EnqueueError(f"Invalid repeat pattern '{pattern}': {e}") from e

        schedule_id = options.job_id or f"{queue_name}:{job_name}:{pattern}"
        with self._lock:
            existing = self._schedules.get(schedule_id)
            if existing is not None and existing.pattern == pattern and existing.payload == payload:
                return

            next_run_at = (
                existing.next_run_at
                if existing is not None and existing.pattern == pattern
                else next_fire_time(pattern, now)
            )
            self._schedules[schedule_id] = Schedule(
                id=schedule_id,
                queue_name=queue_name,
                job_name=job_name,
                payload=payload,
                pattern=pattern,
                next_run_at=next_run_at,
                last_run_at=existing.last_run_at if existing else None,
                max_attempts=options.attempts,
                backoff=options.backoff,
            )

        logger.info(
            f"Schedule '{schedule_id}' registered ({pattern})",
            extra={"event": "queue.schedule.registered", "queue": queue_name, "schedule_id": schedule_id},
        )

    # Driving

    def _claim(self, queue_name: str) -> Optional[QueueJob]:
        now = self.now()
        with self._lock:
            due = [
                job
                for job in self._jobs.values()
                if job.queue_name == queue_name
                and job.state == JobState.WAITING
                and job.available_at <= now
            ]
            if not due:
                return None
            job = min(due, key=lambda j: (j.available_at, int(j.id)))
            job.state = JobState.ACTIVE
            job.attempts_made += 1
            job.locked_by = self.worker_id
            return job

    def process_next(self, queue_name: str) -> Optional[QueueJob]:
        """Run the oldest due job on ``queue_name``. Returns it, or None if none was due.

        Paused queues and rate limits are respected.
        """
        if queue_name not in self._workers:
            raise UnknownQueueError(f"No worker registered for queue '{queue_name}'")
        if self.is_paused(queue_name):
            return None

        registration = self._workers[queue_name]
        if registration.limiter and not registration.limiter.try_acquire():
            return None

        job = self._claim(queue_name)
        if job is None:
            return None
        self._execute(job)
        return job

    def run_until_idle(self, max_jobs: int = 1000) -> int:
        """Process due jobs on every registered queue until none are left.

        Jobs delayed into the future (e.g. waiting out a retry backoff) are
        not due and stop the loop. Returns the number of jobs processed.
        """
        processed = 0
        while True:
            progress = False
            for queue_name in self.queue_names:
                if self.process_next(queue_name) is not None:
                    processed += 1
                    progress = True
            if not progress:
                return processed
            if processed >= max_jobs:
                raise QueueError(f"run_until_idle processed {processed} jobs without going idle")

    def run_due_schedules(self) -> List[QueueJob]:
        """Spawn jobs for schedules whose next occurrence has passed."""
        now = self.now()
        spawned = []
        with self._lock:
            due = [s for s in self._schedules.values() if s.next_run_at <= now]

        for schedule in sorted(due, key=lambda s: s.next_run_at):
            spawn, next_run_at = plan_fire(
                schedule.pattern, schedule.next_run_at, now, self.misfire_grace_seconds
            )
            job = None
            if spawn:
                job = self._spawn(schedule, schedule.next_run_at)
                spawned.append(job)
            else:
                logger.warning(
                    f"Schedule '{schedule.id}' missed its {schedule.next_run_at.isoformat()} run, skipping",
                    extra={"event": "queue.schedule.misfired", "schedule_id": schedule.id},
                )

            with self._lock:
                self._schedules[schedule.id] = replace(
                    schedule,
                    next_run_at=next_run_at,
                    last_run_at=schedule.next_run_at if spawn else schedule.last_run_at,
                )
            self.events.emit(
                ScheduleFired(
                    schedule_id=schedule.id,
                    queue_name=schedule.queue_name,
                    scheduled_for=schedule.next_run_at,
                    job_id=job.id if job else None,
                    skipped=not spawn,
                )
            )
        return spawned

    def fire_schedule(self, schedule_id: str) -> QueueJob:
        """Spawn one occurrence of a schedule now, regardless of its cron pattern."""
        with self._lock:
            schedule = self._schedules.get(schedule_id)
        if schedule is None:
            raise QueueError(f"Unknown schedule '{schedule_id}'")

        now = self.now()
        job = self._spawn(schedule, now)
        self.events.emit(
            ScheduleFired(
                schedule_id=schedule.id,
                queue_name=schedule.queue_name,
                scheduled_for=now,
                job_id=job.id,
            )
        )
        return job

    def _spawn(self, schedule: Schedule, occurrence: datetime) -> QueueJob:
        options = JobOptions(attempts=schedule.max_attempts, backoff=schedule.backoff)
        return self._add_job(
            schedule.queue_name,
            schedule.job_name,
            dict(schedule.payload),
            options,
            available_at=self.now(),
            job_key=occurrence_key(schedule.id, occurrence),
            schedule_id=schedule.id,
        )

    # Introspection

    def get_job(self, job_id: str) -> Optional[QueueJob]:
        return self._jobs.get(str(job_id))

    def list_jobs(self, queue_name: Optional[str] = None, state: Optional[JobState] = None) -> List[QueueJob]:
        with self._lock:
            return [
                job
                for job in self._jobs.values()
                if (queue_name is None or job.queue_name == queue_name)
                and (state is None or job.state == JobState(state))
            ]

    def get_schedules(self) -> List[Schedule]:
        with self._lock:
            return sorted(self._schedules.values(), key=lambda s: s.id)

    def remove_schedule(self, schedule_id: str) -> bool:
        with self._lock:
            return self._schedules.pop(schedule_id, None) is not None

    # Lifecycle

    def start(self) -> None:
        self.started = True

    def shutdown(self, wait: bool = True) -> None:
        self.started = False
        self.events.close()

    # Storage transitions

    def _record_completed(self, job: QueueJob, result: Any, finished_at: datetime) -> bool:
        return job.state == JobState.ACTIVE

    def _record_retry(self, job: QueueJob, error: str, available_at: datetime) -> bool:
        return job.state == JobState.ACTIVE

    def _record_failed(self, job: QueueJob, error: str, finished_at: datetime) -> bool:
        return job.state == JobState.ACTIVE
