"""Celery-backed queue runtime.

Each registered queue becomes one Celery task (``jobalerts.queue.<queue>``)
routed to a Celery queue of the same name, and start() runs one embedded
WorkController per queue, so queues never share worker slots. Repeatable
registrations are Celery beat entries keyed by their deterministic id.

Celery provides delivery, acks and retry scheduling. What it does not
provide lives in the ``queue_job_keys`` ledger: deduplication of
caller-supplied job ids and of schedule occurrences across processes.
"""

import os
import socket
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from celery import Celery, signals
from celery.beat import EmbeddedService
from celery.worker import state as worker_state
from kombu.exceptions import OperationalError

from jobalerts.logging import get_logger
from jobalerts.persistence.database import get_session
from jobalerts.utils.timestamps import ensure_utc, parse_iso_datetime, utc_now

from .cron import celery_schedule, latest_fire_time, next_fire_time, occurrence_key
from .events import EventRegistry, ScheduleFired
from .exceptions import EnqueueError
from .models import (
    Backoff,
    JobOptions,
    JobState,
    Limiter,
    QueueJob,
    RepeatOptions,
    Schedule,
    WorkerOptions,
)
from .runtime import QueueRuntime, WorkerRegistration, ensure_json_payload
from .store import JobKeyStore, SessionFactory

logger = get_logger(__name__, component="queue")

TASK_PREFIX = "jobalerts.queue."

MAINTENANCE_QUEUE = "queue-maintenance"
PRUNE_JOB_KEYS_JOB = "prune-job-keys"
PRUNE_JOB_KEYS_SCHEDULE = "queue-job-key-pruning"

# Celery result states; PENDING means "unknown" and maps to no job at all
_STATES = {
    "RECEIVED": JobState.ACTIVE,
    "STARTED": JobState.ACTIVE,
    "RETRY": JobState.WAITING,
    "SUCCESS": JobState.COMPLETED,
    "FAILURE": JobState.FAILED,
    "REVOKED": JobState.FAILED,
}


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def task_name(queue_name: str) -> str:
    return f"{TASK_PREFIX}{queue_name}"


def rate_limit_for(limiter: Optional[Limiter]) -> Optional[str]:
    """Celery rate limit string for a rolling-window limiter.

    Example:
        >>> rate_limit_for(Limiter(max=50, duration_seconds=60))
        '50/m'
    """
    if limiter is None:
        return None
    units = {1: "s", 60: "m", 3600: "h"}
    unit = units.get(limiter.duration_seconds)
    if unit is not None:
        return f"{limiter.max}/{unit}"
    return f"{limiter.max / limiter.duration_seconds:g}/s"


def _error_text(error: Any) -> str:
    if isinstance(error, BaseException):
        return f"{type(error).__name__}: {error}"
    return str(error)


class DurableQueueRuntime(QueueRuntime):
    """Queue runtime running on Celery.

    Args:
        broker_url: Kombu broker URL (``redis://...``; ``memory://`` in tests)
        result_backend: Celery result backend URL, used by get_job()
        session_factory: Context manager factory yielding sessions (get_session)
        worker_id: Node name suffix for the embedded workers
        poll_interval_seconds: Broker polling interval for polling transports
        stalled_timeout_seconds: Unacknowledged messages are redelivered after this
        misfire_grace_seconds: Beat messages older than this expire instead of running
        shutdown_timeout_seconds: How long shutdown(wait=True) waits for in-flight jobs
        job_key_retention_seconds: Age after which job key claims are pruned
        maintenance_pattern: Cron pattern of the job key pruning schedule
        eager: Run tasks inline on enqueue (Celery ``task_always_eager``)
        embed_beat: Run the beat scheduler inside start()
        beat_schedule_file: Where embedded beat keeps its last-run state
    """

    def __init__(
        self,
        broker_url: str = "redis://localhost:6379/0",
        result_backend: Optional[str] = None,
        session_factory: SessionFactory = get_session,
        worker_id: Optional[str] = None,
        poll_interval_seconds: float = 2,
        stalled_timeout_seconds: float = 300,
        misfire_grace_seconds: float = 3600,
        shutdown_timeout_seconds: float = 30,
        job_key_retention_seconds: float = 7 * 86400,
        maintenance_pattern: str = "30 3 * * *",
        default_attempts: int = 5,
        backoff_delay_ms: int = 1000,
        clock: Callable[[], datetime] = utc_now,
        events: Optional[EventRegistry] = None,
        eager: bool = False,
        embed_beat: bool = True,
        beat_schedule_file: str = "./data/celerybeat-schedule",
    ) -> None:
        super().__init__(
            default_attempts=default_attempts,
            backoff_delay_ms=backoff_delay_ms,
            clock=clock,
            events=events,
        )
        self.keys = JobKeyStore(session_factory)
        self.worker_id = worker_id or default_worker_id()
        self.poll_interval_seconds = poll_interval_seconds
        self.stalled_timeout_seconds = stalled_timeout_seconds
        self.misfire_grace_seconds = misfire_grace_seconds
        self.shutdown_timeout_seconds = shutdown_timeout_seconds
        self.job_key_retention_seconds = job_key_retention_seconds
        self.maintenance_pattern = maintenance_pattern
        self.embed_beat = embed_beat
        self.beat_schedule_file = beat_schedule_file

        self.app = Celery("jobalerts", broker=broker_url, backend=result_backend, set_as_current=False)
        self.app.conf.update(
            task_serializer="json",
            accept_content=["json"],
            result_serializer="json",
            timezone="UTC",
            enable_utc=True,
            task_track_started=True,
            task_acks_late=True,
            task_reject_on_worker_lost=True,
            worker_prefetch_multiplier=1,
            worker_hijack_root_logger=False,
            result_extended=True,
            task_always_eager=eager,
            task_store_eager_result=eager,
            broker_connection_retry_on_startup=True,
            broker_transport_options={
                "visibility_timeout": stalled_timeout_seconds,
                "polling_interval": poll_interval_seconds,
            },
            beat_schedule={},
        )

        self._tasks: Dict[str, Any] = {}
        self._schedules: Dict[str, Schedule] = {}
        self._lock = threading.RLock()
        self._running: Dict[str, Tuple[Any, threading.Thread]] = {}
        self._beat: Optional[threading.Thread] = None
        self._started = False
        signals.task_revoked.connect(self._on_task_revoked, weak=False)

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

        task_id = str(uuid.uuid4())
        meta = self._meta(queue_name, options)
        if options.job_id is not None:
            owner, created = self.keys.claim(queue_name, options.job_id, task_id, job_name, now)
            if not created:
                logger.info(
                    f"Job key '{options.job_id}' already exists on '{queue_name}', not enqueued again",
                    extra={"event": "queue.job.duplicate", "queue": queue_name, "job_name": job_name},
                )
                return self.get_job(owner) or self._job_view(
                    owner, queue_name, job_name, payload, options, now
                )
            meta["job_key"] = options.job_id

        try:
            self._publish(queue_name, (job_name, payload, meta), task_id, options.delay_ms / 1000)
        except (OperationalError, OSError) as e:
            if options.job_id is not None:
                self.keys.release(queue_name, options.job_id, task_id)
            logger.error(
                f"Failed to enqueue {queue_name}/{job_name}: {e}",
                exc_info=True,
                extra={"event": "queue.enqueue.failed", "queue": queue_name},
            )
            raise EnqueueError(f"Failed to enqueue {queue_name}/{job_name}: {e}") from e

        logger.debug(
            f"Enqueued job {task_id} on '{queue_name}'",
            extra={"event": "queue.job.enqueued", "queue": queue_name, "job_name": job_name},
        )
        return self._job_view(task_id, queue_name, job_name, payload, options, now)

    def _publish(self, queue_name: str, args: tuple, task_id: str, countdown: float) -> None:
        task = self._tasks.get(queue_name)
        if task is None:
            # Producer-only process: route by name to whichever worker owns the queue
            self.app.send_task(
                task_name(queue_name), args=args, task_id=task_id, queue=queue_name, countdown=countdown or None
            )
            return
        task.apply_async(args=args, task_id=task_id, queue=queue_name, countdown=countdown or None)

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
            schedule = celery_schedule(pattern)
        except ValueError as e:
            raise EnqueueError(f"Invalid repeat pattern '{pattern}': {e}") from e

        schedule_id = options.job_id or f"{queue_name}:{job_name}:{pattern}"
        meta = self._meta(queue_name, options, schedule_id=schedule_id, pattern=pattern)
        entry = {
            "task": task_name(queue_name),
            "schedule": schedule,
            "args": (job_name, payload, meta),
            "options": {"queue": queue_name, "expires": self.misfire_grace_seconds},
        }

        with self._lock:
            beat_schedule = self.app.conf.beat_schedule
            existing = beat_schedule.get(schedule_id)
            changed = existing is None or existing["args"] != entry["args"] or existing["schedule"] != schedule
            beat_schedule[schedule_id] = entry
            self._schedules[schedule_id] = Schedule(
                id=schedule_id,
                queue_name=queue_name,
                job_name=job_name,
                payload=payload,
                pattern=pattern,
                next_run_at=next_fire_time(pattern, now),
                max_attempts=options.attempts,
                backoff=options.backoff,
            )

        logger.info(
            f"Schedule '{schedule_id}' {'registered' if changed else 'already registered'} ({pattern})",
            extra={
                "event": "queue.schedule.registered" if changed else "queue.schedule.unchanged",
                "queue": queue_name,
                "schedule_id": schedule_id,
            },
        )

    @staticmethod
    def _meta(queue_name: str, options: JobOptions, **extra) -> Dict[str, Any]:
        meta = {
            "queue": queue_name,
            "attempts": options.attempts,
            "backoff": {"type": options.backoff.type, "delay_ms": options.backoff.delay_ms},
        }
        meta.update(extra)
        return meta

    # Workers

    def _on_worker_registered(self, registration: WorkerRegistration) -> None:
        queue_name = registration.queue_name

        def run(task, job_name, payload, meta):
            return self._run_task(task, queue_name, job_name, payload, meta)

        self._tasks[queue_name] = self.app.task(
            bind=True,
            name=task_name(queue_name),
            shared=False,
            lazy=False,
            acks_late=True,
            reject_on_worker_lost=True,
            max_retries=None,
            rate_limit=rate_limit_for(registration.options.limiter),
        )(run)

    def _run_task(
        self, task, queue_name: str, job_name: str, payload: Dict[str, Any], meta: Dict[str, Any]
    ) -> Any:
        """Body of every queue task: one delivery attempt of one job."""
        request = task.request
        now = self.now()
        backoff = meta.get("backoff") or {}
        job = QueueJob(
            id=request.id,
            queue_name=queue_name,
            name=job_name,
            payload=dict(payload or {}),
            state=JobState.ACTIVE,
            attempts_made=(request.retries or 0) + 1,
            max_attempts=meta.get("attempts", self.default_options.attempts),
            backoff=Backoff(
                type=backoff.get("type", "exponential"),
                delay_ms=backoff.get("delay_ms", self.default_options.backoff.delay_ms),
            ),
            available_at=now,
            job_key=meta.get("job_key"),
            schedule_id=meta.get("schedule_id"),
            locked_by=request.hostname or self.worker_id,
            created_at=now,
        )

        if job.schedule_id is not None and job.attempts_made == 1:
            if not self._claim_occurrence(job, meta.get("pattern"), now):
                return None

        error = self._execute(job)
        if error is None:
            return job.result
        if job.state == JobState.WAITING:
            countdown = job.backoff.delay_for(job.attempts_made).total_seconds()
            raise task.retry(exc=error, countdown=countdown)
        raise error

    def _claim_occurrence(self, job: QueueJob, pattern: Optional[str], now: datetime) -> bool:
        """Record which cron occurrence this delivery belongs to.

        Several beat instances may send the same occurrence; the first task
        to claim its key runs it. A redelivered message still owns its key.
        """
        fire_time = latest_fire_time(pattern, now, self.misfire_grace_seconds) if pattern else None
        if fire_time is None:
            self._misfired(job.schedule_id, job.queue_name, job.id, now)
            return False

        key = occurrence_key(job.schedule_id, fire_time)
        owner, created = self.keys.claim(job.queue_name, key, job.id, job.name, now)
        if not created and owner != job.id:
            logger.info(
                f"Schedule '{job.schedule_id}' occurrence {fire_time.isoformat()} already ran as {owner}",
                extra={"event": "queue.schedule.duplicate", "schedule_id": job.schedule_id, "queue": job.queue_name},
            )
            return False

        job.job_key = key
        if created:
            logger.info(
                f"Schedule '{job.schedule_id}' fired for {fire_time.isoformat()}",
                extra={"event": "queue.schedule.fired", "schedule_id": job.schedule_id, "queue": job.queue_name},
            )
            self.events.emit(
                ScheduleFired(
                    schedule_id=job.schedule_id,
                    queue_name=job.queue_name,
                    scheduled_for=fire_time,
                    job_id=job.id,
                )
            )
        return True

    def _misfired(self, schedule_id: str, queue_name: Optional[str], job_id: Optional[str], now: datetime) -> None:
        logger.warning(
            f"Schedule '{schedule_id}' missed its run by more than {self.misfire_grace_seconds:.0f}s, skipping",
            extra={"event": "queue.schedule.misfired", "schedule_id": schedule_id, "queue": queue_name},
        )
        self.events.emit(
            ScheduleFired(
                schedule_id=schedule_id,
                queue_name=queue_name,
                scheduled_for=now,
                job_id=job_id,
                skipped=True,
            )
        )

    def _on_task_revoked(self, sender=None, request=None, expired=False, **kwargs) -> None:
        """Beat messages that expired in the broker are occurrences that misfired."""
        if not expired or getattr(sender, "app", None) is not self.app:
            return
        args = getattr(request, "args", None) or ()
        meta = args[2] if len(args) > 2 and isinstance(args[2], dict) else {}
        if meta.get("schedule_id") is None:
            return
        self._misfired(meta["schedule_id"], meta.get("queue"), getattr(request, "id", None), self.now())

    # Maintenance

    def register_maintenance(self) -> None:
        """Register the daily pruning of old job key claims. Idempotent."""
        if self.has_worker(MAINTENANCE_QUEUE):
            return
        self.register_worker(MAINTENANCE_QUEUE, self._prune_handler, WorkerOptions(concurrency=1))
        self.enqueue(
            MAINTENANCE_QUEUE,
            PRUNE_JOB_KEYS_JOB,
            {},
            self.default_options.copy_with(
                attempts=3,
                repeat=RepeatOptions(pattern=self.maintenance_pattern),
                job_id=PRUNE_JOB_KEYS_SCHEDULE,
            ),
        )

    def _prune_handler(self, job: QueueJob) -> Dict[str, int]:
        return {"pruned": self.prune_job_keys()}

    def prune_job_keys(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or self.now()) - timedelta(seconds=self.job_key_retention_seconds)
        pruned = self.keys.prune(cutoff)
        logger.info(
            f"Pruned {pruned} job key claim(s) older than {cutoff.isoformat()}",
            extra={"event": "queue.job_keys.pruned", "count": pruned},
        )
        return pruned

    # Introspection

    def get_job(self, job_id: str) -> Optional[QueueJob]:
        """Job as last reported by the result backend; None while unknown (PENDING)."""
        result = self.app.AsyncResult(job_id)
        state = _STATES.get(result.state)
        if state is None:
            return None

        args = list(result.args or ()) + [None, None, None]
        job_name, payload, meta = args[0], args[1] or {}, args[2] or {}
        backoff = meta.get("backoff") or {}
        finished_at = result.date_done
        if isinstance(finished_at, str):
            finished_at = parse_iso_datetime(finished_at)

        return QueueJob(
            id=job_id,
            queue_name=meta.get("queue") or result.queue,
            name=job_name or result.name,
            payload=dict(payload),
            state=state,
            attempts_made=(result.retries or 0) + 1,
            max_attempts=meta.get("attempts", self.default_options.attempts),
            backoff=Backoff(
                type=backoff.get("type", "exponential"),
                delay_ms=backoff.get("delay_ms", self.default_options.backoff.delay_ms),
            ),
            job_key=meta.get("job_key"),
            schedule_id=meta.get("schedule_id"),
            locked_by=result.worker,
            last_error=_error_text(result.result) if state == JobState.FAILED else None,
            result=result.result if state == JobState.COMPLETED else None,
            finished_at=ensure_utc(finished_at) if state in (JobState.COMPLETED, JobState.FAILED) else None,
        )

    def _job_view(
        self,
        task_id: str,
        queue_name: str,
        job_name: str,
        payload: Dict[str, Any],
        options: JobOptions,
        now: datetime,
    ) -> QueueJob:
        return QueueJob(
            id=task_id,
            queue_name=queue_name,
            name=job_name,
            payload=payload,
            max_attempts=options.attempts,
            backoff=options.backoff,
            available_at=now + timedelta(milliseconds=options.delay_ms),
            job_key=options.job_id,
            created_at=now,
        )

    def get_schedules(self) -> List[Schedule]:
        now = self.now()
        with self._lock:
            schedules = sorted(self._schedules.values(), key=lambda s: s.id)
        return [replace(s, next_run_at=next_fire_time(s.pattern, now)) for s in schedules]

    def remove_schedule(self, schedule_id: str) -> bool:
        with self._lock:
            removed = self._schedules.pop(schedule_id, None) is not None
            self.app.conf.beat_schedule.pop(schedule_id, None)
            if self._beat is not None:
                self._beat.service.scheduler.schedule.pop(schedule_id, None)
        if removed:
            logger.info(
                f"Removed schedule '{schedule_id}'",
                extra={"event": "queue.schedule.removed", "schedule_id": schedule_id},
            )
        return removed

    # Lifecycle

    def node_name(self, queue_name: str) -> str:
        return f"{queue_name}@{self.worker_id}"

    def start(self) -> None:
        """Start one embedded worker per unpaused queue, plus beat when schedules exist."""
        if self._started:
            return
        self._started = True
        self.register_maintenance()
        worker_state.should_stop = None
        worker_state.should_terminate = None

        for queue_name in self.queue_names:
            if not self.is_paused(queue_name):
                self._start_worker(queue_name)

        if self.embed_beat and self.app.conf.beat_schedule:
            Path(self.beat_schedule_file).parent.mkdir(parents=True, exist_ok=True)
            self._beat = EmbeddedService(self.app, thread=True, schedule_filename=self.beat_schedule_file)
            self._beat.start()

        logger.info(
            f"Queue runtime started as worker '{self.worker_id}'",
            extra={
                "event": "queue.runtime.started",
                "queues": self.queue_names,
                "beat": self._beat is not None,
            },
        )

    def _start_worker(self, queue_name: str) -> None:
        registration = self._workers[queue_name]
        worker = self.app.WorkController(
            hostname=self.node_name(queue_name),
            queues=[queue_name],
            concurrency=registration.options.concurrency,
            pool="threads",
            without_heartbeat=True,
            without_mingle=True,
            without_gossip=True,
        )
        thread = threading.Thread(target=worker.start, name=f"worker-{queue_name}", daemon=True)
        thread.start()
        self._running[queue_name] = (worker, thread)

    def _on_paused(self, queue_name: str, paused: bool) -> None:
        if not self._started:
            return
        if paused and queue_name in self._running:
            self.app.control.cancel_consumer(queue_name, destination=[self.node_name(queue_name)])
        elif not paused:
            if queue_name in self._running:
                self.app.control.add_consumer(queue_name, destination=[self.node_name(queue_name)])
            elif queue_name in self._workers:
                self._start_worker(queue_name)

    def shutdown(self, wait: bool = True) -> None:
        """Stop beat, then the workers.

        With ``wait`` the workers finish in-flight jobs (warm shutdown) for
        up to the shutdown timeout. Unacknowledged jobs are redelivered by
        the broker after a restart.
        """
        if self._beat is not None:
            self._beat.stop()
            self._beat = None

        drained = True
        if self._running:
            if wait:
                worker_state.should_stop = 0
            else:
                worker_state.should_terminate = 0
            for _, thread in self._running.values():
                thread.join(timeout=self.shutdown_timeout_seconds if wait else 1)
                drained = drained and not thread.is_alive()
            self._running.clear()
            worker_state.should_stop = None
            worker_state.should_terminate = None

        self._started = False
        signals.task_revoked.disconnect(self._on_task_revoked)
        self.events.close()
        logger.info(
            "Queue runtime stopped",
            extra={"event": "queue.runtime.stopped", "drained": drained},
        )
