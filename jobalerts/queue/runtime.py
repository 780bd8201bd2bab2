"""Queue runtime interface and the job state machine shared by implementations.

Producers call enqueue(); workers are registered per queue with
register_worker(). Delivery is at-least-once: handlers must be idempotent.
A job that raises is retried with backoff until ``max_attempts`` is spent,
then moves to the failed state and a terminal JobFailed event is emitted.
Raising UnrecoverableJobError skips the remaining attempts.

Implementations decide where jobs live and who claims them; _execute() is
the one place a claimed job runs and its outcome is announced.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from jobalerts.logging import get_logger, log_context
from jobalerts.utils.timestamps import utc_now

from .events import EventRegistry, JobCompleted, JobFailed
from .exceptions import (
    EnqueueError,
    QueueFatalError,
    UnrecoverableJobError,
    WorkerAlreadyRegisteredError,
)
from .limiter import RateLimiter
from .models import Backoff, Handler, JobOptions, JobState, QueueJob, Schedule, WorkerOptions

logger = get_logger(__name__, component="queue")


@dataclass
class WorkerRegistration:
    queue_name: str
    handler: Handler
    options: WorkerOptions
    limiter: Optional[RateLimiter] = None


def ensure_json_payload(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Payloads must survive a JSON round-trip to cross the broker."""
    payload = dict(payload or {})
    try:
        json.dumps(payload)
    except (TypeError, ValueError) as e:
        raise EnqueueError(f"Job payload is not JSON serialisable: {e}") from e
    return payload


def jsonable_result(result: Any) -> Any:
    """Return ``result`` if it can be stored as JSON, else its string form."""
    if result is None:
        return None
    try:
        json.dumps(result)
    except (TypeError, ValueError):
        return str(result)
    return result


class QueueRuntime(ABC):
    """Named queues, workers, repeatable schedules and lifecycle events.

    Attributes:
        events: Registry for JobCompleted/JobFailed/ScheduleFired subscribers
        default_options: Options applied when enqueue() gets none
    """

    def __init__(
        self,
        default_attempts: int = 5,
        backoff_delay_ms: int = 1000,
        clock: Callable[[], datetime] = utc_now,
        events: Optional[EventRegistry] = None,
    ) -> None:
        self.events = events if events is not None else EventRegistry()
        self.default_options = JobOptions(
            attempts=default_attempts, backoff=Backoff(delay_ms=backoff_delay_ms)
        )
        self._clock = clock
        self._workers: Dict[str, WorkerRegistration] = {}
        self._paused: Set[str] = set()

    def now(self) -> datetime:
        return self._clock()

    # Producers

    @abstractmethod
    def enqueue(
        self,
        queue_name: str,
        job_name: str,
        payload: Optional[Dict[str, Any]] = None,
        options: Optional[JobOptions] = None,
    ) -> Optional[QueueJob]:
        """Publish a job, or register a repeatable schedule when ``options.repeat`` is set.

        Returns the job (the existing one when ``options.job_id`` is already
        taken), or None for schedule registrations.

        Raises:
            EnqueueError: If the job could not be recorded
        """

    # Workers

    def register_worker(
        self,
        queue_name: str,
        handler: Handler,
        options: Optional[WorkerOptions] = None,
    ) -> None:
        """Attach the single handler for ``queue_name``.

        Raises:
            WorkerAlreadyRegisteredError: If the queue already has a handler
        """
        if queue_name in self._workers:
            raise WorkerAlreadyRegisteredError(
                f"Queue '{queue_name}' already has a registered worker"
            )

        options = options or WorkerOptions()
        self._workers[queue_name] = WorkerRegistration(
            queue_name=queue_name, handler=handler, options=options
        )
        self._on_worker_registered(self._workers[queue_name])

        logger.info(
            f"Registered worker for queue '{queue_name}'",
            extra={
                "event": "queue.worker.registered",
                "queue": queue_name,
                "concurrency": options.concurrency,
                "rate_limit": options.limiter.max if options.limiter else None,
            },
        )

    def _on_worker_registered(self, registration: WorkerRegistration) -> None:
        """Hook for implementations that allocate per-queue resources."""

    @property
    def queue_names(self) -> List[str]:
        return list(self._workers)

    def has_worker(self, queue_name: str) -> bool:
        return queue_name in self._workers

    def pause_queue(self, queue_name: str) -> None:
        """Stop starting new jobs on ``queue_name``. Running jobs finish."""
        self._paused.add(queue_name)
        self._on_paused(queue_name, True)
        logger.info(f"Queue '{queue_name}' paused", extra={"event": "queue.paused", "queue": queue_name})

    def resume_queue(self, queue_name: str) -> None:
        self._paused.discard(queue_name)
        self._on_paused(queue_name, False)
        logger.info(f"Queue '{queue_name}' resumed", extra={"event": "queue.resumed", "queue": queue_name})

    def _on_paused(self, queue_name: str, paused: bool) -> None:
        """Hook for implementations whose consumers must be told about pauses."""

    def is_paused(self, queue_name: str) -> bool:
        return queue_name in self._paused

    # Introspection

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[QueueJob]:
        pass

    @abstractmethod
    def get_schedules(self) -> List[Schedule]:
        pass

    @abstractmethod
    def remove_schedule(self, schedule_id: str) -> bool:
        """Remove a repeatable registration. Returns False if it did not exist."""

    # Lifecycle

    @abstractmethod
    def start(self) -> None:
        pass

    @abstractmethod
    def shutdown(self, wait: bool = True) -> None:
        """Stop taking jobs; with ``wait`` let in-flight jobs finish first."""

    # State machine

    def _resolve_options(self, options: Optional[JobOptions]) -> JobOptions:
        return options if options is not None else self.default_options

    def _execute(self, job: QueueJob) -> Optional[BaseException]:
        """Run the handler for a claimed job and record the outcome.

        Returns the handler's exception when the attempt failed. The job is
        then ``waiting`` if it will be retried and ``failed`` otherwise.
        """
        registration = self._workers[job.queue_name]

        with log_context(queue=job.queue_name, queue_job_id=job.id, job_name=job.name):
            logger.info(
                f"Processing job {job.id} ({job.name}), attempt {job.attempts_made}/{job.max_attempts}",
                extra={"event": "queue.job.started", "attempt": job.attempts_made},
            )

            try:
                result = registration.handler(job)
            except UnrecoverableJobError as e:
                self._fail(job, e, retry=False)
                return e
            except Exception as e:
                self._fail(job, e, retry=job.has_attempts_left)
                return e
            self._complete(job, result)
            return None

    def _complete(self, job: QueueJob, result: Any) -> None:
        finished_at = self.now()
        result = jsonable_result(result)
        if not self._record_completed(job, result, finished_at):
            return

        job.state = JobState.COMPLETED
        job.result = result
        job.finished_at = finished_at
        job.locked_by = None

        logger.info(
            f"Job {job.id} completed",
            extra={"event": "queue.job.completed", "attempt": job.attempts_made},
        )
        self.events.emit(JobCompleted(job=job, result=result))

    def _fail(self, job: QueueJob, error: BaseException, retry: bool) -> None:
        message = f"{type(error).__name__}: {error}"
        now = self.now()

        if retry:
            available_at = now + job.backoff.delay_for(job.attempts_made)
            if not self._record_retry(job, message, available_at):
                return

            job.state = JobState.WAITING
            job.available_at = available_at
            job.last_error = message
            job.locked_by = None

            logger.warning(
                f"Job {job.id} failed on attempt {job.attempts_made}/{job.max_attempts}, "
                f"retrying at {available_at.isoformat()}: {message}",
                extra={
                    "event": "queue.job.retry_scheduled",
                    "attempt": job.attempts_made,
                    "error_type": type(error).__name__,
                },
            )
            self.events.emit(JobFailed(job=job, error=message, will_retry=True, exception=error))
            return

        if not self._record_failed(job, message, now):
            return

        job.state = JobState.FAILED
        job.last_error = message
        job.finished_at = now
        job.locked_by = None

        fatal = QueueFatalError(
            f"Job {job.id} ({job.queue_name}/{job.name}) failed after "
            f"{job.attempts_made} attempt(s): {message}"
        )
        fatal.__cause__ = error

        logger.error(
            str(fatal),
            exc_info=(type(error), error, error.__traceback__),
            extra={
                "event": "queue.job.failed",
                "attempt": job.attempts_made,
                "error_type": type(error).__name__,
            },
        )
        self.events.emit(JobFailed(job=job, error=message, will_retry=False, exception=fatal))

    # Storage transitions. False means the job is no longer ours to settle.

    def _record_completed(self, job: QueueJob, result: Any, finished_at: datetime) -> bool:
        return True

    def _record_retry(self, job: QueueJob, error: str, available_at: datetime) -> bool:
        return True

    def _record_failed(self, job: QueueJob, error: str, finished_at: datetime) -> bool:
        return True
