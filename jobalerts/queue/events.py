"""Typed queue lifecycle events and the registry that delivers them.

Events are plain frozen dataclasses tagged with a ``kind`` literal.
Subscribers register per event type:

    >>> registry.on(JobFailed, lambda event: print(event.job.id, event.error))

Delivery happens off the worker threads on a single dispatcher thread, so
handlers for one runtime see events in emission order. A handler that
raises is logged and never affects the job or other handlers.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Literal, Optional, Type, Union

from jobalerts.logging import get_logger

from .models import QueueJob

logger = get_logger(__name__, component="queue")


@dataclass(frozen=True)
class JobCompleted:
    job: QueueJob
    result: Any = None
    kind: Literal["completed"] = "completed"


@dataclass(frozen=True)
class JobFailed:
    """One failed attempt.

    ``will_retry`` is False only for the terminal failure; ``exception`` is
    then a QueueFatalError chained to the handler's exception.
    """

    job: QueueJob
    error: str
    will_retry: bool
    exception: Optional[BaseException] = None
    kind: Literal["failed"] = "failed"


@dataclass(frozen=True)
class ScheduleFired:
    """A repeatable registration spawned (or skipped) an occurrence."""

    schedule_id: str
    queue_name: str
    scheduled_for: datetime
    job_id: Optional[str] = None
    skipped: bool = False
    kind: Literal["schedule_fired"] = "schedule_fired"


QueueEvent = Union[JobCompleted, JobFailed, ScheduleFired]
EventHandler = Callable[[Any], None]


class EventRegistry:
    """Per-runtime registry of event subscribers.

    Args:
        synchronous: Deliver on the emitting thread. Used by the in-memory
            runtime so tests can assert on events right after processing.
    """

    def __init__(self, synchronous: bool = False) -> None:
        self.synchronous = synchronous
        self._handlers: Dict[type, List[EventHandler]] = {}
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._closed = False

    def on(self, event_type: Type, handler: EventHandler) -> Callable[[], None]:
        """Subscribe ``handler`` to ``event_type``. Returns an unsubscribe callable."""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(event_type, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def emit(self, event: QueueEvent) -> None:
        with self._lock:
            handlers = list(self._handlers.get(type(event), []))
            if not handlers:
                return
            if self.synchronous:
                executor = None
            elif self._closed:
                logger.debug(
                    f"Dropping {event.kind} event after registry close",
                    extra={"event": "queue.events.dropped", "kind": event.kind},
                )
                return
            else:
                if self._executor is None:
                    self._executor = ThreadPoolExecutor(
                        max_workers=1, thread_name_prefix="queue-events"
                    )
                executor = self._executor

        if executor is None:
            self._dispatch(event, handlers)
        else:
            executor.submit(self._dispatch, event, handlers)

    def drain(self, timeout: Optional[float] = None) -> None:
        """Block until every event emitted so far has been delivered."""
        with self._lock:
            executor = self._executor
        if executor is not None and not self._closed:
            executor.submit(lambda: None).result(timeout=timeout)

    def close(self) -> None:
        """Deliver pending events and stop the dispatcher thread."""
        with self._lock:
            self._closed = True
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)

    @staticmethod
    def _dispatch(event: QueueEvent, handlers: List[EventHandler]) -> None:
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    f"Event handler {getattr(handler, '__name__', handler)!r} failed: {e}",
                    exc_info=True,
                    extra={"event": "queue.events.handler_error", "kind": event.kind},
                )
