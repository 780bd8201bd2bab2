"""Tests for the queue event registry and the default monitor."""

from datetime import datetime, timezone
from unittest.mock import Mock

from jobalerts.queue import (
    EventRegistry,
    JobCompleted,
    JobFailed,
    QueueJob,
    QueueMonitor,
    ScheduleFired,
)

FIRE_TIME = datetime(2025, 1, 6, 8, 0, tzinfo=timezone.utc)


def make_job(queue_name="emails", job_id="1"):
    return QueueJob(id=job_id, queue_name=queue_name, name="send", payload={})


class TestEventRegistry:
    def test_synchronous_delivery_by_type(self):
        registry = EventRegistry(synchronous=True)
        completed = Mock()
        failed = Mock()
        registry.on(JobCompleted, completed)
        registry.on(JobFailed, failed)

        event = JobCompleted(job=make_job(), result="ok")
        registry.emit(event)

        completed.assert_called_once_with(event)
        failed.assert_not_called()

    def test_unsubscribe(self):
        registry = EventRegistry(synchronous=True)
        handler = Mock()
        unsubscribe = registry.on(JobCompleted, handler)

        unsubscribe()
        unsubscribe()
        registry.emit(JobCompleted(job=make_job()))

        handler.assert_not_called()

    def test_async_delivery_preserves_order(self):
        registry = EventRegistry()
        received = []
        registry.on(JobCompleted, lambda event: received.append(event.job.id))

        for job_id in range(1, 6):
            registry.emit(JobCompleted(job=make_job(job_id=job_id)))
        registry.drain(timeout=5)

        assert received == [1, 2, 3, 4, 5]
        registry.close()

    def test_handler_error_does_not_stop_other_handlers(self):
        registry = EventRegistry(synchronous=True)
        second = Mock()
        registry.on(JobFailed, Mock(side_effect=RuntimeError("subscriber bug")))
        registry.on(JobFailed, second)

        registry.emit(JobFailed(job=make_job(), error="boom", will_retry=True))

        second.assert_called_once()

    def test_events_after_close_are_dropped(self):
        registry = EventRegistry()
        handler = Mock()
        registry.on(JobCompleted, handler)
        registry.close()

        registry.emit(JobCompleted(job=make_job()))
        registry.drain(timeout=1)

        handler.assert_not_called()

    def test_close_delivers_pending_events(self):
        registry = EventRegistry()
        handler = Mock()
        registry.on(JobCompleted, handler)

        registry.emit(JobCompleted(job=make_job()))
        registry.close()

        handler.assert_called_once()

    def test_event_kinds(self):
        assert JobCompleted(job=make_job()).kind == "completed"
        assert JobFailed(job=make_job(), error="x", will_retry=False).kind == "failed"
        assert ScheduleFired("s", "q", FIRE_TIME).kind == "schedule_fired"


class TestQueueMonitor:
    def test_counts_outcomes_per_queue(self):
        registry = EventRegistry(synchronous=True)
        monitor = QueueMonitor().attach(registry)

        registry.emit(JobCompleted(job=make_job("emails")))
        registry.emit(JobFailed(job=make_job("emails"), error="x", will_retry=True))
        registry.emit(JobFailed(job=make_job("emails"), error="x", will_retry=False))
        registry.emit(ScheduleFired("s", "reports", FIRE_TIME, job_id="3"))
        registry.emit(ScheduleFired("s", "reports", FIRE_TIME, skipped=True))

        assert monitor.snapshot() == {
            "emails": {"completed": 1, "retried": 1, "failed": 1, "schedules_fired": 0},
            "reports": {"completed": 0, "retried": 0, "failed": 0, "schedules_fired": 1},
        }

    def test_snapshot_is_a_copy(self):
        registry = EventRegistry(synchronous=True)
        monitor = QueueMonitor().attach(registry)
        registry.emit(JobCompleted(job=make_job()))

        snapshot = monitor.snapshot()
        snapshot["emails"]["completed"] = 99

        assert monitor.snapshot()["emails"]["completed"] == 1
