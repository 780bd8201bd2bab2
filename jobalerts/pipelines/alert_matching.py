"""Alert matching pipeline: one repeatable job per frequency tier plus redelivery."""

from typing import Any, Dict

from jobalerts.config.models import AppConfig
from jobalerts.domain.models import Frequency
from jobalerts.domain.queues import (
    ALERT_MATCHING_QUEUE,
    ALERT_MATCHING_SCHEDULES,
    PROCESS_ALERTS_JOB,
    REDELIVER_MATCHES_JOB,
    REDELIVERY_SCHEDULE,
)
from jobalerts.logging import get_logger
from jobalerts.matching import AlertMatchingOrchestrator
from jobalerts.queue import QueueJob, QueueRuntime, UnrecoverableJobError

from .common import schedule_options, worker_options

logger = get_logger(__name__, component="pipelines")


class AlertMatchingHandler:
    """Queue handler dispatching alert-matching jobs to the orchestrator."""

    def __init__(self, orchestrator: AlertMatchingOrchestrator):
        self.orchestrator = orchestrator

    def __call__(self, job: QueueJob) -> Dict[str, Any]:
        if job.name == PROCESS_ALERTS_JOB:
            frequency = job.payload.get("frequency")
            try:
                frequency = Frequency(frequency)
            except ValueError as e:
                raise UnrecoverableJobError(f"Unknown alert frequency {frequency!r}") from e
            return self.orchestrator.run(frequency).to_dict()

        if job.name == REDELIVER_MATCHES_JOB:
            return {"redelivered": self.orchestrator.redeliver_unsent()}

        raise UnrecoverableJobError(f"Unknown job '{job.name}' on {ALERT_MATCHING_QUEUE}")


def register_alert_matching(
    runtime: QueueRuntime, orchestrator: AlertMatchingOrchestrator, config: AppConfig
) -> None:
    """Register the alert-matching worker and its repeatable schedules.

    Safe to call on every process start: the schedule ids are fixed, so
    re-registration never duplicates a schedule.
    """
    runtime.register_worker(
        ALERT_MATCHING_QUEUE,
        AlertMatchingHandler(orchestrator),
        worker_options(config.queue.worker_settings(ALERT_MATCHING_QUEUE)),
    )

    for frequency, schedule_id in ALERT_MATCHING_SCHEDULES.items():
        pattern = getattr(config.schedules, f"alert_matching_{frequency}")
        runtime.enqueue(
            ALERT_MATCHING_QUEUE,
            PROCESS_ALERTS_JOB,
            {"frequency": frequency},
            schedule_options(config.queue, schedule_id, pattern),
        )

    runtime.enqueue(
        ALERT_MATCHING_QUEUE,
        REDELIVER_MATCHES_JOB,
        {},
        schedule_options(config.queue, REDELIVERY_SCHEDULE, config.schedules.alert_match_redelivery),
    )

    logger.info(
        "Alert matching pipeline registered",
        extra={"event": "pipeline.registered", "queue": ALERT_MATCHING_QUEUE},
    )
