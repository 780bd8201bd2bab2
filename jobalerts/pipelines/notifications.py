"""Notification pipeline boundary.

The worker validates the payload produced by the orchestrator and hands it
to a NotificationSender. Rendering and delivery belong to the sender.
"""

from typing import Any, Dict, Optional, Protocol

from pydantic import ValidationError

from jobalerts.config.models import AppConfig
from jobalerts.domain.models import AlertNotificationPayload
from jobalerts.domain.queues import ALERT_NOTIFICATION_JOB, NOTIFICATIONS_QUEUE
from jobalerts.logging import get_logger
from jobalerts.queue import QueueJob, QueueRuntime, UnrecoverableJobError

from .common import worker_options

logger = get_logger(__name__, component="notifications")


class NotificationSender(Protocol):
    def send_alert_notification(self, notification: AlertNotificationPayload) -> None:
        """Deliver one batch of new matches. Raise to have the job retried."""


class LoggingNotificationSender:
    """Sender that only logs the notification it would deliver."""

    def send_alert_notification(self, notification: AlertNotificationPayload) -> None:
        logger.info(
            f"Alert {notification.alert_id} notification for owner {notification.owner_id}: "
            f"{len(notification.job_ids)} new job(s)",
            extra={
                "event": "notification.logged",
                "alert_id": notification.alert_id,
                "owner_id": notification.owner_id,
                "job_ids": notification.job_ids,
            },
        )


class NotificationHandler:
    def __init__(self, sender: NotificationSender):
        self.sender = sender

    def __call__(self, job: QueueJob) -> Dict[str, Any]:
        if job.name != ALERT_NOTIFICATION_JOB:
            raise UnrecoverableJobError(f"Unknown job '{job.name}' on {NOTIFICATIONS_QUEUE}")

        try:
            notification = AlertNotificationPayload.model_validate(job.payload)
        except ValidationError as e:
            raise UnrecoverableJobError(f"Invalid notification payload: {e}") from e

        self.sender.send_alert_notification(notification)
        return {"alertId": notification.alert_id, "sent": len(notification.job_ids)}


def register_notifications(
    runtime: QueueRuntime, config: AppConfig, sender: Optional[NotificationSender] = None
) -> None:
    runtime.register_worker(
        NOTIFICATIONS_QUEUE,
        NotificationHandler(sender or LoggingNotificationSender()),
        worker_options(config.queue.worker_settings(NOTIFICATIONS_QUEUE)),
    )
    logger.info(
        "Notification pipeline registered",
        extra={"event": "pipeline.registered", "queue": NOTIFICATIONS_QUEUE},
    )
