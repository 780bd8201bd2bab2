"""Pipeline registration: workers and repeatable schedules for every queue.

Each ``register_*`` function takes the runtime explicitly, so the same
wiring runs against DurableQueueRuntime in production and
InMemoryQueueRuntime in tests.
"""

from typing import Callable, Optional

from jobalerts.config.models import AppConfig
from jobalerts.matching import AlertMatchingOrchestrator
from jobalerts.persistence import get_session
from jobalerts.queue import QueueRuntime
from jobalerts.search import SearchIndexClient

from .alert_matching import AlertMatchingHandler, register_alert_matching
from .housekeeping import (
    AuditCleanupHandler,
    InvitationExpirationHandler,
    register_audit_cleanup,
    register_invitation_expiration,
)
from .indexing import IndexingHandler, register_indexing
from .notifications import (
    LoggingNotificationSender,
    NotificationHandler,
    NotificationSender,
    register_notifications,
)


def register_all(
    runtime: QueueRuntime,
    config: AppConfig,
    search_client: SearchIndexClient,
    orchestrator: AlertMatchingOrchestrator,
    sender: Optional[NotificationSender] = None,
    session_factory: Callable = get_session,
) -> None:
    """Register all five pipelines on ``runtime``."""
    register_alert_matching(runtime, orchestrator, config)
    register_notifications(runtime, config, sender)
    register_indexing(runtime, search_client, config)
    register_audit_cleanup(runtime, config, session_factory)
    register_invitation_expiration(runtime, config, session_factory)


__all__ = [
    "register_all",
    "register_alert_matching",
    "register_notifications",
    "register_indexing",
    "register_audit_cleanup",
    "register_invitation_expiration",
    "AlertMatchingHandler",
    "NotificationHandler",
    "NotificationSender",
    "LoggingNotificationSender",
    "IndexingHandler",
    "AuditCleanupHandler",
    "InvitationExpirationHandler",
]
