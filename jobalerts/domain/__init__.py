"""Domain models for alert matching."""

from .models import (
    Alert,
    AlertMatch,
    AlertNotificationPayload,
    Frequency,
    Invitation,
    InvitationStatus,
    JobDocument,
    SearchHit,
    SearchResult,
)

__all__ = [
    "Alert",
    "AlertMatch",
    "AlertNotificationPayload",
    "Frequency",
    "Invitation",
    "InvitationStatus",
    "JobDocument",
    "SearchHit",
    "SearchResult",
]
