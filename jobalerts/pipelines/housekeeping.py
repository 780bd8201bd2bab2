"""Housekeeping pipelines: audit log retention and invitation expiry."""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict

from jobalerts.config.models import AppConfig
from jobalerts.domain.queues import (
    AUDIT_CLEANUP_QUEUE,
    AUDIT_CLEANUP_SCHEDULE,
    CLEANUP_AUDIT_LOGS_JOB,
    EXPIRE_INVITATIONS_JOB,
    INVITATION_EXPIRATION_QUEUE,
    INVITATION_EXPIRATION_SCHEDULE,
)
from jobalerts.logging import get_logger
from jobalerts.persistence import AuditLogRepository, InvitationRepository, get_session
from jobalerts.queue import QueueJob, QueueRuntime, UnrecoverableJobError
from jobalerts.utils.timestamps import utc_now

from .common import schedule_options, worker_options

logger = get_logger(__name__, component="housekeeping")


class AuditCleanupHandler:
    """Delete audit log entries older than the retention period."""

    def __init__(
        self,
        default_retention_days: int,
        session_factory: Callable = get_session,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.default_retention_days = default_retention_days
        self.session_factory = session_factory
        self.clock = clock

    def __call__(self, job: QueueJob) -> Dict[str, Any]:
        retention_days = job.payload.get("retentionDays", self.default_retention_days)
        if not isinstance(retention_days, int) or isinstance(retention_days, bool) or retention_days < 1:
            raise UnrecoverableJobError(f"Invalid retentionDays {retention_days!r}")

        cutoff = self.clock() - timedelta(days=retention_days)
        with self.session_factory() as session:
            deleted = AuditLogRepository(session).delete_older_than(cutoff)

        logger.info(
            f"Removed {deleted} audit log(s) older than {retention_days} days",
            extra={"event": "audit.cleanup.completed", "deleted": deleted, "retention_days": retention_days},
        )
        return {"deleted": deleted, "success": True}


class InvitationExpirationHandler:
    """Move pending invitations past their expiry time to expired."""

    def __init__(self, session_factory: Callable = get_session, clock: Callable[[], datetime] = utc_now):
        self.session_factory = session_factory
        self.clock = clock

    def __call__(self, job: QueueJob) -> Dict[str, Any]:
        now = self.clock()
        with self.session_factory() as session:
            repo = InvitationRepository(session)
            expired = sum(
                1 for invitation in repo.list_expired_pending(now) if repo.mark_expired(invitation.id, now)
            )

        if expired:
            logger.info(
                f"Expired {expired} invitation(s)",
                extra={"event": "invitations.expired", "expired": expired},
            )
        else:
            logger.info("No expired invitations found", extra={"event": "invitations.none_expired"})
        return {"expired": expired}


def register_audit_cleanup(
    runtime: QueueRuntime, config: AppConfig, session_factory: Callable = get_session
) -> None:
    runtime.register_worker(
        AUDIT_CLEANUP_QUEUE,
        AuditCleanupHandler(config.audit.retention_days, session_factory=session_factory),
        worker_options(config.queue.worker_settings(AUDIT_CLEANUP_QUEUE)),
    )
    runtime.enqueue(
        AUDIT_CLEANUP_QUEUE,
        CLEANUP_AUDIT_LOGS_JOB,
        {"retentionDays": config.audit.retention_days},
        schedule_options(config.queue, AUDIT_CLEANUP_SCHEDULE, config.schedules.audit_cleanup),
    )
    logger.info(
        "Audit cleanup pipeline registered",
        extra={"event": "pipeline.registered", "queue": AUDIT_CLEANUP_QUEUE},
    )


def register_invitation_expiration(
    runtime: QueueRuntime, config: AppConfig, session_factory: Callable = get_session
) -> None:
    runtime.register_worker(
        INVITATION_EXPIRATION_QUEUE,
        InvitationExpirationHandler(session_factory=session_factory),
        worker_options(config.queue.worker_settings(INVITATION_EXPIRATION_QUEUE)),
    )
    runtime.enqueue(
        INVITATION_EXPIRATION_QUEUE,
        EXPIRE_INVITATIONS_JOB,
        {},
        schedule_options(
            config.queue, INVITATION_EXPIRATION_SCHEDULE, config.schedules.invitation_expiration
        ),
    )
    logger.info(
        "Invitation expiration pipeline registered",
        extra={"event": "pipeline.registered", "queue": INVITATION_EXPIRATION_QUEUE},
    )
