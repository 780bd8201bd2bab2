"""Database schema definition and ORM models.

Timestamps are stored as fixed-width ISO 8601 UTC strings
(``YYYY-MM-DDTHH:MM:SS.ffffffZ``) so range comparisons work as plain
string comparisons on every backend.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    inspect,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base

from jobalerts.domain.models import Alert, AlertMatch, Invitation

logger = logging.getLogger(__name__)

Base = declarative_base()


class AlertModel(Base):
    """ORM model for the job_alerts table."""

    __tablename__ = "job_alerts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    search_query = Column(String(255), nullable=True)
    city = Column(String(100), nullable=True)
    state = Column(String(100), nullable=True)
    country = Column(String(100), nullable=True)
    skills = Column(JSON, nullable=False, default=list)
    job_types = Column(JSON, nullable=False, default=list)
    experience_levels = Column(JSON, nullable=False, default=list)
    include_remote = Column(Boolean, nullable=False, default=True)
    frequency = Column(String(20), nullable=False, default="weekly")
    is_active = Column(Boolean, nullable=False, default=True)
    is_paused = Column(Boolean, nullable=False, default=False)
    last_sent_at = Column(String(50), nullable=True)
    created_at = Column(String(50), nullable=False)
    updated_at = Column(String(50), nullable=False)

    __table_args__ = (
        Index("idx_job_alerts_owner", "owner_id"),
        Index("idx_job_alerts_schedule", "frequency", "is_active", "is_paused"),
    )

    def to_domain(self) -> Alert:
        return Alert(
            id=self.id,
            owner_id=self.owner_id,
            name=self.name,
            description=self.description,
            search_query=self.search_query,
            city=self.city,
            state=self.state,
            country=self.country,
            skills=list(self.skills or []),
            job_types=list(self.job_types or []),
            experience_levels=list(self.experience_levels or []),
            include_remote=self.include_remote,
            frequency=self.frequency,
            is_active=self.is_active,
            is_paused=self.is_paused,
            last_sent_at=parse_datetime(self.last_sent_at),
            created_at=parse_datetime(self.created_at),
            updated_at=parse_datetime(self.updated_at),
        )

    @classmethod
    def from_domain(cls, alert: Alert, now: datetime) -> "AlertModel":
        return cls(
            id=alert.id,
            owner_id=alert.owner_id,
            name=alert.name,
            description=alert.description,
            search_query=alert.search_query,
            city=alert.city,
            state=alert.state,
            country=alert.country,
            skills=list(alert.skills),
            job_types=list(alert.job_types),
            experience_levels=list(alert.experience_levels),
            include_remote=alert.include_remote,
            frequency=alert.frequency.value,
            is_active=alert.is_active,
            is_paused=alert.is_paused,
            last_sent_at=format_datetime(alert.last_sent_at),
            created_at=format_datetime(alert.created_at or now),
            updated_at=format_datetime(alert.updated_at or now),
        )


class AlertMatchModel(Base):
    """ORM model for the job_alert_matches table.

    The (alert_id, job_id) unique constraint is what keeps a job from ever
    being surfaced twice for the same alert, even with concurrent writers.
    """

    __tablename__ = "job_alert_matches"

    id = Column(Integer, primary_key=True, autoincrement=True)
    alert_id = Column(
        Integer, ForeignKey("job_alerts.id", ondelete="CASCADE"), nullable=False
    )
    job_id = Column(Integer, nullable=False)
    match_score = Column(Float, nullable=False, default=1.0)
    was_sent = Column(Boolean, nullable=False, default=False)
    matched_at = Column(String(50), nullable=False)
    created_at = Column(String(50), nullable=False)

    __table_args__ = (
        UniqueConstraint("alert_id", "job_id", name="uq_job_alert_matches_alert_job"),
        Index("idx_job_alert_matches_unsent", "was_sent", "created_at"),
    )

    def to_domain(self) -> AlertMatch:
        return AlertMatch(
            id=self.id,
            alert_id=self.alert_id,
            job_id=self.job_id,
            match_score=self.match_score,
            was_sent=self.was_sent,
            matched_at=parse_datetime(self.matched_at),
            created_at=parse_datetime(self.created_at),
        )

    @classmethod
    def from_domain(cls, match: AlertMatch) -> "AlertMatchModel":
        return cls(
            id=match.id,
            alert_id=match.alert_id,
            job_id=match.job_id,
            match_score=match.match_score,
            was_sent=match.was_sent,
            matched_at=format_datetime(match.matched_at),
            created_at=format_datetime(match.created_at or match.matched_at),
        )


class QueueJobKeyModel(Base):
    """Ledger of deterministic job keys handed to the broker.

    A row claims ``(queue_name, job_key)`` for one Celery task id; the
    unique constraint is what makes re-enqueueing a known key a no-op across
    processes. Scheduled occurrences claim ``<schedule-id>:<epoch>`` keys.
    """

    __tablename__ = "queue_job_keys"

    id = Column(Integer, primary_key=True, autoincrement=True)
    queue_name = Column(String(100), nullable=False)
    job_key = Column(String(255), nullable=False)
    task_id = Column(String(255), nullable=False)
    job_name = Column(String(100), nullable=False)
    created_at = Column(String(50), nullable=False)

    __table_args__ = (
        UniqueConstraint("queue_name", "job_key", name="uq_queue_job_keys_queue_key"),
        Index("idx_queue_job_keys_created", "created_at"),
    )


class AuditLogModel(Base):
    """ORM model for the audit_logs table. Only retention cleanup touches it here."""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=True)
    action = Column(String(100), nullable=False)
    entity_type = Column(String(100), nullable=True)
    entity_id = Column(String(100), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(String(50), nullable=False)

    __table_args__ = (Index("idx_audit_logs_created", "created_at"),)


class InvitationModel(Base):
    """ORM model for the organization_invitations table."""

    __tablename__ = "organization_invitations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, nullable=False)
    email = Column(String(255), nullable=False)
    role = Column(String(50), nullable=False, default="member")
    status = Column(String(20), nullable=False, default="pending")
    expires_at = Column(String(50), nullable=False)
    expired_at = Column(String(50), nullable=True)
    created_at = Column(String(50), nullable=False)

    __table_args__ = (Index("idx_invitations_pending", "status", "expires_at"),)

    def to_domain(self) -> Invitation:
        return Invitation(
            id=self.id,
            organization_id=self.organization_id,
            email=self.email,
            role=self.role,
            status=self.status,
            expires_at=parse_datetime(self.expires_at),
            expired_at=parse_datetime(self.expired_at),
            created_at=parse_datetime(self.created_at),
        )

    @classmethod
    def from_domain(cls, invitation: Invitation, now: datetime) -> "InvitationModel":
        return cls(
            id=invitation.id,
            organization_id=invitation.organization_id,
            email=invitation.email,
            role=invitation.role,
            status=invitation.status.value,
            expires_at=format_datetime(invitation.expires_at),
            expired_at=format_datetime(invitation.expired_at),
            created_at=format_datetime(invitation.created_at or now),
        )


def format_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Format datetime as a fixed-width ISO 8601 UTC string for storage."""
    if dt is None:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)

    return dt.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_datetime(dt_str: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO 8601 string back to an aware UTC datetime."""
    if not dt_str:
        return None

    dt_str = dt_str.rstrip("Z")

    try:
        dt = datetime.strptime(dt_str, "%Y-%m-%dT%H:%M:%S.%f")
    except ValueError:
        dt = datetime.strptime(dt_str, "%Y-%m-%dT%H:%M:%S")

    return dt.replace(tzinfo=timezone.utc)


def create_schema(engine: Engine) -> None:
    """Create all tables and indexes if they don't exist (idempotent)."""
    logger.info("Creating database schema if not exists")

    try:
        Base.metadata.create_all(engine, checkfirst=True)
        tables = inspect(engine).get_table_names()
        logger.info(f"Database schema ready. Tables: {', '.join(sorted(tables))}")
    except Exception as e:
        logger.error(f"Failed to create database schema: {e}", exc_info=True)
        raise
