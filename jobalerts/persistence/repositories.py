"""Data access layer (repositories) for alerts, matches and housekeeping tables.

Repositories take an open Session, return domain models and wrap
SQLAlchemy errors into PersistenceError subclasses. They flush but never
commit; the caller owns the transaction.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from pydantic import ValidationError
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from jobalerts.domain.models import Alert, AlertMatch, Frequency, Invitation, InvitationStatus

from .exceptions import DataIntegrityError, PersistenceError, RecordNotFoundError
from .schema import (
    AlertMatchModel,
    AlertModel,
    AuditLogModel,
    InvitationModel,
    format_datetime,
)

logger = logging.getLogger(__name__)


class AlertRepository:
    """Repository for job alert subscriptions."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, alert: Alert, now: datetime) -> Alert:
        """Insert a new alert and return it with its generated id.

        Raises:
            DataIntegrityError: On constraint violation
            PersistenceError: If database error occurs
        """
        try:
            model = AlertModel.from_domain(alert, now)
            self.session.add(model)
            self.session.flush()
            return model.to_domain()
        except IntegrityError as e:
            logger.error(f"Integrity error inserting alert: {e}", exc_info=True)
            raise DataIntegrityError(f"Failed to insert alert: {e}") from e
        except SQLAlchemyError as e:
            logger.error(f"Error inserting alert: {e}", exc_info=True)
            raise PersistenceError(f"Failed to insert alert: {e}") from e

    def get(self, alert_id: int) -> Optional[Alert]:
        """Retrieve an alert by id, or None when it does not exist."""
        try:
            model = self.session.get(AlertModel, alert_id)
            return model.to_domain() if model else None
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving alert {alert_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve alert: {e}") from e

    def list_candidates(self, frequency: Frequency) -> List[Alert]:
        """Active, unpaused alerts of one frequency tier, oldest send first.

        Rows that no longer validate as an Alert are skipped with a warning
        so one bad row cannot block the whole tier.

        Raises:
            PersistenceError: If database error occurs
        """
        try:
            stmt = (
                select(AlertModel)
                .where(
                    AlertModel.frequency == Frequency(frequency).value,
                    AlertModel.is_active.is_(True),
                    AlertModel.is_paused.is_(False),
                )
                .order_by(AlertModel.last_sent_at.asc(), AlertModel.id.asc())
            )
            models = self.session.execute(stmt).scalars().all()
        except SQLAlchemyError as e:
            logger.error(f"Error selecting {frequency} alert candidates: {e}", exc_info=True)
            raise PersistenceError(f"Failed to select alert candidates: {e}") from e

        alerts = []
        for model in models:
            try:
                alerts.append(model.to_domain())
            except ValidationError as e:
                logger.warning(
                    f"Skipping invalid alert row {model.id}",
                    extra={"event": "alert.row.invalid", "alert_id": model.id, "error": str(e)},
                )
        return alerts

    def update_last_sent_at(self, alert_id: int, timestamp: datetime) -> None:
        """Record the time an alert was last evaluated.

        Raises:
            RecordNotFoundError: If the alert does not exist
            PersistenceError: If database error occurs
        """
        try:
            stamp = format_datetime(timestamp)
            result = self.session.execute(
                update(AlertModel)
                .where(AlertModel.id == alert_id)
                .values(last_sent_at=stamp, updated_at=stamp)
            )
            self.session.flush()
        except SQLAlchemyError as e:
            logger.error(f"Error updating last_sent_at for alert {alert_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to update last_sent_at: {e}") from e

        if result.rowcount == 0:
            raise RecordNotFoundError(f"Alert {alert_id} not found")


class MatchRepository:
    """Repository for (alert, job) matches."""

    def __init__(self, session: Session):
        self.session = session

    def existing_job_ids(self, alert_id: int, job_ids: Iterable[int]) -> Set[int]:
        """Subset of ``job_ids`` already matched to the alert.

        Raises:
            PersistenceError: If database error occurs
        """
        job_ids = list(job_ids)
        if not job_ids:
            return set()

        try:
            stmt = select(AlertMatchModel.job_id).where(
                AlertMatchModel.alert_id == alert_id,
                AlertMatchModel.job_id.in_(job_ids),
            )
            return set(self.session.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error checking existing matches for alert {alert_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to check existing matches: {e}") from e

    def insert_if_absent(self, match: AlertMatch) -> bool:
        """Insert one match inside a SAVEPOINT.

        Returns:
            True if the row was inserted, False if the (alert_id, job_id)
            pair already exists (e.g. written by a concurrent run)

        Raises:
            PersistenceError: If database error occurs
        """
        try:
            with self.session.begin_nested():
                self.session.add(AlertMatchModel.from_domain(match))
            return True
        except IntegrityError:
            logger.info(
                "Match already recorded by another run",
                extra={
                    "event": "alert.match.duplicate",
                    "alert_id": match.alert_id,
                    "job_id": match.job_id,
                },
            )
            return False
        except SQLAlchemyError as e:
            logger.error(f"Error inserting match for alert {match.alert_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to insert match: {e}") from e

    def create_matches(
        self,
        alert_id: int,
        job_ids: Iterable[int],
        matched_at: datetime,
        scores: Optional[Dict[int, float]] = None,
    ) -> List[int]:
        """Insert unsent matches for ``job_ids`` and return the ids actually inserted."""
        scores = scores or {}
        inserted = []
        for job_id in job_ids:
            match = AlertMatch(
                alert_id=alert_id,
                job_id=job_id,
                match_score=scores.get(job_id, 1.0),
                matched_at=matched_at,
            )
            if self.insert_if_absent(match):
                inserted.append(job_id)
        return inserted

    def mark_sent(self, alert_id: int, job_ids: Iterable[int]) -> int:
        """Flip ``was_sent`` for the given matches. Returns the number of rows changed."""
        job_ids = list(job_ids)
        if not job_ids:
            return 0

        try:
            result = self.session.execute(
                update(AlertMatchModel)
                .where(
                    AlertMatchModel.alert_id == alert_id,
                    AlertMatchModel.job_id.in_(job_ids),
                    AlertMatchModel.was_sent.is_(False),
                )
                .values(was_sent=True)
            )
            self.session.flush()
            return result.rowcount
        except SQLAlchemyError as e:
            logger.error(f"Error marking matches sent for alert {alert_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to mark matches sent: {e}") from e

    def list_for_alert(self, alert_id: int) -> List[AlertMatch]:
        try:
            stmt = (
                select(AlertMatchModel)
                .where(AlertMatchModel.alert_id == alert_id)
                .order_by(AlertMatchModel.id.asc())
            )
            return [m.to_domain() for m in self.session.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Error listing matches for alert {alert_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to list matches: {e}") from e

    def find_unsent(self, created_before: datetime) -> List[AlertMatch]:
        """Matches never handed to the notification queue, created before the cutoff."""
        try:
            stmt = (
                select(AlertMatchModel)
                .where(
                    AlertMatchModel.was_sent.is_(False),
                    AlertMatchModel.created_at < format_datetime(created_before),
                )
                .order_by(AlertMatchModel.alert_id.asc(), AlertMatchModel.id.asc())
            )
            return [m.to_domain() for m in self.session.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Error finding unsent matches: {e}", exc_info=True)
            raise PersistenceError(f"Failed to find unsent matches: {e}") from e


class AuditLogRepository:
    """Repository for audit log retention."""

    def __init__(self, session: Session):
        self.session = session

    def add(
        self,
        action: str,
        created_at: datetime,
        user_id: Optional[int] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> int:
        try:
            model = AuditLogModel(
                user_id=user_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                details=details,
                created_at=format_datetime(created_at),
            )
            self.session.add(model)
            self.session.flush()
            return model.id
        except SQLAlchemyError as e:
            logger.error(f"Error inserting audit log: {e}", exc_info=True)
            raise PersistenceError(f"Failed to insert audit log: {e}") from e

    def count(self) -> int:
        try:
            return self.session.execute(select(func.count(AuditLogModel.id))).scalar_one()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to count audit logs: {e}") from e

    def delete_older_than(self, cutoff: datetime) -> int:
        """Delete audit entries created before ``cutoff``. Returns the deleted count."""
        try:
            result = self.session.execute(
                delete(AuditLogModel).where(AuditLogModel.created_at < format_datetime(cutoff))
            )
            self.session.flush()
            return result.rowcount
        except SQLAlchemyError as e:
            logger.error(f"Error deleting old audit logs: {e}", exc_info=True)
            raise PersistenceError(f"Failed to delete old audit logs: {e}") from e


class InvitationRepository:
    """Repository for organization invitations."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, invitation: Invitation, now: datetime) -> Invitation:
        try:
            model = InvitationModel.from_domain(invitation, now)
            self.session.add(model)
            self.session.flush()
            return model.to_domain()
        except SQLAlchemyError as e:
            logger.error(f"Error inserting invitation: {e}", exc_info=True)
            raise PersistenceError(f"Failed to insert invitation: {e}") from e

    def get(self, invitation_id: int) -> Optional[Invitation]:
        try:
            model = self.session.get(InvitationModel, invitation_id)
            return model.to_domain() if model else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to retrieve invitation: {e}") from e

    def list_expired_pending(self, now: datetime) -> List[Invitation]:
        """Pending invitations whose expiry time has passed."""
        try:
            stmt = (
                select(InvitationModel)
                .where(
                    InvitationModel.status == InvitationStatus.PENDING.value,
                    InvitationModel.expires_at < format_datetime(now),
                )
                .order_by(InvitationModel.id.asc())
            )
            return [m.to_domain() for m in self.session.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Error listing expired invitations: {e}", exc_info=True)
            raise PersistenceError(f"Failed to list expired invitations: {e}") from e

    def mark_expired(self, invitation_id: int, expired_at: datetime) -> bool:
        """Move one invitation from pending to expired.

        Returns:
            False if the invitation was no longer pending
        """
        try:
            result = self.session.execute(
                update(InvitationModel)
                .where(
                    InvitationModel.id == invitation_id,
                    InvitationModel.status == InvitationStatus.PENDING.value,
                )
                .values(
                    status=InvitationStatus.EXPIRED.value,
                    expired_at=format_datetime(expired_at),
                )
            )
            self.session.flush()
            return result.rowcount == 1
        except SQLAlchemyError as e:
            logger.error(f"Error expiring invitation {invitation_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to expire invitation: {e}") from e
