"""SQL ledger of deterministic job keys for the Celery-backed runtime.

The broker only knows task ids. Deduplicating by caller-supplied key (and
by schedule occurrence) needs a shared record that survives restarts and is
visible to every worker process, so claims are rows guarded by a unique
constraint: the first insert wins, later ones find the existing task id.
"""

from datetime import datetime
from typing import Callable, ContextManager, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from jobalerts.logging import get_logger
from jobalerts.persistence.exceptions import PersistenceError
from jobalerts.persistence.schema import QueueJobKeyModel, format_datetime

from .exceptions import EnqueueError

logger = get_logger(__name__, component="queue")

SessionFactory = Callable[[], ContextManager[Session]]


class JobKeyStore:
    """Claims on ``(queue_name, job_key)`` persisted through SQLAlchemy."""

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def claim(
        self, queue_name: str, job_key: str, task_id: str, job_name: str, now: datetime
    ) -> Tuple[str, bool]:
        """Claim ``job_key`` for ``task_id``.

        Returns:
            (task_id, created). When the key is already claimed the owning
            task id is returned with ``created=False``.

        Raises:
            EnqueueError: If the ledger could not be read or written
        """
        try:
            with self._session_factory() as session:
                existing = self._find(session, queue_name, job_key)
                if existing is not None:
                    return existing.task_id, False

                model = QueueJobKeyModel(
                    queue_name=queue_name,
                    job_key=job_key,
                    task_id=task_id,
                    job_name=job_name,
                    created_at=format_datetime(now),
                )
                try:
                    with session.begin_nested():
                        session.add(model)
                except IntegrityError:
                    # Another process claimed the key between our read and insert
                    existing = self._find(session, queue_name, job_key)
                    if existing is None:
                        raise
                    return existing.task_id, False

                return task_id, True
        except (SQLAlchemyError, PersistenceError) as e:
            logger.error(
                f"Failed to claim job key '{job_key}' on '{queue_name}': {e}",
                exc_info=True,
                extra={"event": "queue.job_key.claim_failed", "queue": queue_name},
            )
            raise EnqueueError(f"Failed to claim job key '{job_key}' on '{queue_name}': {e}") from e

    def owner(self, queue_name: str, job_key: str) -> Optional[str]:
        """Task id holding ``job_key``, or None."""
        with self._session_factory() as session:
            existing = self._find(session, queue_name, job_key)
            return existing.task_id if existing else None

    def release(self, queue_name: str, job_key: str, task_id: str) -> bool:
        """Drop a claim, but only if ``task_id`` still owns it."""
        stmt = delete(QueueJobKeyModel).where(
            QueueJobKeyModel.queue_name == queue_name,
            QueueJobKeyModel.job_key == job_key,
            QueueJobKeyModel.task_id == task_id,
        )
        with self._session_factory() as session:
            return session.execute(stmt).rowcount > 0

    def prune(self, older_than: datetime) -> int:
        """Delete claims created before ``older_than``. Returns the count."""
        stmt = delete(QueueJobKeyModel).where(
            QueueJobKeyModel.created_at < format_datetime(older_than)
        )
        with self._session_factory() as session:
            return session.execute(stmt).rowcount

    @staticmethod
    def _find(session: Session, queue_name: str, job_key: str) -> Optional[QueueJobKeyModel]:
        stmt = select(QueueJobKeyModel).where(
            QueueJobKeyModel.queue_name == queue_name, QueueJobKeyModel.job_key == job_key
        )
        return session.execute(stmt).scalars().first()
