"""Persistence layer built on SQLAlchemy.

Public API:
    # Database initialization and session management
    - init_database(database_url: str) -> None
    - get_session() -> ContextManager[Session]
    - close_database() -> None
    - get_engine() -> Engine

    # Repository classes
    - AlertRepository: alert subscriptions and their last evaluation time
    - MatchRepository: (alert, job) matches, unique per pair
    - AuditLogRepository: audit log retention
    - InvitationRepository: organization invitation expiry

    # Exceptions
    - PersistenceError and its subclasses

Example usage:
    >>> from jobalerts.persistence import init_database, get_session, AlertRepository
    >>> init_database("sqlite:///./data/job_alerts.db")
    >>> with get_session() as session:
    ...     alert = AlertRepository(session).get(42)
"""

from .database import close_database, get_engine, get_session, init_database
from .exceptions import (
    DatabaseConnectionError,
    DataIntegrityError,
    PersistenceError,
    RecordNotFoundError,
)
from .repositories import (
    AlertRepository,
    AuditLogRepository,
    InvitationRepository,
    MatchRepository,
)

__all__ = [
    # Database functions
    "init_database",
    "get_session",
    "close_database",
    "get_engine",
    # Repositories
    "AlertRepository",
    "MatchRepository",
    "AuditLogRepository",
    "InvitationRepository",
    # Exceptions
    "PersistenceError",
    "DatabaseConnectionError",
    "RecordNotFoundError",
    "DataIntegrityError",
]
