"""Persistence layer exceptions.

Every exception raised by the persistence layer derives from
PersistenceError, so callers that isolate failures per alert or per item
can catch a single type.
"""


class PersistenceError(Exception):
    """Base exception for all persistence layer errors."""


class DatabaseConnectionError(PersistenceError):
    """Raised when the database cannot be initialised or reached.

    Examples:
    - Invalid database URL
    - Database file not accessible
    - Session requested before init_database()
    """


class RecordNotFoundError(PersistenceError):
    """Raised when an operation requires a row that does not exist.

    Lookups that may legitimately miss return None instead.
    """


class DataIntegrityError(PersistenceError):
    """Raised when a write violates a constraint.

    The duplicate (alert_id, job_id) case is handled inside the match
    repository and never surfaces as this error.
    """
