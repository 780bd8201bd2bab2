"""Context propagation for structured logging.

Fields pushed here (run ids, queue names, alert ids) are copied onto every
log record emitted while they are active. Worker threads start with an empty
context, so each job handler binds its own fields when it begins.
"""

from contextvars import ContextVar, Token
from typing import Any, Dict, Optional


LogContextVar: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})


def get_log_context() -> Dict[str, Any]:
    """Return a copy of the fields active in the current context."""
    return LogContextVar.get().copy()


def push_log_context(**kwargs) -> Token:
    """Merge fields into the logging context.

    Args:
        **kwargs: Key-value pairs to add to the logging context

    Returns:
        Token for pop_log_context()

    Example:
        >>> token = push_log_context(queue="alert-matching", queue_job_id="42")
        >>> pop_log_context(token)
    """
    current = LogContextVar.get()
    return LogContextVar.set({**current, **kwargs})


def pop_log_context(token: Token) -> None:
    """Restore the logging context captured by push_log_context()."""
    LogContextVar.reset(token)


def clear_log_context() -> None:
    """Drop every context field. Mostly useful in tests."""
    LogContextVar.set({})


class log_context:
    """Context manager for scoped logging fields.

    Example:
        >>> with log_context(run_id="abc123", frequency="daily"):
        ...     logger.info("Selecting alerts")
    """

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.token: Optional[Token] = None

    def __enter__(self):
        self.token = push_log_context(**self.kwargs)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.token is not None:
            pop_log_context(self.token)
            self.token = None
        return False
