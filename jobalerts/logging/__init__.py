"""Structured logging for the alert matching service and its queue workers."""

import logging
from typing import Optional

from .context import (
    clear_log_context,
    get_log_context,
    log_context,
    pop_log_context,
    push_log_context,
)

__all__ = [
    "ComponentLoggerAdapter",
    "get_logger",
    "log_context",
    "get_log_context",
    "push_log_context",
    "pop_log_context",
    "clear_log_context",
]


class ComponentLoggerAdapter(logging.LoggerAdapter):
    """LoggerAdapter that merges the bound component into per-call extras."""

    def process(self, msg, kwargs):
        # Call-site extras win over the adapter defaults
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger(name: str, component: Optional[str] = None):
    """Get a logger, optionally bound to a component name.

    Every record emitted through the returned adapter carries a
    ``component`` field, which the formatters render next to the event.

    Args:
        name: Logger name (typically __name__)
        component: Component identifier such as "queue" or "orchestrator"

    Returns:
        Logger or ComponentLoggerAdapter instance

    Example:
        >>> logger = get_logger(__name__, component="orchestrator")
        >>> logger.info("Alert run started", extra={"event": "alert.run.started"})
    """
    logger = logging.getLogger(name)

    if component:
        return ComponentLoggerAdapter(logger, {"component": component})

    return logger
