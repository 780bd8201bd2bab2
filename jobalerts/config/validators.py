"""Soft checks that warn about suspicious but valid configuration."""

import warnings
from typing import Any, Dict, List

KNOWN_QUEUES = (
    "alert-matching",
    "notifications",
    "job-index",
    "audit-cleanup",
    "invitation-expiration",
)


def check_for_warnings(config_dict: Dict[str, Any]) -> List[str]:
    """
    Inspect the raw configuration dictionary and return warning messages.

    Args:
        config_dict: Raw configuration dictionary

    Returns:
        List of warning messages
    """
    warning_messages = []

    queue = config_dict.get("queue", {})
    if isinstance(queue, dict):
        workers = queue.get("workers", {})
        if isinstance(workers, dict):
            for name, settings in workers.items():
                if name not in KNOWN_QUEUES:
                    warning_messages.append(
                        f"Worker settings for unknown queue '{name}' will be ignored"
                    )
                if isinstance(settings, dict) and isinstance(settings.get("concurrency"), int):
                    if settings["concurrency"] > 20:
                        warning_messages.append(
                            f"High concurrency ({settings['concurrency']}) for queue '{name}' "
                            "may exhaust database connections"
                        )

        attempts = queue.get("default_attempts")
        if isinstance(attempts, int) and attempts == 1:
            warning_messages.append(
                "default_attempts is 1: failed jobs will never be retried"
            )

    matching = config_dict.get("matching", {})
    if isinstance(matching, dict):
        page_size = matching.get("page_size")
        if isinstance(page_size, int) and page_size > 100:
            warning_messages.append(
                f"Large matching.page_size ({page_size}) produces very long notification batches"
            )

    return warning_messages


def emit_warnings(warning_messages: List[str]) -> None:
    """Emit warning messages through Python's warnings module."""
    for message in warning_messages:
        warnings.warn(message, UserWarning, stacklevel=2)
