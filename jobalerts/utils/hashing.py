"""Hashing utilities for deterministic queue job keys.

A notification batch is identified by its alert and the exact set of job
ids it carries, so re-enqueueing the same batch (e.g. from redelivery after
a partially failed run) collapses onto the job already in the queue.
"""

import hashlib
from typing import Iterable


def hash_string(value: str) -> str:
    """Compute SHA256 hash of a string value.

    Args:
        value: String to hash

    Returns:
        Hexadecimal string representation of SHA256 hash (64 characters)
    """
    hash_obj = hashlib.sha256(value.encode("utf-8"))
    return hash_obj.hexdigest()


def compute_notification_key(alert_id: int, job_ids: Iterable[int]) -> str:
    """Deterministic key for one alert's notification batch.

    Job order does not matter and duplicates are ignored.

    Example:
        >>> compute_notification_key(7, [3, 1, 2]) == compute_notification_key(7, [1, 2, 3])
        True
    """
    canonical = ",".join(str(job_id) for job_id in sorted(set(int(j) for j in job_ids)))
    return f"alert-{alert_id}:{hash_string(canonical)[:16]}"
