"""Shared utility helpers."""

from .timestamps import (
    ensure_utc,
    format_timestamp,
    parse_iso_datetime,
    timestamp_to_unix,
    unix_to_timestamp,
    utc_now,
)

__all__ = [
    "utc_now",
    "ensure_utc",
    "parse_iso_datetime",
    "format_timestamp",
    "timestamp_to_unix",
    "unix_to_timestamp",
]
