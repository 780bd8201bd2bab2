"""Cron helpers for repeatable jobs. All patterns are evaluated in UTC.

Patterns use crontab day-of-week numbering (0 and 7 are Sunday). The field
is expanded to explicit days before it reaches APScheduler or Celery, whose
own numbering differs.
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from apscheduler.triggers.cron import CronTrigger
from celery.schedules import crontab

from jobalerts.utils.timestamps import ensure_utc, timestamp_to_unix

_DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


def _split(pattern: str) -> List[str]:
    fields = pattern.split() if pattern else []
    if len(fields) != 5:
        raise ValueError(f"Cron pattern must have five fields: '{pattern}'")
    return fields


def _day_number(token: str) -> int:
    token = token.strip().lower()
    if token in _DAY_NAMES:
        return _DAY_NAMES.index(token)
    try:
        value = int(token)
    except ValueError:
        raise ValueError(f"Invalid day of week: '{token}'") from None
    if not 0 <= value <= 7:
        raise ValueError(f"Day of week out of range: {value}")
    return value


def expand_day_of_week(field: str) -> Optional[List[int]]:
    """Expand a crontab day-of-week field to sorted day numbers (0 = Sunday).

    Returns None for ``*``, meaning every day.

    Example:
        >>> expand_day_of_week("1-5")
        [1, 2, 3, 4, 5]
        >>> expand_day_of_week("5-7")
        [0, 5, 6]
    """
    if field in ("*", "?"):
        return None

    days = set()
    for part in field.split(","):
        span, _, step_text = part.partition("/")
        step = int(step_text) if step_text else 1
        if step < 1:
            raise ValueError(f"Invalid step in day of week: '{part}'")

        if span == "*":
            low, high = 0, 6
        elif "-" in span:
            first, last = span.split("-", 1)
            low, high = _day_number(first), _day_number(last)
        else:
            low = _day_number(span)
            high = 7 if step_text else low

        if low > high:
            raise ValueError(f"Invalid day of week range: '{part}'")
        days.update(day % 7 for day in range(low, high + 1, step))

    return sorted(days)


def parse_pattern(pattern: str) -> CronTrigger:
    """Build a UTC CronTrigger from a five-field crontab expression.

    Raises:
        ValueError: If the pattern is not a valid crontab expression
    """
    minute, hour, day, month, day_of_week = _split(pattern)
    days = expand_day_of_week(day_of_week)
    return CronTrigger(
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week="*" if days is None else ",".join(_DAY_NAMES[d] for d in days),
        timezone=timezone.utc,
    )


def celery_schedule(pattern: str) -> crontab:
    """Celery beat schedule equivalent to ``pattern``."""
    parse_pattern(pattern)
    minute, hour, day, month, day_of_week = _split(pattern)
    days = expand_day_of_week(day_of_week)
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day,
        month_of_year=month,
        day_of_week="*" if days is None else ",".join(str(d) for d in days),
    )


def next_fire_time(pattern: str, after: datetime) -> datetime:
    """First occurrence of ``pattern`` strictly after ``after``."""
    trigger = parse_pattern(pattern)
    # The trigger treats ``now`` inclusively and rounds up to whole seconds
    start = ensure_utc(after) + timedelta(microseconds=1)
    fire_time = trigger.get_next_fire_time(None, start)
    if fire_time is None:
        raise ValueError(f"Cron pattern '{pattern}' never fires after {after.isoformat()}")
    return ensure_utc(fire_time)


def latest_fire_time(pattern: str, at: datetime, lookback_seconds: float) -> Optional[datetime]:
    """Most recent occurrence at or before ``at``, within ``lookback_seconds``.

    Returns None when the pattern did not fire inside the window.
    """
    at = ensure_utc(at)
    trigger = parse_pattern(pattern)
    latest = None
    fire_time = trigger.get_next_fire_time(None, at - timedelta(seconds=lookback_seconds))
    while fire_time is not None and fire_time <= at:
        latest = ensure_utc(fire_time)
        fire_time = trigger.get_next_fire_time(None, fire_time + timedelta(microseconds=1))
    return latest


def occurrence_key(schedule_id: str, fire_time: datetime) -> str:
    """Deterministic job key for one occurrence of a schedule."""
    return f"{schedule_id}:{timestamp_to_unix(fire_time)}"


def plan_fire(
    pattern: str, scheduled_for: datetime, now: datetime, misfire_grace_seconds: float
) -> Tuple[bool, datetime]:
    """Decide what to do with a due occurrence.

    Returns ``(spawn, next_run_at)``. Missed occurrences are coalesced: at
    most one job is spawned and the schedule jumps to the next future
    occurrence. An occurrence later than the grace period is skipped.
    """
    lateness = (ensure_utc(now) - ensure_utc(scheduled_for)).total_seconds()
    spawn = lateness <= misfire_grace_seconds
    return spawn, next_fire_time(pattern, now)
