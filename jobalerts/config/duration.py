"""Duration parsing for configuration values such as poll intervals."""

import re


class DurationParseError(ValueError):
    """Raised when a duration string cannot be parsed."""


_ISO_PATTERN = re.compile(r"^P(?:(\d+)D)?(?:T(?:(\d+)H)?(?:(\d+)M)?(?:(\d+(?:\.\d+)?)S)?)?$")
_HUMAN_PATTERN = re.compile(r"(\d+)\s*([smhd])")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(duration_str: str) -> int:
    """
    Parse a duration string to whole seconds.

    Supports human-readable values ("30s", "15m", "1h30m", "7d") and
    ISO-8601 durations ("PT30S", "PT15M", "P7D").

    Raises:
        DurationParseError: If the duration string is invalid or zero

    Examples:
        >>> parse_duration("2s")
        2
        >>> parse_duration("PT10M")
        600
        >>> parse_duration("1h30m")
        5400
    """
    if not isinstance(duration_str, str):
        raise DurationParseError(f"Duration must be a string, got {type(duration_str).__name__}")

    duration_str = duration_str.strip()
    if not duration_str:
        raise DurationParseError("Duration string cannot be empty")

    if duration_str.upper().startswith("P"):
        total = _parse_iso8601_duration(duration_str.upper())
    else:
        total = _parse_human_readable_duration(duration_str.lower())

    if total == 0:
        raise DurationParseError(f"Duration cannot be zero: '{duration_str}'")

    return total


def _parse_iso8601_duration(duration_str: str) -> int:
    match = _ISO_PATTERN.match(duration_str)
    if not match or duration_str in ("P", "PT"):
        raise DurationParseError(
            f"Invalid ISO-8601 duration format: '{duration_str}'. "
            "Expected format like 'P7D', 'PT1H30M', 'PT15M', or 'PT30S'"
        )

    days, hours, minutes, seconds = match.groups()
    return (
        int(days or 0) * 86400
        + int(hours or 0) * 3600
        + int(minutes or 0) * 60
        + int(float(seconds or 0))
    )


def _parse_human_readable_duration(duration_str: str) -> int:
    matches = _HUMAN_PATTERN.findall(duration_str)
    if not matches:
        raise DurationParseError(
            f"Invalid duration format: '{duration_str}'. "
            "Expected format like '30s', '15m', '1h', '7d', or combinations like '1h30m'"
        )

    # Every character must belong to a number+unit pair
    parsed = "".join(f"{num}{unit}" for num, unit in matches)
    if parsed != re.sub(r"\s+", "", duration_str):
        raise DurationParseError(
            f"Invalid characters in duration: '{duration_str}'. "
            "Use only digits and units: s (seconds), m (minutes), h (hours), d (days)"
        )

    return sum(int(num) * _UNIT_SECONDS[unit] for num, unit in matches)


def validate_duration_range(
    duration_seconds: int,
    min_seconds: int,
    max_seconds: int,
    label: str = "Duration",
) -> None:
    """
    Check that a parsed duration falls inside [min_seconds, max_seconds].

    Raises:
        DurationParseError: If duration is outside the valid range
    """
    if duration_seconds < min_seconds:
        raise DurationParseError(
            f"{label} too short: {seconds_to_human_readable(duration_seconds)}. "
            f"Minimum is {seconds_to_human_readable(min_seconds)}."
        )

    if duration_seconds > max_seconds:
        raise DurationParseError(
            f"{label} too long: {seconds_to_human_readable(duration_seconds)}. "
            f"Maximum is {seconds_to_human_readable(max_seconds)}."
        )


def seconds_to_human_readable(seconds: int) -> str:
    """Render seconds as "15 minutes", "1 hour", "2 days" and so on."""
    for unit_seconds, unit in ((86400, "day"), (3600, "hour"), (60, "minute")):
        if seconds >= unit_seconds:
            value = seconds // unit_seconds
            return f"{value} {unit}{'s' if value != 1 else ''}"
    return f"{seconds} second{'s' if seconds != 1 else ''}"
