"""Hour/minute arithmetic used by the threshold and reminder editors.

All durations are whole minutes. The editors only offer quarter-hour minute
values, but nothing here assumes it except `validate_reminder_offset`.
"""

from __future__ import annotations

from typing import Iterable, Optional, Tuple

from echovault.types.errors import ValidationIssue

QUARTER_HOUR = 15


def to_hours_and_minutes(total_minutes: int) -> Tuple[int, int]:
    if total_minutes < 0:
        raise ValueError("duration must not be negative")
    return divmod(total_minutes, 60)


def to_minutes(hours: int, minutes: int) -> int:
    return hours * 60 + minutes


def _plural(n: int, unit: str) -> str:
    return f"{n} {unit}" if n == 1 else f"{n} {unit}s"


def format_duration(minutes: int) -> str:
    """90 → "1 hour and 30 minutes", 60 → "1 hour", 45 → "45 minutes"."""
    hours, mins = to_hours_and_minutes(minutes)
    parts = []
    if hours:
        parts.append(_plural(hours, "hour"))
    if mins or not hours:
        parts.append(_plural(mins, "minute"))
    return " and ".join(parts)


def snap_to_15(total_minutes: int) -> int:
    """Round a duration to the nearest quarter hour, carrying into the hours.

    52 → 45, 53 → 60. Works on the total so a round-up past :45 lands on the
    next hour instead of wrapping to :00 of the same hour.
    """
    if total_minutes < 0:
        raise ValueError("duration must not be negative")
    return (total_minutes + 7) // QUARTER_HOUR * QUARTER_HOUR


def snap_minute_of_hour(minute: int) -> Tuple[int, int]:
    """Snap a minute-of-hour value; returns `(carry_hours, minute)`."""
    return divmod(snap_to_15(minute), 60)


def validate_reminder_offset(
    hours: int,
    minutes: int,
    existing: Iterable[int],
    max_minutes: int,
) -> Optional[ValidationIssue]:
    """Return the first problem with a proposed reminder offset, or None if it is valid."""
    if hours == 0 and minutes == 0:
        return ValidationIssue.ZERO_DURATION
    if minutes % QUARTER_HOUR != 0:
        return ValidationIssue.NON_QUARTER_INTERVAL
    total = to_minutes(hours, minutes)
    if total >= max_minutes:
        return ValidationIssue.EXCEEDS_THRESHOLD
    if total in set(existing):
        return ValidationIssue.DUPLICATE_REMINDER
    return None

