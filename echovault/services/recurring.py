"""Recurring delivery schedules.

The evaluator never derives occurrences itself: it compares against the
condition's `next_check`. This module is the collaborator that keeps
`next_check` current (after each recurring delivery and on check-in), and
the place the form logic for switching recurrence on/off lives.
"""

from __future__ import annotations

import calendar
from datetime import datetime, time, timedelta, timezone
from typing import Optional

from echovault.types.condition_contract import RecurringPattern

DEFAULT_PATTERN = RecurringPattern(type="daily", interval=1)


def toggle_recurring(
    pattern: Optional[RecurringPattern],
    enabled: bool,
    force_enabled: bool = False,
) -> Optional[RecurringPattern]:
    """Pattern to store after the recurring switch changes.

    `force_enabled` is set by flows where recurrence cannot be turned off
    (e.g. inactivity followed by recurring delivery).
    """
    if force_enabled:
        enabled = True
    if not enabled:
        return None
    return pattern or DEFAULT_PATTERN


def start_floor(pattern: RecurringPattern) -> Optional[datetime]:
    if pattern.start_date is None:
        return None
    return datetime.combine(pattern.start_date, time.min, tzinfo=timezone.utc)


def allows(pattern: Optional[RecurringPattern], at: datetime) -> bool:
    """False while `at` is still before the pattern's start date."""
    if pattern is None:
        return True
    floor = start_floor(pattern)
    return floor is None or at >= floor


def _add_months(base: datetime, months: int, day: int) -> datetime:
    year, month0 = divmod(base.month - 1 + months, 12)
    year += base.year
    last = calendar.monthrange(year, month0 + 1)[1]
    return base.replace(year=year, month=month0 + 1, day=min(day, last))


def _py_weekday(js_day: int) -> int:
    # Patterns store 0 = Sunday; datetime.weekday() uses 0 = Monday.
    return (js_day + 6) % 7


def next_occurrence(
    pattern: RecurringPattern,
    after: datetime,
    anchor: Optional[datetime] = None,
) -> datetime:
    """First occurrence strictly after `after` that is not before the start date.

    `anchor` fixes the time of day and the phase of the interval (for example
    the previous `next_check`); it defaults to `after`.
    """
    anchor = anchor or after
    floor = start_floor(pattern)
    if floor is not None and anchor < floor:
        anchor = anchor.replace(year=floor.year, month=floor.month, day=floor.day)
        if anchor < floor:
            anchor = floor
    target = after
    if floor is not None and floor > after:
        target = floor - timedelta(microseconds=1)

    if pattern.type in ("daily", "weekly"):
        first = anchor
        period = timedelta(days=pattern.interval)
        if pattern.type == "weekly":
            if pattern.day is not None:
                first = anchor + timedelta(days=(_py_weekday(pattern.day) - anchor.weekday()) % 7)
            period = timedelta(weeks=pattern.interval)
        if first > target:
            return first
        steps = (target - first) // period + 1
        return first + steps * period

    if pattern.type == "monthly":
        months = pattern.interval
        day = pattern.day or anchor.day
        base = anchor.replace(day=1)
    else:
        months = 12 * pattern.interval
        day = pattern.day or anchor.day
        month = pattern.month if pattern.month is not None else anchor.month - 1
        base = anchor.replace(day=1, month=month + 1)

    k = 0
    occurrence = _add_months(base, 0, day)
    while occurrence <= target or occurrence < anchor:
        k += 1
        occurrence = _add_months(base, k * months, day)
    return occurrence


def next_check_after(
    pattern: Optional[RecurringPattern],
    threshold_minutes: int,
    now: datetime,
    anchor: Optional[datetime] = None,
) -> Optional[datetime]:
    """Next `next_check` for a recurring check-in after a delivery or check-in.

    Follows the pattern when there is one, otherwise repeats every
    `threshold_minutes`. None when neither gives a schedule.
    """
    if pattern is not None:
        return next_occurrence(pattern, now, anchor=anchor)
    if threshold_minutes > 0:
        return now + timedelta(minutes=threshold_minutes)
    return None
