"""
Check-in reminders for the message owner.

Offsets are minutes before the deadline (stored under `reminder_hours` for
historical reasons). A reminder is due once `deadline - offset` has passed
and no row exists in `sent_reminders` for that condition, deadline and
offset. A check-in moves the deadline, so every offset becomes sendable again.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Collection, Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from echovault.types.condition_contract import Condition, InactivityToDate, NoCheckIn, parse_condition
from echovault.utils.clock import Clock, utc_now
from echovault.utils.mailer import OutgoingEmail, build_reminder_email, send_email
import db

_LOGGER = logging.getLogger(__name__)

REMINDER_CONDITION_TYPES = ("no_check_in", "inactivity_to_date")


def deadline_for(condition: Condition) -> Optional[datetime]:
    if isinstance(condition, NoCheckIn):
        if condition.last_checked is None:
            return None
        return condition.last_checked + timedelta(minutes=condition.threshold_minutes)
    if isinstance(condition, InactivityToDate):
        return condition.trigger_date
    return None


def next_reminder_time(
    deadline: datetime,
    offsets: Iterable[int],
    now: datetime,
    exclude: Collection[int] = (),
) -> Optional[datetime]:
    """Earliest upcoming reminder instant, or None if none are left."""
    upcoming = [
        deadline - timedelta(minutes=off)
        for off in offsets
        if off not in exclude and deadline - timedelta(minutes=off) > now
    ]
    return min(upcoming) if upcoming else None


def due_reminders(condition: Condition, now: datetime, already_sent: Collection[int] = ()) -> List[int]:
    """Offsets whose reminder time has passed while the deadline has not."""
    deadline = deadline_for(condition)
    if deadline is None or now >= deadline:
        return []
    return [
        off for off in condition.reminder_minutes
        if off not in already_sent and deadline - timedelta(minutes=off) <= now
    ]


async def send_due_reminders(
    store: Any = db,
    email_sender: Callable[[OutgoingEmail], Any] = send_email,
    clock: Clock = utc_now,
) -> int:
    """Send every due owner reminder once. Returns the number of emails sent."""
    now = clock()
    sent = 0
    for row in await store.fetch_reminder_candidates(REMINDER_CONDITION_TYPES):
        try:
            condition = parse_condition(row["condition"])
        except (PydanticValidationError, ValueError) as exc:
            _LOGGER.warning("Skipping reminder check for %s: %s", row["condition"].get("id"), exc)
            continue
        if not condition.reminder_minutes:
            continue
        deadline = deadline_for(condition)
        if deadline is None:
            continue

        already = await store.fetch_sent_reminder_offsets(condition.id, deadline)
        offsets = due_reminders(condition, now, already)
        if not offsets:
            continue

        owner = row.get("owner") or {}
        message = row.get("message") or {}
        if not owner.get("email"):
            _LOGGER.warning("Owner of message %s has no email; reminder not sent", condition.message_id)
            continue

        # Several offsets can fall due in one pass (e.g. after downtime);
        # one email for the closest is enough, the rest are recorded as sent.
        minutes_left = max(0, int((deadline - now).total_seconds() // 60))
        email = build_reminder_email(
            to=owner["email"], title=message.get("title", ""), deadline=deadline, minutes_left=minutes_left
        )
        try:
            await asyncio.to_thread(email_sender, email)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("Reminder for condition %s failed: %s", condition.id, exc)
            continue

        for off in offsets:
            await store.record_sent_reminder(condition.message_id, condition.id, owner["id"], deadline, off)
        sent += 1
        _LOGGER.info("Reminder sent for condition %s (offsets %s)", condition.id, offsets)
    return sent
