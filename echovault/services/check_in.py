"""
Owner check-ins, from the app or by WhatsApp keyword.

A check-in stamps `last_checked` on every armed condition the owner has,
which pushes out no-check-in deadlines and cancels inactivity-to-date
deliveries. Recurring check-ins also get their `next_check` moved to the
next occurrence after now.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional

from pydantic import ValidationError as PydanticValidationError

from echovault.services import recurring
from echovault.services.dispatch import NotificationDispatcher
from echovault.services.panic import trigger_panic_message
from echovault.types.condition_contract import Condition, PanicTrigger, RecurringCheckIn, parse_condition
from echovault.utils.clock import Clock, utc_now
import db

_LOGGER = logging.getLogger(__name__)

CHECK_IN_KEYWORDS = {"CHECKIN", "CHECK-IN", "CODE"}


@dataclass
class CheckInResult:
    user_id: str
    method: str
    timestamp: datetime
    conditions_updated: int = 0
    condition_ids: List[str] = field(default_factory=list)


def next_check_after_check_in(condition: Condition, now: datetime) -> Optional[datetime]:
    if not isinstance(condition, RecurringCheckIn):
        return None
    return recurring.next_check_after(
        condition.recurring_pattern, condition.threshold_minutes, now, anchor=condition.next_check
    )


async def perform_check_in(
    user_id: str,
    method: str = "app",
    store: Any = db,
    clock: Clock = utc_now,
) -> CheckInResult:
    now = clock()
    result = CheckInResult(user_id=user_id, method=method, timestamp=now)
    for raw in await store.fetch_conditions_for_user(user_id, active_only=True):
        try:
            condition = parse_condition(raw)
        except (PydanticValidationError, ValueError) as exc:
            _LOGGER.warning("Skipping unreadable condition %s on check-in: %s", raw.get("id"), exc)
            continue
        if isinstance(condition, PanicTrigger):
            continue
        await store.update_check_in(condition.id, now, next_check_after_check_in(condition, now))
        result.conditions_updated += 1
        result.condition_ids.append(condition.id)

    _LOGGER.info("Check-in for %s via %s reset %d condition(s)", user_id, method, result.conditions_updated)
    return result


# ──────────────────────────────────────────────────────────────────────────
# Inbound WhatsApp
# ──────────────────────────────────────────────────────────────────────────

UNKNOWN_SENDER_REPLY = (
    "We couldn't find an EchoVault account linked to this number. "
    "Add your WhatsApp number in your profile to use check-ins."
)
HELP_REPLY = "Reply CHECKIN to check in, or send your emergency keyword to trigger an alert."


async def handle_whatsapp_message(
    from_number: str,
    text: str,
    store: Any = db,
    dispatcher: Optional[NotificationDispatcher] = None,
    clock: Clock = utc_now,
) -> str:
    """Act on an inbound WhatsApp text and return the reply to send back."""
    profile = await store.find_profile_by_phone(from_number)
    if profile is None:
        return UNKNOWN_SENDER_REPLY

    user_id = profile["id"]
    keyword = (text or "").strip().upper()

    if keyword in CHECK_IN_KEYWORDS:
        result = await perform_check_in(user_id, "whatsapp", store=store, clock=clock)
        return (
            f"✅ Check-in received at {result.timestamp.strftime('%H:%M UTC')}. "
            f"{result.conditions_updated} message timer(s) reset."
        )

    fired = failed = 0
    for raw in await store.fetch_conditions_for_user(user_id, active_only=True):
        try:
            condition = parse_condition(raw)
        except (PydanticValidationError, ValueError):
            continue
        if not isinstance(condition, PanicTrigger) or condition.panic_config is None:
            continue
        cfg = condition.panic_config
        if not cfg.whatsapp_enabled or cfg.keyword.upper() != keyword:
            continue
        outcome = await trigger_panic_message(user_id, condition.message_id, dispatcher=dispatcher, store=store)
        if outcome.success:
            fired += 1
        else:
            failed += 1

    if fired:
        return f"🚨 Emergency alert sent ({fired} message(s)). Your contacts are being notified."
    if failed:
        return "⚠️ We could not send your emergency alert. Please try again or call emergency services."
    return HELP_REPLY
