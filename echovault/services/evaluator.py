"""
Condition evaluator: which armed conditions are due right now.

`get_messages_to_notify` is a pure filter over condition rows already joined
to their message; `fetch_messages_to_notify` loads those rows from the
datastore first. Bad rows are logged and skipped, never raised, so one broken
condition cannot stop the batch.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from pydantic import ValidationError as PydanticValidationError
from typing_extensions import assert_never

from echovault.services import recurring
from echovault.types.condition_contract import (
    Condition,
    DueNotification,
    GroupConfirmation,
    InactivityToDate,
    InactivityToRecurring,
    Message,
    NoCheckIn,
    PanicTrigger,
    RecurringCheckIn,
    RegularCheckIn,
    ScheduledDate,
    parse_condition,
)
from echovault.utils.clock import ensure_aware, utc_now
import db

_LOGGER = logging.getLogger(__name__)


class MissingFieldError(ValueError):
    """A condition lacks a timestamp its due rule needs."""


def _require(value: Optional[datetime], field: str, condition: Condition) -> datetime:
    if value is None:
        raise MissingFieldError(f"{condition.condition_type} condition {condition.id} has no {field}")
    return value


def is_due(condition: Condition, now: datetime) -> bool:
    """Deadline rule for one condition, ignoring `active`.

    Raises `MissingFieldError` when a required timestamp is missing.
    """
    if isinstance(condition, NoCheckIn):
        last = _require(condition.last_checked, "last_checked", condition)
        deadline = last + timedelta(minutes=condition.threshold_minutes)
        return now >= deadline

    if isinstance(condition, RecurringCheckIn):
        # next_check is maintained by recurring.next_occurrence after each
        # delivery and check-in; the evaluator only compares against it.
        next_check = _require(condition.next_check, "next_check", condition)
        return now >= next_check and recurring.allows(condition.recurring_pattern, now)

    if isinstance(condition, ScheduledDate):
        return now >= _require(condition.trigger_date, "trigger_date", condition)

    if isinstance(condition, InactivityToDate):
        trigger = _require(condition.trigger_date, "trigger_date", condition)
        last = _require(condition.last_checked, "last_checked", condition)
        return now >= trigger and last < trigger

    if isinstance(condition, PanicTrigger):
        return False

    if isinstance(condition, (RegularCheckIn, InactivityToRecurring, GroupConfirmation)):
        # Delivered through other flows (manual confirmation / recurring
        # follow-up); no automatic deadline.
        return False

    assert_never(condition)


def get_messages_to_notify(
    rows: Iterable[dict[str, Any]],
    specific_message_id: Optional[str] = None,
    force_send: bool = False,
    now: Optional[datetime] = None,
) -> list[DueNotification]:
    """Filter `{"condition": ..., "message": ...}` rows down to the due ones.

    `force_send` ignores the `active` flag, and together with
    `specific_message_id` includes that message without checking its deadline.
    """
    now = ensure_aware(now or utc_now())
    due: list[DueNotification] = []

    for row in rows:
        raw_condition = row.get("condition") or {}
        raw_message = row.get("message")
        message_id = raw_condition.get("message_id")

        if specific_message_id and message_id != specific_message_id:
            continue
        if raw_message is None:
            _LOGGER.warning("Condition %s has no message; skipping", raw_condition.get("id"))
            continue

        try:
            condition = parse_condition(raw_condition)
            message = Message.model_validate(raw_message)
        except (PydanticValidationError, ValueError) as exc:
            _LOGGER.warning(
                "Skipping condition %s (type=%r): %s",
                raw_condition.get("id"),
                raw_condition.get("condition_type"),
                exc,
            )
            continue

        if force_send and specific_message_id:
            _LOGGER.info("Force-sending message %s", message.id)
            due.append(DueNotification(message=message, condition=condition))
            continue

        if not condition.active and not force_send:
            continue

        try:
            if is_due(condition, now):
                _LOGGER.info("Condition %s (%s) is due", condition.id, condition.condition_type)
                due.append(DueNotification(message=message, condition=condition))
        except MissingFieldError as exc:
            _LOGGER.warning("Skipping condition: %s", exc)

    return due


async def fetch_messages_to_notify(
    specific_message_id: Optional[str] = None,
    force_send: bool = False,
    now: Optional[datetime] = None,
) -> list[DueNotification]:
    rows = await db.fetch_condition_rows(
        message_id=specific_message_id,
        include_inactive=force_send,
    )
    return get_messages_to_notify(rows, specific_message_id, force_send, now)
