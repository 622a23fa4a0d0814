"""
Public access gate for delivered messages.

PIN, unlock delay and expiry are checked when a recipient opens the viewer
link, never at delivery time. Precedence: expired, then delayed, then PIN,
then content.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from echovault.types.condition_contract import (
    Condition,
    DeliveryRecord,
    Message,
    SecurityStatus,
    parse_condition,
)
from echovault.types.errors import AuthorizationError, NotFoundError
from echovault.utils.clock import Clock, utc_now
import db

_LOGGER = logging.getLogger(__name__)


class AccessView(str, Enum):
    EXPIRED = "expired"
    DELAYED = "delayed"
    PIN_REQUIRED = "pin_required"
    CONTENT = "content"


def check_security_conditions(
    condition: Condition,
    delivery: Optional[DeliveryRecord],
    now: Optional[datetime] = None,
) -> SecurityStatus:
    now = now or utc_now()
    has_pin = bool(condition.pin_code)
    has_delay = condition.unlock_delay_hours > 0
    has_expiry = condition.expiry_hours > 0

    unlock_date = None
    expiry_date = None
    if delivery is None:
        # Nothing to measure from yet: open immediately.
        unlock_date = now
    else:
        unlock_date = delivery.delivered_at + timedelta(hours=condition.unlock_delay_hours)
        if has_expiry:
            expiry_date = delivery.delivered_at + timedelta(hours=condition.expiry_hours)

    return SecurityStatus(
        has_pin_code=has_pin,
        has_delayed_access=has_delay,
        has_expiry=has_expiry,
        unlock_date=unlock_date,
        expiry_date=expiry_date,
        is_expired=expiry_date is not None and expiry_date < now,
        pin_verified=delivery is not None and delivery.viewed_count > 0,
    )


def select_access_view(status: SecurityStatus, now: Optional[datetime] = None) -> AccessView:
    now = now or utc_now()
    if status.is_expired:
        return AccessView.EXPIRED
    if status.has_delayed_access and status.unlock_date is not None and now < status.unlock_date:
        return AccessView.DELAYED
    if status.has_pin_code and not status.pin_verified:
        return AccessView.PIN_REQUIRED
    return AccessView.CONTENT


def is_authorized_recipient(condition: Condition, email: Optional[str]) -> bool:
    if not email:
        return False
    wanted = email.strip().lower()
    return any(r.email.lower() == wanted for r in condition.recipients)


def pin_matches(condition: Condition, pin: str) -> bool:
    if not condition.pin_code:
        return True
    return hmac.compare_digest(condition.pin_code.strip(), (pin or "").strip())


@dataclass
class AccessContext:
    message: Message
    condition: Condition
    delivery: Optional[DeliveryRecord]
    status: SecurityStatus
    view: AccessView


async def load_access_context(
    message_id: str,
    recipient_email: Optional[str],
    delivery_id: Optional[str],
    store: Any = db,
    clock: Clock = utc_now,
) -> AccessContext:
    """Resolve what a recipient may see for a viewer link.

    Raises `NotFoundError` / `AuthorizationError`.
    """
    raw_message = await store.fetch_message(message_id)
    if raw_message is None:
        raise NotFoundError(f"Message {message_id} not found")
    raw_condition = await store.fetch_condition_for_message(message_id)
    if raw_condition is None:
        raise NotFoundError(f"No delivery condition for message {message_id}")

    message = Message.model_validate(raw_message)
    condition = parse_condition(raw_condition)
    if not is_authorized_recipient(condition, recipient_email):
        raise AuthorizationError("You are not authorized to view this message")

    delivery = None
    if delivery_id:
        raw_delivery = await store.get_delivery_record(message_id, delivery_id)
        if raw_delivery is not None:
            delivery = DeliveryRecord.model_validate(raw_delivery)
        else:
            # Old links predate delivery tracking; start tracking from this
            # view but gate as if there were no record.
            await _create_missing_delivery(store, message_id, condition, recipient_email, delivery_id, clock)

    now = clock()
    status = check_security_conditions(condition, delivery, now)
    return AccessContext(
        message=message,
        condition=condition,
        delivery=delivery,
        status=status,
        view=select_access_view(status, now),
    )


async def _create_missing_delivery(store, message_id, condition, recipient_email, delivery_id, clock) -> None:
    recipient = next(
        (r for r in condition.recipients if r.email.lower() == (recipient_email or "").strip().lower()),
        None,
    )
    try:
        await store.insert_delivery({
            "message_id": message_id,
            "condition_id": condition.id,
            "recipient_id": recipient.id if recipient else None,
            "delivery_id": delivery_id,
            "delivered_at": clock(),
        })
    except Exception as exc:  # noqa: BLE001
        _LOGGER.warning("Could not create delivery record %s: %s", delivery_id, exc)


async def verify_pin(
    message_id: str,
    delivery_id: str,
    recipient_email: str,
    pin: str,
    device_info: Optional[str] = None,
    store: Any = db,
    clock: Clock = utc_now,
) -> bool:
    """Check a PIN; a correct one counts as the first view.

    Raises `NotFoundError` for an unknown message or delivery and
    `AuthorizationError` when `recipient_email` is not on the condition.
    """
    raw_condition = await store.fetch_condition_for_message(message_id)
    if raw_condition is None:
        raise NotFoundError(f"No delivery condition for message {message_id}")
    condition = parse_condition(raw_condition)
    if not is_authorized_recipient(condition, recipient_email):
        raise AuthorizationError("You are not authorized to view this message")
    if await store.get_delivery_record(message_id, delivery_id) is None:
        raise NotFoundError(f"Delivery {delivery_id} not found for message {message_id}")

    if not pin_matches(condition, pin):
        _LOGGER.info("Wrong PIN for message %s (delivery %s)", message_id, delivery_id)
        return False

    await record_message_view(message_id, delivery_id, device_info, store=store, clock=clock)
    return True


async def record_message_view(
    message_id: str,
    delivery_id: str,
    device_info: Optional[str] = None,
    store: Any = db,
    clock: Clock = utc_now,
) -> bool:
    try:
        return await store.record_view(message_id, delivery_id, device_info, clock())
    except Exception as exc:  # noqa: BLE001
        _LOGGER.warning("Could not record view for delivery %s: %s", delivery_id, exc)
        return False


async def record_view_if_allowed(
    message_id: str,
    delivery_id: str,
    device_info: Optional[str] = None,
    store: Any = db,
    clock: Clock = utc_now,
) -> bool:
    """Viewer-page beacon. A PIN-protected delivery is only counted after
    `verify_pin` has recorded the first view, so the beacon cannot unlock it."""
    raw_condition = await store.fetch_condition_for_message(message_id)
    if raw_condition is None:
        raise NotFoundError(f"No delivery condition for message {message_id}")
    condition = parse_condition(raw_condition)
    if condition.pin_code:
        raw_delivery = await store.get_delivery_record(message_id, delivery_id)
        if raw_delivery is None or not raw_delivery.get("viewed_count"):
            return False
    return await record_message_view(message_id, delivery_id, device_info, store=store, clock=clock)
