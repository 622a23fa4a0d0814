"""
Notification dispatch pipeline.

`NotificationDispatcher.send_message_notification` fans a due message out to
its recipients (email always, WhatsApp when enabled), records delivery
tokens, suppresses repeats inside the notification dedup window and decides
whether the condition stays armed afterwards.

Per-recipient failures are collected in the result, never raised. Audit
writes are best-effort.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Tuple
from uuid import uuid4

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed
from typing_extensions import assert_never

from config import settings
from echovault.services import evaluator, recurring
from echovault.services.dedup import DedupGuard, notification_guard
from echovault.types.condition_contract import (
    Condition,
    DueNotification,
    GroupConfirmation,
    InactivityToDate,
    InactivityToRecurring,
    Message,
    NoCheckIn,
    NotificationResult,
    PanicTrigger,
    Recipient,
    RecipientResult,
    RecurringCheckIn,
    RegularCheckIn,
    ScheduledDate,
)
from echovault.types.errors import TransientDeliveryError
from echovault.utils.clock import Clock, utc_now
from echovault.utils.mailer import OutgoingEmail, build_notification_email, send_email
from echovault.utils.urls import generate_access_url
from echovault.utils.whatsapp import build_whatsapp_text, send_whatsapp
import db

_LOGGER = logging.getLogger(__name__)

EMERGENCY_EMAIL_ATTEMPTS = 2
DEFAULT_EMAIL_ATTEMPTS = 1


@dataclass
class DispatchOptions:
    is_emergency: bool = False
    debug: bool = False
    bypass_deduplication: bool = False
    # Overrides the panic config's keep_armed for this send only.
    keep_armed: Optional[bool] = None
    # Test sends skip the audit trail and leave the condition untouched.
    test_mode: bool = False
    source: str = "api"


def should_disarm(condition: Condition, keep_armed: Optional[bool] = None) -> bool:
    """Whether a successful delivery switches the condition off."""
    if isinstance(condition, RecurringCheckIn):
        return False
    if isinstance(condition, PanicTrigger):
        keep = condition.keep_armed if keep_armed is None else keep_armed
        return not keep
    if isinstance(
        condition,
        (NoCheckIn, RegularCheckIn, ScheduledDate, InactivityToDate, InactivityToRecurring, GroupConfirmation),
    ):
        return True
    assert_never(condition)


def wants_whatsapp(condition: Condition, recipient: Recipient, is_emergency: bool) -> bool:
    if not recipient.phone:
        return False
    if is_emergency:
        return True
    return bool(condition.panic_config and condition.panic_config.whatsapp_enabled)


def _unique_recipients(recipients: List[Recipient]) -> List[Recipient]:
    seen: dict[str, Recipient] = {}
    for r in recipients:
        seen.setdefault(r.id, r)
    return list(seen.values())


class NotificationDispatcher:
    def __init__(
        self,
        store: Any = db,
        email_sender: Callable[[OutgoingEmail], Any] = send_email,
        whatsapp_sender: Callable[[str, str], Any] = send_whatsapp,
        guard: Optional[DedupGuard] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Clock = utc_now,
        retry_delay: Optional[float] = None,
    ) -> None:
        self.store = store
        self._send_email = email_sender
        self._send_whatsapp = whatsapp_sender
        self.guard = guard if guard is not None else notification_guard(clock)
        self._sleep = sleep
        self._clock = clock
        self.retry_delay = settings.EMAIL_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay

    # ──────────────────────────────
    # Public entry-point
    # ──────────────────────────────

    async def send_message_notification(
        self,
        due: DueNotification,
        options: Optional[DispatchOptions] = None,
    ) -> NotificationResult:
        options = options or DispatchOptions()
        message, condition = due.message, due.condition

        recipients = _unique_recipients(condition.recipients)
        if not recipients:
            _LOGGER.info("Message %s has no recipients; nothing to send", message.id)
            return NotificationResult(success=True, details="No recipients to notify")

        key = f"notify:{message.id}"
        if options.bypass_deduplication:
            self.guard.mark(key)
        elif not self.guard.claim(key):
            _LOGGER.info("Skipping duplicate notification for message %s", message.id)
            return NotificationResult(
                success=True,
                skipped=True,
                details=f"Skipped duplicate notification for message {message.id}",
            )

        is_emergency = options.is_emergency or isinstance(condition, PanicTrigger)
        audit = not options.test_mode and not (
            condition.panic_config is not None and condition.panic_config.bypass_logging
        )
        if audit:
            await self._track(message, condition)

        results = await asyncio.gather(
            *(self._notify_recipient(message, condition, r, is_emergency, audit) for r in recipients)
        )
        succeeded = sum(1 for r in results if r.success)
        _LOGGER.info(
            "Message %s delivered to %d/%d recipients (source=%s, emergency=%s)",
            message.id, succeeded, len(results), options.source, is_emergency,
        )

        if not succeeded:
            return NotificationResult(
                success=False,
                error="Failed to notify any recipient",
                details=list(results),
            )

        if not options.test_mode:
            await self._after_delivery(condition, options)
        return NotificationResult(success=True, details=list(results))

    # ──────────────────────────────
    # Steps
    # ──────────────────────────────

    async def _track(self, message: Message, condition: Condition) -> None:
        try:
            await self.store.log_delivery(
                message.id, "tracking", "processing", condition_id=condition.id
            )
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("Could not record notification attempt for %s: %s", message.id, exc)

    async def _notify_recipient(
        self,
        message: Message,
        condition: Condition,
        recipient: Recipient,
        is_emergency: bool,
        audit: bool,
    ) -> RecipientResult:
        delivery_id = str(uuid4())
        access_url = generate_access_url(message.id, recipient.email, delivery_id)

        try:
            await self.store.insert_delivery({
                "message_id": message.id,
                "condition_id": condition.id,
                "recipient_id": recipient.id,
                "delivery_id": delivery_id,
                "delivered_at": self._clock(),
            })
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("Could not record delivery %s: %s", delivery_id, exc)

        sender_name = message.sender_name or "Someone"
        outgoing = build_notification_email(
            to=recipient.email,
            recipient_name=recipient.name,
            sender_name=sender_name,
            title=message.title,
            access_url=access_url,
            is_emergency=is_emergency,
            has_pin=bool(condition.pin_code),
            unlock_delay_hours=condition.unlock_delay_hours,
            expiry_hours=condition.expiry_hours,
        )
        max_attempts = EMERGENCY_EMAIL_ATTEMPTS if is_emergency else DEFAULT_EMAIL_ATTEMPTS
        email_sent, attempts, email_error = await self._send_email_with_retry(outgoing, max_attempts)

        whatsapp_sent: Optional[bool] = None
        whatsapp_error: Optional[str] = None
        if wants_whatsapp(condition, recipient, is_emergency):
            text = build_whatsapp_text(message, sender_name, is_emergency, access_url)
            try:
                await asyncio.to_thread(self._send_whatsapp, recipient.phone, text)
                whatsapp_sent = True
            except Exception as exc:  # noqa: BLE001
                whatsapp_sent = False
                whatsapp_error = str(exc)
                _LOGGER.warning("WhatsApp to %s failed: %s", recipient.phone, exc)

        if audit:
            await self._log_channel(message, condition, recipient, delivery_id, "email", email_sent, email_error)
            if whatsapp_sent is not None:
                await self._log_channel(
                    message, condition, recipient, delivery_id, "whatsapp", whatsapp_sent, whatsapp_error
                )

        success = email_sent or bool(whatsapp_sent)
        error = None
        if not success:
            error = "; ".join(e for e in (email_error, whatsapp_error) if e) or "delivery failed"
        return RecipientResult(
            recipient=recipient.email,
            recipient_id=recipient.id,
            delivery_id=delivery_id,
            success=success,
            attempts=attempts,
            email_sent=email_sent,
            whatsapp_sent=whatsapp_sent,
            error=error,
        )

    async def _send_email_with_retry(
        self, outgoing: OutgoingEmail, max_attempts: int
    ) -> Tuple[bool, int, Optional[str]]:
        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_fixed(self.retry_delay),
                retry=retry_if_exception_type(TransientDeliveryError),
                sleep=self._sleep,
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    await asyncio.to_thread(self._send_email, outgoing)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("Email to %s failed after %d attempt(s): %s", outgoing.to, attempts, exc)
            return False, attempts, str(exc)
        return True, attempts, None

    async def _log_channel(
        self,
        message: Message,
        condition: Condition,
        recipient: Recipient,
        delivery_id: str,
        channel: str,
        sent: bool,
        error: Optional[str],
    ) -> None:
        try:
            await self.store.log_delivery(
                message.id,
                channel,
                "sent" if sent else "failed",
                condition_id=condition.id,
                recipient=recipient.email,
                delivery_id=delivery_id,
                error=error,
            )
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("Could not write %s delivery log for %s: %s", channel, message.id, exc)

    async def _after_delivery(self, condition: Condition, options: DispatchOptions) -> None:
        now = self._clock()
        try:
            if isinstance(condition, RecurringCheckIn):
                nxt = recurring.next_check_after(
                    condition.recurring_pattern, condition.threshold_minutes, now, anchor=condition.next_check
                )
                if nxt is None:
                    _LOGGER.warning(
                        "Recurring condition %s has neither a pattern nor an interval, disarming", condition.id
                    )
                    await self.store.deactivate_condition(condition.id)
                    return
                await self.store.set_next_check(condition.id, nxt)
                _LOGGER.info("Recurring condition %s re-armed for %s", condition.id, nxt.isoformat())
                return

            if not should_disarm(condition, options.keep_armed):
                _LOGGER.info("Panic condition %s stays armed", condition.id)
                return

            if await self.store.deactivate_condition(condition.id):
                _LOGGER.info("Condition %s disarmed after delivery", condition.id)
            else:
                _LOGGER.info("Condition %s was already disarmed by another run", condition.id)
        except Exception:  # noqa: BLE001
            _LOGGER.exception("Post-delivery update failed for condition %s", condition.id)


# ──────────────────────────────────────────────────────────────────────────
# Batch entry-point used by the HTTP trigger, the Celery task and the cron
# ──────────────────────────────────────────────────────────────────────────

_dispatcher: Optional[NotificationDispatcher] = None


def get_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher


async def process_due_notifications(
    message_id: Optional[str] = None,
    options: Optional[DispatchOptions] = None,
    force_send: bool = False,
    dispatcher: Optional[NotificationDispatcher] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Evaluate conditions and dispatch every due message, one at a time."""
    dispatcher = dispatcher or get_dispatcher()
    options = options or DispatchOptions()
    due = await evaluator.fetch_messages_to_notify(message_id, force_send, now)

    results = []
    ok = failed = 0
    for item in due:
        try:
            outcome = await dispatcher.send_message_notification(item, options)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.exception("Dispatch crashed for message %s", item.message.id)
            outcome = NotificationResult(success=False, error=str(exc))
        if outcome.success:
            ok += 1
        else:
            failed += 1
        results.append({
            "message_id": item.message.id,
            "condition_id": item.condition.id,
            "condition_type": item.condition.condition_type,
            "success": outcome.success,
            "skipped": outcome.skipped,
            "error": outcome.error,
        })

    return {
        "success": failed == 0,
        "messages_processed": len(due),
        "successful_notifications": ok,
        "failed_notifications": failed,
        "results": results,
    }
