"""Celery tasks driven by beat.

Tasks are *synchronous* functions so they run under Celery's default prefork
pool; each one drives the async services with ``asyncio.run`` and disposes
the engine afterwards, because the pooled connections belong to the event
loop that just closed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from echovault.celery_app import celery_app
from echovault.services import dispatch, reminders
import db

_LOGGER = logging.getLogger(__name__)


async def _run_dispatch(message_id: Optional[str], force_send: bool) -> dict:
    try:
        return await dispatch.process_due_notifications(
            message_id=message_id,
            options=dispatch.DispatchOptions(source="scheduler"),
            force_send=force_send,
        )
    finally:
        await db.dispose_engine()


async def _run_reminders() -> int:
    try:
        return await reminders.send_due_reminders()
    finally:
        await db.dispose_engine()


@celery_app.task(name="echovault.workers.notifier.dispatch_due", bind=True, max_retries=3)
def dispatch_due(self, message_id: Optional[str] = None, force_send: bool = False):  # noqa: D401
    """Evaluate every armed condition and dispatch the due ones."""
    try:
        summary = asyncio.run(_run_dispatch(message_id, force_send))
    except Exception as exc:  # noqa: BLE001
        # Datastore unreachable etc.; a lost run only delays delivery.
        raise self.retry(exc=exc, countdown=30)

    _LOGGER.info(
        "Dispatch run: %d processed, %d ok, %d failed",
        summary["messages_processed"],
        summary["successful_notifications"],
        summary["failed_notifications"],
    )
    return summary


@celery_app.task(name="echovault.workers.notifier.send_reminders", bind=True, max_retries=3)
def send_reminders(self):  # noqa: D401
    """Send owner check-in reminders that have fallen due."""
    try:
        sent = asyncio.run(_run_reminders())
    except Exception as exc:  # noqa: BLE001
        raise self.retry(exc=exc, countdown=30)
    _LOGGER.info("Reminder run: %d sent", sent)
    return sent
