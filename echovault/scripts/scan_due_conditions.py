"""One evaluator + dispatch pass, for platforms that prefer cron to beat.
Run via a scheduler every minute:
    python -m echovault.scripts.scan_due_conditions
"""

from __future__ import annotations

import asyncio
import logging

from echovault.services import dispatch, reminders
import db


async def main() -> dict:
    try:
        summary = await dispatch.process_due_notifications(
            options=dispatch.DispatchOptions(source="cron"),
        )
        summary["reminders_sent"] = await reminders.send_due_reminders()
        return summary
    finally:
        await db.dispose_engine()


if __name__ == "__main__":  # pragma: no cover
    logging.basicConfig(level=logging.INFO)
    print("[CRON] scan_due_conditions: job started")
    try:
        result = asyncio.run(main())
        print(
            "[CRON] scan_due_conditions: job completed successfully "
            f"({result['messages_processed']} due, {result['failed_notifications']} failed, "
            f"{result['reminders_sent']} reminders)"
        )
    except Exception as e:
        print(f"[CRON] scan_due_conditions: job failed: {e}")
