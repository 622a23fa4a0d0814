from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from echovault.utils.clock import Clock, utc_now
import db

_LOGGER = logging.getLogger(__name__)

ACTIVITY_WINDOW = timedelta(hours=24)


async def get_system_health(store: Any = db, clock: Clock = utc_now) -> dict:
    """Snapshot for the status endpoint. Never raises; problems go in `errors`."""
    now = clock()
    since = now - ACTIVITY_WINDOW
    errors: list[str] = []

    try:
        await store.ping()
        database = "connected"
    except Exception as exc:  # noqa: BLE001
        _LOGGER.error("Health check: database unreachable: %s", exc)
        return {
            "status": "error",
            "database": "unreachable",
            "reminders": None,
            "pending_count": None,
            "recent_activity": None,
            "errors": [str(exc)],
            "timestamp": now.isoformat(),
        }

    pending = None
    try:
        pending = await store.count_active_conditions()
    except Exception as exc:  # noqa: BLE001
        errors.append(f"pending_count: {exc}")

    activity = None
    try:
        rows = await store.delivery_log_activity(since)
        activity = {
            "total": len(rows),
            "sent": sum(1 for r in rows if r.get("status") == "sent"),
            "failed": sum(1 for r in rows if r.get("status") == "failed"),
            "by_channel": {},
        }
        for r in rows:
            channel = r.get("channel", "unknown")
            activity["by_channel"][channel] = activity["by_channel"].get(channel, 0) + 1
    except Exception as exc:  # noqa: BLE001
        errors.append(f"recent_activity: {exc}")

    reminders = None
    try:
        reminders = {"sent_last_24h": await store.count_sent_reminders(since)}
    except Exception as exc:  # noqa: BLE001
        errors.append(f"reminders: {exc}")

    if errors:
        status = "degraded"
    elif activity and activity["failed"] > activity["sent"]:
        status = "degraded"
    else:
        status = "healthy"

    return {
        "status": status,
        "database": database,
        "reminders": reminders,
        "pending_count": pending,
        "recent_activity": activity,
        "errors": errors,
        "timestamp": now.isoformat(),
    }
