"""Shared fakes: a settable clock and an in-memory stand-in for the `db` helpers."""

from __future__ import annotations

import copy
from datetime import datetime, timedelta, timezone

import pytest

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_message(**overrides) -> dict:
    data = {
        "id": "m1",
        "user_id": "u1",
        "title": "Open this",
        "content": "Key is under the mat",
        "sender_name": "Ada Lovelace",
    }
    data.update(overrides)
    return data


def make_condition(**overrides) -> dict:
    data = {
        "id": "c1",
        "message_id": "m1",
        "condition_type": "no_check_in",
        "active": True,
        "hours_threshold": 24,
        "minutes_threshold": 0,
        "last_checked": NOW - timedelta(hours=25),
        "recipients": [{"id": "r1", "name": "Bob", "email": "bob@example.com"}],
    }
    data.update(overrides)
    return data


class FakeStore:
    """Async methods mirror the `db` module's CRUD helpers."""

    def __init__(self):
        self.messages: dict[str, dict] = {}
        self.conditions: dict[str, dict] = {}
        self.profiles: dict[str, dict] = {}
        self.deliveries: list[dict] = []
        self.logs: list[dict] = []
        self.sent_reminders: list[dict] = []
        self.check_ins: list[tuple] = []
        self.fail_inserts = False

    def add(self, message: dict, condition: dict) -> None:
        self.messages[message["id"]] = message
        self.conditions[condition["id"]] = condition

    # conditions / messages
    async def fetch_condition_rows(self, message_id=None, include_inactive=False):
        rows = []
        for c in self.conditions.values():
            if message_id and c["message_id"] != message_id:
                continue
            if not include_inactive and not c.get("active", True):
                continue
            rows.append({"condition": copy.deepcopy(c), "message": copy.deepcopy(self.messages.get(c["message_id"]))})
        return rows

    async def fetch_message(self, message_id):
        return copy.deepcopy(self.messages.get(message_id))

    async def fetch_condition_for_message(self, message_id):
        for c in self.conditions.values():
            if c["message_id"] == message_id:
                return copy.deepcopy(c)
        return None

    async def fetch_conditions_for_user(self, user_id, active_only=True):
        return [
            copy.deepcopy(c) for c in self.conditions.values()
            if self.messages.get(c["message_id"], {}).get("user_id") == user_id
            and (c.get("active", True) or not active_only)
        ]

    async def count_active_conditions(self):
        return sum(1 for c in self.conditions.values() if c.get("active", True))

    async def update_check_in(self, condition_id, at, next_check=None):
        self.check_ins.append((condition_id, at, next_check))
        self.conditions[condition_id]["last_checked"] = at
        if next_check is not None:
            self.conditions[condition_id]["next_check"] = next_check

    async def set_next_check(self, condition_id, at):
        self.conditions[condition_id]["next_check"] = at

    async def deactivate_condition(self, condition_id):
        cond = self.conditions[condition_id]
        if not cond.get("active", True):
            return False
        cond["active"] = False
        return True

    # deliveries
    async def insert_delivery(self, record):
        if self.fail_inserts:
            raise RuntimeError("insert failed")
        self.deliveries.append({"viewed_count": 0, "viewed_at": None, "device_info": None, **record})

    async def get_delivery_record(self, message_id, delivery_id):
        for d in self.deliveries:
            if d["message_id"] == message_id and d["delivery_id"] == delivery_id:
                return dict(d)
        return None

    async def record_view(self, message_id, delivery_id, device_info=None, at=None):
        for d in self.deliveries:
            if d["message_id"] == message_id and d["delivery_id"] == delivery_id:
                d["viewed_count"] += 1
                d["viewed_at"] = at
                d["device_info"] = device_info
                return True
        return False

    # audit
    async def log_delivery(self, message_id, channel, status, condition_id=None,
                           recipient=None, delivery_id=None, error=None):
        self.logs.append({
            "message_id": message_id, "channel": channel, "status": status,
            "condition_id": condition_id, "recipient": recipient,
            "delivery_id": delivery_id, "error": error,
        })

    async def delivery_log_activity(self, since, limit=200):
        return list(self.logs)

    # profiles
    async def find_profile_by_phone(self, phone):
        for p in self.profiles.values():
            if p.get("phone") == phone:
                return p
        return None

    # reminders
    async def fetch_reminder_candidates(self, condition_types):
        rows = []
        for c in self.conditions.values():
            if c["condition_type"] in condition_types and c.get("active", True):
                message = self.messages[c["message_id"]]
                rows.append({
                    "condition": copy.deepcopy(c),
                    "message": copy.deepcopy(message),
                    "owner": self.profiles.get(message["user_id"]),
                })
        return rows

    async def fetch_sent_reminder_offsets(self, condition_id, deadline):
        return {
            r["offset_minutes"] for r in self.sent_reminders
            if r["condition_id"] == condition_id and r["deadline"] == deadline
        }

    async def record_sent_reminder(self, message_id, condition_id, user_id, deadline, offset_minutes):
        self.sent_reminders.append({
            "message_id": message_id, "condition_id": condition_id, "user_id": user_id,
            "deadline": deadline, "offset_minutes": offset_minutes,
        })

    async def count_sent_reminders(self, since):
        return len(self.sent_reminders)

    async def ping(self):
        return True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return FakeStore()
