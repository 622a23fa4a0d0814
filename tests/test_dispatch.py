from datetime import timedelta

import pytest

from echovault.services.dedup import DedupGuard
from echovault.services.dispatch import (
    DispatchOptions,
    NotificationDispatcher,
    process_due_notifications,
    should_disarm,
)
from echovault.services.evaluator import get_messages_to_notify
from echovault.types.condition_contract import DueNotification, Message, parse_condition
from echovault.types.errors import TransientDeliveryError

from conftest import NOW, make_condition, make_message


class RecordingEmail:
    def __init__(self, failures=0, error=None):
        self.sent = []
        self.failures = failures
        self.error = error or TransientDeliveryError("email", "HTTP 503")

    def __call__(self, outgoing):
        self.sent.append(outgoing)
        if self.failures:
            self.failures -= 1
            raise self.error
        return "email-id"


class RecordingWhatsApp:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    def __call__(self, to, text):
        self.sent.append((to, text))
        if self.fail:
            raise TransientDeliveryError("whatsapp", "rejected")


class FakeSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def _dispatcher(store, clock, email=None, whatsapp=None):
    return NotificationDispatcher(
        store=store,
        email_sender=email or RecordingEmail(),
        whatsapp_sender=whatsapp or RecordingWhatsApp(),
        guard=DedupGuard(300, clock=clock),
        sleep=FakeSleep(),
        clock=clock,
        retry_delay=5,
    )


def _due(store, **condition_overrides):
    message = make_message()
    condition = make_condition(**condition_overrides)
    store.add(message, condition)
    return DueNotification(message=Message.model_validate(message), condition=parse_condition(condition))


@pytest.mark.asyncio
async def test_delivers_and_disarms_one_shot_condition(store, clock):
    email = RecordingEmail()
    dispatcher = _dispatcher(store, clock, email=email)
    result = await dispatcher.send_message_notification(_due(store))

    assert result.success
    assert len(email.sent) == 1
    assert "/access/message/m1?delivery=" in email.sent[0].html
    assert store.conditions["c1"]["active"] is False
    assert len(store.deliveries) == 1
    assert store.deliveries[0]["delivery_id"] == result.details[0].delivery_id
    assert [log["channel"] for log in store.logs] == ["tracking", "email"]


@pytest.mark.asyncio
async def test_repeat_inside_window_is_skipped(store, clock):
    email = RecordingEmail()
    dispatcher = _dispatcher(store, clock, email=email)
    due = _due(store)

    await dispatcher.send_message_notification(due)
    clock.advance(minutes=4)
    second = await dispatcher.send_message_notification(due)

    assert second.success and second.skipped
    assert second.details == "Skipped duplicate notification for message m1"
    assert len(email.sent) == 1


@pytest.mark.asyncio
async def test_bypass_deduplication_sends_again(store, clock):
    email = RecordingEmail()
    dispatcher = _dispatcher(store, clock, email=email)
    due = _due(store)

    await dispatcher.send_message_notification(due)
    await dispatcher.send_message_notification(due, DispatchOptions(bypass_deduplication=True))
    assert len(email.sent) == 2


@pytest.mark.asyncio
async def test_emergency_email_is_retried_once(store, clock):
    email = RecordingEmail(failures=1)
    dispatcher = _dispatcher(store, clock, email=email)
    result = await dispatcher.send_message_notification(_due(store), DispatchOptions(is_emergency=True))

    assert result.success
    assert result.details[0].attempts == 2
    assert len(email.sent) == 2
    assert dispatcher._sleep.calls == [5]
    assert email.sent[0].headers["X-Priority"] == "1"


@pytest.mark.asyncio
async def test_regular_email_is_tried_once(store, clock):
    email = RecordingEmail(failures=1)
    dispatcher = _dispatcher(store, clock, email=email)
    result = await dispatcher.send_message_notification(_due(store))

    assert not result.success
    assert result.error == "Failed to notify any recipient"
    assert len(email.sent) == 1
    assert store.conditions["c1"]["active"] is True
    assert store.logs[-1]["status"] == "failed"


@pytest.mark.asyncio
async def test_permanent_email_error_is_not_retried(store, clock):
    email = RecordingEmail(failures=2, error=RuntimeError("HTTP 422"))
    dispatcher = _dispatcher(store, clock, email=email)
    result = await dispatcher.send_message_notification(_due(store), DispatchOptions(is_emergency=True))
    assert not result.success
    assert len(email.sent) == 1


@pytest.mark.asyncio
async def test_no_recipients_is_a_successful_noop(store, clock):
    email = RecordingEmail()
    dispatcher = _dispatcher(store, clock, email=email)
    result = await dispatcher.send_message_notification(_due(store, recipients=[]))

    assert result.success
    assert result.details == "No recipients to notify"
    assert email.sent == []
    assert store.conditions["c1"]["active"] is True


@pytest.mark.asyncio
async def test_whatsapp_only_when_enabled_or_emergency(store, clock):
    recipients = [{"id": "r1", "name": "Bob", "email": "bob@example.com", "phone": "+15550001"}]
    whatsapp = RecordingWhatsApp()
    dispatcher = _dispatcher(store, clock, whatsapp=whatsapp)

    await dispatcher.send_message_notification(_due(store, recipients=recipients))
    assert whatsapp.sent == []

    await dispatcher.send_message_notification(
        _due(store, recipients=recipients, active=True),
        DispatchOptions(is_emergency=True, bypass_deduplication=True),
    )
    assert len(whatsapp.sent) == 1
    assert whatsapp.sent[0][1].startswith("⚠️ EMERGENCY ALERT: Open this")


@pytest.mark.asyncio
async def test_whatsapp_enabled_by_panic_config(store, clock):
    whatsapp = RecordingWhatsApp()
    dispatcher = _dispatcher(store, clock, whatsapp=whatsapp)
    due = _due(
        store,
        condition_type="scheduled_date",
        trigger_date=NOW,
        recipients=[{"id": "r1", "email": "bob@example.com", "phone": "+15550001"}],
        panic_config={"methods": ["app", "whatsapp"]},
    )
    result = await dispatcher.send_message_notification(due)
    assert result.details[0].whatsapp_sent is True
    assert whatsapp.sent[0][1].startswith("🔔 Ada Lovelace has sent you a secure message")


@pytest.mark.asyncio
async def test_whatsapp_alone_counts_as_delivered(store, clock):
    dispatcher = _dispatcher(store, clock, email=RecordingEmail(failures=2))
    due = _due(
        store,
        condition_type="panic_trigger",
        recipients=[{"id": "r1", "email": "bob@example.com", "phone": "+15550001"}],
    )
    result = await dispatcher.send_message_notification(due)
    assert result.success
    assert result.details[0].email_sent is False
    assert result.details[0].whatsapp_sent is True


@pytest.mark.asyncio
async def test_duplicate_recipients_are_notified_once(store, clock):
    email = RecordingEmail()
    dispatcher = _dispatcher(store, clock, email=email)
    bob = {"id": "r1", "email": "bob@example.com"}
    await dispatcher.send_message_notification(_due(store, recipients=[bob, bob]))
    assert len(email.sent) == 1


@pytest.mark.asyncio
async def test_partial_failure_is_still_success(store, clock):
    class FailForAlice(RecordingEmail):
        def __call__(self, outgoing):
            self.sent.append(outgoing)
            if outgoing.to == "alice@example.com":
                raise RuntimeError("HTTP 422")

    dispatcher = _dispatcher(store, clock, email=FailForAlice())
    result = await dispatcher.send_message_notification(_due(
        store,
        recipients=[
            {"id": "r1", "email": "bob@example.com"},
            {"id": "r2", "email": "alice@example.com"},
        ],
    ))
    assert result.success
    assert sorted(r.success for r in result.details) == [False, True]


@pytest.mark.asyncio
async def test_delivery_record_failure_does_not_block_email(store, clock):
    store.fail_inserts = True
    email = RecordingEmail()
    dispatcher = _dispatcher(store, clock, email=email)
    result = await dispatcher.send_message_notification(_due(store))
    assert result.success
    assert len(email.sent) == 1


@pytest.mark.asyncio
async def test_recurring_condition_advances_next_check(store, clock):
    dispatcher = _dispatcher(store, clock)
    due = _due(
        store,
        condition_type="recurring_check_in",
        next_check=NOW - timedelta(minutes=1),
        recurring_pattern={"type": "daily", "interval": 1},
    )
    result = await dispatcher.send_message_notification(due)

    assert result.success
    assert store.conditions["c1"]["active"] is True
    assert store.conditions["c1"]["next_check"] == NOW - timedelta(minutes=1) + timedelta(days=1)


@pytest.mark.asyncio
async def test_failed_delivery_keeps_no_check_in_due(store, clock):
    dispatcher = _dispatcher(store, clock, email=RecordingEmail(failures=1))
    result = await dispatcher.send_message_notification(_due(store))

    assert not result.success
    assert store.conditions["c1"]["last_checked"] == NOW - timedelta(hours=25)
    clock.advance(minutes=10)
    due = get_messages_to_notify(await store.fetch_condition_rows(), now=clock())
    assert [d.condition.id for d in due] == ["c1"]


@pytest.mark.asyncio
async def test_failed_delivery_keeps_inactivity_to_date_due(store, clock):
    dispatcher = _dispatcher(store, clock, email=RecordingEmail(failures=1))
    result = await dispatcher.send_message_notification(
        _due(
            store,
            condition_type="inactivity_to_date",
            trigger_date=NOW - timedelta(hours=1),
            last_checked=NOW - timedelta(hours=2),
        )
    )

    assert not result.success
    assert store.conditions["c1"]["last_checked"] == NOW - timedelta(hours=2)
    clock.advance(minutes=10)
    due = get_messages_to_notify(await store.fetch_condition_rows(), now=clock())
    assert [d.condition.id for d in due] == ["c1"]


@pytest.mark.asyncio
async def test_recurring_condition_without_pattern_repeats_on_threshold(store, clock):
    email = RecordingEmail()
    dispatcher = _dispatcher(store, clock, email=email)
    due = _due(
        store,
        condition_type="recurring_check_in",
        next_check=NOW - timedelta(minutes=1),
        recurring_pattern=None,
    )
    result = await dispatcher.send_message_notification(due)

    assert result.success
    assert store.conditions["c1"]["active"] is True
    assert store.conditions["c1"]["next_check"] == NOW + timedelta(hours=24)

    clock.advance(minutes=6)
    assert get_messages_to_notify(await store.fetch_condition_rows(), now=clock()) == []
    assert len(email.sent) == 1


@pytest.mark.asyncio
async def test_recurring_condition_without_any_schedule_is_disarmed(store, clock):
    dispatcher = _dispatcher(store, clock)
    due = _due(
        store,
        condition_type="recurring_check_in",
        hours_threshold=0,
        minutes_threshold=0,
        next_check=NOW - timedelta(minutes=1),
        recurring_pattern=None,
    )
    result = await dispatcher.send_message_notification(due)

    assert result.success
    assert store.conditions["c1"]["active"] is False


@pytest.mark.asyncio
async def test_panic_condition_respects_keep_armed(store, clock):
    dispatcher = _dispatcher(store, clock)
    await dispatcher.send_message_notification(
        _due(store, condition_type="panic_trigger", panic_config={"keep_armed": True})
    )
    assert store.conditions["c1"]["active"] is True

    await dispatcher.send_message_notification(
        _due(store, condition_type="panic_trigger", panic_config={"keep_armed": False}),
        DispatchOptions(bypass_deduplication=True),
    )
    assert store.conditions["c1"]["active"] is False


@pytest.mark.asyncio
async def test_keep_armed_override_wins(store, clock):
    dispatcher = _dispatcher(store, clock)
    await dispatcher.send_message_notification(
        _due(store, condition_type="panic_trigger", panic_config={"keep_armed": True}),
        DispatchOptions(keep_armed=False),
    )
    assert store.conditions["c1"]["active"] is False


@pytest.mark.asyncio
async def test_test_mode_leaves_no_trace(store, clock):
    email = RecordingEmail()
    dispatcher = _dispatcher(store, clock, email=email)
    result = await dispatcher.send_message_notification(_due(store), DispatchOptions(test_mode=True))
    assert result.success
    assert len(email.sent) == 1
    assert store.logs == []
    assert store.conditions["c1"]["active"] is True


@pytest.mark.asyncio
async def test_bypass_logging_skips_audit(store, clock):
    dispatcher = _dispatcher(store, clock)
    await dispatcher.send_message_notification(
        _due(store, condition_type="panic_trigger", panic_config={"bypass_logging": True})
    )
    assert store.logs == []


def test_should_disarm_table():
    def cond(kind, **extra):
        return parse_condition(make_condition(condition_type=kind, **extra))

    assert should_disarm(cond("no_check_in"))
    assert should_disarm(cond("scheduled_date"))
    assert should_disarm(cond("inactivity_to_date"))
    assert not should_disarm(cond("recurring_check_in"))
    assert not should_disarm(cond("panic_trigger"))
    assert should_disarm(cond("panic_trigger", panic_config={"keep_armed": False}))
    assert should_disarm(cond("panic_trigger"), keep_armed=False)


@pytest.mark.asyncio
async def test_process_due_notifications_summarises_run(monkeypatch, store, clock):
    store.add(make_message(), make_condition())
    store.add(make_message(id="m2"), make_condition(id="c2", message_id="m2", last_checked=NOW))

    async def fake_fetch(message_id=None, include_inactive=False):
        return await store.fetch_condition_rows(message_id, include_inactive)

    from echovault.services import evaluator
    monkeypatch.setattr(evaluator.db, "fetch_condition_rows", fake_fetch)

    summary = await process_due_notifications(dispatcher=_dispatcher(store, clock), now=NOW)
    assert summary["success"] is True
    assert summary["messages_processed"] == 1
    assert summary["successful_notifications"] == 1
    assert summary["results"][0]["condition_type"] == "no_check_in"
