import pytest

from echovault.services.dedup import DedupGuard
from echovault.services.panic import (
    PanicController,
    PanicEvent,
    PanicState,
    PanicTarget,
    TriggerOutcome,
    targets_from_conditions,
    trigger_panic_message,
)
from echovault.types.condition_contract import NotificationResult
from echovault.types.errors import AuthorizationError, NotFoundError

from conftest import make_condition, make_message


class FakeTrigger:
    def __init__(self, outcomes=None):
        self.calls = []
        self.outcomes = list(outcomes or [])

    async def __call__(self, message_id):
        self.calls.append(message_id)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return TriggerOutcome(success=True)


class FakeSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def _controller(clock, targets=None, trigger=None, guard=None, events=None):
    return PanicController(
        targets if targets is not None else [PanicTarget("m1", "Help", cancel_window_seconds=10)],
        trigger or FakeTrigger(),
        guard=guard or DedupGuard(30, purge_after_seconds=60, clock=clock),
        clock=clock,
        sleep=FakeSleep(),
        on_event=(lambda event, payload: events.append(event)) if events is not None else None,
    )


@pytest.mark.asyncio
async def test_three_presses_cancel_without_sending(clock):
    trigger = FakeTrigger()
    ctl = _controller(clock, trigger=trigger)

    assert await ctl.press() is PanicState.CONFIRMING
    assert await ctl.press() is PanicState.CANCEL_WINDOW
    assert await ctl.press() is PanicState.IDLE

    clock.advance(seconds=30)
    await ctl.tick()
    assert ctl.delivery_attempts == 0
    assert trigger.calls == []


@pytest.mark.asyncio
async def test_window_elapsing_fires_exactly_once(clock):
    trigger = FakeTrigger()
    ctl = _controller(clock, trigger=trigger)
    await ctl.press()
    await ctl.press()
    assert ctl.remaining_seconds == 10

    clock.advance(seconds=9)
    assert await ctl.tick() is PanicState.CANCEL_WINDOW
    clock.advance(seconds=1)
    assert await ctl.tick() is PanicState.COMPLETE
    await ctl.tick()

    assert ctl.delivery_attempts == 1
    assert trigger.calls == ["m1"]


@pytest.mark.asyncio
async def test_unconfirmed_press_times_out(clock):
    events = []
    ctl = _controller(clock, events=events)
    await ctl.press()
    clock.advance(seconds=3)
    assert await ctl.tick() is PanicState.IDLE
    assert events == [PanicEvent.CONFIRM_REQUESTED, PanicEvent.CONFIRM_TIMEOUT]


@pytest.mark.asyncio
async def test_no_targets_stays_idle(clock):
    events = []
    ctl = _controller(clock, targets=[], events=events)
    assert await ctl.press() is PanicState.IDLE
    assert events == [PanicEvent.NO_TARGETS]


@pytest.mark.asyncio
async def test_multiple_targets_require_selection(clock):
    trigger = FakeTrigger()
    targets = [PanicTarget("m1", cancel_window_seconds=5), PanicTarget("m2", cancel_window_seconds=15)]
    ctl = _controller(clock, targets=targets, trigger=trigger)

    await ctl.press()
    assert await ctl.press() is PanicState.SELECTING
    with pytest.raises(NotFoundError):
        await ctl.select("nope")
    assert await ctl.select("m2") is PanicState.CANCEL_WINDOW
    assert ctl.remaining_seconds == 15

    clock.advance(seconds=15)
    await ctl.tick()
    assert trigger.calls == ["m2"]


@pytest.mark.asyncio
async def test_zero_window_fires_immediately(clock):
    trigger = FakeTrigger()
    ctl = _controller(clock, targets=[PanicTarget("m1", cancel_window_seconds=0)], trigger=trigger)
    await ctl.press()
    assert await ctl.press() is PanicState.COMPLETE
    assert trigger.calls == ["m1"]


@pytest.mark.asyncio
async def test_failed_trigger_is_retried_with_backoff(clock):
    trigger = FakeTrigger([RuntimeError("network down"), TriggerOutcome(success=True)])
    ctl = _controller(clock, trigger=trigger)
    await ctl.press()
    await ctl.press()
    clock.advance(seconds=10)

    assert await ctl.tick() is PanicState.COMPLETE
    assert ctl.delivery_attempts == 2
    assert ctl._sleep.calls == [1.5]


@pytest.mark.asyncio
async def test_exhausted_retries_return_to_idle(clock):
    events = []
    failure = TriggerOutcome(success=False, error="boom")
    ctl = _controller(clock, trigger=FakeTrigger([failure, failure]), events=events)
    await ctl.press()
    await ctl.press()
    clock.advance(seconds=10)

    assert await ctl.tick() is PanicState.IDLE
    assert ctl.delivery_attempts == 2
    assert ctl.last_outcome.error == "boom"
    assert events[-1] is PanicEvent.FAILED


@pytest.mark.asyncio
async def test_second_fire_inside_guard_window_is_suppressed(clock):
    trigger = FakeTrigger()
    events = []
    ctl = _controller(clock, targets=[PanicTarget("m1", cancel_window_seconds=0)], trigger=trigger, events=events)

    await ctl.press()
    await ctl.press()
    clock.advance(seconds=3)
    await ctl.tick()
    assert ctl.state is PanicState.IDLE

    clock.advance(seconds=10)
    await ctl.press()
    await ctl.press()
    assert trigger.calls == ["m1"]
    assert PanicEvent.DUPLICATE_SUPPRESSED in events

    clock.advance(seconds=30)
    await ctl.tick()
    await ctl.press()
    await ctl.press()
    assert trigger.calls == ["m1", "m1"]


@pytest.mark.asyncio
async def test_complete_reloads_or_navigates_away(clock):
    events = []
    ctl = _controller(
        clock,
        targets=[PanicTarget("m1", cancel_window_seconds=0)],
        trigger=FakeTrigger([TriggerOutcome(success=True, keep_armed=False)]),
        events=events,
    )
    await ctl.press()
    await ctl.press()
    clock.advance(seconds=3)
    await ctl.tick()
    assert events[-1] is PanicEvent.NAVIGATE_AWAY


def test_targets_skip_disabled_and_other_conditions():
    rows = [
        {"condition": make_condition(condition_type="panic_trigger",
                                     panic_config={"cancel_window_seconds": 30}),
         "message": make_message(title="Help")},
        {"condition": make_condition(id="c2", message_id="m2", condition_type="panic_trigger",
                                     panic_config={"enabled": False}),
         "message": make_message(id="m2")},
        {"condition": make_condition(id="c3", message_id="m3"), "message": make_message(id="m3")},
    ]
    assert targets_from_conditions(rows) == [PanicTarget("m1", "Help", 30, True)]


class StubDispatcher:
    def __init__(self, success=True):
        self.calls = []
        self.success = success

    async def send_message_notification(self, due, options):
        self.calls.append((due, options))
        return NotificationResult(success=self.success, error=None if self.success else "Failed to notify any recipient")


@pytest.mark.asyncio
async def test_trigger_panic_message_checks_owner(store, clock):
    store.add(make_message(), make_condition(condition_type="panic_trigger"))
    guard = DedupGuard(30, clock=clock)
    with pytest.raises(NotFoundError):
        await trigger_panic_message("u1", "missing", dispatcher=StubDispatcher(), guard=guard, store=store)
    with pytest.raises(AuthorizationError):
        await trigger_panic_message("u2", "m1", dispatcher=StubDispatcher(), guard=guard, store=store)


@pytest.mark.asyncio
async def test_trigger_panic_message_requires_panic_condition(store, clock):
    store.add(make_message(), make_condition())
    with pytest.raises(NotFoundError):
        await trigger_panic_message(
            "u1", "m1", dispatcher=StubDispatcher(), guard=DedupGuard(30, clock=clock), store=store
        )


@pytest.mark.asyncio
async def test_trigger_panic_message_sends_emergency_once(store, clock):
    store.add(make_message(), make_condition(condition_type="panic_trigger", panic_config={"keep_armed": False}))
    dispatcher = StubDispatcher()
    guard = DedupGuard(30, clock=clock)

    first = await trigger_panic_message("u1", "m1", dispatcher=dispatcher, guard=guard, store=store)
    second = await trigger_panic_message("u1", "m1", dispatcher=dispatcher, guard=guard, store=store)

    assert first.success and second.success
    assert first.keep_armed is False
    assert len(dispatcher.calls) == 1
    options = dispatcher.calls[0][1]
    assert options.is_emergency and options.bypass_deduplication
    assert options.source == "panic"


@pytest.mark.asyncio
async def test_failed_trigger_does_not_arm_guard(store, clock):
    store.add(make_message(), make_condition(condition_type="panic_trigger"))
    dispatcher = StubDispatcher(success=False)
    guard = DedupGuard(30, clock=clock)

    outcome = await trigger_panic_message("u1", "m1", dispatcher=dispatcher, guard=guard, store=store)
    assert not outcome.success
    assert outcome.error == "Failed to notify any recipient"
    await trigger_panic_message("u1", "m1", dispatcher=dispatcher, guard=guard, store=store)
    assert len(dispatcher.calls) == 2
