"""
Panic button.

`PanicController` is the client-observable state machine:

    IDLE --press--> CONFIRMING --press--> [SELECTING --select-->] CANCEL_WINDOW
    CANCEL_WINDOW --press--> IDLE (cancelled)
    CANCEL_WINDOW --window elapsed--> FIRING --> COMPLETE --3s--> IDLE
    FIRING --retries exhausted--> IDLE

Time only moves when the caller invokes `tick()` (a UI timer, or a test),
so the controller never owns a background task. `trigger_panic_message` is
the server side of the FIRING step.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence

from echovault.services.dedup import DedupGuard, panic_guard
from echovault.services.dispatch import DispatchOptions, NotificationDispatcher, get_dispatcher
from echovault.types.condition_contract import DueNotification, Message, PanicTrigger, parse_condition
from echovault.types.errors import AuthorizationError, NotFoundError
from echovault.utils.clock import Clock, utc_now
import db

_LOGGER = logging.getLogger(__name__)

CONFIRM_TIMEOUT_SECONDS = 3
SUCCESS_COUNTDOWN_SECONDS = 3
RETRY_BACKOFF_SECONDS = 1.5


class PanicState(str, Enum):
    IDLE = "idle"
    CONFIRMING = "confirming"
    SELECTING = "selecting"
    CANCEL_WINDOW = "cancel_window"
    FIRING = "firing"
    COMPLETE = "complete"


class PanicEvent(str, Enum):
    NO_TARGETS = "no_targets"
    CONFIRM_REQUESTED = "confirm_requested"
    CONFIRM_TIMEOUT = "confirm_timeout"
    SELECTION_REQUIRED = "selection_required"
    COUNTDOWN_STARTED = "countdown_started"
    CANCELLED = "cancelled"
    DUPLICATE_SUPPRESSED = "duplicate_suppressed"
    FIRED = "fired"
    FAILED = "failed"
    RELOAD = "reload"
    NAVIGATE_AWAY = "navigate_away"


@dataclass(frozen=True)
class PanicTarget:
    message_id: str
    title: str = ""
    cancel_window_seconds: int = 10
    keep_armed: bool = True


@dataclass(frozen=True)
class TriggerOutcome:
    success: bool
    keep_armed: bool = True
    error: Optional[str] = None


def targets_from_conditions(rows: Iterable[dict[str, Any]]) -> List[PanicTarget]:
    """Armed, enabled panic conditions from `{"condition", "message"}` rows."""
    targets = []
    for row in rows:
        condition = parse_condition(row["condition"])
        if not isinstance(condition, PanicTrigger) or not condition.active:
            continue
        cfg = condition.panic_config
        if cfg is not None and not cfg.enabled:
            continue
        title = (row.get("message") or {}).get("title", "")
        targets.append(PanicTarget(
            message_id=condition.message_id,
            title=title,
            cancel_window_seconds=cfg.cancel_window_seconds if cfg else 10,
            keep_armed=condition.keep_armed,
        ))
    return targets


class PanicController:
    def __init__(
        self,
        targets: Sequence[PanicTarget],
        trigger: Callable[[str], Awaitable[TriggerOutcome]],
        guard: Optional[DedupGuard] = None,
        clock: Clock = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        max_retries: int = 2,
        on_event: Optional[Callable[[PanicEvent, dict], None]] = None,
    ) -> None:
        self.targets = list(targets)
        self._trigger = trigger
        self._clock = clock
        self.guard = guard if guard is not None else panic_guard(clock)
        self._sleep = sleep
        self.max_retries = max(1, max_retries)
        self._on_event = on_event

        self.state = PanicState.IDLE
        self.selected: Optional[PanicTarget] = None
        self.delivery_attempts = 0
        self.last_outcome: Optional[TriggerOutcome] = None
        self._deadline: Optional[datetime] = None

    # ──────────────────────────────
    # Inputs
    # ──────────────────────────────

    async def press(self) -> PanicState:
        await self.tick()
        if self.state is PanicState.IDLE:
            if not self.targets:
                self._emit(PanicEvent.NO_TARGETS)
                return self.state
            self._enter(PanicState.CONFIRMING, CONFIRM_TIMEOUT_SECONDS)
            self._emit(PanicEvent.CONFIRM_REQUESTED)
        elif self.state is PanicState.CONFIRMING:
            if len(self.targets) > 1:
                self._enter(PanicState.SELECTING)
                self._emit(PanicEvent.SELECTION_REQUIRED, targets=[t.message_id for t in self.targets])
            else:
                await self._start_window(self.targets[0])
        elif self.state is PanicState.CANCEL_WINDOW:
            self._emit(PanicEvent.CANCELLED, message_id=self.selected.message_id)
            self._reset()
        return self.state

    async def select(self, message_id: str) -> PanicState:
        if self.state is not PanicState.SELECTING:
            return self.state
        for target in self.targets:
            if target.message_id == message_id:
                await self._start_window(target)
                break
        else:
            raise NotFoundError(f"No panic message {message_id}")
        return self.state

    def cancel(self) -> PanicState:
        if self.state in (PanicState.CONFIRMING, PanicState.SELECTING, PanicState.CANCEL_WINDOW):
            self._emit(PanicEvent.CANCELLED, message_id=self.selected.message_id if self.selected else None)
            self._reset()
        return self.state

    async def tick(self) -> PanicState:
        """Advance timers against the clock."""
        if self._deadline is None or self._clock() < self._deadline:
            return self.state
        if self.state is PanicState.CONFIRMING:
            self._emit(PanicEvent.CONFIRM_TIMEOUT)
            self._reset()
        elif self.state is PanicState.CANCEL_WINDOW:
            await self._fire()
        elif self.state is PanicState.COMPLETE:
            keep = self.last_outcome.keep_armed if self.last_outcome else True
            self._emit(PanicEvent.RELOAD if keep else PanicEvent.NAVIGATE_AWAY)
            self._reset()
        return self.state

    @property
    def remaining_seconds(self) -> int:
        if self._deadline is None:
            return 0
        left = (self._deadline - self._clock()).total_seconds()
        return max(0, math.ceil(left))

    # ──────────────────────────────
    # Internals
    # ──────────────────────────────

    def _enter(self, state: PanicState, seconds: Optional[float] = None) -> None:
        self.state = state
        self._deadline = self._clock() + timedelta(seconds=seconds) if seconds is not None else None

    def _reset(self) -> None:
        self.state = PanicState.IDLE
        self.selected = None
        self._deadline = None

    def _emit(self, event: PanicEvent, **payload: Any) -> None:
        _LOGGER.debug("Panic event %s %s", event.value, payload)
        if self._on_event is not None:
            self._on_event(event, payload)

    async def _start_window(self, target: PanicTarget) -> None:
        self.selected = target
        if target.cancel_window_seconds <= 0:
            await self._fire()
            return
        self._enter(PanicState.CANCEL_WINDOW, target.cancel_window_seconds)
        self._emit(
            PanicEvent.COUNTDOWN_STARTED,
            message_id=target.message_id,
            seconds=target.cancel_window_seconds,
        )

    async def _fire(self) -> None:
        target = self.selected
        self._enter(PanicState.FIRING)
        key = f"panic:{target.message_id}"

        if self.guard.is_duplicate(key):
            self._emit(PanicEvent.DUPLICATE_SUPPRESSED, message_id=target.message_id)
            self._complete(TriggerOutcome(success=True, keep_armed=target.keep_armed))
            return

        outcome: Optional[TriggerOutcome] = None
        for attempt in range(1, self.max_retries + 1):
            self.delivery_attempts += 1
            try:
                outcome = await self._trigger(target.message_id)
            except Exception as exc:  # noqa: BLE001
                outcome = TriggerOutcome(success=False, keep_armed=target.keep_armed, error=str(exc))
            if outcome.success:
                break
            _LOGGER.warning("Panic trigger attempt %d for %s failed: %s", attempt, target.message_id, outcome.error)
            if attempt < self.max_retries:
                await self._sleep(RETRY_BACKOFF_SECONDS * attempt)

        if outcome is not None and outcome.success:
            self.guard.mark(key)
            self._complete(outcome)
            return

        self.last_outcome = outcome
        self._emit(PanicEvent.FAILED, message_id=target.message_id, error=outcome.error if outcome else None)
        self._reset()

    def _complete(self, outcome: TriggerOutcome) -> None:
        self.last_outcome = outcome
        self._emit(PanicEvent.FIRED, message_id=self.selected.message_id, keep_armed=outcome.keep_armed)
        self._enter(PanicState.COMPLETE, SUCCESS_COUNTDOWN_SECONDS)


# ──────────────────────────────────────────────────────────────────────────
# Server side of FIRING
# ──────────────────────────────────────────────────────────────────────────

_server_guard: Optional[DedupGuard] = None


def _get_server_guard() -> DedupGuard:
    global _server_guard
    if _server_guard is None:
        _server_guard = panic_guard()
    return _server_guard


async def trigger_panic_message(
    user_id: str,
    message_id: str,
    dispatcher: Optional[NotificationDispatcher] = None,
    keep_armed: Optional[bool] = None,
    guard: Optional[DedupGuard] = None,
    store: Any = db,
) -> TriggerOutcome:
    """Deliver a panic message now, as an emergency, for its owner."""
    guard = guard or _get_server_guard()
    raw_message = await store.fetch_message(message_id)
    if raw_message is None:
        raise NotFoundError(f"Message {message_id} not found")
    if raw_message["user_id"] != user_id:
        raise AuthorizationError("Only the owner can trigger this message")
    raw_condition = await store.fetch_condition_for_message(message_id)
    if raw_condition is None:
        raise NotFoundError(f"Message {message_id} has no delivery condition")

    condition = parse_condition(raw_condition)
    if not isinstance(condition, PanicTrigger) or not condition.active:
        raise NotFoundError(f"Message {message_id} has no armed panic trigger")
    keep = condition.keep_armed if keep_armed is None else keep_armed

    key = f"panic:{message_id}"
    if guard.is_duplicate(key):
        _LOGGER.info("Panic trigger for %s already fired recently; not resending", message_id)
        return TriggerOutcome(success=True, keep_armed=keep)

    dispatcher = dispatcher or get_dispatcher()
    result = await dispatcher.send_message_notification(
        DueNotification(message=Message.model_validate(raw_message), condition=condition),
        DispatchOptions(
            is_emergency=True,
            bypass_deduplication=True,
            keep_armed=keep_armed,
            source="panic",
        ),
    )
    if result.success:
        guard.mark(key)
    return TriggerOutcome(success=result.success, keep_armed=keep, error=result.error)
