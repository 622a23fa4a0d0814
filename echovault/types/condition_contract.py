"""Pydantic models that define the contract between the datastore rows, the
evaluator, the dispatch pipeline and the HTTP layer.

Conditions are a closed tagged union over `condition_type`; callers branch
with `isinstance` and finish with `assert_never` so a new kind cannot be
added without every consumer noticing.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from typing_extensions import Annotated

from .errors import ValidationError, ValidationIssue

PatternType = Literal["daily", "weekly", "monthly", "yearly"]
PanicMethod = Literal["app", "whatsapp"]

CANCEL_WINDOW_CHOICES = (0, 5, 10, 15, 30, 60)


def _as_utc(v: Any) -> Any:
    # Postgres hands back aware datetimes; JSON payloads and tests may not.
    if isinstance(v, datetime) and v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v


# ──────────────────────────────
# Message
# ──────────────────────────────


class Recipient(BaseModel):
    id: str
    name: str = ""
    email: str
    phone: Optional[str] = None

    @field_validator("email")
    def _normalise_email(cls, v: str):  # noqa: N805
        v = v.strip()
        if not v:
            raise ValueError("recipient email must not be empty")
        return v

    @field_validator("phone")
    def _blank_phone_is_none(cls, v):  # noqa: N805
        if v is not None and not v.strip():
            return None
        return v


class Attachment(BaseModel):
    name: str
    size: int = 0
    type: str = "application/octet-stream"
    path: str


class Location(BaseModel):
    latitude: float
    longitude: float
    name: Optional[str] = None


class Message(BaseModel):
    id: str
    user_id: str
    title: str
    content: Optional[str] = None
    message_type: str = "text"
    attachments: List[Attachment] = Field(default_factory=list)
    location: Optional[Location] = None
    sender_name: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _fold_location_columns(cls, data: Any):
        """Accept the flat `location_*` columns stored on the messages table."""
        if not isinstance(data, dict) or data.get("location") is not None:
            return data
        lat = data.get("location_latitude")
        lon = data.get("location_longitude")
        data = dict(data)
        if data.get("share_location", True) and lat is not None and lon is not None:
            data["location"] = {"latitude": lat, "longitude": lon, "name": data.get("location_name")}
        if data.get("attachments") is None:
            data["attachments"] = []
        return data


# ──────────────────────────────
# Recurring pattern
# ──────────────────────────────


class RecurringPattern(BaseModel):
    """Repeat schedule edited by the recurring-delivery form.

    `day` is a day of week (0 = Sunday … 6 = Saturday) for weekly patterns and a
    day of month (1–31) for monthly and yearly ones. `month` is 0–11 and only
    meaningful for yearly patterns. `start_date` is a floor: no occurrence may
    fall before it.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: PatternType = "daily"
    interval: int = 1
    day: Optional[int] = None
    month: Optional[int] = None
    start_date: Optional[date] = Field(default=None, alias="startDate")

    @model_validator(mode="before")
    @classmethod
    def _drop_meaningless_fields(cls, data: Any):
        if isinstance(data, dict):
            kind = data.get("type", "daily")
            if kind == "daily":
                data = {**data, "day": None, "month": None}
            elif kind in ("weekly", "monthly"):
                data = {**data, "month": None}
        return data

    @model_validator(mode="after")
    def _check_ranges(self):
        if self.interval < 1:
            raise ValidationError(ValidationIssue.INVALID_PATTERN, "interval must be at least 1")
        if self.day is not None:
            low, high = (0, 6) if self.type == "weekly" else (1, 31)
            if not low <= self.day <= high:
                raise ValidationError(
                    ValidationIssue.INVALID_PATTERN,
                    f"day must be between {low} and {high} for a {self.type} pattern",
                )
        if self.month is not None and not 0 <= self.month <= 11:
            raise ValidationError(ValidationIssue.INVALID_PATTERN, "month must be between 0 and 11")
        return self

    def _replace(self, **changes: Any) -> "RecurringPattern":
        return RecurringPattern.model_validate({**self.model_dump(), **changes})

    def with_type(self, new_type: PatternType) -> "RecurringPattern":
        """Switch the repeat unit, keeping `day`/`month` only where they still mean something."""
        day = self.day
        if new_type == "weekly":
            # A day of month does not carry over to a day of week (and vice versa).
            day = day if self.type == "weekly" else None
        elif new_type in ("monthly", "yearly"):
            day = day if self.type in ("monthly", "yearly") else None
        return self._replace(type=new_type, day=day)

    def with_interval(self, interval: int) -> "RecurringPattern":
        return self._replace(interval=interval)

    def with_day(self, day: Optional[int]) -> "RecurringPattern":
        return self._replace(day=day)

    def with_month(self, month: Optional[int]) -> "RecurringPattern":
        return self._replace(month=month)

    def with_start_date(self, start_date: Optional[date]) -> "RecurringPattern":
        return self._replace(start_date=start_date)


# ──────────────────────────────
# Panic configuration
# ──────────────────────────────


class PanicTriggerConfig(BaseModel):
    """Immutable panic-button settings; use the `with_*` methods to derive changes."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    methods: Tuple[PanicMethod, ...] = ("app",)
    cancel_window_seconds: int = 10
    bypass_logging: bool = False
    keep_armed: bool = True
    trigger_keyword: Optional[str] = None

    @field_validator("cancel_window_seconds")
    def _check_window(cls, v: int):  # noqa: N805
        if v not in CANCEL_WINDOW_CHOICES:
            raise ValidationError(ValidationIssue.INVALID_CANCEL_WINDOW)
        return v

    @field_validator("methods")
    def _dedupe_methods(cls, v):  # noqa: N805
        return tuple(dict.fromkeys(v))

    @field_validator("trigger_keyword")
    def _strip_keyword(cls, v):  # noqa: N805
        if v is None:
            return None
        return v.strip() or None

    @property
    def whatsapp_enabled(self) -> bool:
        return self.enabled and "whatsapp" in self.methods

    @property
    def keyword(self) -> str:
        return self.trigger_keyword or "SOS"

    def _replace(self, **changes: Any) -> "PanicTriggerConfig":
        return PanicTriggerConfig.model_validate({**self.model_dump(), **changes})

    def with_enabled(self, enabled: bool) -> "PanicTriggerConfig":
        return self._replace(enabled=enabled)

    def with_methods(self, methods: List[PanicMethod]) -> "PanicTriggerConfig":
        return self._replace(methods=tuple(methods))

    def with_cancel_window(self, seconds: int) -> "PanicTriggerConfig":
        return self._replace(cancel_window_seconds=seconds)

    def with_bypass_logging(self, bypass: bool) -> "PanicTriggerConfig":
        return self._replace(bypass_logging=bypass)

    def with_keep_armed(self, keep_armed: bool) -> "PanicTriggerConfig":
        return self._replace(keep_armed=keep_armed)

    def with_trigger_keyword(self, keyword: Optional[str]) -> "PanicTriggerConfig":
        return self._replace(trigger_keyword=keyword)


# ──────────────────────────────
# Conditions (tagged union)
# ──────────────────────────────


class _ConditionBase(BaseModel):
    id: str
    message_id: str
    active: bool = True
    recipients: List[Recipient] = Field(default_factory=list)

    hours_threshold: int = 0
    minutes_threshold: int = 0
    last_checked: Optional[datetime] = None
    next_check: Optional[datetime] = None
    trigger_date: Optional[datetime] = None
    recurring_pattern: Optional[RecurringPattern] = None
    # Offsets, in minutes before the deadline, at which the owner is nudged.
    reminder_minutes: List[int] = Field(default_factory=list, alias="reminder_hours")
    panic_config: Optional[PanicTriggerConfig] = None
    confirmation_required: Optional[int] = None

    pin_code: Optional[str] = None
    unlock_delay_hours: int = 0
    expiry_hours: int = 0

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("last_checked", "next_check", "trigger_date", mode="before")
    def _aware(cls, v):  # noqa: N805
        return _as_utc(v)

    @field_validator("hours_threshold", "minutes_threshold", "unlock_delay_hours", "expiry_hours", mode="before")
    def _null_is_zero(cls, v):  # noqa: N805
        return 0 if v is None else v

    @field_validator("recipients", "reminder_minutes", mode="before")
    def _null_is_empty(cls, v):  # noqa: N805
        return [] if v is None else v

    @field_validator("reminder_minutes")
    def _unique_offsets(cls, v: list[int]):  # noqa: N805
        return sorted({m for m in v if m > 0}, reverse=True)

    @field_validator("pin_code")
    def _blank_pin_is_none(cls, v):  # noqa: N805
        if v is not None and not v.strip():
            return None
        return v

    @property
    def threshold_minutes(self) -> int:
        return self.hours_threshold * 60 + self.minutes_threshold


class NoCheckIn(_ConditionBase):
    """Dead man's switch: deliver if the owner misses the check-in deadline."""

    condition_type: Literal["no_check_in"] = "no_check_in"


class RegularCheckIn(_ConditionBase):
    condition_type: Literal["regular_check_in"] = "regular_check_in"


class ScheduledDate(_ConditionBase):
    condition_type: Literal["scheduled_date", "specific_date"] = "scheduled_date"


class InactivityToDate(_ConditionBase):
    condition_type: Literal["inactivity_to_date"] = "inactivity_to_date"


class InactivityToRecurring(_ConditionBase):
    condition_type: Literal["inactivity_to_recurring"] = "inactivity_to_recurring"


class RecurringCheckIn(_ConditionBase):
    condition_type: Literal["recurring_check_in"] = "recurring_check_in"


class GroupConfirmation(_ConditionBase):
    condition_type: Literal["group_confirmation"] = "group_confirmation"


class PanicTrigger(_ConditionBase):
    condition_type: Literal["panic_trigger"] = "panic_trigger"

    @property
    def keep_armed(self) -> bool:
        # Missing config means "stay armed": disarming is the riskier default.
        return self.panic_config.keep_armed if self.panic_config else True


Condition = Annotated[
    Union[
        NoCheckIn,
        RegularCheckIn,
        ScheduledDate,
        InactivityToDate,
        InactivityToRecurring,
        RecurringCheckIn,
        GroupConfirmation,
        PanicTrigger,
    ],
    Field(discriminator="condition_type"),
]

_CONDITION_ADAPTER: TypeAdapter[Condition] = TypeAdapter(Condition)


def parse_condition(data: dict[str, Any]) -> Condition:
    """Validate a `message_conditions` row (or API payload) into its variant.

    Rows written by older clients store the panic settings under
    `panic_trigger_config`; they are folded into `panic_config` here.
    """
    if data.get("panic_config") is None and data.get("panic_trigger_config") is not None:
        data = {**data, "panic_config": data["panic_trigger_config"]}
    return _CONDITION_ADAPTER.validate_python(data)


class DueNotification(BaseModel):
    """A condition that has become due, joined to its message."""

    message: Message
    condition: Condition


# ──────────────────────────────
# Delivery / access
# ──────────────────────────────


class DeliveryRecord(BaseModel):
    id: Optional[int] = None
    message_id: str
    condition_id: Optional[str] = None
    recipient_id: Optional[str] = None
    delivery_id: str
    delivered_at: datetime
    viewed_at: Optional[datetime] = None
    viewed_count: int = 0
    device_info: Optional[str] = None

    @field_validator("delivered_at", "viewed_at", mode="before")
    def _aware(cls, v):  # noqa: N805
        return _as_utc(v)

    @field_validator("viewed_count", mode="before")
    def _null_is_zero(cls, v):  # noqa: N805
        return 0 if v is None else v


class SecurityStatus(BaseModel):
    has_pin_code: bool
    has_delayed_access: bool
    has_expiry: bool
    unlock_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    is_expired: bool = False
    pin_verified: bool = False


class RecipientResult(BaseModel):
    recipient: str
    recipient_id: str
    delivery_id: str
    success: bool
    attempts: int = 0
    email_sent: bool = False
    whatsapp_sent: Optional[bool] = None  # None → channel not attempted
    error: Optional[str] = None


class NotificationResult(BaseModel):
    success: bool
    error: Optional[str] = None
    details: Union[str, List[RecipientResult], None] = None
    skipped: bool = False
