from datetime import date, datetime

import pytest
from pydantic import ValidationError as PydanticValidationError

from echovault.types.condition_contract import (
    Message,
    NoCheckIn,
    PanicTrigger,
    PanicTriggerConfig,
    RecurringPattern,
    ScheduledDate,
    parse_condition,
)
from echovault.types.errors import ValidationIssue

from conftest import make_condition


def test_parse_condition_picks_variant_by_type():
    cond = parse_condition(make_condition())
    assert isinstance(cond, NoCheckIn)
    assert cond.threshold_minutes == 24 * 60

    legacy = parse_condition(make_condition(condition_type="specific_date", trigger_date="2026-01-01T00:00:00Z"))
    assert isinstance(legacy, ScheduledDate)


def test_unknown_condition_type_is_rejected():
    with pytest.raises(PydanticValidationError):
        parse_condition(make_condition(condition_type="lunar_eclipse"))


def test_naive_timestamps_are_read_as_utc():
    cond = parse_condition(make_condition(last_checked=datetime(2026, 1, 1, 9, 0)))
    assert cond.last_checked.tzinfo is not None


def test_reminder_offsets_are_deduplicated_and_positive():
    cond = parse_condition(make_condition(reminder_hours=[60, 0, 60, 120, -15]))
    assert cond.reminder_minutes == [120, 60]


def test_legacy_panic_trigger_config_is_folded():
    cond = parse_condition(make_condition(
        condition_type="panic_trigger",
        panic_trigger_config={"enabled": True, "methods": ["app", "whatsapp"], "keep_armed": False},
    ))
    assert isinstance(cond, PanicTrigger)
    assert cond.panic_config.whatsapp_enabled
    assert cond.keep_armed is False


def test_panic_keep_armed_defaults_to_true_without_config():
    cond = parse_condition(make_condition(condition_type="panic_trigger"))
    assert cond.keep_armed is True


def test_panic_config_is_immutable_with_validated_updates():
    cfg = PanicTriggerConfig()
    updated = cfg.with_cancel_window(30).with_methods(["app", "whatsapp"]).with_trigger_keyword("  help ")
    assert cfg.cancel_window_seconds == 10
    assert updated.cancel_window_seconds == 30
    assert updated.keyword == "help"
    with pytest.raises(PydanticValidationError) as exc_info:
        cfg.with_cancel_window(7)
    assert "Cancel window" in str(exc_info.value)
    assert exc_info.value.errors()[0]["ctx"]["error"].issue is ValidationIssue.INVALID_CANCEL_WINDOW
    with pytest.raises(PydanticValidationError):
        cfg.enabled = False


def test_default_keyword_is_sos():
    assert PanicTriggerConfig().keyword == "SOS"


def test_pattern_type_change_keeps_only_meaningful_fields():
    weekly = RecurringPattern(type="weekly", day=3)
    assert weekly.with_type("monthly").day is None
    assert weekly.with_type("daily").day is None

    monthly = RecurringPattern(type="monthly", day=15)
    assert monthly.with_type("yearly").day == 15
    assert monthly.with_type("weekly").day is None

    yearly = RecurringPattern(type="yearly", day=4, month=6)
    as_monthly = yearly.with_type("monthly")
    assert as_monthly.day == 4 and as_monthly.month is None


def test_pattern_ranges_are_validated():
    with pytest.raises(PydanticValidationError):
        RecurringPattern(type="weekly", day=7)
    with pytest.raises(PydanticValidationError):
        RecurringPattern(type="monthly", day=0)
    with pytest.raises(PydanticValidationError):
        RecurringPattern(type="yearly", day=1, month=12)
    with pytest.raises(PydanticValidationError):
        RecurringPattern(interval=0)


def test_pattern_accepts_camel_case_start_date():
    pattern = RecurringPattern.model_validate({"type": "daily", "startDate": "2026-11-01"})
    assert pattern.start_date == date(2026, 11, 1)


def test_pattern_builders_return_validated_copies():
    weekly = RecurringPattern(type="weekly", day=3)

    every_other = weekly.with_interval(2)
    assert every_other.interval == 2 and every_other.day == 3
    assert weekly.interval == 1
    with pytest.raises(PydanticValidationError):
        weekly.with_interval(0)

    floored = weekly.with_start_date(date(2026, 11, 1))
    assert floored.start_date == date(2026, 11, 1)
    assert floored.with_start_date(None).start_date is None
    assert weekly.start_date is None


def test_message_folds_location_columns():
    msg = Message.model_validate({
        "id": "m1", "user_id": "u1", "title": "t",
        "share_location": True, "location_latitude": 51.5, "location_longitude": -0.12,
        "location_name": "London", "attachments": None,
    })
    assert msg.location.name == "London"
    assert msg.attachments == []
