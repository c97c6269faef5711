from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from invoice_reminders.models import BusinessHours
from invoice_reminders.timing import (
    backoff,
    coerce_utc,
    due_at,
    next_business_window,
    resolve_timezone,
    target_at,
    within_business_hours,
)


def _utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def test_backoff_doubles_per_attempt() -> None:
    assert backoff(1) == timedelta(minutes=2)
    assert backoff(2) == timedelta(minutes=4)
    assert backoff(3) == timedelta(minutes=8)
    assert backoff(0) == timedelta(minutes=1)


def test_due_at_is_midnight_of_due_date_in_zone() -> None:
    assert due_at(date(2024, 10, 10)) == _utc(2024, 10, 10)
    assert due_at(date(2024, 10, 10), "America/New_York") == _utc(2024, 10, 10, 4)


def test_target_at_shifts_calendar_days_by_type() -> None:
    due = date(2024, 10, 10)
    assert target_at(due, "before_due", 7) == _utc(2024, 10, 3)
    assert target_at(due, "on_due", None) == _utc(2024, 10, 10)
    assert target_at(due, "after_due", 7) == _utc(2024, 10, 17)


def test_target_at_keeps_local_midnight_across_dst_change() -> None:
    # US clocks fall back on 2024-11-03.
    due = date(2024, 11, 5)
    assert target_at(due, "before_due", 7, "America/New_York") == _utc(2024, 10, 29, 4)
    assert target_at(due, "on_due", None, "America/New_York") == _utc(2024, 11, 5, 5)


def test_unknown_timezone_falls_back_to_utc() -> None:
    assert resolve_timezone("Not/AZone") is timezone.utc
    assert resolve_timezone(None) is timezone.utc


def test_coerce_utc_handles_naive_and_offset_values() -> None:
    assert coerce_utc(datetime(2024, 10, 1, 12, 0)) == _utc(2024, 10, 1, 12)
    offset = timezone(timedelta(hours=2))
    assert coerce_utc(datetime(2024, 10, 1, 12, 0, tzinfo=offset)) == _utc(2024, 10, 1, 10)


def test_business_hours_window_is_half_open() -> None:
    hours = BusinessHours(enabled=True, start_minute=9 * 60, end_minute=17 * 60)
    assert within_business_hours(_utc(2024, 10, 3, 8, 59), hours) is False
    assert within_business_hours(_utc(2024, 10, 3, 9, 0), hours) is True
    assert within_business_hours(_utc(2024, 10, 3, 16, 59), hours) is True
    assert within_business_hours(_utc(2024, 10, 3, 17, 0), hours) is False


def test_disabled_business_hours_always_allow_dispatch() -> None:
    assert within_business_hours(_utc(2024, 10, 3, 3, 0), BusinessHours()) is True


def test_next_business_window_before_and_after_opening() -> None:
    hours = BusinessHours(enabled=True, start_minute=9 * 60, end_minute=17 * 60)
    assert next_business_window(_utc(2024, 10, 3, 7, 30), hours) == _utc(2024, 10, 3, 9)
    assert next_business_window(_utc(2024, 10, 3, 18, 0), hours) == _utc(2024, 10, 4, 9)


def test_next_business_window_uses_policy_timezone() -> None:
    hours = BusinessHours(enabled=True, start_minute=9 * 60, end_minute=17 * 60, timezone="America/New_York")
    # 23:00 UTC is 19:00 EDT, so the next opening is 09:00 EDT the following day.
    assert next_business_window(_utc(2024, 10, 3, 23, 0), hours) == _utc(2024, 10, 4, 13)


def test_early_morning_defers_to_same_day_opening_in_policy_timezone() -> None:
    hours = BusinessHours(enabled=True, start_minute=9 * 60, end_minute=17 * 60, timezone="America/New_York")
    # 10:00 UTC is 06:00 EDT, before today's opening.
    assert next_business_window(_utc(2024, 10, 3, 10, 0), hours) == _utc(2024, 10, 3, 13)
    # 03:00 UTC is 23:00 EDT the previous evening; the next opening is the same UTC date.
    assert next_business_window(_utc(2024, 10, 3, 3, 0), hours) == _utc(2024, 10, 3, 13)
