"""Calendar and clock arithmetic for reminder scheduling.

Every function here is pure: callers pass ``now`` explicitly so the scheduler can be
driven from tests or a cron trigger without touching the wall clock.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import MINUTES_PER_DAY, BusinessHours, ReminderType


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_timezone(zone_name: str | None) -> timezone | ZoneInfo:
    if not zone_name:
        return timezone.utc
    try:
        return ZoneInfo(zone_name)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def backoff(attempts: int) -> timedelta:
    """Delay before the next delivery attempt: ``2 ** attempts`` minutes."""
    return timedelta(minutes=2 ** max(0, attempts))


def due_at(due_date: date, zone_name: str | None = None) -> datetime:
    zone = resolve_timezone(zone_name)
    return datetime.combine(due_date, time.min, tzinfo=zone).astimezone(timezone.utc)


def target_at(
    due_date: date,
    reminder_type: ReminderType,
    offset_days: int | None,
    zone_name: str | None = None,
) -> datetime:
    # Offsets move the calendar date, then midnight is resolved in the zone, so
    # DST transitions never shift the time of day.
    if reminder_type == "before_due":
        shifted = due_date - timedelta(days=offset_days or 0)
    elif reminder_type == "after_due":
        shifted = due_date + timedelta(days=offset_days or 0)
    else:
        shifted = due_date
    return due_at(shifted, zone_name)


def minute_of_day(value: datetime, zone_name: str | None = None) -> int:
    local = coerce_utc(value).astimezone(resolve_timezone(zone_name))
    return local.hour * 60 + local.minute


def within_business_hours(now: datetime, hours: BusinessHours) -> bool:
    if not hours.enabled:
        return True
    current = minute_of_day(now, hours.timezone)
    return hours.start_minute <= current < hours.end_minute


def next_business_window(now: datetime, hours: BusinessHours) -> datetime:
    """Return the next opening of the business-hours window after ``now``.

    Before today's opening this is today's start; otherwise it is tomorrow's.
    """
    zone = resolve_timezone(hours.timezone)
    local_now = coerce_utc(now).astimezone(zone)
    start_hour, start_minute = divmod(hours.start_minute % MINUTES_PER_DAY, 60)
    opening = datetime.combine(local_now.date(), time(start_hour, start_minute), tzinfo=zone)
    if local_now >= opening:
        opening = datetime.combine(
            local_now.date() + timedelta(days=1),
            time(start_hour, start_minute),
            tzinfo=zone,
        )
    return opening.astimezone(timezone.utc)
