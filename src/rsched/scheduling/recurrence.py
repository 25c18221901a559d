"""Next-fire computation for each recurrence type.

Every "has this time already passed" decision is made against the wall
clock of the rule's zone; the answer is handed back in UTC. All functions
here are pure: same inputs, same instant.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable

from pydantic import BaseModel

from rsched.scheduling.errors import InvalidSchedule
from rsched.scheduling.timezone import load_zone, local_datetime, parse_user_time
from rsched.scheduling.types import (
    BiweeklyData,
    DailyData,
    MonthlyData,
    OnceData,
    ScheduleData,
    WeeklyData,
    parse_schedule_data,
)

BIWEEKLY_PERIOD_DAYS = 14


def sunday_weekday(day: date) -> int:
    """Weekday number with 0=Sunday .. 6=Saturday."""
    return (day.weekday() + 1) % 7


def _utc(moment: datetime) -> datetime:
    return moment.astimezone(timezone.utc)


def _next_once(data: OnceData, tz: str, now: datetime) -> datetime:
    fire_at = parse_user_time(data.date_time, tz)
    if fire_at <= now:
        raise InvalidSchedule(f"date_time is not in the future: {data.date_time}", {"date_time": data.date_time})
    return fire_at


def _next_daily(data: DailyData, tz: str, now: datetime) -> datetime:
    today = now.astimezone(load_zone(tz)).date()
    candidate = local_datetime(today, data.time, tz)
    if _utc(candidate) <= now:
        candidate = local_datetime(today + timedelta(days=1), data.time, tz)
    return _utc(candidate)


def _next_weekly(data: WeeklyData, tz: str, now: datetime) -> datetime:
    today = now.astimezone(load_zone(tz)).date()
    days_until = (data.day_of_week - sunday_weekday(today) + 7) % 7
    candidate = local_datetime(today + timedelta(days=days_until), data.time, tz)
    if _utc(candidate) <= now:
        # Target weekday is today but the time has gone by.
        candidate = local_datetime(today + timedelta(days=days_until + 7), data.time, tz)
    return _utc(candidate)


def _next_biweekly(data: BiweeklyData, tz: str, now: datetime) -> datetime:
    today = now.astimezone(load_zone(tz)).date()
    anchor = data.start_date + timedelta(days=(data.day_of_week - sunday_weekday(data.start_date)) % 7)
    cycles = max(0, (today - anchor).days // BIWEEKLY_PERIOD_DAYS)
    candidate = local_datetime(anchor + timedelta(days=cycles * BIWEEKLY_PERIOD_DAYS), data.time, tz)
    while _utc(candidate) <= now:
        cycles += 1
        candidate = local_datetime(anchor + timedelta(days=cycles * BIWEEKLY_PERIOD_DAYS), data.time, tz)
    return _utc(candidate)


def _next_monthly(data: MonthlyData, tz: str, now: datetime) -> datetime:
    local_now = now.astimezone(load_zone(tz))
    year, month = local_now.year, local_now.month + 1
    if month > 12:
        year, month = year + 1, 1
    day = min(data.day_of_month, calendar.monthrange(year, month)[1])
    return _utc(local_datetime(date(year, month, day), data.time, tz))


_CALCULATORS: dict[str, Callable[[Any, str, datetime], datetime]] = {
    "once": _next_once,
    "daily": _next_daily,
    "weekly": _next_weekly,
    "biweekly": _next_biweekly,
    "monthly": _next_monthly,
}


def next_run(
    schedule_type: str,
    data: ScheduleData | dict[str, Any] | BaseModel,
    user_timezone: str | None,
    now_utc: datetime,
) -> datetime:
    """Compute the next UTC instant a rule fires, strictly after now_utc.

    Raises InvalidSchedule for unknown types, missing or out-of-range
    fields, and zone names that do not resolve.
    """
    tz = user_timezone or "UTC"
    load_zone(tz)
    variant = parse_schedule_data(schedule_type, data, tz)
    if now_utc.tzinfo is None:
        now_utc = now_utc.replace(tzinfo=timezone.utc)
    return _CALCULATORS[schedule_type](variant, tz, _utc(now_utc))
