"""Conversion between IANA zones and UTC, and user-facing time parsing."""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from rsched.infrastructure.logger import logger
from rsched.scheduling.errors import InvalidSchedule

COMMON_TIMEZONES: list[str] = [
    "UTC",
    "America/New_York",
    "America/Chicago",
    "America/Denver",
    "America/Los_Angeles",
    "Europe/London",
    "Europe/Paris",
    "Europe/Berlin",
    "Europe/Rome",
    "Asia/Kolkata",
    "Asia/Shanghai",
    "Asia/Tokyo",
    "Asia/Dubai",
    "Australia/Sydney",
    "Australia/Melbourne",
    "Pacific/Auckland",
]

_HHMM = re.compile(r"^(\d{1,2}):(\d{2})$")
_NAIVE_FORMATS = ("%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def load_zone(name: str | None) -> ZoneInfo:
    """Resolve an IANA zone name. Empty means UTC."""
    if not name:
        name = "UTC"
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        raise InvalidSchedule(f"Invalid timezone: {name}", {"timezone": name})


def validate_timezone(name: str | None) -> bool:
    try:
        load_zone(name)
    except InvalidSchedule:
        return False
    return True


def effective_timezone(name: str | None) -> str:
    """Like load_zone, but falls back to UTC instead of failing."""
    if name and validate_timezone(name):
        return name
    if name:
        logger.warning("Unresolvable timezone, falling back to UTC", timezone=name)
    return "UTC"


def to_utc(moment: datetime, tz: str | None) -> datetime:
    """Naive wall-clock times are taken to be in tz; aware times keep their offset."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=load_zone(tz))
    return moment.astimezone(timezone.utc)


def from_utc(instant: datetime, tz: str | None) -> datetime:
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(load_zone(tz))


def parse_hhmm(value: str) -> time:
    match = _HHMM.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise InvalidSchedule(f"Invalid time, expected HH:MM: {value}", {"time": value})
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise InvalidSchedule(f"Invalid time, expected HH:MM: {value}", {"time": value})
    return time(hour, minute)


def local_datetime(day: date, hhmm: str, tz: str | None) -> datetime:
    """Wall-clock `hhmm` on `day` in tz, as an aware datetime in that zone."""
    return datetime.combine(day, parse_hhmm(hhmm), tzinfo=load_zone(tz))


def parse_user_time(text: str, tz: str | None) -> datetime:
    """Parse a timestamp typed by a user and return it in UTC.

    RFC3339 values with a `Z` or numeric offset are honored as written.
    Values without one are read as wall-clock time in tz.
    """
    if not text or not isinstance(text, str):
        raise InvalidSchedule("Missing date_time", {"date_time": text})
    raw = text.strip()
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        parsed = None
        for fmt in _NAIVE_FORMATS:
            try:
                parsed = datetime.strptime(raw, fmt)
                break
            except ValueError:
                continue
        if parsed is None:
            raise InvalidSchedule(f"Failed to parse date_time: {text}", {"date_time": text})
    return to_utc(parsed, tz)


def format_for_user(instant: datetime, tz: str | None) -> str:
    return from_utc(instant, tz).isoformat()


def timezone_offset_hours(tz: str | None, at: datetime | None = None) -> int:
    """Whole-hour UTC offset of tz at the given instant (default: now)."""
    offset = from_utc(at or utc_now(), tz).utcoffset() or timedelta(0)
    return int(offset.total_seconds() / 3600)
