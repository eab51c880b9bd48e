"""Hospital-local clock helpers.

Timestamps are stored as aware UTC. "Today" and "in the past" are always
judged in the hospital's own timezone.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to a timestamp read back without tzinfo (SQLite)"""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def get_zone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone: {tz_name}")


def hospital_now(tz_name: str) -> datetime:
    return datetime.now(get_zone(tz_name))


def hospital_today(tz_name: str) -> date:
    return hospital_now(tz_name).date()


def local_datetime(day: date, minutes: int, tz_name: str) -> datetime:
    """Aware datetime for a service-day minute offset (may exceed 24h)"""
    midnight = datetime(day.year, day.month, day.day, tzinfo=get_zone(tz_name))
    return midnight + timedelta(minutes=minutes)
