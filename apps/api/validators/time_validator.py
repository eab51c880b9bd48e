"""Time validation utilities

Times are "HH:MM" strings. Slot times past midnight use hours 24-47
("25:30" is 01:30 on the following day), so minute arithmetic goes through
``time_to_minutes``/``minutes_to_time`` rather than ``datetime.time``.
"""
import re
from datetime import date, datetime, timedelta
from typing import Iterator

from errors import ValidationError
from utils.clock import as_utc

MINUTES_PER_DAY = 24 * 60

# Wall-clock input, 00:00-23:59
CLOCK_PATTERN = re.compile(r'^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$')


def is_clock_time(time_str: str) -> bool:
    return isinstance(time_str, str) and CLOCK_PATTERN.match(time_str) is not None


def time_to_minutes(time_str: str) -> int:
    """Minutes since midnight; accepts service-day hours above 23"""
    match = re.match(r'^(\d{1,2}):([0-5][0-9])$', time_str or "")
    if not match:
        raise ValidationError(f"Invalid time format: {time_str}")
    return int(match.group(1)) * 60 + int(match.group(2))


def minutes_to_time(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def validate_date_range(start_date: date, end_date: date, max_days: int = None) -> int:
    """Validate an inclusive date range and return its length in days"""
    if end_date < start_date:
        raise ValidationError(
            f"End date ({end_date}) must not be before start date ({start_date})"
        )
    days = (end_date - start_date).days + 1
    if max_days is not None and days > max_days:
        raise ValidationError(f"Date range of {days} days exceeds the maximum of {max_days}")
    return days


def iter_dates(start_date: date, end_date: date) -> Iterator[date]:
    current = start_date
    while current <= end_date:
        yield current
        current += timedelta(days=1)


def get_duration_minutes(start_dt: datetime, end_dt: datetime) -> int:
    """Get whole minutes between two datetimes"""
    return int((as_utc(end_dt) - as_utc(start_dt)).total_seconds() // 60)
