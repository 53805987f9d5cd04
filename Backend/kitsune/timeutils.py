"""
Timezone-aware time helpers.

All instants handled by the rest of the code base are aware UTC datetimes.
Local wall-clock values only exist transiently while expanding a business's
weekly hours template for a given calendar date.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

WEEKDAY_KEYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


@dataclass(frozen=True)
class Interval:
    """Half-open [start, end) span of UTC instants."""
    start: datetime
    end: datetime

    def overlaps(self, other: "Interval") -> bool:
        return overlaps(self.start, self.end, other.start, other.end)

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    return start_a < end_b and start_b < end_a


def get_zone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError, TypeError) as exc:
        raise ValueError(f"Unknown time zone: {tz_name}") from exc


def parse_hhmm(value: str) -> time:
    """Parse "HH:MM" (24-hour)."""
    try:
        hour_str, minute_str = value.split(":")
        hour, minute = int(hour_str), int(minute_str)
    except (ValueError, AttributeError):
        raise ValueError(f"Time must be in HH:MM format, got {value!r}")
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Time must be in HH:MM format, got {value!r}")
    return time(hour, minute)


def weekday_key(local_date: date) -> str:
    return WEEKDAY_KEYS[local_date.weekday()]


def iter_dates(start: date, end: date) -> Iterator[date]:
    """Inclusive range of calendar dates."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def local_to_utc(local_date: date, local_time: time, tz: ZoneInfo) -> Optional[datetime]:
    """
    Resolve a wall-clock time in ``tz`` to a UTC instant.

    Returns None when the wall time does not exist (skipped by a DST jump).
    Ambiguous wall times (repeated by a DST fall-back) resolve to the first
    occurrence.
    """
    naive = datetime.combine(local_date, local_time)
    aware = naive.replace(tzinfo=tz, fold=0)
    as_utc = aware.astimezone(timezone.utc)
    round_trip = as_utc.astimezone(tz).replace(tzinfo=None)
    if round_trip != naive:
        return None
    return as_utc


def wall_time_to_utc(local_date: date, local_time: time, tz: ZoneInfo) -> datetime:
    """
    Like local_to_utc but never fails: a skipped wall time is shifted
    forward by the length of the gap. Used for window boundaries.
    """
    aware = datetime.combine(local_date, local_time).replace(tzinfo=tz, fold=0)
    return aware.astimezone(timezone.utc)


def local_day_bounds(local_date: date, tz: ZoneInfo) -> Interval:
    """UTC interval covering the whole calendar day in ``tz`` (23, 24 or 25 hours)."""
    start = wall_time_to_utc(local_date, time.min, tz)
    end = wall_time_to_utc(local_date + timedelta(days=1), time.min, tz)
    return Interval(start, end)


def to_local(instant: datetime, tz: ZoneInfo) -> datetime:
    return instant.astimezone(tz)


def ensure_utc(value: datetime) -> datetime:
    """Reject naive datetimes, normalize aware ones to UTC."""
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError("datetime must include a UTC offset")
    return value.astimezone(timezone.utc)
