"""
Time rules and conversion service.
Handles timezone conversions, working-window parsing and effective checkout capping.
"""
from datetime import datetime, date, time, timedelta
from typing import Optional
import pytz
from ..config import settings


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to timezone-aware UTC.

    Naive values are treated as UTC (SQLite drops tzinfo on the way back).
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def parse_hhmm(value: str) -> time:
    """
    Parse "HH:MM" or "HH:MM:SS" into a time.

    Raises:
        ValueError: if the string is not a valid time of day
    """
    parts = str(value).strip().split(":")
    if len(parts) < 2 or len(parts) > 3:
        raise ValueError(f"Invalid time format: {value}")
    hour = int(parts[0])
    minute = int(parts[1])
    second = int(parts[2]) if len(parts) == 3 else 0
    return time(hour, minute, second)


def daily_ceiling() -> time:
    return parse_hhmm(settings.wage_daily_ceiling)


def local_to_utc(local_datetime: datetime, timezone_str: str) -> datetime:
    """
    Convert local datetime to UTC.

    Args:
        local_datetime: Local datetime (naive)
        timezone_str: Timezone string (e.g., "Asia/Kolkata")

    Returns:
        UTC datetime (timezone-aware)
    """
    try:
        tz = pytz.timezone(timezone_str)
    except pytz.UnknownTimeZoneError:
        return local_datetime.replace(tzinfo=pytz.UTC)
    if local_datetime.tzinfo is None:
        local_dt = tz.localize(local_datetime)
    else:
        local_dt = local_datetime.astimezone(tz)
    return local_dt.astimezone(pytz.UTC)


def utc_to_local(utc_datetime: datetime, timezone_str: str) -> datetime:
    """Convert a UTC datetime to the given local timezone."""
    try:
        tz = pytz.timezone(timezone_str)
    except pytz.UnknownTimeZoneError:
        return ensure_utc(utc_datetime)
    return ensure_utc(utc_datetime).astimezone(tz)


def combine_date_time(date_val: date, time_val: time, timezone_str: str) -> datetime:
    """
    Combine a local date and time into a timezone-aware UTC datetime.
    """
    naive_dt = datetime.combine(date_val, time_val)
    return local_to_utc(naive_dt, timezone_str)


def local_date(utc_datetime: datetime, timezone_str: str) -> date:
    """Calendar date of a UTC instant in the given timezone."""
    return utc_to_local(utc_datetime, timezone_str).date()


def effective_checkout(
    attendance_date: date,
    timezone_str: str,
    actual_checkout: Optional[datetime] = None,
    project_checkout: Optional[time] = None,
    ceiling: Optional[time] = None,
) -> datetime:
    """
    Earliest of the actual checkout, the project's configured checkout and the daily ceiling.

    The configured checkout and the ceiling are local times on the attendance date.
    """
    if ceiling is None:
        ceiling = daily_ceiling()
    candidates = [combine_date_time(attendance_date, ceiling, timezone_str)]
    if project_checkout is not None:
        candidates.append(combine_date_time(attendance_date, project_checkout, timezone_str))
    if actual_checkout is not None:
        candidates.append(ensure_utc(actual_checkout))
    return min(candidates)


def hours_between(start: datetime, end: datetime) -> float:
    """Non-negative hours between two instants."""
    seconds = (ensure_utc(end) - ensure_utc(start)).total_seconds()
    return max(seconds, 0) / 3600


def window_hours(check_in: Optional[time], check_out: Optional[time]) -> Optional[float]:
    """Length of a configured working window in hours, or None if not configured."""
    if check_in is None or check_out is None:
        return None
    start = timedelta(hours=check_in.hour, minutes=check_in.minute, seconds=check_in.second)
    end = timedelta(hours=check_out.hour, minutes=check_out.minute, seconds=check_out.second)
    return max((end - start).total_seconds(), 0) / 3600
