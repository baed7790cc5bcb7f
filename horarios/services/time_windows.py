from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from horarios.errors import ApiError
from horarios.settings import get_settings

MINUTES_PER_DAY = 24 * 60
DEFAULT_TIMEZONE = "Europe/Madrid"


@lru_cache
def attendance_timezone() -> ZoneInfo:
    raw_name = (get_settings().attendance_timezone or "").strip() or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(raw_name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(DEFAULT_TIMEZONE)


def normalize_ts(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return datetime.now(timezone.utc)

    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)

    return ts_utc.astimezone(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # Some drivers hand back naive values for timestamptz columns; they are always stored as UTC.
    if value is None:
        return None
    return normalize_ts(value)


def parse_hhmm(value: str) -> time:
    try:
        hour_str, minute_str = value.strip().split(":")
        hour = int(hour_str)
        minute = int(minute_str)
        if hour < 0 or hour > 23 or minute < 0 or minute > 59:
            raise ValueError
        return time(hour=hour, minute=minute)
    except ValueError as exc:
        raise ApiError(status_code=422, code="INVALID_TIME", message="Invalid time format. Use HH:MM.") from exc


def parse_optional_hhmm(value: str | None) -> time | None:
    if value is None:
        return None
    return parse_hhmm(value)


def format_hhmm(value: time | None) -> str | None:
    if value is None:
        return None
    return f"{value.hour:02d}:{value.minute:02d}"


def minutes_of_day(value: time) -> int:
    return value.hour * 60 + value.minute


def cycle_offset(value: time, origin: time) -> int:
    """Minutes from ``origin`` forward to ``value`` on a 24h cycle."""
    return (minutes_of_day(value) - minutes_of_day(origin)) % MINUTES_PER_DAY


def local_day(ts_utc: datetime) -> date:
    return normalize_ts(ts_utc).astimezone(attendance_timezone()).date()


def combine_local(day_date: date, value: time) -> datetime:
    local_dt = datetime.combine(day_date, value, tzinfo=attendance_timezone())
    return local_dt.astimezone(timezone.utc)


def resolve_window(day_date: date, start: time, end: time) -> tuple[datetime, datetime]:
    """Absolute UTC bounds of a local start/end pair; an end at or before the start rolls over midnight."""
    start_ts = combine_local(day_date, start)
    end_day = day_date if minutes_of_day(end) > minutes_of_day(start) else day_date + timedelta(days=1)
    return start_ts, combine_local(end_day, end)


def resolve_inner_instant(day_date: date, shift_start: time, value: time) -> datetime:
    """Place a time-of-day that belongs to a window opened at ``shift_start`` on ``day_date``."""
    if minutes_of_day(value) < minutes_of_day(shift_start):
        return combine_local(day_date + timedelta(days=1), value)
    return combine_local(day_date, value)


def iter_days(date_from: date, date_to: date):
    current = date_from
    while current <= date_to:
        yield current
        current += timedelta(days=1)
