#!/usr/bin/env python3
"""
Datetime Utility Functions
==========================
Provides consistent timezone handling across the tracker.

All instants are stored and compared as naive UTC. The heatmap buckets by
UTC hour and weekday, so the same instant always lands in the same bucket no
matter which client asked.

Key functions:
- normalize_to_naive_utc: Convert any datetime to naive UTC (strips tzinfo after conversion)
- safe_parse_iso: Lenient ISO-8601 parsing that returns None on garbage
- resolve_window: Turn optional start/end inputs into an inclusive window
- range_window: "today" / "week" / "month" presets used by the stats endpoint
"""

from __future__ import annotations

import calendar
from datetime import UTC, date, datetime, time, timedelta
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(UTC).replace(tzinfo=None)


def normalize_to_naive_utc(dt: datetime) -> datetime:
    """Convert datetime to naive UTC (drop tzinfo after conversion to UTC).

    Behavior:
    - If dt is naive (no tzinfo): Assume it's already UTC, return as-is
    - If dt is timezone-aware: Convert to UTC, then strip tzinfo

    Examples:
        >>> normalize_to_naive_utc(datetime(2024, 11, 1, 14, 0, 0))
        datetime.datetime(2024, 11, 1, 14, 0)

        >>> from zoneinfo import ZoneInfo
        >>> aware = datetime(2024, 11, 1, 14, 0, 0, tzinfo=ZoneInfo("Asia/Kolkata"))
        >>> normalize_to_naive_utc(aware)
        datetime.datetime(2024, 11, 1, 8, 30)
    """
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(UTC).replace(tzinfo=None)


def safe_parse_iso(ts: str | None) -> datetime | None:
    """Parse ISO timestamp and normalize to naive UTC.

    Handles common ISO format variations:
    - With 'Z' suffix (converts to +00:00)
    - With explicit timezone offset
    - Naive timestamp (assumes UTC)
    - Bare date (midnight UTC)

    Returns:
        Naive UTC datetime, or None if parsing fails
    """
    if not ts or not isinstance(ts, str):
        return None
    try:
        value = ts.strip()
        normalized = value[:-1] + "+00:00" if value.endswith("Z") else value
        return normalize_to_naive_utc(datetime.fromisoformat(normalized))
    except (ValueError, AttributeError, OverflowError):
        return None


def is_date_only(ts: str | None) -> bool:
    """True for 'YYYY-MM-DD' strings with no time component."""
    if not ts or not isinstance(ts, str):
        return False
    try:
        date.fromisoformat(ts.strip())
    except ValueError:
        return False
    return True


def to_db_timestamp(dt: datetime) -> str:
    """Fixed-width storage form so string comparison matches time order."""
    return normalize_to_naive_utc(dt).isoformat(timespec="microseconds")


def from_db_timestamp(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def format_iso(dt: datetime | None) -> str | None:
    """Serialize a naive-UTC datetime for JSON consumers."""
    if dt is None:
        return None
    return normalize_to_naive_utc(dt).isoformat() + "Z"


def start_of_day(dt: datetime) -> datetime:
    return datetime.combine(dt.date(), time.min)


def end_of_day(dt: datetime) -> datetime:
    return datetime.combine(dt.date(), time.max)


def subtract_months(dt: datetime, months: int) -> datetime:
    """Step back whole calendar months, clamping the day (Mar 31 -> Feb 28/29)."""
    month_index = dt.year * 12 + (dt.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def trailing_window(days: int, now: datetime | None = None) -> tuple[datetime, datetime]:
    """[midnight `days` days ago, now]."""
    end = now or utcnow()
    return start_of_day(end - timedelta(days=days)), end


def _coerce_bound(value: str | datetime | None) -> datetime | None:
    if isinstance(value, datetime):
        try:
            return normalize_to_naive_utc(value)
        except OverflowError:
            return None
    return safe_parse_iso(value)


def resolve_window(
    start: str | datetime | None,
    end: str | datetime | None,
    default_days: int = 7,
    now: datetime | None = None,
    extend_date_only_end: bool = False,
) -> tuple[datetime, datetime]:
    """Resolve caller-supplied bounds into an inclusive naive-UTC window.

    A missing or malformed bound, or a start later than the end, falls back to
    the trailing ``default_days`` window instead of raising.
    """
    start_dt = _coerce_bound(start)
    end_dt = _coerce_bound(end)
    if start_dt is None or end_dt is None:
        return trailing_window(default_days, now)

    if extend_date_only_end and isinstance(end, str) and is_date_only(end):
        end_dt = end_of_day(end_dt)
    if start_dt > end_dt:
        return trailing_window(default_days, now)
    return start_dt, end_dt


def range_window(range_name: str | None, now: datetime | None = None) -> tuple[str, datetime, datetime]:
    """Map a dashboard range preset to (canonical name, start, end).

    Unknown presets resolve to "week".
    """
    end = now or utcnow()
    if range_name == "today":
        return "today", start_of_day(end), end
    if range_name == "month":
        return "month", start_of_day(subtract_months(end, 1)), end
    start, end = trailing_window(7, end)
    return "week", start, end


def format_duration(seconds: int | float) -> str:
    """Human-friendly duration: '2h 5m' or '12m'."""
    total = int(seconds or 0)
    hours = total // 3600
    minutes = (total % 3600) // 60
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
