"""
Date helpers for gateway timestamps.
Local records store naive UTC datetimes; gateways speak Unix timestamps.
"""
import calendar
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    """Convert a Unix timestamp to a naive UTC datetime. None passes through."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def to_timestamp(value: Optional[datetime]) -> Optional[int]:
    """Convert a naive UTC (or aware) datetime to a Unix timestamp."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def format_zulu(value: datetime) -> str:
    """Format as YYYY-MM-DDTHH:MM:SSZ."""
    return value.strftime('%Y-%m-%dT%H:%M:%SZ')


def format_human(value: datetime) -> str:
    """Format as 'March 5, 2026'."""
    return f"{value.strftime('%B')} {value.day}, {value.year}"


def format_ymdhis(value: datetime) -> str:
    """Format as YYYY-MM-DD HH:MM:SS."""
    return value.strftime('%Y-%m-%d %H:%M:%S')


def add_months(value: datetime, months: int) -> datetime:
    """Shift by whole months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC. Naive values and None pass through."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
