from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable


UTC = timezone.utc

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def next_day_boundary(now: datetime) -> datetime:
    """Start of the UTC day following ``now``."""

    now = as_utc(now)
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return start_of_day + timedelta(days=1)


def next_hour_boundary(now: datetime) -> datetime:
    """Top of the UTC hour following ``now``."""

    now = as_utc(now)
    return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)


def seconds_until(moment: datetime, now: datetime) -> int:
    return max(0, int((as_utc(moment) - as_utc(now)).total_seconds()))


__all__ = [
    "UTC",
    "Clock",
    "as_utc",
    "next_day_boundary",
    "next_hour_boundary",
    "seconds_until",
    "utcnow",
]
