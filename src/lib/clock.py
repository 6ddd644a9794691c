"""
Time helpers shared by services that take an injectable clock.

Services accept a ``Clock`` (a zero-argument callable returning an aware
UTC datetime) so tests can pin "now". Datetimes read back from SQLite come
back naive; ``ensure_utc`` normalises them before Python-side arithmetic.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def month_key(value: datetime) -> str:
    """Return the ``YYYY-MM`` key of the month containing ``value``."""
    return f"{value.year:04d}-{value.month:02d}"


def start_of_month(value: datetime) -> datetime:
    """Return midnight of the first day of ``value``'s month (UTC)."""
    value = ensure_utc(value)
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
