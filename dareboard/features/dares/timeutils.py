"""Expiry window helpers.

All functions are pure: they take the expiry timestamp and an optional
``now`` (defaulting to the current UTC time) and never touch storage.
Naive datetimes are treated as UTC; ISO-8601 strings are accepted.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from dareboard.models.dare import TimeRemaining

Timestamp = Union[datetime, str]

MS_PER_MINUTE = 60 * 1000
MS_PER_HOUR = 60 * MS_PER_MINUTE
EXPIRING_SOON_HOURS = 24


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Timestamp) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _delta_ms(expiry: Timestamp, now: Optional[Timestamp]) -> int:
    current = ensure_utc(now) if now is not None else utc_now()
    delta = ensure_utc(expiry) - current
    return delta // timedelta(milliseconds=1)


def is_expired(expiry: Timestamp, now: Optional[Timestamp] = None) -> bool:
    return _delta_ms(expiry, now) <= 0


def is_expiring_soon(
    expiry: Timestamp, now: Optional[Timestamp] = None, hours: int = EXPIRING_SOON_HOURS
) -> bool:
    delta = _delta_ms(expiry, now)
    return 0 < delta <= hours * MS_PER_HOUR


def time_remaining(expiry: Timestamp, now: Optional[Timestamp] = None) -> TimeRemaining:
    delta = _delta_ms(expiry, now)
    if delta <= 0:
        return TimeRemaining(hours=0, minutes=0, is_expired=True, is_expiring_soon=False)

    return TimeRemaining(
        hours=delta // MS_PER_HOUR,
        minutes=(delta % MS_PER_HOUR) // MS_PER_MINUTE,
        is_expired=False,
        is_expiring_soon=delta <= EXPIRING_SOON_HOURS * MS_PER_HOUR,
    )


def format_remaining(expiry: Timestamp, now: Optional[Timestamp] = None) -> str:
    remaining = time_remaining(expiry, now)
    if remaining.is_expired:
        return "Expired"
    if remaining.hours > 0:
        return f"{remaining.hours}h {remaining.minutes}m left"
    return f"{remaining.minutes}m left"


def days_between(earlier: Timestamp, later: Timestamp) -> float:
    """Fractional days from ``earlier`` to ``later`` (negative if reversed)."""
    return (ensure_utc(later) - ensure_utc(earlier)) / timedelta(days=1)
