"""UTC-everywhere time handling. Every expiry comparison goes through here."""

import math
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def now_utc() -> datetime:
    """
    Current time in UTC.

    Default wall clock for every engine. Tests inject their own callable.
    """
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    """
    Convert a datetime to UTC.

    Raises ValueError if datetime is naive (no timezone).
    """
    if dt.tzinfo is None:
        raise ValueError(
            "Cannot convert naive datetime to UTC. Datetime must be timezone-aware."
        )
    return dt.astimezone(timezone.utc)


def from_timestamp(seconds: int | float) -> datetime:
    """Convert a POSIX timestamp (JWT iat/exp) to an aware UTC datetime."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def to_timestamp(dt: datetime) -> int:
    """Convert an aware datetime to whole POSIX seconds."""
    return int(to_utc(dt).timestamp())


def seconds_until(moment: datetime, now: datetime) -> int:
    """Whole seconds from now until moment, rounded up, never negative."""
    remaining = (moment - now).total_seconds()
    return max(0, math.ceil(remaining))


def parse_iso(iso_string: str) -> datetime:
    """
    Parse ISO 8601 datetime string to UTC datetime.

    Raises ValueError if string has no timezone info.
    """
    dt = datetime.fromisoformat(iso_string)
    if dt.tzinfo is None:
        raise ValueError(
            "Cannot parse naive datetime string. "
            "Include timezone offset (e.g., 'Z' or '+00:00')."
        )
    return to_utc(dt)
