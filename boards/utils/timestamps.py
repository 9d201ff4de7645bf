"""
Timestamp helpers.

All datetimes stored by the engine are naive UTC so that values coming back
from SQLite compare cleanly with values produced in-process.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalise an aware or naive datetime to naive UTC (naive input is assumed UTC)."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def from_epoch(seconds: float) -> datetime:
    """Convert a unix timestamp into naive UTC."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
