"""
Single source of "now" for the engine.

All reservation and ledger timestamps are naive UTC datetimes (the columns are
``DateTime`` without timezone). Services accept a ``Clock`` so tests can move
time forward without sleeping.
"""
from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Bring a caller-supplied datetime onto the naive-UTC columns; naive input is taken as UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
