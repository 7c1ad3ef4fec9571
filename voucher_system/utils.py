from datetime import datetime, timedelta, timezone
from typing import Optional

EPOCH = datetime(1970, 1, 1)


def utcnow() -> datetime:
    """Current time as naive UTC, the form every timestamp is stored in"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize an aware datetime to naive UTC; naive values are assumed UTC"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_unix_millis(value: datetime) -> int:
    return (to_naive_utc(value) - EPOCH) // timedelta(milliseconds=1)


def from_unix_millis(millis: int) -> datetime:
    return EPOCH + timedelta(milliseconds=millis)
