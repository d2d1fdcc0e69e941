"""Timestamp helpers."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive values (SQLite returns stored timestamps naive)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def isoformat(value: datetime | None) -> str | None:
    """ISO-8601 string for a stored timestamp (naive values are taken as UTC)."""
    if value is None:
        return None
    return as_utc(value).isoformat()
