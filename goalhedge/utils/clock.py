"""UTC helpers. SQLite drops tzinfo, so everything read back is normalised here."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def minutes_since(start: datetime | None, now: datetime) -> float | None:
    start = as_utc(start)
    if start is None:
        return None
    return (now - start).total_seconds() / 60
