"""Shared time helpers.

SQLite hands back naive datetimes even for ``DateTime(timezone=True)``
columns, so every comparison in the engine goes through ``as_utc``.

utcnow:          aware "now" in UTC
as_utc:          naive → UTC-aware, aware → converted to UTC
isoformat:       None-safe ISO-8601 serialisation
parse_datetime:  ISO string / date / datetime → aware datetime (ValueError on bad input)
"""
from datetime import date, datetime, time, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def parse_datetime(value) -> datetime | None:
    """Parse an ISO-8601 timestamp or date into an aware UTC datetime.

    Returns None for empty input, raises ValueError for anything unparseable.
    A trailing ``Z`` is accepted. Bare dates map to midnight UTC.
    """
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    raw = str(value).strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(raw))
    except (ValueError, TypeError) as exc:
        raise ValueError(f"Invalid datetime: {value!r}") from exc
