"""Shared datetime helpers.

as_utc:          SQLite hands back naive datetimes; treat them as UTC
utcnow:          default clock for services
parse_datetime:  ISO string (or date) to an aware UTC datetime, None on bad input
"""
from datetime import date, datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` as an aware UTC datetime (naive values are assumed UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value):
    """Parse an ISO date/datetime string to an aware UTC datetime.

    Returns None for empty/invalid input. A bare date maps to midnight UTC.
    Trailing ``Z`` is accepted.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    raw = str(value).strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(raw))
    except ValueError:
        return None
