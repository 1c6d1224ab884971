"""Time utilities."""
from datetime import UTC, datetime, timezone


def utcnow() -> datetime:
    """Return current UTC time with timezone awareness."""

    return datetime.now(tz=UTC)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_iso_utc(value: str) -> datetime:
    """Parse an ISO 8601 string and normalize it to UTC."""

    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


__all__ = ["utcnow", "ensure_utc", "parse_iso_utc"]
