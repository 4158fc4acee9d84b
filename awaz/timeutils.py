from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc(dt: datetime) -> datetime:
    """Convert naive or tz-aware datetime to naive UTC for storage."""
    if dt.tzinfo is None:  # assume naive -> already UTC
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)
