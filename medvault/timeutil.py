from datetime import date, datetime, time, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return ensure_utc(value).isoformat()


def from_iso(value: str | None) -> datetime | None:
    if value is None:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(value))


def start_of(value: date | datetime) -> datetime:
    """A bare date starts at midnight UTC; datetimes pass through."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def end_of(value: date | datetime) -> datetime:
    """A bare date lasts until 23:59:59.999 UTC; datetimes pass through."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    return datetime.combine(value, time(23, 59, 59, 999000), tzinfo=timezone.utc)
