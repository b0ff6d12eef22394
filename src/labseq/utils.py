import socket
from datetime import UTC, date, datetime
from zoneinfo import ZoneInfo


def now() -> datetime:
    return datetime.now(UTC)


def to_local(value: datetime, timezone: str | None = None) -> datetime:
    """Convert an instant to the lab's local wall clock.

    Naive values are taken as UTC, which is how MongoDB returns them.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    if timezone:
        return value.astimezone(ZoneInfo(timezone))
    return value.astimezone()


def local_midnight(day: date, timezone: str | None = None) -> datetime:
    """Start of ``day`` on the lab's wall clock."""
    if timezone:
        return datetime(day.year, day.month, day.day, tzinfo=ZoneInfo(timezone))
    return datetime(day.year, day.month, day.day).astimezone()


def hostname() -> str:
    return socket.gethostname()
