"""Timezone helpers shared by models and services."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """
    Attach UTC to a naive datetime and convert an aware one to UTC.

    SQLite drops tzinfo on round-trip even for DateTime(timezone=True)
    columns, so anything read back from the database goes through here
    before it is compared with utcnow().
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
