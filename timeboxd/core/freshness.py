from __future__ import annotations

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_fresh(timestamp: datetime | None, ttl: timedelta, now: datetime | None = None) -> bool:
    """Single staleness predicate shared by film identities and the release ledger."""
    if timestamp is None:
        return False
    current = now or utc_now()
    return current - as_utc(timestamp) <= ttl


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

