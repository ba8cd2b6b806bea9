from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    # Keep policy timestamps in UTC for consistent window comparisons.
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on round-trip; treat naive values as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
