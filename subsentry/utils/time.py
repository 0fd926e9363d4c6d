from __future__ import annotations
from datetime import date, datetime, time, timezone
from typing import Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

__all__ = ["Clock", "utc_now", "ensure_utc", "local_send_time"]

# Any zero-arg callable returning an aware datetime; injected into services.
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Timezone-aware current UTC time (replaces datetime.utcnow)."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive values (SQLite drops tzinfo) and convert aware ones."""
    if dt.tzinfo is None:
        # Assume naive input already represents UTC
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def local_send_time(day: date, hour: int, tz_name: str | None) -> datetime:
    """``day`` at ``hour``:00 in ``tz_name``, returned in UTC.

    Unknown zone names fall back to UTC rather than failing alert generation.
    """
    try:
        tz = ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        tz = timezone.utc
    return datetime.combine(day, time(hour=hour), tzinfo=tz).astimezone(timezone.utc)
