"""
Timestamp helpers shared by the ledger, delivery runs and scheduled jobs.

Stored documents may carry timestamps written by older clients as ISO
strings, epoch milliseconds or naive datetimes; everything is normalized to
timezone-aware UTC before it is compared.
"""

from datetime import datetime, time, timedelta, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Convert a stored timestamp into an aware datetime.

    Args:
        value: datetime, ISO-8601 string, or epoch number (seconds or
            milliseconds)

    Returns:
        Aware UTC datetime, or None when the value cannot be interpreted
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        return ensure_aware(value)

    if isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        # Values past year 2286 in seconds are millisecond epochs
        seconds = value / 1000 if abs(value) > 10_000_000_000 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_aware(datetime.fromisoformat(text))
        except ValueError:
            return None

    return None


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """Serialize an optional datetime as ISO-8601 in UTC."""
    if value is None:
        return None
    return ensure_aware(value).astimezone(timezone.utc).isoformat()


def previous_local_day_bounds(
    tz_name: str,
    now: Optional[datetime] = None,
) -> tuple[datetime, datetime]:
    """
    Bounds of "yesterday" in a business timezone, as UTC datetimes.

    Args:
        tz_name: IANA timezone name
        now: Reference instant (defaults to the current time)

    Returns:
        ``(start, end)`` where start is inclusive and end exclusive
    """
    zone = ZoneInfo(tz_name)
    local_now = ensure_aware(now or utc_now()).astimezone(zone)
    today_start = datetime.combine(local_now.date(), time.min, tzinfo=zone)
    yesterday_start = datetime.combine(
        local_now.date() - timedelta(days=1), time.min, tzinfo=zone
    )
    return (
        yesterday_start.astimezone(timezone.utc),
        today_start.astimezone(timezone.utc),
    )


def seconds_until_local_hour(
    tz_name: str,
    hour: int,
    now: Optional[datetime] = None,
) -> float:
    """Seconds from ``now`` until the next occurrence of ``hour``:00 local time."""
    zone = ZoneInfo(tz_name)
    local_now = ensure_aware(now or utc_now()).astimezone(zone)
    target = datetime.combine(local_now.date(), time(hour=hour), tzinfo=zone)
    if target <= local_now:
        target = datetime.combine(
            local_now.date() + timedelta(days=1), time(hour=hour), tzinfo=zone
        )
    return (target - local_now).total_seconds()
