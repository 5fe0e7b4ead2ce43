"""
Time helpers shared by the aggregator and session reconstruction.

Every aggregation entry point takes an explicit reference instant; these
helpers never read the wall clock except in :func:`resolve_now`.
"""

from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional

from usage_meter.storage.models import HOUR_KEY_FORMAT

ONE_HOUR = timedelta(hours=1)


def local_timezone() -> tzinfo:
    """Return the system's local time zone."""
    return datetime.now().astimezone().tzinfo


def resolve_now(now: Optional[datetime], tz: tzinfo) -> datetime:
    """Return an aware reference instant, reading the clock only if none is given."""
    if now is None:
        return datetime.now(tz)
    if now.tzinfo is None:
        return now.replace(tzinfo=tz)
    return now


def parse_timestamp(value: str, tz: Optional[tzinfo] = None) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware datetime.

    Naive timestamps are taken to be in ``tz`` (local time by default).

    Returns:
        The parsed datetime, or None if the value is not ISO-8601
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz or local_timezone())
    return parsed


def truncate_to_hour(moment: datetime, tz: tzinfo) -> datetime:
    """Start of the local hour containing ``moment``."""
    return moment.astimezone(tz).replace(minute=0, second=0, microsecond=0)


def hour_key(hour_start: datetime) -> str:
    """Fixed-width UTC key for an hour start."""
    return hour_start.astimezone(timezone.utc).strftime(HOUR_KEY_FORMAT)


def hour_label(hour_start: datetime, tz: tzinfo) -> str:
    """Display label such as "9 AM" for an hour start in local time."""
    hour = hour_start.astimezone(tz).hour
    suffix = "AM" if hour < 12 else "PM"
    return f"{hour % 12 or 12} {suffix}"


def date_key(moment: datetime, tz: tzinfo) -> str:
    """Zero-padded local calendar date (YYYY-MM-DD)."""
    return moment.astimezone(tz).strftime("%Y-%m-%d")


def local_midnight(day: date, tz: tzinfo) -> datetime:
    """Aware datetime for the start of ``day`` in ``tz``."""
    return datetime.combine(day, time(0), tzinfo=tz)


def add_hours(moment: datetime, hours: int) -> datetime:
    """Add elapsed hours, stepping in UTC so DST changes are respected."""
    return (moment.astimezone(timezone.utc) + hours * ONE_HOUR).astimezone(moment.tzinfo)


def hours_between(start: datetime, end: datetime) -> float:
    """Elapsed hours from ``start`` to ``end``, measured in absolute time."""
    delta = end.astimezone(timezone.utc) - start.astimezone(timezone.utc)
    return delta.total_seconds() / 3600


def format_timestamp(moment: datetime) -> str:
    """Fixed-width UTC form with milliseconds, e.g. ``2024-01-01T10:15:00.000Z``.

    String order of formatted values is chronological order.
    """
    utc = moment.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"
