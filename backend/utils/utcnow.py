"""Naive-UTC time helpers and calendar-day boundaries.

The database stores **naive** UTC datetimes. Daily counters and budget
windows reset at midnight in a configurable zone, so the day helpers convert
through ``zoneinfo`` and hand back naive UTC again.
"""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    """Return the current UTC time as a naive (tzinfo=None) datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utcfromtimestamp(ts: float) -> datetime:
    """Convert a POSIX timestamp to a naive UTC datetime."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def _as_local(now_utc: datetime, tz_name: str) -> datetime:
    aware = now_utc.replace(tzinfo=timezone.utc) if now_utc.tzinfo is None else now_utc
    return aware.astimezone(ZoneInfo(tz_name or "UTC"))


def local_day_key(now_utc: datetime, tz_name: str = "UTC") -> str:
    """YYYY-MM-DD of ``now_utc`` in the given zone."""
    return _as_local(now_utc, tz_name).date().isoformat()


def local_day_start(now_utc: datetime, tz_name: str = "UTC") -> datetime:
    """Naive UTC instant of the most recent local midnight."""
    local = _as_local(now_utc, tz_name)
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc).replace(tzinfo=None)


def next_local_midnight(now_utc: datetime, tz_name: str = "UTC") -> datetime:
    """Naive UTC instant of the next local midnight."""
    local = _as_local(now_utc, tz_name)
    tomorrow = (local + timedelta(days=1)).date()
    midnight = datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=local.tzinfo)
    return midnight.astimezone(timezone.utc).replace(tzinfo=None)
