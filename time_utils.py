from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    """Current UTC time as an ISO string with a trailing Z (millisecond precision)."""
    return utc_now().isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def bucket_keys(now: Optional[datetime] = None) -> dict:
    """Return the hour/day/month bucket keys used by the usage counters."""
    now = now or utc_now()
    return {
        'hourly': now.strftime('%Y-%m-%dT%H'),
        'daily': now.strftime('%Y-%m-%d'),
        'monthly': now.strftime('%Y-%m'),
    }


def next_hour(now: Optional[datetime] = None) -> datetime:
    now = now or utc_now()
    return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)


def next_midnight(now: Optional[datetime] = None) -> datetime:
    now = now or utc_now()
    return now.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)
