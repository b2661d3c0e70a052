"""Time helpers used for expiry handling and display."""

import datetime
from typing import Optional


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp; every datetime in the database is stored this way."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def days_until(when: datetime.datetime) -> int:
    remaining = when - utcnow()
    if remaining.total_seconds() <= 0:
        return 0
    return remaining.days


def format_expire_time(expire_at: Optional[datetime.datetime]) -> str:
    if expire_at is None:
        return "Never expires"
    if utcnow() > expire_at:
        return "Expired"
    return f"{expire_at.strftime('%Y-%m-%d')} ({days_until(expire_at)} days left)"


def format_datetime(value: Optional[datetime.datetime]) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M")


def format_duration(seconds: int) -> str:
    """Render a duration as '2h 5m', '5m 10s' or '42s'."""
    seconds = max(int(seconds), 0)
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
