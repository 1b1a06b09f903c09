"""
UTC helpers so every timestamp the monitor produces is timezone-aware.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Get current UTC time with timezone information."""
    return datetime.now(timezone.utc)


def utc_isoformat(dt: Optional[datetime] = None) -> str:
    """Format a datetime (default: now) as an ISO 8601 UTC string with a Z suffix."""
    if dt is None:
        dt = utc_now()
    elif dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    return dt.isoformat().replace("+00:00", "Z")


def seconds_between(start: Optional[datetime], end: Optional[datetime] = None) -> Optional[float]:
    """Seconds elapsed from start to end (default: now), or None without a start."""
    if start is None:
        return None
    return ((end or utc_now()) - start).total_seconds()
