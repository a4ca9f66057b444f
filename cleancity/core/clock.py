"""
Time source injected into every service.

All timestamps are naive UTC datetimes.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time as a naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Clock:
    """Wall clock returning naive UTC."""

    def now(self) -> datetime:
        return utcnow()
