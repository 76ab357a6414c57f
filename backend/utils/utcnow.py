"""Naive-UTC time helper.

Every timestamp the service stores or compares (``observed_at``,
``failed_at``, ``last_activity_time``) is a naive UTC ``datetime``.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current UTC time as a naive (tzinfo=None) datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
