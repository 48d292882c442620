"""
Timestamp utilities for consistent time handling across the system.
"""

import time
from datetime import datetime
from typing import Optional

MINUTE = 60
HOUR = 3600
DAY = 86400

# (max age in seconds, score) for record creation age
CREATION_RECENCY_BUCKETS = ((MINUTE, 1.0), (5 * MINUTE, 0.95), (HOUR, 0.85), (DAY, 0.7), (7 * DAY, 0.5), (30 * DAY, 0.3),
                            (90 * DAY, 0.2))
CREATION_RECENCY_FLOOR = 0.1

# (max age in seconds, bonus) for last access age
ACCESS_RECENCY_BONUS = ((MINUTE, 0.1), (HOUR, 0.05), (7 * DAY, 0.03))


def to_seconds_str(timestamp: Optional[int] = None) -> str:
    """Convert timestamp to seconds string format.

    Args:
        timestamp: Unix timestamp in seconds (optional, uses current time if None)

    Returns:
        Seconds timestamp as string
    """
    if timestamp is None:
        timestamp = time.time()
    return str(int(timestamp))


def to_datetime(timestamp: Optional[float] = None) -> datetime:
    """Convert timestamp to datetime object.

    Args:
        timestamp: Unix timestamp in seconds (optional, uses current time if None)

    Returns:
        datetime object
    """
    if timestamp is None:
        timestamp = time.time()
    return datetime.fromtimestamp(timestamp)


def age_seconds(moment: Optional[datetime], now: Optional[datetime] = None) -> float:
    if moment is None:
        return float('inf')
    now = now or datetime.now()
    return max(0.0, (now - moment).total_seconds())


def recency_score(created_at: datetime, last_accessed_at: Optional[datetime] = None, now: Optional[datetime] = None) -> float:
    """Two-part recency: a creation-age bucket plus a bonus for recent access, capped at 1.0."""
    created_age = age_seconds(created_at, now)
    score = CREATION_RECENCY_FLOOR
    for max_age, bucket_score in CREATION_RECENCY_BUCKETS:
        if created_age < max_age:
            score = bucket_score
            break

    access_age = age_seconds(last_accessed_at, now)
    for max_age, bonus in ACCESS_RECENCY_BONUS:
        if access_age < max_age:
            score += bonus
            break
    return min(1.0, score)


class Deadline:
    """Caller-supplied time budget for one request. None means no limit."""

    def __init__(self, seconds: Optional[float] = None):
        self.seconds = seconds
        self.started = time.monotonic()

    def remaining(self) -> Optional[float]:
        if self.seconds is None:
            return None
        return max(0.0, self.seconds - (time.monotonic() - self.started))

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0.0

    def cap(self, timeout: float) -> float:
        """Shrink a per-call timeout so it does not outlive the deadline."""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        return min(timeout, remaining)
