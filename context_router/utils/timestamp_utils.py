"""
Timestamp utilities and the injectable clock used by every TTL check.
"""

import time
from datetime import datetime, timezone
from typing import Optional


class Clock:
    """Wall clock returning Unix timestamps in seconds."""

    def now(self) -> float:
        return time.time()


class ManualClock(Clock):
    """Clock that only moves when told to. Used for deterministic expiry."""

    def __init__(self, start: Optional[float] = None):
        self._now = start if start is not None else time.time()

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds

    def set(self, timestamp: float) -> None:
        self._now = timestamp


def to_iso(timestamp: Optional[float] = None) -> str:
    """Convert timestamp to an ISO 8601 UTC string.

    Args:
        timestamp: Unix timestamp in seconds (optional, uses current time if None)

    Returns:
        ISO formatted timestamp
    """
    if timestamp is None:
        timestamp = time.time()
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def to_millis(timestamp: Optional[float] = None) -> int:
    """Convert timestamp to integer milliseconds.

    Args:
        timestamp: Unix timestamp in seconds (optional, uses current time if None)

    Returns:
        Milliseconds since the epoch
    """
    if timestamp is None:
        timestamp = time.time()
    return int(timestamp * 1000)
