"""Timestamp utilities for CasiListo.

All sync timestamps are Unix epoch milliseconds, matching the wire format
used by existing clients.
"""

import time
from datetime import datetime, timezone
from typing import Optional


def now_ms() -> int:
    """Get current time as Unix epoch milliseconds."""
    return int(time.time() * 1000)


def next_timestamp(previous: Optional[int], now: Optional[int] = None) -> int:
    """Get a timestamp strictly greater than previous.

    Keeps server timestamps monotonic even if the wall clock steps back.

    Args:
        previous: Last timestamp handed out, or None
        now: Current time in ms (defaults to now_ms())

    Returns:
        max(now, previous + 1)
    """
    current = now_ms() if now is None else now
    if previous is None:
        return current
    return max(current, previous + 1)


def format_timestamp(ts: Optional[int]) -> str:
    """Format epoch milliseconds to local timezone for display.

    Args:
        ts: Epoch milliseconds or None

    Returns:
        Formatted string "YYYY-MM-DD HH:MM:SS" in local timezone,
        or "never" if ts is None or 0
    """
    if not ts:
        return "never"
    utc_dt = datetime.fromtimestamp(ts / 1000, tz=timezone.utc)
    local_dt = utc_dt.astimezone()
    return local_dt.strftime("%Y-%m-%d %H:%M:%S")
