"""Per-address sliding window rate limiting for the sync server.

Each RateLimiter instance owns its own bounded map of source address ->
recent request times. Addresses whose newest request has left the window
are evicted periodically and whenever the map grows past max_entries.

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict

from .errors import RateLimited

logger = logging.getLogger(__name__)

__all__ = ["RateLimiter"]


class RateLimiter:
    """Sliding window request counter keyed by source address.

    Attributes:
        window_seconds: Length of the sliding window
        max_requests: Requests allowed per address inside the window
        max_entries: Size at which a forced eviction pass runs
    """

    def __init__(
        self,
        window_seconds: float = 60.0,
        max_requests: int = 100,
        max_entries: int = 10_000,
        sweep_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.max_entries = max_entries
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._hits)

    def hit(self, address: str) -> None:
        """Count one request from address.

        Raises:
            RateLimited: If the address exceeded max_requests in the window
        """
        now = self._clock()
        with self._lock:
            if (
                now - self._last_sweep >= self.sweep_interval_seconds
                or len(self._hits) >= self.max_entries
            ):
                self._evict(now)
            if address not in self._hits and len(self._hits) >= self.max_entries:
                # Every entry is active: forget the least recently seen address
                oldest = min(
                    self._hits,
                    key=lambda addr: self._hits[addr][-1] if self._hits[addr] else 0.0,
                )
                del self._hits[oldest]

            hits = self._hits.get(address)
            if hits is None:
                hits = deque()
                self._hits[address] = hits
            cutoff = now - self.window_seconds
            while hits and hits[0] <= cutoff:
                hits.popleft()

            if len(hits) >= self.max_requests:
                retry_after = max(1.0, hits[0] + self.window_seconds - now)
                logger.warning(
                    f"Rate limit exceeded for {address}: "
                    f"{len(hits)} requests in {self.window_seconds:.0f}s"
                )
                raise RateLimited(retry_after)
            hits.append(now)

    def _evict(self, now: float) -> int:
        """Drop addresses with no request inside the window. Lock must be held."""
        cutoff = now - self.window_seconds
        stale = [addr for addr, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for addr in stale:
            del self._hits[addr]
        self._last_sweep = now
        if stale:
            logger.debug(f"Evicted {len(stale)} idle rate limit entries")
        return len(stale)

    def sweep(self) -> int:
        """Evict idle addresses now. Returns the number evicted."""
        with self._lock:
            return self._evict(self._clock())

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
