"""Connectivity tracking for the sync client.

The runtime (UI shell, OS hook, or a probe against the server) reports
online/offline transitions here; the orchestrator and the offline queue
watcher subscribe to them.

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

__all__ = ["ConnectivityMonitor"]


class ConnectivityMonitor:
    """Holds the online flag and notifies listeners on transitions."""

    def __init__(
        self,
        online: bool = True,
        probe: Optional[Callable[[], bool]] = None,
    ) -> None:
        """Initialize monitor.

        Args:
            online: Initial state
            probe: Optional reachability check, e.g. SyncTransport.health
        """
        self._online = online
        self._probe = probe
        self._listeners: List[Callable[[bool], None]] = []
        self._lock = threading.Lock()

    @property
    def online(self) -> bool:
        return self._online

    def subscribe(self, listener: Callable[[bool], None]) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def set_online(self, online: bool) -> None:
        """Record the current state; listeners fire only on a change."""
        with self._lock:
            if online == self._online:
                return
            self._online = online
            listeners = list(self._listeners)
        logger.info("Connectivity restored" if online else "Connectivity lost")
        for listener in listeners:
            try:
                listener(online)
            except Exception as e:
                logger.exception(f"Connectivity listener failed: {e}")

    def probe(self) -> bool:
        """Run the reachability check (if any) and record its result."""
        if self._probe is None:
            return self._online
        reachable = bool(self._probe())
        self.set_online(reachable)
        return reachable
