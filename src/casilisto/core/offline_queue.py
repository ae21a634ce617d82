"""Durable offline queue for undelivered push requests.

Push requests that cannot be delivered because the device is offline are
stored in a small SQLite file and replayed in FIFO order once connectivity
returns. An entry is removed only after its request succeeded; entries are
never dropped silently.

QueueWatcher drains the queue in the background, independently of the
orchestrator's lifecycle. Because entries live on disk, anything queued
before a restart is picked up by the next watcher.

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from .connectivity import ConnectivityMonitor
from .errors import NetworkError, RateLimited, SyncError
from .models import QueueEntry
from .timestamp_utils import now_ms
from .transport import PreparedRequest

logger = logging.getLogger(__name__)

__all__ = ["OfflineQueue", "QueueWatcher"]

SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT NOT NULL,
    method TEXT NOT NULL,
    headers TEXT NOT NULL DEFAULT '{}',
    body TEXT,
    enqueued_at INTEGER NOT NULL
);
"""


class OfflineQueue:
    """FIFO of undelivered requests stored in SQLite."""

    def __init__(self, path: Union[Path, str]) -> None:
        path_str = str(path)
        if path_str != ":memory:":
            Path(path_str).parent.mkdir(parents=True, exist_ok=True)
        self.path = path_str
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(path_str, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)
        self._drain_lock = threading.Lock()
        self.last_error: Optional[SyncError] = None

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __len__(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) AS n FROM sync_queue").fetchone()
        return int(row["n"])

    def enqueue(self, request: PreparedRequest) -> int:
        """Store a request. Returns the new entry id."""
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT INTO sync_queue (url, method, headers, body, enqueued_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    request.url,
                    request.method,
                    json.dumps(request.headers),
                    request.body,
                    now_ms(),
                ),
            )
            entry_id = int(cursor.lastrowid)
        logger.info(f"Queued {request.method} {request.url} for later delivery (entry {entry_id})")
        return entry_id

    def entries(self) -> List[QueueEntry]:
        """All entries, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, url, method, headers, body, enqueued_at FROM sync_queue ORDER BY id"
            ).fetchall()
        return [
            QueueEntry(
                id=int(row["id"]),
                url=row["url"],
                method=row["method"],
                headers=json.loads(row["headers"] or "{}"),
                body=row["body"],
                enqueued_at=int(row["enqueued_at"]),
            )
            for row in rows
        ]

    def remove(self, entry_id: int) -> bool:
        with self._lock:
            cursor = self._conn.execute("DELETE FROM sync_queue WHERE id = ?", (entry_id,))
        return cursor.rowcount > 0

    def drain(self, send: Callable[[PreparedRequest], Dict[str, Any]]) -> int:
        """Replay entries in FIFO order.

        Each entry is removed right after its request succeeds. Any failure
        stops the drain so the remaining entries keep their order for the
        next attempt; the error is kept in last_error until the next drain.

        Args:
            send: Function sending one request, e.g. SyncTransport.send

        Returns:
            Number of entries delivered
        """
        if not self._drain_lock.acquire(blocking=False):
            logger.debug("Queue drain already running")
            return 0
        delivered = 0
        self.last_error = None
        try:
            for entry in self.entries():
                request = PreparedRequest(
                    url=entry.url,
                    method=entry.method,
                    headers=entry.headers,
                    body=entry.body,
                )
                try:
                    send(request)
                except (NetworkError, RateLimited) as e:
                    logger.info(f"Queue drain paused at entry {entry.id}: {e}")
                    self.last_error = e
                    break
                except SyncError as e:
                    logger.warning(f"Queued entry {entry.id} failed, keeping it: {e}")
                    self.last_error = e
                    break
                self.remove(entry.id)
                delivered += 1
        finally:
            self._drain_lock.release()
        if delivered:
            logger.info(f"Delivered {delivered} queued requests, {len(self)} remaining")
        return delivered


class QueueWatcher:
    """Background drainer for an OfflineQueue.

    Drains when connectivity comes back, every interval_seconds while online,
    and whenever trigger() is called. on_delivered(count) fires once per
    drain that delivered at least one entry.
    """

    def __init__(
        self,
        queue: OfflineQueue,
        send: Callable[[PreparedRequest], Dict[str, Any]],
        connectivity: ConnectivityMonitor,
        interval_seconds: float = 30.0,
        on_delivered: Optional[Callable[[int], None]] = None,
    ) -> None:
        self.queue = queue
        self.send = send
        self.connectivity = connectivity
        self.interval_seconds = interval_seconds
        self._listeners: List[Callable[[int], None]] = []
        if on_delivered is not None:
            self._listeners.append(on_delivered)
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    def add_listener(self, listener: Callable[[int], None]) -> None:
        self._listeners.append(listener)

    def drain_now(self) -> int:
        """Drain synchronously if online. Returns delivered count."""
        if not self.connectivity.online or len(self.queue) == 0:
            return 0
        delivered = self.queue.drain(self.send)
        if delivered:
            for listener in list(self._listeners):
                try:
                    listener(delivered)
                except Exception as e:
                    logger.exception(f"Queue delivery listener failed: {e}")
        return delivered

    def trigger(self) -> None:
        """Ask the background thread to drain as soon as possible."""
        self._wake.set()

    def _on_connectivity(self, online: bool) -> None:
        if online:
            self.trigger()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._unsubscribe = self.connectivity.subscribe(self._on_connectivity)
        self._thread = threading.Thread(target=self._run, name="sync-queue-watcher", daemon=True)
        self._thread.start()
        # Entries left over from a previous run
        self.trigger()

    def _run(self) -> None:
        while not self._stop.is_set():
            self._wake.wait(self.interval_seconds)
            self._wake.clear()
            if self._stop.is_set():
                return
            try:
                self.drain_now()
            except Exception as e:
                logger.exception(f"Queue drain failed: {e}")

    def stop(self) -> None:
        self._stop.set()
        self._wake.set()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
