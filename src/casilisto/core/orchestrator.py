"""Client-side sync orchestrator for CasiListo.

Owns the connection state machine of one device:

    DISCONNECTED  no account code stored locally
    ONLINE        linked, last operation succeeded, nothing pending
    PENDING       a local mutation has not been acknowledged by the server
    SYNCING       a push or pull is in flight
    OFFLINE       no connectivity; pushes go to the offline queue
    ERROR         last operation failed for a non-connectivity reason

Timers (debounce, poll, retry) are handles on a Scheduler so every one of
them can be cancelled on disconnect and shutdown. Network calls are made
outside the state lock; an in-flight flag per direction guarantees at most
one push and one pull at a time. A push never overtakes older pushes
waiting in the offline queue. Results of a request that was in flight while
the account was disconnected are dropped (generation counter).

Transport errors never escape this class. Operations return booleans and
report failures through status, last_error and the on_error listeners.

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable, Dict, List, Optional

from .connectivity import ConnectivityMonitor
from .device import ensure_sync_info
from .errors import (
    NetworkError,
    ProtocolError,
    RateLimited,
    StorageFull,
    SyncError,
)
from .local_store import LocalDataset, LocalStore
from .models import Device, PullResult, PushResult
from .offline_queue import OfflineQueue, QueueWatcher
from .scheduler import Scheduler, TimerHandle
from .timestamp_utils import now_ms
from .transport import PreparedRequest, SyncTransport
from .validation import (
    ValidationError,
    normalize_code,
    validate_account_code,
    validate_device_name,
)

logger = logging.getLogger(__name__)

__all__ = ["SyncStatus", "status_label", "SyncOrchestrator"]

DEFAULT_RATE_LIMIT_RETRY_SECONDS = 60.0


class SyncStatus(Enum):
    DISCONNECTED = "disconnected"
    ONLINE = "online"
    SYNCING = "syncing"
    OFFLINE = "offline"
    PENDING = "pending"
    ERROR = "error"


def status_label(status: SyncStatus) -> str:
    """Human-readable label for a status."""
    if status is SyncStatus.DISCONNECTED:
        return "Not linked"
    if status is SyncStatus.ONLINE:
        return "Synced"
    if status is SyncStatus.SYNCING:
        return "Syncing..."
    if status is SyncStatus.OFFLINE:
        return "Offline, changes will be sent later"
    if status is SyncStatus.PENDING:
        return "Changes pending"
    if status is SyncStatus.ERROR:
        return "Sync error"
    raise ValueError(f"Unknown sync status: {status!r}")


class SyncOrchestrator:
    """Drives push/pull for one device.

    The embedder feeds it events (local mutations through the dataset,
    foreground/background and connectivity changes) and drives the scheduler.
    The queue watcher's background thread is started by the embedder too, so
    queued requests keep draining whatever happens to this object.
    """

    def __init__(
        self,
        store: LocalStore,
        dataset: LocalDataset,
        transport: SyncTransport,
        scheduler: Scheduler,
        queue: OfflineQueue,
        connectivity: Optional[ConnectivityMonitor] = None,
        watcher: Optional[QueueWatcher] = None,
        debounce_seconds: float = 1.0,
        poll_interval_seconds: float = 60.0,
        max_retries: int = 4,
        retry_base_seconds: float = 1.0,
    ) -> None:
        self.store = store
        self.dataset = dataset
        self.transport = transport
        self.scheduler = scheduler
        self.queue = queue
        self.connectivity = connectivity or ConnectivityMonitor()
        self.watcher = watcher or QueueWatcher(
            queue, lambda request: self.transport.send(request), self.connectivity
        )
        self.debounce_seconds = debounce_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds

        self.info = ensure_sync_info(store)
        self.status = SyncStatus.DISCONNECTED
        self.last_error: Optional[str] = None
        self.last_merged = False
        self.devices: List[Device] = []
        self.foreground = True

        self._lock = threading.RLock()
        self._generation = 0
        self._dirty = self.info.pending_changes
        self._condition: Optional[str] = None
        self._push_in_flight = False
        self._pull_in_flight = False
        self._debounce_timer: Optional[TimerHandle] = None
        self._poll_timer: Optional[TimerHandle] = None
        self._retry_timers: Dict[str, TimerHandle] = {}
        self._retry_attempts: Dict[str, int] = {"push": 0, "pull": 0}
        self._closed = False

        self._status_listeners: List[Callable[[SyncStatus], None]] = []
        self._error_listeners: List[Callable[[str], None]] = []
        self._delivered_listeners: List[Callable[[int], None]] = []
        self._warning_listeners: List[Callable[[str], None]] = []

        self.dataset.on_change(lambda version: self.notify_local_change())
        self.dataset.on_storage_warning(self._warn)
        self._unsubscribe = self.connectivity.subscribe(self._on_connectivity_change)
        self.watcher.add_listener(self._on_queue_delivered)
        self._settle_status()

    # ===== Listeners =====

    def on_status_change(self, listener: Callable[[SyncStatus], None]) -> None:
        self._status_listeners.append(listener)

    def on_error(self, listener: Callable[[str], None]) -> None:
        self._error_listeners.append(listener)

    def on_queued_delivered(self, listener: Callable[[int], None]) -> None:
        """Register a listener fired when previously queued changes reach the server."""
        self._delivered_listeners.append(listener)

    def on_warning(self, listener: Callable[[str], None]) -> None:
        """Register a listener for non-blocking warnings (e.g. storage full)."""
        self._warning_listeners.append(listener)

    def _emit(self, listeners: List[Callable], value) -> None:
        for listener in list(listeners):
            try:
                listener(value)
            except Exception as e:
                logger.exception(f"Sync listener failed: {e}")

    def _report_error(self, message: str) -> None:
        logger.error(f"Sync error: {message}")
        self.last_error = message
        self._emit(self._error_listeners, message)

    def _warn(self, message: str) -> None:
        logger.warning(f"Sync warning: {message}")
        self._emit(self._warning_listeners, message)

    # ===== State helpers =====

    @property
    def is_linked(self) -> bool:
        return bool(self.info.user_code)

    @property
    def has_pending_changes(self) -> bool:
        """True until the server acknowledged every local change, queued ones included."""
        return self._dirty or len(self.queue) > 0

    def _settle_status(self) -> None:
        with self._lock:
            if not self.is_linked:
                status = SyncStatus.DISCONNECTED
            elif self._push_in_flight or self._pull_in_flight:
                status = SyncStatus.SYNCING
            elif not self.connectivity.online or self._condition == "offline":
                status = SyncStatus.OFFLINE
            elif self._condition == "error":
                status = SyncStatus.ERROR
            elif self.has_pending_changes:
                status = SyncStatus.PENDING
            else:
                status = SyncStatus.ONLINE
            if status is self.status:
                return
            logger.debug(f"Sync status {self.status.value} -> {status.value}")
            self.status = status
        self._emit(self._status_listeners, status)

    def _save_info(self) -> None:
        self.info.pending_changes = self.has_pending_changes
        try:
            self.store.save_sync_info(self.info)
        except StorageFull as e:
            self._warn(e.message)

    def _cancel_timer(self, handle: Optional[TimerHandle]) -> None:
        if handle is not None:
            handle.cancel()

    def _cancel_all_timers(self) -> None:
        self._cancel_timer(self._debounce_timer)
        self._cancel_timer(self._poll_timer)
        for handle in self._retry_timers.values():
            handle.cancel()
        self._debounce_timer = None
        self._poll_timer = None
        self._retry_timers.clear()
        self._retry_attempts = {"push": 0, "pull": 0}

    def _schedule_poll(self) -> None:
        with self._lock:
            self._cancel_timer(self._poll_timer)
            self._poll_timer = None
            if self.is_linked and self.foreground and not self._closed:
                self._poll_timer = self.scheduler.call_later(
                    self.poll_interval_seconds, self._poll_tick, name="sync-poll"
                )

    def _poll_tick(self) -> None:
        self._poll_timer = None
        self.pull()
        self._schedule_poll()

    def _schedule_debounce(self) -> None:
        with self._lock:
            self._cancel_timer(self._debounce_timer)
            self._debounce_timer = self.scheduler.call_later(
                self.debounce_seconds, self._debounce_fired, name="sync-debounce"
            )

    def _debounce_fired(self) -> None:
        self._debounce_timer = None
        self.push()

    def _schedule_retry(self, kind: str, delay: float) -> None:
        with self._lock:
            self._cancel_timer(self._retry_timers.get(kind))
            action = self.push if kind == "push" else self.pull
            self._retry_timers[kind] = self.scheduler.call_later(
                delay, action, name=f"sync-{kind}-retry"
            )

    def _handle_failure(self, kind: str, error: SyncError) -> None:
        """Classify a failed push or pull and plan recovery."""
        with self._lock:
            if isinstance(error, RateLimited):
                delay = error.retry_after or DEFAULT_RATE_LIMIT_RETRY_SECONDS
                logger.warning(f"Sync {kind} rate limited, retrying in {delay}s")
                self.last_error = error.message
                self._condition = "error"
                self._schedule_retry(kind, delay)
                return
            if isinstance(error, ProtocolError):
                self._condition = "error"
                attempt = self._retry_attempts[kind]
                if attempt < self.max_retries:
                    delay = self.retry_base_seconds * (2 ** attempt)
                    self._retry_attempts[kind] = attempt + 1
                    self.last_error = error.message
                    logger.warning(
                        f"Sync {kind} failed ({error.message}), "
                        f"retry {attempt + 1}/{self.max_retries} in {delay}s"
                    )
                    self._schedule_retry(kind, delay)
                    return
                self._retry_attempts[kind] = 0
            self._condition = "error"
        self._report_error(error.message)

    def _succeeded(self, kind: str) -> None:
        self._retry_attempts[kind] = 0
        self._condition = None
        self.last_error = None
        self.info.last_sync_at = now_ms()

    # ===== Triggers =====

    def start(self) -> None:
        """Begin polling and run an initial sync if linked."""
        if not self.is_linked:
            return
        self._schedule_poll()
        self.scheduler.call_soon(self.sync_now, name="sync-initial")

    def notify_local_change(self) -> None:
        """Record a local mutation and schedule a debounced push."""
        with self._lock:
            if not self.is_linked or self._closed:
                return
            self._dirty = True
            self._save_info()
            self._schedule_debounce()
        self._settle_status()

    def set_foreground(self, foreground: bool) -> None:
        """Visibility change from the runtime."""
        with self._lock:
            if foreground == self.foreground:
                return
            self.foreground = foreground
            if not self.is_linked:
                return
            if foreground:
                self.scheduler.call_soon(self.pull, name="sync-foreground-pull")
                self._schedule_poll()
                return
            self._cancel_timer(self._poll_timer)
            self._poll_timer = None
            if self._dirty:
                self._cancel_timer(self._debounce_timer)
                self._debounce_timer = None
                self.scheduler.call_soon(self.push, name="sync-background-push")

    def set_online(self, online: bool) -> None:
        """Connectivity change from the runtime."""
        self.connectivity.set_online(online)

    def _on_connectivity_change(self, online: bool) -> None:
        if online and self.is_linked:
            self.scheduler.call_soon(self._reconnect, name="sync-reconnect")
        self._settle_status()

    def _reconnect(self) -> None:
        with self._lock:
            if not self.is_linked or self._closed:
                return
            self._condition = None
        self.watcher.drain_now()
        # push() queues behind whatever this drain left undelivered
        if self._dirty:
            self.push()
        self.pull()

    def _on_queue_delivered(self, count: int) -> None:
        logger.info(f"{count} queued changes delivered")
        with self._lock:
            active = self.is_linked and not self._closed
            if active:
                self._save_info()
        self._emit(self._delivered_listeners, count)
        if active:
            self._settle_status()
            self.scheduler.call_soon(self.pull, name="sync-after-queue")

    # ===== Operations =====

    def create_account(self) -> bool:
        """Create an account, upload the local list to it and link this device."""
        with self._lock:
            if self._push_in_flight:
                return False
            self._push_in_flight = True
        try:
            code = self.transport.create_account()
            result = self.transport.push(
                code,
                self.info.device_id,
                self.info.device_name,
                self.dataset.get_data_for_sync(),
                self.dataset.last_modified or now_ms(),
            )
            data = self.transport.login(code, self.info.device_id, self.info.device_name)
        except SyncError as e:
            self._report_error(e.message)
            return False
        finally:
            with self._lock:
                self._push_in_flight = False

        with self._lock:
            self._generation += 1
            self.dataset.apply_server_data(data)
            self.info.user_code = code
            self.info.server_updated_at = max(result.server_updated_at, data.updated_at)
            self._dirty = False
            self._succeeded("push")
            self._save_info()
        logger.info(f"Created account {code}")
        self._schedule_poll()
        self._settle_status()
        return True

    def link_device(self, code: str) -> bool:
        """Link this device to an existing account."""
        try:
            normalized = normalize_code(code)
            validate_account_code(normalized)
        except ValidationError as e:
            self._report_error(e.message)
            return False

        try:
            data = self.transport.login(normalized, self.info.device_id, self.info.device_name)
        except SyncError as e:
            self._report_error(e.message)
            return False

        with self._lock:
            self._generation += 1
            self._cancel_all_timers()
            self.info.user_code = normalized
            self.info.server_updated_at = data.updated_at
            self._condition = None
            self.last_error = None
            if data.items:
                self.dataset.apply_server_data(data)
                self._dirty = False
            else:
                # Server list is empty, upload ours
                self._dirty = True
            self.info.last_sync_at = now_ms()
            self._save_info()
        logger.info(f"Linked device {self.info.device_id} to account {normalized}")
        self._settle_status()
        if self._dirty:
            self.push()
        self._schedule_poll()
        return True

    def _build_push_request(self) -> PreparedRequest:
        return self.transport.build_push_request(
            self.info.user_code,
            self.info.device_id,
            self.info.device_name,
            self.dataset.get_data_for_sync(),
            self.dataset.last_modified or now_ms(),
        )

    def _queue_push(self, request: PreparedRequest, version: int) -> None:
        self.queue.enqueue(request)
        self._dirty = self.dataset.version != version
        self._save_info()

    def push(self) -> bool:
        """Send the local dataset to the server for merging.

        Older pushes waiting in the offline queue are drained first. If any
        of them is still undelivered afterwards, this push is queued behind
        them instead of being sent.

        Returns:
            True if the server acknowledged the push. False if the push was
            suppressed, queued for later delivery, or failed.
        """
        with self._lock:
            if not self.is_linked or self._closed:
                return False
            if self._push_in_flight:
                logger.debug("Push already in flight")
                return False
            self._cancel_timer(self._debounce_timer)
            self._debounce_timer = None
            self._cancel_timer(self._retry_timers.pop("push", None))
            generation = self._generation
            version = self.dataset.version
            offline = not self.connectivity.online
            if offline:
                self._queue_push(self._build_push_request(), version)
            else:
                self._push_in_flight = True
        self._settle_status()
        if offline:
            return False

        request: Optional[PreparedRequest] = None
        result: Optional[PushResult] = None
        error: Optional[SyncError] = None
        queued = False
        completed = False
        try:
            if len(self.queue) > 0:
                self.watcher.drain_now()
            with self._lock:
                if generation == self._generation:
                    version = self.dataset.version
                    request = self._build_push_request()
                    if len(self.queue) > 0:
                        logger.info("Older changes still queued, queueing this push behind them")
                        self._queue_push(request, version)
                        queued = True
                        error = self.queue.last_error
            if request is not None and not queued:
                result = self.transport.parse_push_response(self.transport.send(request))
            completed = True
        except SyncError as e:
            error = e
            completed = True
        finally:
            with self._lock:
                self._push_in_flight = False
            if not completed:
                self._settle_status()

        with self._lock:
            current = generation == self._generation
            if current and result is not None:
                self._apply_push_result(result, version)
            elif current and isinstance(error, NetworkError):
                if not queued:
                    logger.info(f"Push failed offline, queued for later: {error.message}")
                    self._queue_push(request, version)
                self._condition = "offline"
        if not current:
            logger.debug("Ignoring push result for a disconnected account")
        elif queued and error is None:
            # The queue was busy draining elsewhere
            self.watcher.trigger()
        elif error is not None and not isinstance(error, NetworkError):
            self._handle_failure("push", error)
        self._settle_status()
        return current and result is not None

    def _apply_push_result(self, result: PushResult, version: int) -> None:
        self._succeeded("push")
        unchanged = self.dataset.version == version
        self.last_merged = result.merged
        if result.merged and result.merged_data is not None and unchanged:
            self.dataset.apply_server_data(result.merged_data)
        self.info.server_updated_at = max(self.info.server_updated_at, result.server_updated_at)
        self._dirty = not unchanged
        self._save_info()
        if self._dirty:
            self._schedule_debounce()
        if result.merged:
            logger.info("Push merged with changes from other devices")

    def pull(self) -> bool:
        """Fetch the canonical dataset if it changed since the last exchange."""
        with self._lock:
            if not self.is_linked or self._closed:
                return False
            if self._pull_in_flight:
                logger.debug("Pull already in flight")
                return False
            if not self.connectivity.online:
                return False
            self._cancel_timer(self._retry_timers.pop("pull", None))
            generation = self._generation
            since = self.info.server_updated_at
            version = self.dataset.version
            self._pull_in_flight = True
        self._settle_status()

        result: Optional[PullResult] = None
        error: Optional[SyncError] = None
        completed = False
        try:
            result = self.transport.pull(
                self.info.user_code, self.info.device_id, self.info.device_name, since
            )
            completed = True
        except SyncError as e:
            error = e
            completed = True
        finally:
            with self._lock:
                self._pull_in_flight = False
            if not completed:
                self._settle_status()

        with self._lock:
            current = generation == self._generation
            if current and result is not None:
                self._apply_pull_result(result, version)
            elif current and isinstance(error, NetworkError):
                logger.info(f"Pull failed, server unreachable: {error.message}")
                self._condition = "offline"
        if not current:
            logger.debug("Ignoring pull result for a disconnected account")
        elif error is not None and not isinstance(error, NetworkError):
            self._handle_failure("pull", error)
        self._settle_status()
        return current and result is not None

    def _apply_pull_result(self, result: PullResult, version: int) -> None:
        self._succeeded("pull")
        if result.has_changes and result.data is not None:
            if self._dirty or self.dataset.version != version:
                # Local edits win the race; the next push merges both sides
                self._dirty = True
                self._schedule_debounce()
            elif len(self.queue) > 0:
                logger.debug("Keeping the local list until queued changes are delivered")
            else:
                self.dataset.apply_server_data(result.data)
        self.info.server_updated_at = max(self.info.server_updated_at, result.server_updated_at)
        self._save_info()

    def sync_now(self) -> bool:
        """Push pending changes, then pull."""
        pushed = self.push() if self._dirty else True
        pulled = self.pull()
        return pushed and pulled

    def fetch_devices(self) -> Optional[List[Device]]:
        """Devices linked to the account, most recently seen first."""
        if not self.is_linked:
            return None
        try:
            self.devices = self.transport.list_devices(self.info.user_code)
        except SyncError as e:
            self._report_error(e.message)
            return None
        return list(self.devices)

    def unlink_device(self, device_id: str) -> bool:
        """Unlink a device; unlinking this device disconnects it locally."""
        if not self.is_linked:
            return False
        try:
            removed = self.transport.unlink_device(self.info.user_code, device_id)
        except SyncError as e:
            self._report_error(e.message)
            return False
        self.devices = [d for d in self.devices if d.id != device_id]
        if device_id == self.info.device_id:
            self.disconnect()
        return removed

    def rename_device(self, name: str) -> bool:
        """Change this device's label; the server learns it on the next exchange."""
        new_name = validate_device_name(name, "")
        if not new_name:
            self._report_error("Device name cannot be empty")
            return False
        with self._lock:
            self.info.device_name = new_name
            self._save_info()
        return True

    def disconnect(self) -> None:
        """Forget the account locally. Local list data is kept."""
        with self._lock:
            self._generation += 1
            self._cancel_all_timers()
            self._push_in_flight = False
            self._pull_in_flight = False
            self._dirty = False
            self._condition = None
            self.info.user_code = None
            self.info.server_updated_at = 0
            self.info.last_sync_at = 0
            self.devices = []
            self._save_info()
        logger.info("Disconnected from sync account")
        self._settle_status()

    def shutdown(self) -> None:
        """Stop timers and hand pending changes to the offline queue.

        Nothing here waits for the network: the queue watcher delivers the
        flushed request now or on the next start.
        """
        with self._lock:
            if self._closed:
                return
            if self.is_linked and self._dirty:
                self._queue_push(self._build_push_request(), self.dataset.version)
                self.watcher.trigger()
            self._closed = True
            self._generation += 1
            self._cancel_all_timers()
            self._unsubscribe()
        logger.info("Sync orchestrator shut down")
