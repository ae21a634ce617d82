"""Client-local persistence for CasiListo.

LocalStore keeps SyncInfo and the shopping list dataset in one JSON file.
LocalDataset is the in-memory dataset the app mutates; every mutation bumps
a monotonic version counter and notifies listeners (the orchestrator uses
this to schedule a debounced push).

A failed write raises StorageFull from LocalStore. LocalDataset turns it
into a non-blocking warning: the in-memory data is kept for the session.

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import copy
import errno
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from uuid6 import uuid7

from .errors import StorageFull
from .models import SyncData, SyncInfo
from .timestamp_utils import now_ms

logger = logging.getLogger(__name__)

__all__ = ["LocalStore", "LocalDataset"]


class LocalStore:
    """JSON file holding client sync state and dataset."""

    def __init__(self, path: Union[Path, str]) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._state = self._read()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                state = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Error reading local state {self.path}, starting fresh: {e}")
            return {}
        return state if isinstance(state, dict) else {}

    def _write(self) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(self._state, f)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Error saving local state to {self.path}: {e}")
            if e.errno in (errno.ENOSPC, errno.EDQUOT):
                raise StorageFull("Device storage is full, changes are kept until the app closes") from e
            raise StorageFull(f"Could not save local data: {e}") from e

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return copy.deepcopy(self._state.get(key, default))

    def set(self, key: str, value: Any) -> None:
        """Set a key and write the file.

        Raises:
            StorageFull: If the write failed (the value is kept in memory)
        """
        with self._lock:
            self._state[key] = copy.deepcopy(value)
            self._write()

    # ===== SyncInfo =====

    def load_sync_info(self) -> Optional[SyncInfo]:
        raw = self.get("sync")
        if not isinstance(raw, dict) or not raw.get("deviceId"):
            return None
        return SyncInfo.from_dict(raw)

    def save_sync_info(self, info: SyncInfo) -> None:
        self.set("sync", info.to_dict())

    # ===== Dataset =====

    def load_dataset(self) -> Optional[SyncData]:
        raw = self.get("data")
        if not isinstance(raw, dict):
            return None
        return SyncData.from_wire(raw)

    def load_last_modified(self) -> int:
        return int(self.get("lastModified") or 0)

    def save_dataset(self, data: SyncData, last_modified: int) -> None:
        with self._lock:
            self._state["data"] = data.to_wire(include_timestamp=False)
            self._state["lastModified"] = last_modified
            self._write()


class LocalDataset:
    """In-memory shopping list with a version counter.

    Attributes:
        version: Incremented on every local mutation
        last_modified: Time of the last local mutation (epoch ms)
        storage_warning: Last persistence failure message, or None
    """

    def __init__(self, store: Optional[LocalStore] = None) -> None:
        self.store = store
        self.data = (store.load_dataset() if store else None) or SyncData(baco_mode=False)
        self.last_modified = store.load_last_modified() if store else 0
        self.version = 0
        self.storage_warning: Optional[str] = None
        self._listeners: List[Callable[[int], None]] = []
        self._warning_listeners: List[Callable[[str], None]] = []
        self._lock = threading.RLock()

    def on_change(self, listener: Callable[[int], None]) -> None:
        """Register a listener called with the new version after each mutation."""
        self._listeners.append(listener)

    def on_storage_warning(self, listener: Callable[[str], None]) -> None:
        self._warning_listeners.append(listener)

    def _persist(self) -> None:
        if self.store is None:
            return
        try:
            self.store.save_dataset(self.data, self.last_modified)
            self.storage_warning = None
        except StorageFull as e:
            self.storage_warning = e.message
            for listener in list(self._warning_listeners):
                listener(e.message)

    def _changed(self) -> None:
        with self._lock:
            self.version += 1
            self.last_modified = now_ms()
            version = self.version
            self._persist()
        for listener in list(self._listeners):
            listener(version)

    # ===== Sync hooks =====

    def get_data_for_sync(self) -> Dict[str, Any]:
        """Wire payload of the current dataset."""
        with self._lock:
            return self.data.to_wire(include_timestamp=False)

    def apply_server_data(self, server: SyncData) -> None:
        """Replace local data with the canonical dataset.

        Items, categories and master list are never replaced by empty server
        values; favorites may legitimately be empty. This is not a local
        mutation, so change listeners are not called.
        """
        with self._lock:
            if server.items:
                self.data.items = copy.deepcopy(server.items)
            if server.categories:
                self.data.categories = copy.deepcopy(server.categories)
            if server.master_list:
                self.data.master_list = copy.deepcopy(server.master_list)
            self.data.favorites = copy.deepcopy(server.favorites)
            if server.baco_mode is not None:
                self.data.baco_mode = server.baco_mode
            self._persist()

    # ===== Mutations =====

    def add_item(
        self, text: str, category: str = "", quantity: int = 1
    ) -> Dict[str, Any]:
        item = {
            "id": uuid7().hex,
            "text": text.strip(),
            "category": category,
            "completed": False,
            "quantity": quantity,
        }
        with self._lock:
            self.data.items.append(item)
        self._changed()
        return copy.deepcopy(item)

    def update_item(self, item_id: str, **fields: Any) -> bool:
        with self._lock:
            for item in self.data.items:
                if item.get("id") == item_id:
                    item.update(fields)
                    break
            else:
                return False
        self._changed()
        return True

    def toggle_item(self, item_id: str) -> bool:
        with self._lock:
            item = next((i for i in self.data.items if i.get("id") == item_id), None)
            if item is None:
                return False
            completed = not item.get("completed", False)
        return self.update_item(item_id, completed=completed)

    def remove_item(self, item_id: str) -> bool:
        with self._lock:
            before = len(self.data.items)
            self.data.items = [i for i in self.data.items if i.get("id") != item_id]
            if len(self.data.items) == before:
                return False
        self._changed()
        return True

    def set_category(self, name: str, style: Any) -> None:
        with self._lock:
            self.data.categories[name] = style
        self._changed()

    def add_favorite(self, text: str, category: str = "") -> None:
        with self._lock:
            key = text.strip().lower()
            self.data.favorites = [
                f for f in self.data.favorites if str(f.get("text", "")).lower() != key
            ]
            self.data.favorites.append({"text": text.strip(), "category": category})
        self._changed()

    def set_baco_mode(self, enabled: bool) -> None:
        with self._lock:
            self.data.baco_mode = enabled
        self._changed()
