"""Data models for CasiListo sync.

This module defines the dataclasses exchanged between the server authority,
the HTTP contract and the client orchestrator: SyncData, Device, PushResult,
PullResult, SyncInfo and QueueEntry.

Wire format keys are camelCase; Python attributes are snake_case. The
to_wire()/from_wire() helpers translate between the two.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class SyncData:
    """One account's shopping list dataset.

    Attributes:
        items: Current shopping list items ({id, text, category, completed, quantity})
        categories: Category name -> style mapping
        master_list: Catalog of known products (same shape as items)
        favorites: Favorite products ({text, category}), keyed by lowercase text
        baco_mode: Shared display flag. None means "not sent" in a candidate
        updated_at: Server timestamp in epoch ms (0 for a candidate)
    """

    items: List[Dict[str, Any]] = field(default_factory=list)
    categories: Dict[str, Any] = field(default_factory=dict)
    master_list: List[Dict[str, Any]] = field(default_factory=list)
    favorites: List[Dict[str, Any]] = field(default_factory=list)
    baco_mode: Optional[bool] = None
    updated_at: int = 0

    @classmethod
    def from_wire(cls, data: Optional[Dict[str, Any]]) -> "SyncData":
        """Build from a wire payload. Missing keys become empty values."""
        data = data or {}
        baco_mode = data.get("bacoMode")
        return cls(
            items=copy.deepcopy(data.get("items") or []),
            categories=copy.deepcopy(data.get("categories") or {}),
            master_list=copy.deepcopy(data.get("masterList") or []),
            favorites=copy.deepcopy(data.get("favorites") or []),
            baco_mode=bool(baco_mode) if baco_mode is not None else None,
            updated_at=int(data.get("updatedAt") or 0),
        )

    def to_wire(self, include_timestamp: bool = True) -> Dict[str, Any]:
        """Serialize to the wire payload."""
        wire: Dict[str, Any] = {
            "items": copy.deepcopy(self.items),
            "categories": copy.deepcopy(self.categories),
            "masterList": copy.deepcopy(self.master_list),
            "favorites": copy.deepcopy(self.favorites),
            "bacoMode": bool(self.baco_mode),
        }
        if include_timestamp:
            wire["updatedAt"] = self.updated_at
        return wire

    def is_empty(self) -> bool:
        """True when the dataset holds no items."""
        return not self.items


@dataclass(frozen=True)
class Device:
    """A client installation linked to an account.

    Attributes:
        id: Stable client-generated identifier
        account_code: Code of the account this device is linked to
        name: Human-readable, user-editable label
        last_seen: Last login/push/pull in epoch ms
        created_at: First registration in epoch ms
    """

    id: str
    account_code: str
    name: str
    last_seen: int
    created_at: int

    def to_wire(self) -> Dict[str, Any]:
        """Serialize using the legacy device list columns."""
        return {
            "id": self.id,
            "name": self.name,
            "last_seen": self.last_seen,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class PushResult:
    """Outcome of a push.

    merged=True is the "conflict reconciled" signal: the server held data and
    combined it with the candidate. merged_data is then the canonical dataset
    the pushing device should apply locally.
    """

    server_updated_at: int
    merged: bool = False
    merged_data: Optional[SyncData] = None

    def to_wire(self) -> Dict[str, Any]:
        wire: Dict[str, Any] = {
            "success": True,
            "serverUpdatedAt": self.server_updated_at,
            "merged": self.merged,
        }
        if self.merged and self.merged_data is not None:
            wire["mergedData"] = self.merged_data.to_wire()
        return wire


@dataclass(frozen=True)
class PullResult:
    """Outcome of a pull. data is None when has_changes is False."""

    has_changes: bool
    server_updated_at: int
    data: Optional[SyncData] = None

    def to_wire(self) -> Dict[str, Any]:
        wire: Dict[str, Any] = {
            "success": True,
            "hasChanges": self.has_changes,
            "serverUpdatedAt": self.server_updated_at,
        }
        if self.has_changes and self.data is not None:
            wire["data"] = self.data.to_wire()
        return wire


@dataclass
class SyncInfo:
    """Client-local sync bookkeeping.

    Attributes:
        device_id: This installation's stable identifier
        device_name: User-editable device label
        user_code: Linked account code, or None when disconnected
        last_sync_at: Local time of the last successful exchange (epoch ms)
        server_updated_at: Pull cursor, the last server timestamp applied
        pending_changes: True from a local mutation until a push is acknowledged
    """

    device_id: str
    device_name: str
    user_code: Optional[str] = None
    last_sync_at: int = 0
    server_updated_at: int = 0
    pending_changes: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "deviceName": self.device_name,
            "userCode": self.user_code,
            "lastSyncAt": self.last_sync_at,
            "serverUpdatedAt": self.server_updated_at,
            "pendingChanges": self.pending_changes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncInfo":
        return cls(
            device_id=data["deviceId"],
            device_name=data.get("deviceName") or "",
            user_code=data.get("userCode"),
            last_sync_at=int(data.get("lastSyncAt") or 0),
            server_updated_at=int(data.get("serverUpdatedAt") or 0),
            pending_changes=bool(data.get("pendingChanges", False)),
        )


@dataclass(frozen=True)
class QueueEntry:
    """A push request that could not be delivered.

    Attributes:
        id: Autoincrement id, defines FIFO order
        url: Absolute request URL
        method: HTTP method
        headers: Request headers
        body: Serialized JSON body
        enqueued_at: Local time the entry was stored (epoch ms)
    """

    id: int
    url: str
    method: str
    headers: Dict[str, str]
    body: str
    enqueued_at: int
