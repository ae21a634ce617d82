"""Merge utilities for CasiListo sync.

This module reconciles the server's dataset with a candidate pushed by a
device. All functions are pure: no I/O, inputs are never mutated.

Rules:
- Items and master list: union on id, the client's fields win when both
  sides hold the same id.
- Categories: key union, the client's style wins on collision.
- Favorites: keyed by case-insensitive text, client entries win.
- bacoMode: the client's value when it was sent, else the server's.

Nothing present on one side is ever removed by the other side, so several
idle devices can never erase each other's data.

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .models import SyncData

__all__ = [
    "MergeResult",
    "merge_items",
    "merge_categories",
    "merge_favorites",
    "merge_flag",
    "merge_sync_data",
]


@dataclass
class MergeResult:
    """Result of a dataset merge.

    Attributes:
        data: The merged dataset
        server_only_items: Items kept from the server that the client lacked
        client_changed_items: Ids present on both sides where the client's value won
    """

    data: SyncData
    server_only_items: int = 0
    client_changed_items: int = 0

    @property
    def differs_from_client(self) -> bool:
        """True if the merge added anything the client did not send."""
        return self.server_only_items > 0


def _item_key(item: Any) -> Any:
    """Merge key of an item, or None if it has no usable id."""
    if not isinstance(item, dict):
        return None
    item_id = item.get("id")
    if isinstance(item_id, (str, int, float)) and not isinstance(item_id, bool):
        return item_id
    return None


def merge_items(
    server_items: List[Dict[str, Any]], client_items: List[Dict[str, Any]]
) -> List[Dict[str, Any]]:
    """Union two item lists on id.

    Output order is the server's order (with client values substituted on
    shared ids) followed by client-only items in client order.

    Items without an id cannot be matched; they are kept once each,
    deduplicated by equality.

    Args:
        server_items: Items currently stored on the server
        client_items: Items from the pushing device

    Returns:
        Merged item list (deep copies)
    """
    merged: Dict[Any, Dict[str, Any]] = {}
    loose: List[Dict[str, Any]] = []

    for source in (server_items or [], client_items or []):
        for item in source:
            if not isinstance(item, dict):
                continue
            item_id = _item_key(item)
            if item_id is None:
                if item not in loose:
                    loose.append(item)
                continue
            # dict assignment keeps the first insertion position
            merged[item_id] = item

    return [copy.deepcopy(item) for item in list(merged.values()) + loose]


def merge_categories(
    server_categories: Dict[str, Any], client_categories: Dict[str, Any]
) -> Dict[str, Any]:
    """Shallow key union, client wins on collision."""
    return copy.deepcopy({**(server_categories or {}), **(client_categories or {})})


def merge_favorites(
    server_favorites: List[Dict[str, Any]], client_favorites: List[Dict[str, Any]]
) -> List[Dict[str, Any]]:
    """Union favorites on case-insensitive text, client wins on collision."""
    merged: Dict[str, Dict[str, Any]] = {}
    for source in (server_favorites or [], client_favorites or []):
        for fav in source:
            text = fav.get("text") if isinstance(fav, dict) else None
            if not isinstance(text, str):
                continue
            merged[text.lower()] = fav
    return [copy.deepcopy(fav) for fav in merged.values()]


def merge_flag(server_value: Optional[bool], client_value: Optional[bool]) -> bool:
    """Client value if it was sent, else the server's."""
    if client_value is not None:
        return bool(client_value)
    return bool(server_value)


def merge_sync_data(server: SyncData, client: SyncData) -> MergeResult:
    """Merge a pushed candidate into the server's dataset.

    Args:
        server: Canonical dataset currently stored
        client: Candidate dataset from the pushing device

    Returns:
        MergeResult with the combined dataset (updated_at left at the
        server's value; the caller assigns the new timestamp)
    """
    server_by_id = {_item_key(i): i for i in server.items if _item_key(i) is not None}
    client_by_id = {_item_key(i): i for i in client.items if _item_key(i) is not None}
    server_only = len(server_by_id.keys() - client_by_id.keys())
    shared = server_by_id.keys() & client_by_id.keys()
    changed = sum(1 for i in shared if server_by_id[i] != client_by_id[i])

    data = SyncData(
        items=merge_items(server.items, client.items),
        categories=merge_categories(server.categories, client.categories),
        master_list=merge_items(server.master_list, client.master_list),
        favorites=merge_favorites(server.favorites, client.favorites),
        baco_mode=merge_flag(server.baco_mode, client.baco_mode),
        updated_at=server.updated_at,
    )
    return MergeResult(
        data=data,
        server_only_items=server_only,
        client_changed_items=changed,
    )
