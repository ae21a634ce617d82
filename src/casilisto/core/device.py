"""Device identity for CasiListo.

Each installation gets a stable identifier, generated once and persisted in
the local store, plus a human-readable default label that the user may edit.

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import logging
import platform
import socket
from typing import Optional

from uuid6 import uuid7

from .local_store import LocalStore
from .models import SyncInfo

logger = logging.getLogger(__name__)

__all__ = ["ensure_device_id", "ensure_sync_info", "describe_device"]

# Checked in order; the first match wins (Chrome's UA also mentions Safari)
BROWSERS = [
    ("Firefox", "Firefox"),
    ("Edg", "Edge"),
    ("OPR", "Opera"),
    ("Opera", "Opera"),
    ("Chrome", "Chrome"),
    ("Safari", "Safari"),
]

OPERATING_SYSTEMS = [
    ("iPhone", "iPhone"),
    ("iPad", "iPad"),
    ("Android", "Android"),
    ("Mac", "Mac"),
    ("Windows", "Windows"),
    ("Linux", "Linux"),
]

PLATFORM_NAMES = {"Darwin": "Mac", "Windows": "Windows", "Linux": "Linux"}


def describe_device(user_agent: Optional[str] = None) -> str:
    """Best-effort human label for this device.

    Args:
        user_agent: Browser user agent string; when None the label is
            derived from the running platform instead

    Returns:
        Label such as "Firefox on Android" or "kitchen-pc (Linux)"
    """
    if user_agent is not None:
        browser = next((name for token, name in BROWSERS if token in user_agent), "Browser")
        os_name = next(
            (name for token, name in OPERATING_SYSTEMS if token in user_agent), "Unknown"
        )
        return f"{browser} on {os_name}"

    system = platform.system()
    os_name = PLATFORM_NAMES.get(system, system or "Unknown")
    hostname = socket.gethostname().split(".")[0]
    return f"{hostname} ({os_name})" if hostname else os_name


def ensure_sync_info(store: LocalStore, user_agent: Optional[str] = None) -> SyncInfo:
    """Load SyncInfo, creating and persisting a fresh identity on first use."""
    info = store.load_sync_info()
    if info is not None:
        return info
    info = SyncInfo(device_id=uuid7().hex, device_name=describe_device(user_agent))
    store.save_sync_info(info)
    logger.info(f"Generated device id {info.device_id} ({info.device_name})")
    return info


def ensure_device_id(store: LocalStore) -> str:
    """Return the persisted device id, generating one on first call."""
    return ensure_sync_info(store).device_id
