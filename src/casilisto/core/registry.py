"""Device registry for CasiListo sync.

Tracks which devices are linked to each account, enforces the per-account
device cap and expires devices that have not been seen for a long time.

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import logging
import threading
from typing import List, Optional

from .database import Database
from .errors import DeviceLimitExceeded
from .models import Device
from .timestamp_utils import now_ms

logger = logging.getLogger(__name__)

__all__ = [
    "DeviceRegistry",
    "StaleDeviceSweeper",
    "DEFAULT_DEVICE_LIMIT",
    "DEFAULT_STALE_AGE_MS",
    "DEFAULT_SWEEP_INTERVAL_SECONDS",
]

DEFAULT_DEVICE_LIMIT = 10
DEFAULT_STALE_AGE_MS = 30 * 24 * 60 * 60 * 1000
DEFAULT_SWEEP_INTERVAL_SECONDS = 24 * 60 * 60


class DeviceRegistry:
    """Per-account device bookkeeping on top of the server database."""

    def __init__(self, db: Database, device_limit: int = DEFAULT_DEVICE_LIMIT) -> None:
        self.db = db
        self.device_limit = device_limit

    def register(
        self,
        account_code: str,
        device_id: str,
        device_name: str,
        seen_at: Optional[int] = None,
    ) -> Device:
        """Link a device to an account, or refresh an already linked one.

        A device already linked to this account is always refreshed. A new
        device is rejected when the account is at the cap; nothing is written
        in that case.

        Raises:
            DeviceLimitExceeded: If the device is new and the cap is reached
        """
        seen_at = now_ms() if seen_at is None else seen_at
        with self.db.transaction():
            existing = self.db.get_device(device_id)
            known = existing is not None and existing.account_code == account_code
            if not known:
                count = self.db.count_devices(account_code)
                if count >= self.device_limit:
                    logger.warning(
                        f"Device limit reached for account {account_code}: "
                        f"rejecting device {device_id} ({count}/{self.device_limit})"
                    )
                    raise DeviceLimitExceeded(self.device_limit)
                if existing is not None:
                    logger.info(
                        f"Moving device {device_id} from account "
                        f"{existing.account_code} to {account_code}"
                    )
                else:
                    logger.info(f"Linking new device {device_id} ({device_name}) to {account_code}")
            self.db.upsert_device(account_code, device_id, device_name, seen_at)
        return Device(
            id=device_id,
            account_code=account_code,
            name=device_name,
            last_seen=seen_at,
            created_at=existing.created_at if existing is not None else seen_at,
        )

    def list(self, account_code: str) -> List[Device]:
        """Devices of an account, most recently seen first."""
        return self.db.list_devices(account_code)

    def count(self, account_code: str) -> int:
        return self.db.count_devices(account_code)

    def unlink(self, account_code: str, device_id: str) -> bool:
        """Remove a device from an account.

        Returns:
            True if removed, False if the device was not linked to the account
        """
        removed = self.db.delete_device(account_code, device_id)
        if removed:
            logger.info(f"Device {device_id} unlinked from {account_code}")
        return removed

    def sweep_stale(self, max_age_ms: int = DEFAULT_STALE_AGE_MS) -> int:
        """Delete devices not seen for longer than max_age_ms.

        Returns:
            Number of devices removed
        """
        cutoff = now_ms() - max_age_ms
        removed = self.db.delete_devices_seen_before(cutoff)
        if removed:
            logger.info(f"Removed {removed} inactive devices")
        else:
            logger.debug("No inactive devices to remove")
        return removed


class StaleDeviceSweeper:
    """Runs DeviceRegistry.sweep_stale at start and then on a fixed interval."""

    def __init__(
        self,
        registry: DeviceRegistry,
        max_age_ms: int = DEFAULT_STALE_AGE_MS,
        interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self.registry = registry
        self.max_age_ms = max_age_ms
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0
        self.total_removed = 0

    def sweep_once(self) -> int:
        """Run one sweep, logging rather than raising on failure."""
        try:
            removed = self.registry.sweep_stale(self.max_age_ms)
        except Exception as e:
            logger.error(f"Stale device sweep failed: {e}")
            return 0
        self.runs += 1
        self.total_removed += removed
        return removed

    def start(self) -> None:
        """Sweep immediately, then keep sweeping on a daemon thread."""
        if self._thread is not None:
            return
        self.sweep_once()
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="stale-device-sweeper", daemon=True
        )
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.sweep_once()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
