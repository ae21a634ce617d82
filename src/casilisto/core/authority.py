"""Server authority for CasiListo sync.

The single source of truth per account. Owns the canonical dataset and the
device registry, and implements the six sync operations:

    create_account, login, push, pull, list_devices, unlink_device

Push never overwrites the server's data blindly: unless the account is
still empty, the candidate is merged into the stored state and the merged
result becomes canonical. The client's own timestamp is never trusted.

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import logging
import secrets
from typing import Callable, List, Optional

from .database import Database
from .errors import AccountCreationFailed, NotFoundError
from .merge import merge_sync_data
from .models import Device, PullResult, PushResult, SyncData
from .registry import DeviceRegistry
from .timestamp_utils import next_timestamp
from .validation import (
    CODE_ALPHABET,
    CODE_LENGTH,
    normalize_code,
    validate_device_id,
    validate_device_name,
    validate_sync_payload,
)

logger = logging.getLogger(__name__)

__all__ = ["SyncAuthority", "generate_code", "MAX_CODE_ATTEMPTS"]

MAX_CODE_ATTEMPTS = 10

LOGIN_DEFAULT_DEVICE_NAME = "Unknown device"
SYNC_DEFAULT_DEVICE_NAME = "Device"


def generate_code() -> str:
    """Generate a random account code from the unambiguous alphabet."""
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


class SyncAuthority:
    """Server-side sync operations."""

    def __init__(
        self,
        db: Database,
        registry: Optional[DeviceRegistry] = None,
        code_generator: Callable[[], str] = generate_code,
    ) -> None:
        self.db = db
        self.registry = registry or DeviceRegistry(db)
        self._code_generator = code_generator

    def _require_account(self, code: str) -> str:
        normalized = normalize_code(code)
        if not self.db.account_exists(normalized):
            logger.warning(f"Unknown account code: {normalized}")
            raise NotFoundError("Code not found")
        return normalized

    def _load_state(self, normalized: str) -> SyncData:
        data = self.db.get_sync_state(normalized)
        if data is None:
            logger.error(f"Account {normalized} has no sync state")
            raise NotFoundError("Code not found")
        return data

    def create_account(self) -> str:
        """Create an account with an empty dataset.

        Raises:
            AccountCreationFailed: If no unused code was found
        """
        for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
            code = self._code_generator()
            if self.db.create_account(code):
                logger.info(f"New account created: {code}")
                return code
            logger.warning(f"Account code collision on attempt {attempt}")
        logger.error(f"Could not generate a unique code after {MAX_CODE_ATTEMPTS} attempts")
        raise AccountCreationFailed("Could not create account")

    def login(self, code: str, device_id: str, device_name: Optional[str]) -> SyncData:
        """Link a device to an account and return the canonical dataset.

        Raises:
            ValidationError: Missing code or device id
            NotFoundError: Unknown code
            DeviceLimitExceeded: New device and the account is full
        """
        validate_device_id(device_id)
        normalized = self._require_account(code)
        name = validate_device_name(device_name, LOGIN_DEFAULT_DEVICE_NAME)
        self.registry.register(normalized, device_id, name)
        data = self._load_state(normalized)
        logger.info(f"Device {device_id} linked to account {normalized}")
        return data

    def push(
        self,
        code: str,
        device_id: str,
        device_name: Optional[str],
        candidate: dict,
        client_timestamp: Optional[int] = None,
    ) -> PushResult:
        """Reconcile a device's dataset with the canonical one.

        The whole read-merge-write runs in one serialized transaction, so two
        devices pushing at the same moment both end up in the result.

        Args:
            code: Account code
            device_id: Pushing device
            device_name: Pushing device label
            candidate: Wire payload of the device's dataset
            client_timestamp: Device's local modification time (logged only)

        Returns:
            PushResult with the new server timestamp, and the merged dataset
            when the server already held data
        """
        validate_device_id(device_id)
        validate_sync_payload(candidate)
        name = validate_device_name(device_name, SYNC_DEFAULT_DEVICE_NAME)
        client_data = SyncData.from_wire(candidate)

        with self.db.transaction():
            normalized = self._require_account(code)
            self.registry.register(normalized, device_id, name)
            server_data = self._load_state(normalized)
            updated_at = next_timestamp(server_data.updated_at)

            if server_data.is_empty():
                client_data.baco_mode = bool(client_data.baco_mode)
                self.db.save_sync_state(normalized, client_data, updated_at)
                result = PushResult(server_updated_at=updated_at)
                logger.info(
                    f"Sync push: {normalized} from {device_id}, "
                    f"{len(client_data.items)} items accepted"
                )
            else:
                merge = merge_sync_data(server_data, client_data)
                merged = merge.data
                merged.updated_at = updated_at
                self.db.save_sync_state(normalized, merged, updated_at)
                result = PushResult(
                    server_updated_at=updated_at, merged=True, merged_data=merged
                )
                logger.info(
                    f"Sync push: {normalized} from {device_id} merged "
                    f"({len(merged.items)} items, {merge.server_only_items} kept from server, "
                    f"{merge.client_changed_items} updated by client, "
                    f"client timestamp {client_timestamp})"
                )
        return result

    def pull(
        self,
        code: str,
        device_id: str,
        device_name: Optional[str],
        since: int = 0,
    ) -> PullResult:
        """Return the canonical dataset if it changed after since."""
        validate_device_id(device_id)
        normalized = self._require_account(code)
        name = validate_device_name(device_name, SYNC_DEFAULT_DEVICE_NAME)
        self.registry.register(normalized, device_id, name)

        server_updated_at = self.db.get_updated_at(normalized)
        if server_updated_at <= since:
            logger.debug(f"Sync pull: {normalized} unchanged since {since}")
            return PullResult(has_changes=False, server_updated_at=server_updated_at)

        data = self._load_state(normalized)
        logger.debug(f"Sync pull: {normalized} changed at {data.updated_at}")
        return PullResult(
            has_changes=True, server_updated_at=data.updated_at, data=data
        )

    def list_devices(self, code: str) -> List[Device]:
        """Devices linked to an account, most recently seen first."""
        normalized = self._require_account(code)
        return self.registry.list(normalized)

    def unlink_device(self, code: str, device_id: str) -> bool:
        """Unlink a device. Returns False if it was not linked."""
        normalized = self._require_account(code)
        return self.registry.unlink(normalized, device_id)
