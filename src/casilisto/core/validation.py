"""Input validation for CasiListo sync.

This module provides validation functions for all request inputs.
All validators raise ValidationError with descriptive messages.

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import math
from typing import Any, Dict, Optional

from .errors import SyncError

__all__ = [
    "ValidationError",
    "CODE_ALPHABET",
    "CODE_LENGTH",
    "MAX_DEVICE_ID_LENGTH",
    "MAX_DEVICE_NAME_LENGTH",
    "normalize_code",
    "validate_account_code",
    "validate_device_id",
    "validate_device_name",
    "validate_sync_payload",
    "parse_since",
]

# Letters and digits without I, O, 0, 1 to avoid confusion when typing
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 6

MAX_DEVICE_ID_LENGTH = 64
MAX_DEVICE_NAME_LENGTH = 100

LIST_FIELDS = ("items", "masterList", "favorites")


class ValidationError(SyncError, ValueError):
    """Validation error with field and message attributes."""

    status_code = 400
    error_code = "VALIDATION_ERROR"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")
        self.message = message

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"

    def __repr__(self) -> str:
        return f"ValidationError(field='{self.field}', message='{self.message}')"

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["error"] = f"Invalid {self.field}: {self.message}"
        return body


def normalize_code(code: Any) -> str:
    """Normalize an account code as typed by a user (trim + uppercase).

    Raises:
        ValidationError: If the code is missing or not a string
    """
    if code is None or code == "":
        raise ValidationError("code", "is required")
    if not isinstance(code, str):
        raise ValidationError("code", f"must be a string, got {type(code).__name__}")
    normalized = code.strip().upper()
    if not normalized:
        raise ValidationError("code", "is required")
    return normalized


def validate_account_code(code: Any) -> str:
    """Validate the full shape of an account code.

    Used by the client before linking. The server only normalizes codes and
    lets the lookup decide, so codes created by older servers keep working.

    Returns:
        Normalized code
    """
    normalized = normalize_code(code)
    if len(normalized) != CODE_LENGTH:
        raise ValidationError("code", f"must be {CODE_LENGTH} characters")
    invalid = sorted({c for c in normalized if c not in CODE_ALPHABET})
    if invalid:
        raise ValidationError("code", f"contains invalid characters: {''.join(invalid)}")
    return normalized


def validate_device_id(device_id: Any) -> str:
    """Validate a client-generated device identifier."""
    if device_id is None or device_id == "":
        raise ValidationError("deviceId", "is required")
    if not isinstance(device_id, str):
        raise ValidationError(
            "deviceId", f"must be a string, got {type(device_id).__name__}"
        )
    if len(device_id) > MAX_DEVICE_ID_LENGTH:
        raise ValidationError(
            "deviceId", f"must be at most {MAX_DEVICE_ID_LENGTH} characters"
        )
    return device_id


def validate_device_name(device_name: Any, default: str) -> str:
    """Return a usable device name, falling back to default when missing."""
    if not device_name or not isinstance(device_name, str):
        return default
    return device_name.strip()[:MAX_DEVICE_NAME_LENGTH] or default


def validate_sync_payload(data: Any) -> Dict[str, Any]:
    """Validate the dataset sent with a push.

    Only the container types are checked; item contents are opaque to the
    server apart from the merge keys.
    """
    if data is None:
        raise ValidationError("data", "is required")
    if not isinstance(data, dict):
        raise ValidationError("data", f"must be an object, got {type(data).__name__}")
    for key in LIST_FIELDS:
        value = data.get(key)
        if value is not None and not isinstance(value, list):
            raise ValidationError(f"data.{key}", "must be a list")
    categories = data.get("categories")
    if categories is not None and not isinstance(categories, dict):
        raise ValidationError("data.categories", "must be an object")
    for fav in data.get("favorites") or []:
        if not isinstance(fav, dict) or not isinstance(fav.get("text"), str):
            raise ValidationError("data.favorites", "every favorite needs a text")
    baco_mode = data.get("bacoMode")
    if baco_mode is not None and not isinstance(baco_mode, bool):
        raise ValidationError("data.bacoMode", "must be a boolean")
    updated_at = data.get("updatedAt")
    if updated_at is not None and (
        isinstance(updated_at, bool)
        or not isinstance(updated_at, (int, float))
        or not math.isfinite(updated_at)
    ):
        raise ValidationError("data.updatedAt", "must be a number")
    return data


def parse_since(since: Optional[str]) -> int:
    """Parse the pull cursor. Missing or non-numeric values mean 0."""
    if since is None:
        return 0
    try:
        return int(float(since))
    except (TypeError, ValueError, OverflowError):
        return 0
