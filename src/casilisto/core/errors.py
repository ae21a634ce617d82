"""Error taxonomy for CasiListo sync.

Every error raised by the server authority or the client transport derives
from SyncError. Server-side errors carry the HTTP status and the stable
error code used in the JSON error body:

    {"success": false, "error": "...", "errorCode": "...", "retryable": false}

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

__all__ = [
    "SyncError",
    "NotFoundError",
    "DeviceLimitExceeded",
    "RateLimited",
    "AccountCreationFailed",
    "NetworkError",
    "ProtocolError",
    "StorageFull",
    "error_body",
]


class SyncError(Exception):
    """Base class for all sync errors."""

    status_code = 500
    error_code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Build the JSON error body for this error."""
        return error_body(self.message, self.error_code, self.retryable)


class NotFoundError(SyncError):
    """Unknown account code (or unknown linked device)."""

    status_code = 404
    error_code = "NOT_FOUND"


class DeviceLimitExceeded(SyncError):
    """The account already has the maximum number of linked devices."""

    status_code = 400
    error_code = "DEVICE_LIMIT"

    def __init__(self, limit: int, message: Optional[str] = None) -> None:
        self.limit = limit
        super().__init__(
            message
            or f"Device limit reached (maximum {limit}). Unlink a device to link this one."
        )

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["limit"] = self.limit
        return body


class RateLimited(SyncError):
    """Too many requests from one source address."""

    status_code = 429
    error_code = "RATE_LIMITED"
    retryable = True

    def __init__(self, retry_after: float, message: Optional[str] = None) -> None:
        self.retry_after = retry_after
        super().__init__(message or "Too many requests, try again later")

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["retryAfter"] = int(self.retry_after)
        return body


class AccountCreationFailed(SyncError):
    """Could not generate a unique account code."""

    status_code = 500
    error_code = "ACCOUNT_CREATION_FAILED"


class NetworkError(SyncError):
    """No connectivity or transport failure (client side only)."""

    retryable = True


class ProtocolError(SyncError):
    """Server answered with a malformed or unexpected response (client side only)."""

    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class StorageFull(SyncError):
    """Local persistence rejected a write."""


def error_body(message: str, error_code: str, retryable: bool = False) -> Dict[str, Any]:
    """Build the stable JSON error shape."""
    return {
        "success": False,
        "error": message,
        "errorCode": error_code,
        "retryable": retryable,
    }
