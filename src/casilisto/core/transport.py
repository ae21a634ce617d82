"""Sync transport: the client side of the CasiListo HTTP contract.

Stateless request/response wrappers for the six sync operations plus the
health check. Failures are raised as typed errors so the orchestrator can
decide between queueing, retrying and surfacing:

- NetworkError: no connectivity, DNS failure, timeout, refused connection
- ValidationError / NotFoundError / DeviceLimitExceeded / RateLimited:
  structured 4xx answers from the server
- ProtocolError: malformed body, 5xx, or any other unexpected answer

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import (
    DeviceLimitExceeded,
    NetworkError,
    NotFoundError,
    ProtocolError,
    RateLimited,
    SyncError,
)
from .models import Device, PullResult, PushResult, SyncData
from .validation import ValidationError, validate_sync_payload

logger = logging.getLogger(__name__)

__all__ = ["SyncTransport", "PreparedRequest"]


@dataclass(frozen=True)
class PreparedRequest:
    """A fully built HTTP request that can be sent now or stored for later."""

    url: str
    method: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None


def _decode_data(data: Any) -> SyncData:
    """Decode a dataset from a response body, raising ProtocolError if malformed."""
    if data is None:
        return SyncData.from_wire(None)
    try:
        validate_sync_payload(data)
        return SyncData.from_wire(data)
    except (KeyError, TypeError, ValueError, OverflowError) as e:
        raise ProtocolError(f"Invalid server response: {e}") from e


def _decode_device(code: str, entry: Any) -> Device:
    try:
        return Device(
            id=str(entry["id"]),
            account_code=code,
            name=entry.get("name") or "",
            last_seen=int(entry.get("last_seen") or 0),
            created_at=int(entry.get("created_at") or 0),
        )
    except (AttributeError, KeyError, TypeError, ValueError, OverflowError) as e:
        raise ProtocolError(f"Invalid server response: bad device entry ({e})") from e


class SyncTransport:
    """HTTP client for the sync server."""

    def __init__(self, base_url: str, timeout: float = 15.0) -> None:
        """Initialize transport.

        Args:
            base_url: Server root, e.g. "http://127.0.0.1:3000"
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    # ===== Request building =====

    def build_request(
        self,
        path: str,
        method: str = "GET",
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> PreparedRequest:
        url = f"{self.base_url}{path}"
        if params:
            url = f"{url}?{urllib.parse.urlencode(params)}"
        headers: Dict[str, str] = {"Accept": "application/json"}
        body = None
        if data is not None:
            headers["Content-Type"] = "application/json"
            body = json.dumps(data)
        return PreparedRequest(url=url, method=method, headers=headers, body=body)

    def build_push_request(
        self,
        code: str,
        device_id: str,
        device_name: str,
        data: Dict[str, Any],
        local_updated_at: int,
    ) -> PreparedRequest:
        """Build a push request (also used for the offline queue)."""
        return self.build_request(
            "/api/sync/push",
            method="POST",
            data={
                "code": code,
                "deviceId": device_id,
                "deviceName": device_name,
                "data": data,
                "localUpdatedAt": local_updated_at,
            },
        )

    # ===== Sending =====

    def send(self, prepared: PreparedRequest) -> Dict[str, Any]:
        """Send a prepared request and return the decoded JSON body.

        Raises:
            NetworkError: Transport failure
            SyncError subclass: Structured error answer
            ProtocolError: Malformed or unexpected answer
        """
        req = urllib.request.Request(
            prepared.url,
            data=prepared.body.encode("utf-8") if prepared.body is not None else None,
            method=prepared.method,
            headers=dict(prepared.headers),
        )

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as e:
            raise self._error_from_http(e, prepared.url) from None
        except urllib.error.URLError as e:
            error_msg = f"Connection failed to {prepared.url}: {e.reason}"
            logger.warning(error_msg)
            raise NetworkError(error_msg) from None
        except (socket.timeout, TimeoutError, ConnectionError) as e:
            error_msg = f"Request to {prepared.url} failed: {e}"
            logger.warning(error_msg)
            raise NetworkError(error_msg) from None

        try:
            body = json.loads(raw)
        except ValueError:
            raise ProtocolError(f"Invalid JSON from {prepared.url}") from None
        if not isinstance(body, dict):
            raise ProtocolError(f"Unexpected response from {prepared.url}")
        if body.get("success") is False:
            raise ProtocolError(body.get("error") or f"Request to {prepared.url} failed")
        return body

    def _error_from_http(self, e: urllib.error.HTTPError, url: str) -> SyncError:
        """Map an HTTP error answer to a typed error."""
        body: Dict[str, Any] = {}
        try:
            decoded = json.loads(e.read().decode("utf-8"))
            if isinstance(decoded, dict):
                body = decoded
        except (OSError, ValueError):
            logger.debug(f"Error response from {url} has no JSON body")

        message = body.get("error") or f"HTTP {e.code}: {e.reason}"
        error_code = body.get("errorCode")
        logger.error(f"Request to {url} failed: {message}")

        if e.code == 429 or error_code == "RATE_LIMITED":
            retry_after = body.get("retryAfter") or e.headers.get("Retry-After") or 60
            try:
                retry_after = float(retry_after)
            except (TypeError, ValueError):
                retry_after = 60.0
            return RateLimited(retry_after, message)
        if error_code == "DEVICE_LIMIT":
            return DeviceLimitExceeded(int(body.get("limit") or 10), message)
        if e.code == 404:
            return NotFoundError(message)
        if 400 <= e.code < 500:
            return ValidationError("request", message)
        return ProtocolError(message, status_code=e.code)

    def _request(
        self,
        path: str,
        method: str = "GET",
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return self.send(self.build_request(path, method, data, params))

    # ===== Operations =====

    def create_account(self) -> str:
        """Create an account and return its code."""
        body = self._request("/api/user/create", method="POST", data={})
        code = body.get("code")
        if not isinstance(code, str) or not code:
            raise ProtocolError("Invalid server response: missing code")
        return code

    def login(self, code: str, device_id: str, device_name: str) -> SyncData:
        """Link this device to an account, returning the canonical dataset."""
        body = self._request(
            "/api/user/login",
            method="POST",
            data={"code": code, "deviceId": device_id, "deviceName": device_name},
        )
        return _decode_data(body.get("data"))

    def push(
        self,
        code: str,
        device_id: str,
        device_name: str,
        data: Dict[str, Any],
        local_updated_at: int,
    ) -> PushResult:
        body = self.send(
            self.build_push_request(code, device_id, device_name, data, local_updated_at)
        )
        return self.parse_push_response(body)

    @staticmethod
    def parse_push_response(body: Dict[str, Any]) -> PushResult:
        server_updated_at = body.get("serverUpdatedAt")
        if not isinstance(server_updated_at, (int, float)):
            raise ProtocolError("Invalid server response: missing serverUpdatedAt")
        merged_data = body.get("mergedData")
        return PushResult(
            server_updated_at=int(server_updated_at),
            merged=bool(body.get("merged")),
            merged_data=_decode_data(merged_data) if merged_data else None,
        )

    def pull(self, code: str, device_id: str, device_name: str, since: int) -> PullResult:
        body = self._request(
            "/api/sync/pull",
            params={
                "code": code,
                "deviceId": device_id,
                "deviceName": device_name,
                "since": str(since),
            },
        )
        server_updated_at = body.get("serverUpdatedAt")
        if not isinstance(server_updated_at, (int, float)):
            raise ProtocolError("Invalid server response: missing serverUpdatedAt")
        has_changes = bool(body.get("hasChanges"))
        data = body.get("data")
        if has_changes and not isinstance(data, dict):
            raise ProtocolError("Invalid server response: hasChanges without data")
        return PullResult(
            has_changes=has_changes,
            server_updated_at=int(server_updated_at),
            data=_decode_data(data) if has_changes else None,
        )

    def list_devices(self, code: str) -> List[Device]:
        body = self._request("/api/devices", params={"code": code})
        devices = body.get("devices")
        if not isinstance(devices, list):
            raise ProtocolError("Invalid server response: missing devices")
        return [_decode_device(code, d) for d in devices]

    def unlink_device(self, code: str, device_id: str) -> bool:
        """Unlink a device. Returns False if the server did not know it."""
        path = f"/api/devices/{urllib.parse.quote(device_id, safe='')}"
        try:
            self._request(path, method="DELETE", params={"code": code})
        except NotFoundError:
            return False
        return True

    def health(self) -> bool:
        """True if the server answers the health check."""
        try:
            body = self._request("/api/health")
        except SyncError:
            return False
        return body.get("status") == "ok"
