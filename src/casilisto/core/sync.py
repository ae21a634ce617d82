"""Sync server HTTP contract for CasiListo.

This module exposes the server authority over HTTP/JSON. Routes and payload
keys are kept bit-for-bit compatible with the existing web client:

    POST   /api/user/create           Create account
    POST   /api/user/login            Link device to account
    POST   /api/sync/push             Push local dataset (merged server-side)
    GET    /api/sync/pull             Pull canonical dataset if changed
    GET    /api/devices               List linked devices
    DELETE /api/devices/<device_id>   Unlink a device
    GET    /api/health                Health check

Every error is caught at the request boundary and returned as:

    {"success": false, "error": "...", "errorCode": "...", "retryable": bool}

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import functools
import logging
from typing import Any, Callable, Optional, Tuple

from flask import Blueprint, Flask, Response, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from .authority import SyncAuthority
from .config import Config
from .database import Database
from .errors import NotFoundError, RateLimited, SyncError, error_body
from .rate_limit import RateLimiter
from .registry import DeviceRegistry, StaleDeviceSweeper
from .timestamp_utils import now_ms
from .validation import ValidationError, parse_since

logger = logging.getLogger(__name__)

__all__ = ["create_sync_blueprint", "create_sync_server", "api_endpoint"]

EXTENSION_KEY = "casilisto"


def error_response(error: SyncError) -> Tuple[Response, int]:
    """Map a SyncError to its JSON body and HTTP status."""
    response = jsonify(error.to_dict())
    if isinstance(error, RateLimited):
        response.headers["Retry-After"] = str(int(error.retry_after))
    return response, error.status_code


def api_endpoint(func: Callable) -> Callable:
    """Decorator for consistent API error handling.

    SyncError subclasses map to their own status; anything else is logged
    and returned as a 500 with the stable error shape.
    """
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except SyncError as e:
            if e.status_code >= 500:
                logger.error(f"Error in {func.__name__}: {e}")
            else:
                logger.warning(f"Rejected {func.__name__}: {e}")
            return error_response(e)
        except HTTPException:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error in {func.__name__}: {e}")
            return jsonify(error_body("Internal server error", "INTERNAL_ERROR")), 500
    return wrapper


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _optional_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def create_sync_blueprint(
    authority: SyncAuthority,
    limiter: Optional[RateLimiter] = None,
) -> Blueprint:
    """Create Flask blueprint for sync endpoints.

    Args:
        authority: Server authority handling the operations
        limiter: Per-address rate limiter (None disables rate limiting)

    Returns:
        Flask Blueprint with the /api routes
    """
    sync_bp = Blueprint("sync", __name__, url_prefix="/api")

    @sync_bp.before_request
    def log_and_limit() -> Optional[Tuple[Response, int]]:
        logger.info(f"{request.method} {request.path}")
        if limiter is None:
            return None
        try:
            limiter.hit(request.remote_addr or "unknown")
        except RateLimited as e:
            return error_response(e)
        return None

    @sync_bp.route("/user/create", methods=["POST"])
    @api_endpoint
    def create_user() -> Tuple[Response, int]:
        """Create a new account.

        Response:
            {"success": true, "code": "ABC234"}
        """
        code = authority.create_account()
        return jsonify({"success": True, "code": code}), 200

    @sync_bp.route("/user/login", methods=["POST"])
    @api_endpoint
    def login() -> Tuple[Response, int]:
        """Link a device to an existing account.

        Request body:
            {"code": "...", "deviceId": "...", "deviceName": "..."}

        Response:
            {"success": true, "code": "...", "data": {...}}
        """
        data = _json_body()
        code = data.get("code")
        device_id = data.get("deviceId")
        if not code or not device_id:
            raise ValidationError("request", "code and deviceId are required")

        state = authority.login(code, device_id, data.get("deviceName"))
        return jsonify({
            "success": True,
            "code": code.strip().upper(),
            "data": state.to_wire(),
        }), 200

    @sync_bp.route("/sync/push", methods=["POST"])
    @api_endpoint
    def push() -> Tuple[Response, int]:
        """Push a device's dataset.

        Request body:
            {"code", "deviceId", "deviceName", "data": {...}, "localUpdatedAt": 123}

        Response:
            {"success": true, "serverUpdatedAt": 123, "merged": bool, "mergedData"?: {...}}
        """
        body = _json_body()
        code = body.get("code")
        device_id = body.get("deviceId")
        payload = body.get("data")
        if not code or not device_id or payload is None:
            raise ValidationError("request", "code, deviceId and data are required")

        result = authority.push(
            code,
            device_id,
            body.get("deviceName"),
            payload,
            _optional_int(body.get("localUpdatedAt")),
        )
        return jsonify(result.to_wire()), 200

    @sync_bp.route("/sync/pull", methods=["GET"])
    @api_endpoint
    def pull() -> Tuple[Response, int]:
        """Pull the canonical dataset if it changed.

        Query params:
            code, deviceId, deviceName, since (epoch ms, default 0)

        Response:
            {"success": true, "hasChanges": bool, "data"?: {...}, "serverUpdatedAt": 123}
        """
        code = request.args.get("code")
        device_id = request.args.get("deviceId")
        if not code or not device_id:
            raise ValidationError("request", "code and deviceId are required")

        result = authority.pull(
            code,
            device_id,
            request.args.get("deviceName"),
            parse_since(request.args.get("since")),
        )
        return jsonify(result.to_wire()), 200

    @sync_bp.route("/devices", methods=["GET"])
    @api_endpoint
    def list_devices() -> Tuple[Response, int]:
        """List devices linked to an account.

        Response:
            {"success": true, "devices": [{"id", "name", "last_seen", "created_at"}]}
        """
        code = request.args.get("code")
        if not code:
            raise ValidationError("code", "is required")
        devices = authority.list_devices(code)
        return jsonify({
            "success": True,
            "devices": [d.to_wire() for d in devices],
        }), 200

    @sync_bp.route("/devices/<device_id>", methods=["DELETE"])
    @api_endpoint
    def unlink_device(device_id: str) -> Tuple[Response, int]:
        """Unlink a device from an account."""
        code = request.args.get("code")
        if not code:
            raise ValidationError("code", "is required")
        if not authority.unlink_device(code, device_id):
            raise NotFoundError("Device not found")
        return jsonify({"success": True}), 200

    @sync_bp.route("/health", methods=["GET"])
    def health() -> Tuple[Response, int]:
        """Health check."""
        return jsonify({"status": "ok", "timestamp": now_ms()}), 200

    return sync_bp


def create_sync_server(
    config: Optional[Config] = None,
    db: Optional[Database] = None,
    limiter: Optional[RateLimiter] = None,
    start_sweeper: bool = False,
) -> Flask:
    """Create a standalone Flask sync server.

    Args:
        config: Config instance (default location if None)
        db: Database instance (opened from config if None)
        limiter: Rate limiter (built from config if None)
        start_sweeper: Start the stale device sweeper thread

    Returns:
        Flask application instance. The authority, database, limiter and
        sweeper are available in app.extensions["casilisto"].
    """
    config = config or Config()
    db = db or Database(config.get_database_file())
    if limiter is None:
        rate_config = config.get_rate_limit_config()
        limiter = RateLimiter(
            window_seconds=float(rate_config["window_seconds"]),
            max_requests=int(rate_config["max_requests"]),
            max_entries=int(rate_config["max_entries"]),
        )

    registry = DeviceRegistry(db, device_limit=config.get_device_limit())
    authority = SyncAuthority(db, registry)
    sweeper = StaleDeviceSweeper(registry, max_age_ms=config.get_stale_device_ms())

    app = Flask(__name__)
    app.json.sort_keys = False
    app.config["MAX_CONTENT_LENGTH"] = config.get_max_body_bytes()
    CORS(app)

    app.register_blueprint(create_sync_blueprint(authority, limiter))
    app.extensions[EXTENSION_KEY] = {
        "config": config,
        "db": db,
        "registry": registry,
        "authority": authority,
        "limiter": limiter,
        "sweeper": sweeper,
    }

    @app.errorhandler(SyncError)
    def sync_error(error: SyncError) -> Tuple[Response, int]:
        """Handle sync errors raised outside api_endpoint."""
        logger.warning(f"Sync error: {error}")
        return error_response(error)

    @app.errorhandler(HTTPException)
    def http_error(error: HTTPException) -> Tuple[Response, int]:
        """Return the stable error shape for routing/protocol errors."""
        status = error.code or 500
        if status == 404:
            message, code = "Endpoint not found", "NOT_FOUND"
        elif status == 413:
            message, code = "Request body too large", "VALIDATION_ERROR"
        elif status == 405:
            message, code = "Method not allowed", "VALIDATION_ERROR"
        elif status < 500:
            message, code = error.description or "Bad request", "VALIDATION_ERROR"
        else:
            message, code = "Internal server error", "INTERNAL_ERROR"
        return jsonify(error_body(message, code)), status

    if start_sweeper:
        sweeper.start()

    return app
