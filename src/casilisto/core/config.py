"""Configuration management for CasiListo.

This module handles loading and saving configuration to/from a JSON file.
The config directory can be customized via CLI argument.

Default location: ~/.config/casilisto/config.json

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from .validation import ValidationError

logger = logging.getLogger(__name__)

__all__ = ["Config", "DEFAULT_CONFIG_DIR"]

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "casilisto"

DEFAULT_SYNC = {
    "debounce_seconds": 1.0,
    "poll_interval_seconds": 60.0,
    "max_retries": 4,
    "retry_base_seconds": 1.0,
    "request_timeout_seconds": 15.0,
    "queue_drain_interval_seconds": 30.0,
}

DEFAULT_RATE_LIMIT = {
    "window_seconds": 60.0,
    "max_requests": 100,
    "max_entries": 10000,
}


class Config:
    """Manages configuration stored in JSON format.

    Attributes:
        config_dir: Path to the configuration directory
        config_file: Path to config.json
    """

    def __init__(self, config_dir: Optional[Path] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_dir: Custom config directory path. If None, uses ~/.config/casilisto/
        """
        self.config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_file = self.config_dir / "config.json"
        self.config_data = self.load_config()

    def _default_config(self) -> Dict[str, Any]:
        return {
            "database_file": str(self.config_dir / "casilisto.db"),
            "state_file": str(self.config_dir / "state.json"),
            "queue_file": str(self.config_dir / "sync_queue.db"),
            "server_url": "http://127.0.0.1:3000",
            "server_host": "0.0.0.0",
            "server_port": 3000,
            "device_limit": 10,
            "stale_device_days": 30,
            "max_body_bytes": 5 * 1024 * 1024,
            "sync": copy.deepcopy(DEFAULT_SYNC),
            "rate_limit": copy.deepcopy(DEFAULT_RATE_LIMIT),
        }

    def load_config(self) -> Dict[str, Any]:
        """Load configuration, creating the file with defaults if missing.

        Invalid JSON falls back to defaults without overwriting the file.
        """
        defaults = self._default_config()
        if not self.config_file.exists():
            self.save_config(defaults)
            return defaults

        try:
            with open(self.config_file, "r", encoding="utf-8") as f:
                loaded = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read {self.config_file}, using defaults: {e}")
            return defaults

        if not isinstance(loaded, dict):
            logger.warning(f"Config file {self.config_file} is not an object, using defaults")
            return defaults

        for section in ("sync", "rate_limit"):
            merged_section = dict(defaults[section])
            merged_section.update(loaded.get(section) or {})
            loaded[section] = merged_section
        return {**defaults, **loaded}

    def save_config(self, config: Optional[Dict[str, Any]] = None) -> None:
        """Write configuration to config.json."""
        data = self.config_data if config is None else config
        with open(self.config_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        return self.config_data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value and save to file."""
        self.config_data[key] = value
        self.save_config()

    def get_config_dir(self) -> Path:
        """Get the configuration directory path."""
        return self.config_dir

    # ===== Server =====

    def get_database_file(self) -> Path:
        return Path(self.config_data["database_file"])

    def get_server_port(self) -> int:
        """Server port, overridable with the PORT environment variable."""
        env_port = os.environ.get("PORT")
        if env_port:
            try:
                return int(env_port)
            except ValueError:
                logger.warning(f"Ignoring invalid PORT environment variable: {env_port!r}")
        return int(self.config_data["server_port"])

    def get_server_host(self) -> str:
        return str(self.config_data["server_host"])

    def get_device_limit(self) -> int:
        return int(self.config_data["device_limit"])

    def get_stale_device_ms(self) -> int:
        return int(float(self.config_data["stale_device_days"]) * 24 * 60 * 60 * 1000)

    def get_max_body_bytes(self) -> int:
        return int(self.config_data["max_body_bytes"])

    def get_rate_limit_config(self) -> Dict[str, Any]:
        return dict(self.config_data["rate_limit"])

    # ===== Client =====

    def get_server_url(self) -> str:
        return str(self.config_data["server_url"]).rstrip("/")

    def set_server_url(self, url: str) -> None:
        """Set the sync server URL."""
        if not url.startswith(("http://", "https://")):
            raise ValidationError("server_url", "must start with http:// or https://")
        self.set("server_url", url.rstrip("/"))

    def get_state_file(self) -> Path:
        return Path(self.config_data["state_file"])

    def get_queue_file(self) -> Path:
        return Path(self.config_data["queue_file"])

    def get_sync_config(self) -> Dict[str, Any]:
        """Get client sync timing configuration."""
        return dict(self.config_data["sync"])
