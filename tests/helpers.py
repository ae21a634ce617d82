"""Test helper functions for CasiListo tests.

This module provides fixed device ids, builders for items and push
payloads in wire format, and helpers for running the casilisto entry point
in a subprocess.
"""

from __future__ import annotations

import os
import socket
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional


# Device IDs (uuid7 hex strings - 32 chars)
DEVICE_A = "0190a1b2c3d47000800000000000000a"
DEVICE_B = "0190a1b2c3d47000800000000000000b"
DEVICE_C = "0190a1b2c3d47000800000000000000c"

TEST_SERVER_URL = "http://sync.test"

PROJECT_ROOT = Path(__file__).parent.parent


def make_item(item_id: str, text: str, **fields: Any) -> Dict[str, Any]:
    """Build a shopping list item."""
    item = {"id": item_id, "text": text, "category": "", "completed": False, "quantity": 1}
    item.update(fields)
    return item


def make_payload(
    items: Optional[List[Dict[str, Any]]] = None,
    categories: Optional[Dict[str, Any]] = None,
    master_list: Optional[List[Dict[str, Any]]] = None,
    favorites: Optional[List[Dict[str, Any]]] = None,
    baco_mode: Optional[bool] = None,
) -> Dict[str, Any]:
    """Build a push payload in wire format."""
    payload: Dict[str, Any] = {
        "items": items or [],
        "categories": categories or {},
        "masterList": master_list or [],
        "favorites": favorites or [],
    }
    if baco_mode is not None:
        payload["bacoMode"] = baco_mode
    return payload


def device_ids(count: int) -> List[str]:
    """Generate count distinct device ids."""
    return [f"0190a1b2c3d4700080000000{n:08x}" for n in range(1, count + 1)]


def push_body(code: str, device_id: str, data: Dict[str, Any], **extra: Any) -> Dict[str, Any]:
    """Build a /api/sync/push request body."""
    body = {"code": code, "deviceId": device_id, "deviceName": "Test device", "data": data}
    body.update(extra)
    return body


def casilisto_command(config_dir: Path, *args: str) -> List[str]:
    """Command line running the casilisto entry point with a config dir."""
    return [sys.executable, "-m", "casilisto.main", "-d", str(config_dir), *args]


def casilisto_env() -> Dict[str, str]:
    """Environment with the src/ tree importable."""
    env = os.environ.copy()
    src = str(PROJECT_ROOT / "src")
    env["PYTHONPATH"] = os.pathsep.join(p for p in (src, env.get("PYTHONPATH")) if p)
    env.pop("PORT", None)
    return env


def run_casilisto(config_dir: Path, *args: str, timeout: float = 30) -> subprocess.CompletedProcess:
    """Run the casilisto entry point and capture its output."""
    return subprocess.run(
        casilisto_command(config_dir, *args),
        capture_output=True,
        text=True,
        env=casilisto_env(),
        cwd=str(PROJECT_ROOT),
        timeout=timeout,
    )


def find_free_port() -> int:
    """Find a free TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        return s.getsockname()[1]
