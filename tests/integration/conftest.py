"""Pytest fixtures for integration tests.

This module provides fixtures for:
- Spawning a real sync server process on a free port
- Building complete client devices (state file, offline queue, transport)
  that talk to that server
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Generator, List

import pytest

from casilisto.core.connectivity import ConnectivityMonitor
from casilisto.core.local_store import LocalDataset, LocalStore
from casilisto.core.offline_queue import OfflineQueue
from casilisto.core.orchestrator import SyncOrchestrator
from casilisto.core.scheduler import ManualScheduler
from casilisto.core.transport import SyncTransport
from tests.helpers import find_free_port
from tests.integration.nodes import ClientDevice, SyncServer


@pytest.fixture
def sync_server(tmp_path: Path) -> Generator[SyncServer, None, None]:
    """Sync server process with its own config directory and database."""
    config_dir = tmp_path / "server"
    config_dir.mkdir()
    server = SyncServer(config_dir=config_dir, port=find_free_port())
    server.start()
    if not server.wait_until_ready():
        server.stop()
        pytest.fail("Failed to start sync server")
    yield server
    server.stop()


@pytest.fixture
def make_device(
    tmp_path: Path, sync_server: SyncServer
) -> Generator[Callable[[str], ClientDevice], None, None]:
    """Factory for client devices talking to sync_server."""
    devices: List[ClientDevice] = []

    def factory(name: str) -> ClientDevice:
        device_dir = tmp_path / name
        device_dir.mkdir()
        store = LocalStore(device_dir / "state.json")
        dataset = LocalDataset(store)
        scheduler = ManualScheduler()
        connectivity = ConnectivityMonitor(online=True)
        queue = OfflineQueue(device_dir / "sync_queue.db")
        orchestrator = SyncOrchestrator(
            store,
            dataset,
            SyncTransport(sync_server.url, timeout=5.0),
            scheduler,
            queue,
            connectivity=connectivity,
        )
        orchestrator.rename_device(name)
        device = ClientDevice(name, store, dataset, scheduler, connectivity, queue, orchestrator)
        devices.append(device)
        return device

    yield factory
    for device in devices:
        device.close()
