"""Pytest fixtures for CasiListo sync tests.

This module provides fixtures for configuration, the server database and
authority, and the client-side building blocks (local store, transport,
scheduler, offline queue).
"""

from __future__ import annotations

from pathlib import Path
from typing import Generator

import pytest

from casilisto.core.authority import SyncAuthority
from casilisto.core.config import Config
from casilisto.core.connectivity import ConnectivityMonitor
from casilisto.core.database import Database
from casilisto.core.local_store import LocalDataset, LocalStore
from casilisto.core.offline_queue import OfflineQueue
from casilisto.core.registry import DeviceRegistry
from casilisto.core.scheduler import ManualScheduler
from casilisto.core.transport import SyncTransport
from tests.helpers import TEST_SERVER_URL


@pytest.fixture
def test_config_dir(tmp_path: Path) -> Path:
    """Create temporary config directory for tests.

    Args:
        tmp_path: pytest temporary directory fixture

    Returns:
        Path to temporary config directory.
    """
    config_dir = tmp_path / "casilisto_test"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


@pytest.fixture
def test_config(test_config_dir: Path) -> Config:
    """Create test configuration.

    Args:
        test_config_dir: Temporary config directory

    Returns:
        Config instance for testing.
    """
    return Config(config_dir=test_config_dir)


@pytest.fixture
def test_db(test_config: Config) -> Generator[Database, None, None]:
    """Create a server database in the test config directory.

    Yields:
        Database instance, closed after the test.
    """
    db = Database(test_config.get_database_file())
    yield db
    db.close()


@pytest.fixture
def registry(test_db: Database) -> DeviceRegistry:
    return DeviceRegistry(test_db)


@pytest.fixture
def authority(test_db: Database, registry: DeviceRegistry) -> SyncAuthority:
    return SyncAuthority(test_db, registry)


@pytest.fixture
def account_code(authority: SyncAuthority) -> str:
    """An existing account with an empty dataset."""
    return authority.create_account()


@pytest.fixture
def local_store(test_config_dir: Path) -> LocalStore:
    return LocalStore(test_config_dir / "state.json")


@pytest.fixture
def dataset(local_store: LocalStore) -> LocalDataset:
    return LocalDataset(local_store)


@pytest.fixture
def transport() -> SyncTransport:
    return SyncTransport(TEST_SERVER_URL, timeout=1.0)


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def connectivity() -> ConnectivityMonitor:
    return ConnectivityMonitor(online=True)


@pytest.fixture
def offline_queue(test_config_dir: Path) -> Generator[OfflineQueue, None, None]:
    queue = OfflineQueue(test_config_dir / "sync_queue.db")
    yield queue
    queue.close()
