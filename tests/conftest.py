"""Pytest fixtures for fieldsync tests.

This module provides fixtures for test configuration, the client database
and the server event store.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Generator

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from fieldsync.config import Config
from fieldsync.connectivity import ConnectivityMonitor, NetworkStatus
from fieldsync.database import Database
from fieldsync.event_store import EventStore
from fieldsync.sync_queue import RetryPolicy, SyncQueue

from helpers import TEST_OWNER_ID, FakeClock, FakeDatetimeClock


@pytest.fixture
def test_config_dir(tmp_path: Path) -> Path:
    """Create temporary config directory for tests.

    Args:
        tmp_path: pytest temporary directory fixture

    Returns:
        Path to temporary config directory.
    """
    config_dir = tmp_path / "fieldsync_test"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


@pytest.fixture
def test_config(test_config_dir: Path) -> Config:
    """Create test configuration with an owner ID set.

    Args:
        test_config_dir: Temporary config directory

    Returns:
        Config instance for testing.
    """
    config = Config(config_dir=test_config_dir)
    config.set("owner_id", TEST_OWNER_ID)
    config.set("server_url", "http://sync.test:8384")
    return config


@pytest.fixture
def client_db(test_config_dir: Path) -> Generator[Database, None, None]:
    """Create a client database in the temporary directory.

    Yields:
        Database instance, closed after the test.
    """
    db = Database(test_config_dir / "client.db")
    yield db
    db.close()


@pytest.fixture
def clock() -> FakeClock:
    """Epoch clock shared by client components in a test."""
    return FakeClock()


@pytest.fixture
def queue(client_db: Database, clock: FakeClock) -> SyncQueue:
    """Queue over the client database with the default retry policy."""
    return SyncQueue(client_db, RetryPolicy(), clock=clock)


@pytest.fixture
def online_monitor() -> ConnectivityMonitor:
    """Connectivity monitor that starts online on a 4g link."""
    return ConnectivityMonitor(initial=NetworkStatus(online=True, effective_type="4g"))


@pytest.fixture
def server_clock() -> FakeDatetimeClock:
    """Datetime clock for the event store."""
    return FakeDatetimeClock()


@pytest.fixture
def event_store(tmp_path: Path, server_clock: FakeDatetimeClock) -> Generator[EventStore, None, None]:
    """Create a server event store driven by a fake clock.

    Yields:
        EventStore instance, closed after the test.
    """
    store = EventStore(tmp_path / "events.db", clock=server_clock)
    yield store
    store.close()
