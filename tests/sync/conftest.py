"""Pytest fixtures for sync integration tests.

This module provides fixtures for:
- Spawning a real sync server process
- Creating client devices, each with its own database and config
"""

from __future__ import annotations

import os
import socket
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional

import pytest
import requests

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from fieldsync.background import BackgroundSync
from fieldsync.config import Config
from fieldsync.connectivity import ConnectivityMonitor
from fieldsync.database import Database
from fieldsync.models import QueueItem, SyncEvent
from fieldsync.outbox import OutboxStore
from fieldsync.scheduler import RetryScheduler
from fieldsync.sync_client import SyncClient
from fieldsync.sync_queue import RetryPolicy, SyncQueue


SRC_DIR = Path(__file__).parent.parent.parent / "src"
OWNER_ID = "worker-1"


def find_free_port() -> int:
    """Find a free TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        return s.getsockname()[1]


@dataclass
class SyncServer:
    """A sync server process for testing."""

    config_dir: Path
    port: int
    process: Optional[subprocess.Popen] = None

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    @property
    def log_file(self) -> Path:
        return self.config_dir / "server.log"

    def start(self) -> None:
        env = os.environ.copy()
        env["PYTHONPATH"] = str(SRC_DIR)
        cmd = [
            sys.executable,
            "-m", "fieldsync.main",
            "-d", str(self.config_dir),
            "serve",
            "--host", "127.0.0.1",
            "--port", str(self.port),
        ]
        # Log to a file; a full stdout pipe would block the server
        with open(self.log_file, "ab") as log:
            self.process = subprocess.Popen(cmd, env=env, stdout=log, stderr=subprocess.STDOUT)

    def is_server_running(self) -> bool:
        """Check if the sync server is responding."""
        try:
            resp = requests.get(f"{self.url}/sync/status", timeout=1)
            return resp.status_code == 200
        except requests.exceptions.RequestException:
            return False

    def wait_for_server(self, timeout: float = 15.0) -> bool:
        """Wait for server to become available."""
        start = time.time()
        while time.time() - start < timeout:
            if self.is_server_running():
                return True
            time.sleep(0.1)
        return False

    def stop(self) -> None:
        """Stop the sync server process."""
        if self.process:
            self.process.terminate()
            try:
                self.process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self.process.kill()
                self.process.wait()
            self.process = None

    def feed(self, owner_id: str = OWNER_ID, cursor: Optional[str] = None) -> List[Dict[str, Any]]:
        """Read the owner's whole feed over HTTP."""
        params = {"limit": 1000}
        if cursor:
            params["cursor"] = cursor
        resp = requests.get(
            f"{self.url}/sync/since", params=params, headers={"X-Owner-ID": owner_id}, timeout=5
        )
        resp.raise_for_status()
        return resp.json()


class ManualClock:
    """Epoch clock starting at real time that only moves when told to."""

    def __init__(self) -> None:
        self.now = time.time()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class Device:
    """A client device: database, queue and sync machinery wired together."""

    name: str
    config: Config
    db: Database
    clock: ManualClock
    monitor: ConnectivityMonitor
    queue: SyncQueue
    client: SyncClient
    scheduler: RetryScheduler
    background: BackgroundSync
    sent: List[QueueItem] = field(default_factory=list)
    received: List[SyncEvent] = field(default_factory=list)

    def close(self) -> None:
        self.background.stop()
        self.db.close()


def create_device(name: str, base_dir: Path, server_url: str) -> Device:
    """Create a device that starts offline.

    Args:
        name: Human-readable device name
        base_dir: Base directory for device files
        server_url: Sync server the device talks to

    Returns:
        Device instance
    """
    config_dir = base_dir / name
    config = Config(config_dir=config_dir)
    config.set("owner_id", OWNER_ID)
    config.set("server_url", server_url)
    config.set("device_name", name)
    config.set_sync_value("request_timeout", 5)

    db = Database(config.get_database_file())
    clock = ManualClock()
    monitor = ConnectivityMonitor()
    queue = SyncQueue(db, RetryPolicy.from_config(config), clock=clock)
    client = SyncClient(db, config)

    sent: List[QueueItem] = []

    def send(item: QueueItem) -> Dict[str, Any]:
        result = client.send_item(item)
        if result.get("success"):
            sent.append(item)
        return result

    scheduler = RetryScheduler.from_config(queue, monitor, send, config)
    received: List[SyncEvent] = []
    background = BackgroundSync(OutboxStore(db), scheduler, client, apply=received.extend)

    return Device(
        name=name,
        config=config,
        db=db,
        clock=clock,
        monitor=monitor,
        queue=queue,
        client=client,
        scheduler=scheduler,
        background=background,
        sent=sent,
        received=received,
    )


def wait_for_condition(condition: Callable[[], bool], timeout: float = 10.0, interval: float = 0.1) -> bool:
    """Poll until condition() is true or the timeout expires."""
    start = time.time()
    while time.time() - start < timeout:
        if condition():
            return True
        time.sleep(interval)
    return False


@pytest.fixture
def sync_server(tmp_path: Path) -> Generator[SyncServer, None, None]:
    """Sync server configuration, not yet started."""
    config_dir = tmp_path / "server"
    config_dir.mkdir(parents=True, exist_ok=True)
    server = SyncServer(config_dir=config_dir, port=find_free_port())
    yield server
    server.stop()


@pytest.fixture
def running_server(sync_server: SyncServer) -> SyncServer:
    """Sync server with a running process."""
    sync_server.start()
    if not sync_server.wait_for_server():
        sync_server.stop()
        log = sync_server.log_file.read_text(errors="replace") if sync_server.log_file.exists() else ""
        pytest.fail(f"Sync server failed to start:\n{log}")
    return sync_server


@pytest.fixture
def device_a(tmp_path: Path, sync_server: SyncServer) -> Generator[Device, None, None]:
    device = create_device("DeviceA", tmp_path, sync_server.url)
    yield device
    device.close()


@pytest.fixture
def device_b(tmp_path: Path, sync_server: SyncServer) -> Generator[Device, None, None]:
    device = create_device("DeviceB", tmp_path, sync_server.url)
    yield device
    device.close()
