"""Connectivity monitor for the offline client.

Keeps a snapshot of the current network conditions and tells listeners
when the snapshot changes. The snapshot is fed either by the host
environment calling update() or by a probe callable (for example the TCP
probe returned by tcp_probe()) invoked through probe().

Link quality drives two decisions elsewhere: how much the retry scheduler
drains per cycle and how long a sync is expected to take.
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

__all__ = [
    "NetworkStatus",
    "ConnectivityMonitor",
    "tcp_probe",
    "probe_for_url",
    "OFFLINE",
]

# Expected items per second by effective connection type
_THROUGHPUT: Dict[str, int] = {"4g": 20, "3g": 10, "2g": 3, "slow-2g": 1}
_DEFAULT_THROUGHPUT = 10

_QUALITY: Dict[str, str] = {
    "4g": "Excellent",
    "3g": "Good",
    "2g": "Poor",
    "slow-2g": "Very Poor",
}

_SLOW_TYPES = frozenset(["2g", "slow-2g"])


@dataclass(frozen=True)
class NetworkStatus:
    """Snapshot of network conditions.

    Attributes:
        online: Whether the network is reachable
        effective_type: "4g", "3g", "2g", "slow-2g" or None if unknown
        downlink: Estimated bandwidth in Mbit/s, if known
        rtt: Estimated round-trip time in ms, if known
        save_data: Whether the user asked to reduce data usage
    """

    online: bool
    effective_type: Optional[str] = None
    downlink: Optional[float] = None
    rtt: Optional[float] = None
    save_data: bool = False


OFFLINE = NetworkStatus(online=False)

Listener = Callable[[NetworkStatus], None]
Probe = Callable[[], NetworkStatus]


def tcp_probe(host: str, port: int, timeout: float = 5.0) -> Probe:
    """Build a probe that reports online if a TCP connection succeeds.

    The measured connect time is reported as rtt.
    """
    def probe() -> NetworkStatus:
        started = time.monotonic()
        try:
            with socket.create_connection((host, port), timeout=timeout):
                pass
        except OSError as e:
            logger.debug(f"Probe of {host}:{port} failed: {e}")
            return OFFLINE
        rtt_ms = (time.monotonic() - started) * 1000.0
        return NetworkStatus(online=True, rtt=round(rtt_ms, 1))

    return probe


def probe_for_url(url: str, timeout: float = 5.0) -> Probe:
    """Build a TCP probe for the host and port of a server URL."""
    parsed = urlparse(url)
    port = parsed.port or (443 if parsed.scheme == "https" else 80)
    return tcp_probe(parsed.hostname or "127.0.0.1", port, timeout)


class ConnectivityMonitor:
    """Holds the current NetworkStatus and notifies listeners on change."""

    def __init__(
        self,
        probe: Optional[Probe] = None,
        initial: NetworkStatus = OFFLINE,
    ) -> None:
        """Initialize the monitor.

        Args:
            probe: Callable returning a fresh snapshot, used by probe()
            initial: Snapshot to start from (default offline)
        """
        self._probe = probe
        self._status = initial
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()
        self._online = threading.Event()
        if initial.online:
            self._online.set()

    # ===== Snapshot =====

    @property
    def status(self) -> NetworkStatus:
        with self._lock:
            return self._status

    def update(self, status: NetworkStatus) -> bool:
        """Replace the snapshot.

        Listeners are called only if the snapshot actually changed. An
        exception raised by one listener is logged and does not prevent
        the others from running.

        Returns:
            True if the snapshot changed
        """
        with self._lock:
            if status == self._status:
                return False
            previous = self._status
            self._status = status
            listeners = list(self._listeners)

        if status.online:
            self._online.set()
        else:
            self._online.clear()

        if previous.online != status.online:
            logger.info(f"Network is now {'online' if status.online else 'offline'}")
        else:
            logger.debug(f"Network status changed: {status}")

        for listener in listeners:
            try:
                listener(status)
            except Exception as e:
                logger.error(f"Error in network change listener {listener!r}: {e}")
        return True

    def set_online(self, online: bool) -> bool:
        """Flip only the online flag, keeping the other link properties."""
        return self.update(replace(self.status, online=online))

    def probe(self) -> NetworkStatus:
        """Refresh the snapshot from the probe, if one is configured."""
        if self._probe is not None:
            try:
                self.update(self._probe())
            except Exception as e:
                logger.error(f"Connectivity probe failed: {e}")
                self.update(OFFLINE)
        return self.status

    # ===== Listeners =====

    def add_listener(self, listener: Listener) -> None:
        """Register a callback for status changes. Registering twice is a no-op."""
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with self._lock:
            self._listeners = [cb for cb in self._listeners if cb != listener]

    # ===== Queries =====

    def is_online(self) -> bool:
        return self.status.online

    def is_fast_enough(self) -> bool:
        """Whether the link is good enough for bulk sync.

        Unknown link types count as fast enough.
        """
        status = self.status
        if not status.online:
            return False
        return status.effective_type not in _SLOW_TYPES

    def is_save_data_enabled(self) -> bool:
        return self.status.save_data

    def estimated_throughput_items_per_second(self) -> int:
        """Expected sync throughput for the current link (0 when offline)."""
        status = self.status
        if not status.online:
            return 0
        if status.effective_type is None:
            return _DEFAULT_THROUGHPUT
        return _THROUGHPUT.get(status.effective_type, _DEFAULT_THROUGHPUT)

    def connection_quality(self) -> str:
        """Human-readable link quality label."""
        status = self.status
        if not status.online:
            return "Offline"
        if status.effective_type is None:
            return "Unknown"
        return _QUALITY.get(status.effective_type, "Unknown")

    def estimate_sync_time_ms(self, queue_size: int) -> int:
        """Estimated time to sync queue_size items, in milliseconds.

        Returns -1 while offline, since no estimate is possible.
        """
        throughput = self.estimated_throughput_items_per_second()
        if throughput <= 0:
            return -1 if queue_size > 0 else 0
        # Ceiling division
        return -(-queue_size * 1000 // throughput)

    def wait_for_online(self, timeout: Optional[float] = 30.0) -> bool:
        """Block until the monitor reports online.

        Returns:
            True if online, False if the timeout expired first
        """
        return self._online.wait(timeout)
