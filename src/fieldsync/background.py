"""Background sync triggers.

Every way a sync can start (the periodic timer, the network coming back,
an explicit "sync now") goes through one entry point, attempt_sync(),
which replays the outbox, drains the queue and catches up on the feed.
Overlapping calls are harmless: a call made while another one runs
returns a skipped summary right away.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .connectivity import ConnectivityMonitor, NetworkStatus
from .models import SyncEvent
from .outbox import OutboxStore
from .scheduler import DrainReport, RetryScheduler
from .storage import StorageSteward
from .sync_client import SyncClient

logger = logging.getLogger(__name__)

__all__ = ["BackgroundSync", "SyncSummary"]


@dataclass
class SyncSummary:
    """Outcome of one attempt_sync() call."""

    replayed: int = 0
    drain: DrainReport = field(default_factory=DrainReport)
    feed: Dict[str, Any] = field(default_factory=dict)
    skipped: Optional[str] = None  # "offline" or "busy"


def _ignore_events(events: List[SyncEvent]) -> None:
    logger.debug(f"Received {len(events)} feed events with no handler attached")


class BackgroundSync:
    """Runs sync cycles on demand, on a timer and on reconnect."""

    def __init__(
        self,
        outbox: OutboxStore,
        scheduler: RetryScheduler,
        client: SyncClient,
        apply: Optional[Callable[[List[SyncEvent]], None]] = None,
        storage: Optional[StorageSteward] = None,
    ) -> None:
        """Initialize the trigger.

        Args:
            outbox: Outbox replayed at the start of each cycle
            scheduler: Scheduler whose queue is drained
            client: Sync client used for replay and feed catch-up
            apply: Handler for incoming feed pages
            storage: Storage steward checked at the end of each cycle
        """
        self.outbox = outbox
        self.scheduler = scheduler
        self.client = client
        self.apply = apply or _ignore_events
        self.storage = storage
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._was_online: Optional[bool] = None

    def attempt_sync(self) -> SyncSummary:
        """Run one full sync cycle.

        Returns:
            SyncSummary; skipped is set if the cycle did not run
        """
        if not self.scheduler.monitor.is_online():
            logger.debug("Sync skipped: offline")
            return SyncSummary(skipped="offline")
        if not self._lock.acquire(blocking=False):
            logger.debug("Sync skipped: a cycle is already running")
            return SyncSummary(skipped="busy")

        try:
            summary = SyncSummary()
            summary.replayed = self.outbox.replay(self.client.replay_request)
            summary.drain = self.scheduler.drain()
            summary.feed = self.client.catch_up(self.apply)
            if self.storage is not None:
                self.storage.check()
        finally:
            self._lock.release()

        logger.info(
            f"Sync cycle: replayed {summary.replayed}, sent {summary.drain.completed}, "
            f"failed {summary.drain.failed}, received {summary.feed.get('applied', 0)}"
        )
        return summary

    # ===== Triggers =====

    def attach(self, monitor: ConnectivityMonitor, run_in_thread: bool = True) -> None:
        """Start a sync whenever the monitor goes from offline to online.

        Args:
            monitor: Connectivity monitor to listen to
            run_in_thread: Run the sync on a worker thread instead of the notifying one
        """
        self._was_online = monitor.is_online()

        def on_change(status: NetworkStatus) -> None:
            came_online = status.online and not self._was_online
            self._was_online = status.online
            if not came_online:
                return
            logger.info("Connectivity restored, starting sync")
            if run_in_thread:
                threading.Thread(
                    target=self.attempt_sync, daemon=True, name="fieldsync-reconnect"
                ).start()
            else:
                self.attempt_sync()

        monitor.add_listener(on_change)

    def start(self, interval: float) -> None:
        """Run attempt_sync() every `interval` seconds on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run_periodic, args=(interval,), daemon=True, name="fieldsync-periodic"
        )
        self._thread.start()
        logger.info(f"Periodic sync started (every {interval:.0f}s)")

    def _run_periodic(self, interval: float) -> None:
        while not self._stop.wait(interval):
            try:
                self.attempt_sync()
            except Exception as e:
                logger.error(f"Periodic sync failed: {e}")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the periodic thread."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Periodic sync stopped")
