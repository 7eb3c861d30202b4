"""Priority retry scheduler.

Drains the local queue toward the server one item at a time, highest
priority first. Each cycle is bounded by an attempt budget, which shrinks
on slow links and when the user asked to save data. A failed item goes
back into backoff through SyncQueue.fail() and never stops the cycle.

At most one drain cycle runs at a time per scheduler; a second caller
gets a skipped report instead of waiting.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from .connectivity import ConnectivityMonitor
from .models import QueueItem
from .sync_queue import SyncQueue

logger = logging.getLogger(__name__)

__all__ = [
    "DrainReport",
    "RetryScheduler",
    "calculate_flush_plan",
    "batch_idempotency_key",
]

SendFn = Callable[[QueueItem], Dict[str, Any]]
PushFn = Callable[[List[QueueItem], str], Dict[str, Any]]

T = TypeVar("T")


@dataclass
class DrainReport:
    """Summary of one drain cycle."""

    attempted: int = 0
    completed: int = 0
    failed: int = 0
    terminal: int = 0  # Failures that exhausted the item's attempts
    skipped: Optional[str] = None  # "offline" or "busy" if the cycle did not run


def _retries(item: Any) -> int:
    if isinstance(item, dict):
        return int(item.get("retries", item.get("attempts", 0)) or 0)
    return int(getattr(item, "attempts", 0) or 0)


def calculate_flush_plan(
    items: Sequence[T],
    retry_ceiling: int = 3,
    batch_size: int = 25,
) -> List[T]:
    """Pick the items to push in one batch.

    Items that already failed retry_ceiling times are left out, then the
    list is cut to batch_size. Order is preserved.

    Args:
        items: Queue items (or dicts with a "retries" count)
        retry_ceiling: Items with this many failures or more are excluded
        batch_size: Maximum number of items in the plan
    """
    return [item for item in items if _retries(item) < retry_ceiling][:batch_size]


def batch_idempotency_key(items: Sequence[QueueItem]) -> str:
    """Derive a stable idempotency key from the IDs of a batch."""
    digest = hashlib.sha256("\n".join(item.id for item in items).encode("utf-8"))
    return digest.hexdigest()[:32]


def _is_success(result: Any) -> bool:
    return isinstance(result, dict) and bool(result.get("success"))


def _error_of(result: Any) -> str:
    if isinstance(result, dict):
        return str(result.get("error") or "send failed")
    return f"unexpected send result: {result!r}"


class RetryScheduler:
    """Drains a SyncQueue in priority order with backoff on failure."""

    def __init__(
        self,
        queue: SyncQueue,
        monitor: ConnectivityMonitor,
        send: SendFn,
        budget: int = 50,
        save_data_budget: int = 5,
        flush_batch_size: int = 25,
        flush_retry_ceiling: int = 3,
    ) -> None:
        """Initialize the scheduler.

        Args:
            queue: Queue to drain
            monitor: Connectivity monitor consulted before each item
            send: Sends one item; returns {"success": True} on acknowledgement
            budget: Maximum attempts per cycle on a normal link
            save_data_budget: Maximum attempts per cycle on a slow or metered link
            flush_batch_size: Maximum items per flush_batch() request
            flush_retry_ceiling: Items failed this often are left out of flush_batch()
        """
        self.queue = queue
        self.monitor = monitor
        self.send = send
        self.budget = budget
        self.save_data_budget = save_data_budget
        self.flush_batch_size = flush_batch_size
        self.flush_retry_ceiling = flush_retry_ceiling
        self._lock = threading.Lock()

    @classmethod
    def from_config(
        cls, queue: SyncQueue, monitor: ConnectivityMonitor, send: SendFn, config: Any
    ) -> "RetryScheduler":
        """Build a scheduler with budgets from a Config instance."""
        return cls(
            queue,
            monitor,
            send,
            budget=int(config.get_sync_value("drain_budget")),
            save_data_budget=int(config.get_sync_value("save_data_budget")),
            flush_batch_size=int(config.get_sync_value("flush_batch_size")),
            flush_retry_ceiling=int(config.get_sync_value("flush_retry_ceiling")),
        )

    def current_budget(self) -> int:
        """Attempt budget for a cycle under the current link conditions."""
        if self.monitor.is_save_data_enabled() or not self.monitor.is_fast_enough():
            return min(self.budget, self.save_data_budget)
        return self.budget

    @property
    def is_draining(self) -> bool:
        return self._lock.locked()

    def drain(self) -> DrainReport:
        """Run one drain cycle.

        Returns:
            DrainReport; skipped is set if the cycle did not run
        """
        if not self.monitor.is_online():
            logger.debug("Drain skipped: offline")
            return DrainReport(skipped="offline")
        if not self._lock.acquire(blocking=False):
            logger.debug("Drain skipped: another cycle is running")
            return DrainReport(skipped="busy")

        report = DrainReport()
        try:
            budget = self.current_budget()
            while report.attempted < budget:
                if not self.monitor.is_online():
                    logger.info("Went offline during drain; stopping cycle")
                    break
                item = self.queue.peek_ready()
                if item is None:
                    break
                report.attempted += 1
                self._attempt(item, report)
        finally:
            self._lock.release()

        if report.attempted:
            logger.info(
                f"Drain finished: {report.completed} sent, {report.failed} failed "
                f"({report.terminal} permanently), {self.queue.size()} left"
            )
        return report

    def _attempt(self, item: QueueItem, report: DrainReport) -> None:
        try:
            result = self.send(item)
        except Exception as e:
            logger.error(f"Error sending queue item {item.id}: {e}")
            result = {"success": False, "error": str(e)}

        if _is_success(result):
            self.queue.complete(item.id)
            report.completed += 1
            return

        updated = self.queue.fail(item.id, _error_of(result))
        report.failed += 1
        if updated is not None and updated.is_terminal:
            report.terminal += 1

    def flush_batch(self, push: PushFn) -> DrainReport:
        """Push ready items in a single request.

        The items are chosen by calculate_flush_plan(). On success all of
        them are completed; on failure all of them go back into backoff.

        Args:
            push: Sends (items, idempotency_key); returns {"success": True} on acknowledgement
        """
        if not self.monitor.is_online():
            return DrainReport(skipped="offline")
        if not self._lock.acquire(blocking=False):
            return DrainReport(skipped="busy")

        report = DrainReport()
        try:
            plan = calculate_flush_plan(
                self.queue.list_ready(),
                retry_ceiling=self.flush_retry_ceiling,
                batch_size=min(self.flush_batch_size, self.current_budget()),
            )
            if not plan:
                return report
            report.attempted = len(plan)
            key = batch_idempotency_key(plan)
            try:
                result = push(plan, key)
            except Exception as e:
                logger.error(f"Error pushing batch of {len(plan)} items: {e}")
                result = {"success": False, "error": str(e)}

            if _is_success(result):
                for item in plan:
                    self.queue.complete(item.id)
                report.completed = len(plan)
            else:
                error = _error_of(result)
                for item in plan:
                    updated = self.queue.fail(item.id, error)
                    report.failed += 1
                    if updated is not None and updated.is_terminal:
                        report.terminal += 1
        finally:
            self._lock.release()

        logger.info(
            f"Batch flush: {report.completed} sent, {report.failed} failed of {report.attempted}"
        )
        return report
