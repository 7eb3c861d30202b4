"""Unit tests for the priority retry scheduler.

Tests src/fieldsync/scheduler.py: flush planning, drain cycles under
different link conditions, failure handling and batch flushes.
"""

from __future__ import annotations

from typing import Any, Dict, List

import pytest

from fieldsync.connectivity import ConnectivityMonitor, NetworkStatus
from fieldsync.models import Priority, QueueItem
from fieldsync.scheduler import RetryScheduler, batch_idempotency_key, calculate_flush_plan
from fieldsync.sync_queue import SyncQueue

from helpers import FakeClock


class RecordingSender:
    """send() stand-in that records items and fails chosen IDs."""

    def __init__(self, fail_ids: Any = ()) -> None:
        self.sent: List[QueueItem] = []
        self.fail_ids = set(fail_ids)

    def __call__(self, item: QueueItem) -> Dict[str, Any]:
        self.sent.append(item)
        if item.id in self.fail_ids:
            return {"success": False, "error": "HTTP 503"}
        return {"success": True}


class _Stub:
    def __init__(self, item_id: str) -> None:
        self.id = item_id


def queue_items_with_ids(ids: List[str]) -> List[Any]:
    return [_Stub(i) for i in ids]


class TestFlushPlan:
    """Test calculate_flush_plan()."""

    def test_excludes_items_at_retry_ceiling(self) -> None:
        items = [{"id": 1, "retries": 0}, {"id": 2, "retries": 3}, {"id": 3, "retries": 2}]
        assert [i["id"] for i in calculate_flush_plan(items)] == [1, 3]

    def test_caps_batch_size(self) -> None:
        items = [{"id": n, "retries": 0} for n in range(40)]
        plan = calculate_flush_plan(items)
        assert len(plan) == 25
        assert plan[0]["id"] == 0

    def test_accepts_queue_items(self, queue: SyncQueue) -> None:
        """Queue items are judged by their attempts."""
        fresh = queue.enqueue("task", "1")
        tired = queue.enqueue("task", "2")
        for _ in range(3):
            queue.fail(tired, "boom")
        plan = calculate_flush_plan(queue.list_all(), retry_ceiling=3)
        assert [item.id for item in plan] == [fresh]

    def test_empty(self) -> None:
        assert calculate_flush_plan([]) == []


class TestDrain:
    """Test drain()."""

    def test_offline_skips(self, queue: SyncQueue) -> None:
        queue.enqueue("task", "x")
        sender = RecordingSender()
        scheduler = RetryScheduler(queue, ConnectivityMonitor(), sender)
        report = scheduler.drain()
        assert report.skipped == "offline"
        assert sender.sent == []
        assert queue.size() == 1

    def test_drains_in_priority_order(
        self, queue: SyncQueue, online_monitor: ConnectivityMonitor
    ) -> None:
        low = queue.enqueue("note", "1", Priority.LOW)
        high = queue.enqueue("attendance", "2", Priority.HIGH)
        med = queue.enqueue("photo", "3", Priority.MEDIUM)
        sender = RecordingSender()

        report = RetryScheduler(queue, online_monitor, sender).drain()

        assert [item.id for item in sender.sent] == [high, med, low]
        assert report.completed == 3
        assert queue.is_empty()

    def test_failure_does_not_stop_cycle(
        self, queue: SyncQueue, online_monitor: ConnectivityMonitor
    ) -> None:
        """A failed item goes into backoff and the rest are still sent."""
        bad = queue.enqueue("task", "1")
        good = queue.enqueue("task", "2")
        sender = RecordingSender(fail_ids=[bad])

        report = RetryScheduler(queue, online_monitor, sender).drain()

        assert report.attempted == 2
        assert report.completed == 1
        assert report.failed == 1
        assert queue.get(good) is None
        assert queue.get(bad).attempts == 1

    def test_exception_counts_as_failure(
        self, queue: SyncQueue, online_monitor: ConnectivityMonitor
    ) -> None:
        item_id = queue.enqueue("task", "1")

        def explode(item: QueueItem) -> Dict[str, Any]:
            raise ConnectionError("socket closed")

        report = RetryScheduler(queue, online_monitor, explode).drain()
        assert report.failed == 1
        assert queue.get(item_id).error == "socket closed"

    def test_terminal_failures_reported(
        self, queue: SyncQueue, online_monitor: ConnectivityMonitor, clock: FakeClock
    ) -> None:
        item_id = queue.enqueue("note", "1", Priority.LOW)
        for _ in range(2):
            queue.fail(item_id, "boom")
        clock.advance(100)

        report = RetryScheduler(queue, online_monitor, RecordingSender(fail_ids=[item_id])).drain()
        assert report.terminal == 1
        assert queue.get(item_id).is_terminal

    def test_each_item_attempted_once_per_cycle(
        self, queue: SyncQueue, online_monitor: ConnectivityMonitor
    ) -> None:
        """A failed item is in backoff, so the cycle does not spin on it."""
        item_id = queue.enqueue("task", "1")
        sender = RecordingSender(fail_ids=[item_id])
        report = RetryScheduler(queue, online_monitor, sender).drain()
        assert report.attempted == 1
        assert len(sender.sent) == 1

    @pytest.mark.parametrize(
        "status",
        [
            NetworkStatus(online=True, effective_type="4g", save_data=True),
            NetworkStatus(online=True, effective_type="2g"),
            NetworkStatus(online=True, effective_type="slow-2g"),
        ],
    )
    def test_reduced_budget(self, queue: SyncQueue, status: NetworkStatus) -> None:
        """Save-data and slow links cap the attempts per cycle."""
        for n in range(8):
            queue.enqueue("task", str(n))
        scheduler = RetryScheduler(queue, ConnectivityMonitor(initial=status), RecordingSender())
        assert scheduler.current_budget() == 5
        report = scheduler.drain()
        assert report.attempted == 5
        assert queue.size() == 3

    def test_normal_budget(self, queue: SyncQueue, online_monitor: ConnectivityMonitor) -> None:
        for n in range(8):
            queue.enqueue("task", str(n))
        scheduler = RetryScheduler(queue, online_monitor, RecordingSender(), budget=6)
        assert scheduler.drain().attempted == 6

    def test_stops_when_going_offline(
        self, queue: SyncQueue, online_monitor: ConnectivityMonitor
    ) -> None:
        for n in range(3):
            queue.enqueue("task", str(n))

        def send_then_drop(item: QueueItem) -> Dict[str, Any]:
            online_monitor.set_online(False)
            return {"success": True}

        report = RetryScheduler(queue, online_monitor, send_then_drop).drain()
        assert report.attempted == 1
        assert queue.size() == 2

    def test_overlapping_drain_is_skipped(
        self, queue: SyncQueue, online_monitor: ConnectivityMonitor
    ) -> None:
        """A drain started while another runs returns a busy report."""
        queue.enqueue("task", "1")
        nested = []

        def reentrant_send(item: QueueItem) -> Dict[str, Any]:
            nested.append((scheduler.is_draining, scheduler.drain()))
            return {"success": True}

        scheduler = RetryScheduler(queue, online_monitor, reentrant_send)
        scheduler.drain()

        assert len(nested) == 1
        was_draining, inner = nested[0]
        assert was_draining
        assert inner.skipped == "busy"
        assert not scheduler.is_draining


class TestFlushBatch:
    """Test flush_batch()."""

    def test_success_completes_all(
        self, queue: SyncQueue, online_monitor: ConnectivityMonitor
    ) -> None:
        ids = [queue.enqueue("task", str(n)) for n in range(3)]
        calls = []

        def push(items: List[QueueItem], key: str) -> Dict[str, Any]:
            calls.append(([i.id for i in items], key))
            return {"success": True, "inserted": len(items)}

        report = RetryScheduler(queue, online_monitor, RecordingSender()).flush_batch(push)

        assert report.completed == 3
        assert queue.is_empty()
        assert calls[0][0] == ids
        assert calls[0][1] == batch_idempotency_key(queue_items_with_ids(ids))

    def test_failure_fails_all(self, queue: SyncQueue, online_monitor: ConnectivityMonitor) -> None:
        ids = [queue.enqueue("task", str(n)) for n in range(2)]
        report = RetryScheduler(queue, online_monitor, RecordingSender()).flush_batch(
            lambda items, key: {"success": False, "error": "HTTP 500"}
        )
        assert report.failed == 2
        assert all(queue.get(i).attempts == 1 for i in ids)

    def test_respects_batch_size(self, queue: SyncQueue, online_monitor: ConnectivityMonitor) -> None:
        for n in range(10):
            queue.enqueue("task", str(n))
        scheduler = RetryScheduler(queue, online_monitor, RecordingSender(), flush_batch_size=4)
        report = scheduler.flush_batch(lambda items, key: {"success": True})
        assert report.completed == 4
        assert queue.size() == 6

    def test_nothing_ready(self, queue: SyncQueue, online_monitor: ConnectivityMonitor) -> None:
        report = RetryScheduler(queue, online_monitor, RecordingSender()).flush_batch(
            lambda items, key: pytest.fail("push called for an empty plan")
        )
        assert report.attempted == 0


class TestIdempotencyKey:
    def test_stable_and_order_sensitive(self) -> None:
        a = batch_idempotency_key(queue_items_with_ids(["a", "b"]))
        assert a == batch_idempotency_key(queue_items_with_ids(["a", "b"]))
        assert a != batch_idempotency_key(queue_items_with_ids(["b", "a"]))
        assert len(a) == 32
