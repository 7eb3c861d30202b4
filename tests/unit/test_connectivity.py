"""Unit tests for the connectivity monitor."""

from __future__ import annotations

import socket
from typing import List

import pytest

from fieldsync.connectivity import OFFLINE, ConnectivityMonitor, NetworkStatus, tcp_probe


def _status(effective_type=None, online=True, save_data=False) -> NetworkStatus:
    return NetworkStatus(online=online, effective_type=effective_type, save_data=save_data)


class TestListeners:
    """Test change notification."""

    def test_notified_only_on_change(self) -> None:
        monitor = ConnectivityMonitor()
        seen: List[NetworkStatus] = []
        monitor.add_listener(seen.append)

        assert monitor.update(_status("4g"))
        assert not monitor.update(_status("4g"))
        assert monitor.update(_status("3g"))
        assert seen == [_status("4g"), _status("3g")]

    def test_duplicate_registration(self) -> None:
        monitor = ConnectivityMonitor()
        seen: List[NetworkStatus] = []
        monitor.add_listener(seen.append)
        monitor.add_listener(seen.append)
        monitor.set_online(True)
        assert len(seen) == 1

    def test_failing_listener_does_not_stop_others(self) -> None:
        monitor = ConnectivityMonitor()
        seen: List[NetworkStatus] = []

        def broken(status: NetworkStatus) -> None:
            raise RuntimeError("listener bug")

        monitor.add_listener(broken)
        monitor.add_listener(seen.append)
        assert monitor.update(_status("4g"))
        assert seen == [_status("4g")]
        assert monitor.is_online()

    def test_remove_listener(self) -> None:
        monitor = ConnectivityMonitor()
        seen: List[NetworkStatus] = []
        monitor.add_listener(seen.append)
        monitor.remove_listener(seen.append)
        monitor.set_online(True)
        assert seen == []

    def test_set_online_keeps_link_properties(self) -> None:
        monitor = ConnectivityMonitor(initial=_status("3g", save_data=True))
        monitor.set_online(False)
        assert monitor.status == _status("3g", online=False, save_data=True)


class TestQueries:
    """Test link quality queries."""

    @pytest.mark.parametrize(
        "effective_type, throughput, quality",
        [
            ("4g", 20, "Excellent"),
            ("3g", 10, "Good"),
            ("2g", 3, "Poor"),
            ("slow-2g", 1, "Very Poor"),
            (None, 10, "Unknown"),
        ],
    )
    def test_throughput_and_quality(self, effective_type, throughput: int, quality: str) -> None:
        monitor = ConnectivityMonitor(initial=_status(effective_type))
        assert monitor.estimated_throughput_items_per_second() == throughput
        assert monitor.connection_quality() == quality

    def test_offline(self) -> None:
        monitor = ConnectivityMonitor()
        assert not monitor.is_online()
        assert monitor.estimated_throughput_items_per_second() == 0
        assert monitor.connection_quality() == "Offline"
        assert not monitor.is_fast_enough()

    def test_is_fast_enough(self) -> None:
        assert ConnectivityMonitor(initial=_status("4g")).is_fast_enough()
        assert ConnectivityMonitor(initial=_status(None)).is_fast_enough()
        assert not ConnectivityMonitor(initial=_status("2g")).is_fast_enough()
        assert not ConnectivityMonitor(initial=_status("slow-2g")).is_fast_enough()

    def test_estimate_sync_time(self) -> None:
        assert ConnectivityMonitor(initial=_status("4g")).estimate_sync_time_ms(30) == 1500
        assert ConnectivityMonitor(initial=_status("2g")).estimate_sync_time_ms(10) == 3334
        assert ConnectivityMonitor().estimate_sync_time_ms(10) == -1
        assert ConnectivityMonitor().estimate_sync_time_ms(0) == 0

    def test_save_data(self) -> None:
        assert ConnectivityMonitor(initial=_status("4g", save_data=True)).is_save_data_enabled()


class TestProbe:
    """Test probe() and the TCP probe."""

    def test_probe_updates_status(self) -> None:
        monitor = ConnectivityMonitor(probe=lambda: _status("4g"))
        assert monitor.probe() == _status("4g")
        assert monitor.is_online()

    def test_failing_probe_means_offline(self) -> None:
        def broken() -> NetworkStatus:
            raise OSError("no route")

        monitor = ConnectivityMonitor(probe=broken, initial=_status("4g"))
        assert monitor.probe() == OFFLINE

    def test_no_probe_keeps_status(self) -> None:
        monitor = ConnectivityMonitor(initial=_status("3g"))
        assert monitor.probe() == _status("3g")

    def test_tcp_probe_listening_port(self) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server:
            server.bind(("127.0.0.1", 0))
            server.listen(1)
            port = server.getsockname()[1]
            status = tcp_probe("127.0.0.1", port, timeout=2.0)()
        assert status.online
        assert status.rtt is not None

    def test_tcp_probe_closed_port(self) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            port = s.getsockname()[1]
        assert tcp_probe("127.0.0.1", port, timeout=1.0)() == OFFLINE


class TestWaitForOnline:
    def test_already_online(self) -> None:
        assert ConnectivityMonitor(initial=_status("4g")).wait_for_online(timeout=0.01)

    def test_times_out_offline(self) -> None:
        assert not ConnectivityMonitor().wait_for_online(timeout=0.01)
