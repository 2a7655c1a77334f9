"""
Unit tests for ConnectivityMonitor.
"""
import threading

import requests

from session_client.connectivity import ConnectivityMonitor


class TestConnectivityMonitor:
    """Tests for connectivity change tracking."""

    def test_publishes_only_on_change(self, connectivity):
        changes = []
        connectivity.subscribe(changes.append)

        connectivity.set_online(True)
        connectivity.set_online(False)
        connectivity.set_online(False)
        connectivity.set_online(True)

        assert changes == [False, True]

    def test_connected_without_internet_is_offline(self, connectivity):
        connectivity.set_online(True, internet_reachable=False)
        assert not connectivity.is_online

    def test_unknown_reachability_counts_as_online(self, connectivity):
        connectivity.set_online(False)
        connectivity.set_online(True, internet_reachable=None)
        assert connectivity.is_online

    def test_probe_without_url_keeps_state(self, connectivity):
        assert connectivity.probe() is True

    def test_probe_success(self, mocker):
        session = mocker.MagicMock()
        monitor = ConnectivityMonitor(probe_url='https://remote.test/health', session=session)

        assert monitor.probe()
        session.head.assert_called_once_with('https://remote.test/health', timeout=3.0)

    def test_probe_failure(self, mocker):
        session = mocker.MagicMock()
        session.head.side_effect = requests.exceptions.ConnectionError("unreachable")
        monitor = ConnectivityMonitor(probe_url='https://remote.test/health', session=session)

        assert not monitor.probe()

    def test_start_without_probe_is_noop(self, connectivity):
        connectivity.start()
        assert connectivity._thread is None
        connectivity.stop()

    def test_polling_thread_reports_outage(self, mocker):
        session = mocker.MagicMock()
        session.head.side_effect = requests.exceptions.ConnectionError("unreachable")
        monitor = ConnectivityMonitor(
            probe_url='https://remote.test/health', poll_interval=0.01, session=session
        )

        reported = threading.Event()
        monitor.subscribe(lambda online: reported.set())

        monitor.start()
        try:
            assert reported.wait(timeout=2)
        finally:
            monitor.stop()

        assert not monitor.is_online
