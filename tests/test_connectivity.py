"""
Tests for connectivity tracking.
"""

from unittest.mock import Mock

import pytest

from caseflow.connectivity import ConnectivityMonitor, HttpConnectivityProbe
from caseflow.interfaces import ConnectivityProbe


class StaticProbe(ConnectivityProbe):
    def __init__(self, online):
        self.online = online

    async def check(self):
        return self.online


class TestConnectivityMonitor:
    """Test online/offline state changes."""

    @pytest.mark.asyncio
    async def test_listeners_notified_on_change_only(self):
        monitor = ConnectivityMonitor()
        listener = Mock()
        monitor.add_listener(listener)

        monitor.set_connected(True)
        monitor.set_connected(False)
        monitor.set_connected(False)

        listener.assert_called_once_with(False)
        assert await monitor.is_connected() is False

    @pytest.mark.asyncio
    async def test_probe_is_consulted(self):
        probe = StaticProbe(False)
        monitor = ConnectivityMonitor(probe=probe)

        assert await monitor.is_connected() is False
        probe.online = True
        assert await monitor.is_connected() is True

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_others(self):
        monitor = ConnectivityMonitor()
        second = Mock()
        monitor.add_listener(Mock(side_effect=RuntimeError("boom")))
        monitor.add_listener(second)

        monitor.set_connected(False)

        second.assert_called_once_with(False)


class TestHttpConnectivityProbe:
    """Test the HTTP reachability probe."""

    @pytest.mark.asyncio
    async def test_any_http_answer_is_online(self, server):
        # /api/cases answers 401 without a token, which still proves reachability
        probe = HttpConnectivityProbe(str(server.make_url("/api/cases")))
        assert await probe.check() is True

    @pytest.mark.asyncio
    async def test_server_error_is_offline(self, server, backend):
        backend.always_fail[("GET", "/health")] = 503
        probe = HttpConnectivityProbe(str(server.make_url("/api/health")))
        assert await probe.check() is False

    @pytest.mark.asyncio
    async def test_unreachable_is_offline(self):
        probe = HttpConnectivityProbe("http://127.0.0.1:9/health", timeout=1.0)
        assert await probe.check() is False
