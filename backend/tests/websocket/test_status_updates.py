"""
Tests for WebSocket status broadcasting.
"""

import asyncio
import json
import pytest
from unittest.mock import AsyncMock

from gradesync.websocket.status_updates import BroadcastStatusReporter, ConnectionManager


@pytest.fixture
def connection_manager():
    return ConnectionManager()


def mock_websocket():
    websocket = AsyncMock()
    websocket.send_text = AsyncMock()
    return websocket


class TestConnectionManager:
    """Test per-course connection tracking."""

    @pytest.mark.asyncio
    async def test_connect_confirms(self, connection_manager):
        websocket = mock_websocket()

        await connection_manager.connect(websocket, "42")

        websocket.accept.assert_awaited_once()
        message = json.loads(websocket.send_text.call_args[0][0])
        assert message["type"] == "connection_confirmed"
        assert connection_manager.get_active_connections_count("42") == 1

    @pytest.mark.asyncio
    async def test_broadcast_drops_failed_connections(self, connection_manager):
        healthy, broken = mock_websocket(), mock_websocket()
        await connection_manager.connect(healthy, "42")
        await connection_manager.connect(broken, "42")
        broken.send_text.side_effect = RuntimeError("closed")

        await connection_manager.broadcast_to_course("42", {"type": "grade_sync_status"})

        assert connection_manager.get_active_connections_count("42") == 1

    def test_disconnect_unknown_socket(self, connection_manager):
        connection_manager.disconnect(mock_websocket())

        assert connection_manager.active_connections == {}


class TestBroadcastStatusReporter:
    """Test non-blocking status forwarding."""

    @pytest.mark.asyncio
    async def test_report_is_broadcast(self, connection_manager):
        websocket = mock_websocket()
        await connection_manager.connect(websocket, "42")
        reporter = BroadcastStatusReporter(connection_manager, "42")

        reporter.report("Bulk uploading status: RUNNING. (Elapsed time: 4s)", transient=True)
        await asyncio.gather(*reporter._pending)

        message = json.loads(websocket.send_text.call_args[0][0])
        assert message["type"] == "grade_sync_status"
        assert message["transient"] is True
        assert message["message"].startswith("Bulk uploading status")

    def test_report_without_listeners_is_noop(self, connection_manager):
        reporter = BroadcastStatusReporter(connection_manager, "42")

        reporter.report("nobody listening")

        assert reporter._pending == set()
