"""
WebSocket handler for live grade sync status updates.
"""
import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Set

from fastapi import WebSocket, WebSocketDisconnect

from gradesync.services.grade_sync.status import StatusReporter

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Manages WebSocket connections per course."""

    def __init__(self):
        # Dictionary of course_id -> set of WebSocket connections
        self.active_connections: Dict[str, Set[WebSocket]] = {}
        # Dictionary of WebSocket -> course_id for cleanup
        self.connection_course_map: Dict[WebSocket, str] = {}

    async def connect(self, websocket: WebSocket, course_id: str) -> None:
        await websocket.accept()

        self.active_connections.setdefault(course_id, set()).add(websocket)
        self.connection_course_map[websocket] = course_id

        await self._send_to_websocket(websocket, {
            "type": "connection_confirmed",
            "course_id": course_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "message": "Connected to grade sync updates"
        })

    def disconnect(self, websocket: WebSocket) -> None:
        """Remove WebSocket connection and cleanup."""
        course_id = self.connection_course_map.pop(websocket, None)
        if course_id is None:
            return

        connections = self.active_connections.get(course_id)
        if connections is not None:
            connections.discard(websocket)
            if not connections:
                del self.active_connections[course_id]

    async def broadcast_to_course(self, course_id: str, message: dict) -> None:
        """
        Broadcast message to all connections for a specific course.

        Connections that fail to receive are dropped.
        """
        if course_id not in self.active_connections:
            return

        connections = self.active_connections[course_id].copy()

        failed_connections = []
        for websocket in connections:
            try:
                await self._send_to_websocket(websocket, message)
            except Exception:
                failed_connections.append(websocket)

        for websocket in failed_connections:
            self.disconnect(websocket)

    async def _send_to_websocket(self, websocket: WebSocket, message: dict) -> None:
        await websocket.send_text(json.dumps(message))

    def get_active_connections_count(self, course_id: str) -> int:
        return len(self.active_connections.get(course_id, set()))

    async def websocket_endpoint(self, websocket: WebSocket, course_id: str) -> None:
        await self.connect(websocket, course_id)
        try:
            # Clients only listen; incoming text keeps the connection alive
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            self.disconnect(websocket)
        except Exception as e:
            logger.error(f"WebSocket error for course {course_id}: {e}")
            self.disconnect(websocket)


class BroadcastStatusReporter(StatusReporter):
    """Forwards status messages to a course's WebSocket listeners without waiting."""

    def __init__(self, connection_manager: ConnectionManager, course_id: str):
        self.connection_manager = connection_manager
        self.course_id = str(course_id)
        self._pending: Set[asyncio.Task] = set()

    def report(self, message: str, transient: bool = False) -> None:
        if not self.connection_manager.get_active_connections_count(self.course_id):
            return

        payload = {
            "type": "grade_sync_status",
            "course_id": self.course_id,
            "message": message,
            "transient": transient,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
        task = asyncio.get_running_loop().create_task(
            self.connection_manager.broadcast_to_course(self.course_id, payload)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)


# Global connection manager instance
manager = ConnectionManager()
