"""
WebSocket Connection Manager

Manages WebSocket connections for live tracking.
Supports:
- Room membership (company_{id}, job_{id}, tracking_{code})
- Broadcasting typed events to one or more rooms
- Sending to specific technicians/users
- Connection heartbeat tracking
"""

from fastapi import WebSocket
from typing import Dict, Iterable, Set, Optional
from datetime import datetime, timezone
import logging
import asyncio

logger = logging.getLogger(__name__)


def company_room(company_id: str) -> str:
    return f"company_{company_id}"


def job_room(job_id: str) -> str:
    return f"job_{job_id}"


def tracking_room(tracking_code: str) -> str:
    return f"tracking_{tracking_code}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionManager:
    """
    Manages WebSocket connections and room broadcasting.

    Tracks connections by user id for targeted messaging, room membership
    for scoped fan-out, and heartbeat timestamps for connection health.
    """

    def __init__(self):
        # Maps user_id to set of WebSocket connections (supports multiple tabs/devices)
        self._connections: Dict[str, Set[WebSocket]] = {}
        # Maps WebSocket to user_id for reverse lookup
        self._websocket_to_user: Dict[WebSocket, str] = {}
        # Room name -> member connections
        self._rooms: Dict[str, Set[WebSocket]] = {}
        # Heartbeat tracking: WebSocket -> last ping timestamp
        self._heartbeats: Dict[WebSocket, datetime] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, user_id: str) -> None:
        """Accept a WebSocket connection and register it."""
        await websocket.accept()

        async with self._lock:
            self._connections.setdefault(user_id, set()).add(websocket)
            self._websocket_to_user[websocket] = user_id
            self._heartbeats[websocket] = _utcnow()

        logger.info(
            f"WebSocket connected: user_id={user_id}, "
            f"total_connections={self.total_connections}"
        )

    def disconnect(self, websocket: WebSocket) -> None:
        """Remove a WebSocket connection and its room memberships."""
        user_id = self._websocket_to_user.pop(websocket, None)
        if user_id is not None and user_id in self._connections:
            self._connections[user_id].discard(websocket)
            if not self._connections[user_id]:
                del self._connections[user_id]

        for room in list(self._rooms):
            self._rooms[room].discard(websocket)
            if not self._rooms[room]:
                del self._rooms[room]

        self._heartbeats.pop(websocket, None)

        logger.info(
            f"WebSocket disconnected: user_id={user_id}, "
            f"total_connections={self.total_connections}"
        )

    def join(self, websocket: WebSocket, rooms: Iterable[str]) -> Set[str]:
        joined = set()
        for room in rooms:
            if not room:
                continue
            self._rooms.setdefault(room, set()).add(websocket)
            joined.add(room)
        return joined

    def leave(self, websocket: WebSocket, rooms: Iterable[str]) -> None:
        for room in rooms:
            members = self._rooms.get(room)
            if members is None:
                continue
            members.discard(websocket)
            if not members:
                del self._rooms[room]

    def rooms_for(self, websocket: WebSocket) -> Set[str]:
        return {room for room, members in self._rooms.items() if websocket in members}

    def update_heartbeat(self, websocket: WebSocket) -> None:
        """Update the heartbeat timestamp for a connection."""
        self._heartbeats[websocket] = _utcnow()

    @property
    def total_connections(self) -> int:
        return len(self._websocket_to_user)

    @property
    def connected_users(self) -> Set[str]:
        return set(self._connections.keys())

    async def _send(self, websocket: WebSocket, message: dict) -> bool:
        try:
            await websocket.send_json(message)
            return True
        except Exception as e:
            logger.warning(f"Failed to send to {self._websocket_to_user.get(websocket)}: {e}")
            self.disconnect(websocket)
            return False

    async def send_to_user(self, user_id: str, message: dict) -> int:
        """Send a message to all connections for a specific user."""
        sent_count = 0
        for websocket in list(self._connections.get(user_id, ())):
            if await self._send(websocket, message):
                sent_count += 1
        return sent_count

    async def broadcast_to_rooms(
        self,
        event_type: str,
        data: dict,
        rooms: Iterable[str],
        exclude: Optional[WebSocket] = None,
    ) -> int:
        """
        Broadcast a typed event to every member of the given rooms.

        A connection in several of the rooms receives the event once.

        Returns:
            Number of connections the message was sent to
        """
        message = {
            "type": event_type,
            "data": data,
            "timestamp": _utcnow().isoformat(),
        }

        targets: Set[WebSocket] = set()
        for room in rooms:
            if room:
                targets |= self._rooms.get(room, set())
        targets.discard(exclude)

        sent_count = 0
        for websocket in list(targets):
            if await self._send(websocket, message):
                sent_count += 1

        logger.debug(f"{event_type} sent to {sent_count} connections")
        return sent_count

    async def check_stale_connections(self, timeout_seconds: int = 120) -> int:
        """Close and forget connections with no heartbeat within timeout_seconds."""
        now = _utcnow()

        async with self._lock:
            stale = [
                websocket
                for websocket, last_heartbeat in self._heartbeats.items()
                if (now - last_heartbeat).total_seconds() > timeout_seconds
            ]

        for websocket in stale:
            try:
                await websocket.close(code=4002, reason="Connection timeout")
            except RuntimeError as e:
                logger.debug(f"Stale connection already closed: {e}")
            self.disconnect(websocket)

        if stale:
            logger.info(f"Cleaned up {len(stale)} stale WebSocket connections")

        return len(stale)

    def get_connection_stats(self) -> dict:
        return {
            "total_connections": self.total_connections,
            "unique_users": len(self._connections),
            "rooms": {room: len(members) for room, members in self._rooms.items()},
        }


# Global manager instance
manager = ConnectionManager()
