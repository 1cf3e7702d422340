"""WebSocket connection manager for group chat rooms.

This module tracks live WebSocket connections, which group rooms each one
has joined, and who is online in every group. A single ConnectionManager is
constructed when the application starts and owns the PresenceRegistry.

Key features:
    - One connection can join many group rooms
    - Broadcast to all room connections concurrently with asyncio.gather()
    - Automatic dead connection cleanup during broadcast
    - Presence reference counting so a user with two tabs stays online
      until the last one disconnects
    - Idempotent disconnect cleanup (runs exactly once per connection)

Thread Safety:
    This implementation is designed for async/await usage with a single event loop.
    It is NOT thread-safe for concurrent access from multiple threads.
"""
import asyncio
import logging
from typing import Dict, List, Optional, Set, Tuple

from fastapi import WebSocket

from .presence import PresenceRegistry

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Manages WebSocket connections, room membership of sockets, and presence.

    Presence rule: a user is online in a group iff at least one of their live
    connections has joined that group's room. ``leave_room`` takes the
    socket out of the broadcast list but does not touch presence; presence
    for every room the socket ever joined is released on disconnect.
    """

    def __init__(self, presence: Optional[PresenceRegistry] = None) -> None:
        # group_id -> list of WebSocket connections currently in the room
        self.active_connections: Dict[str, List[WebSocket]] = {}

        # websocket -> authenticated user id
        self.websocket_to_user: Dict[WebSocket, str] = {}

        # websocket -> group ids it holds presence in (joined at least once)
        self.websocket_presence: Dict[WebSocket, Set[str]] = {}

        # (group_id, user_id) -> number of live connections holding presence
        self.presence_refs: Dict[Tuple[str, str], int] = {}

        self.presence = presence or PresenceRegistry()

    async def connect(self, websocket: WebSocket, user_id: str) -> None:
        """Accept an authenticated WebSocket and bind its user id."""
        await websocket.accept()
        self.websocket_to_user[websocket] = user_id
        self.websocket_presence[websocket] = set()
        logger.info(f"[Manager] Connection accepted for user {user_id}")

    def user_for(self, websocket: WebSocket) -> Optional[str]:
        return self.websocket_to_user.get(websocket)

    def join_room(self, websocket: WebSocket, group_id: str) -> List[str]:
        """Put the connection in the group's room and mark its user online.

        Returns:
            The group's presence snapshot after the join.
        """
        user_id = self.websocket_to_user.get(websocket)
        if user_id is None:
            raise RuntimeError("join_room called for an unregistered connection")

        room = self.active_connections.setdefault(group_id, [])
        if websocket not in room:
            room.append(websocket)

        held = self.websocket_presence.setdefault(websocket, set())
        if group_id not in held:
            held.add(group_id)
            key = (group_id, user_id)
            self.presence_refs[key] = self.presence_refs.get(key, 0) + 1

        self.presence.add(group_id, user_id)
        return self.presence.snapshot(group_id)

    def leave_room(self, websocket: WebSocket, group_id: str) -> None:
        """Stop delivering room broadcasts to this connection. Presence is kept."""
        room = self.active_connections.get(group_id)
        if room and websocket in room:
            room.remove(websocket)
        if room is not None and not room:
            del self.active_connections[group_id]

    def in_room(self, websocket: WebSocket, group_id: str) -> bool:
        return websocket in self.active_connections.get(group_id, [])

    def disconnect(self, websocket: WebSocket) -> List[Tuple[str, List[str]]]:
        """Remove a connection from every room and release its presence.

        Safe to call more than once; only the first call does any work.

        Returns:
            List of (group_id, snapshot) for groups whose online set changed.
        """
        user_id = self.websocket_to_user.pop(websocket, None)
        held = self.websocket_presence.pop(websocket, set())
        if user_id is None:
            return []

        for group_id in list(self.active_connections.keys()):
            self.leave_room(websocket, group_id)

        changed: List[Tuple[str, List[str]]] = []
        for group_id in sorted(held):
            key = (group_id, user_id)
            remaining = self.presence_refs.get(key, 0) - 1
            if remaining > 0:
                self.presence_refs[key] = remaining
                continue
            self.presence_refs.pop(key, None)
            if self.presence.remove(group_id, user_id):
                changed.append((group_id, self.presence.snapshot(group_id)))

        logger.info(
            f"[Manager] User {user_id} disconnected; presence changed in {len(changed)} group(s)"
        )
        return changed

    async def broadcast(self, message: dict, group_id: str) -> None:
        """Broadcast a message to all connections in a room concurrently.

        Failed connections are removed from the room.
        """
        connections = list(self.active_connections.get(group_id, []))
        if not connections:
            return

        results = await asyncio.gather(
            *[self._safe_send(conn, message) for conn in connections],
            return_exceptions=True
        )

        failed_connections = [
            conn for conn, success in zip(connections, results)
            if success is not True
        ]
        self._cleanup_connections(group_id, failed_connections)

    async def broadcast_except(
        self, message: dict, group_id: str, exclude_websocket: WebSocket
    ) -> None:
        """Broadcast a message to all room connections except one.

        Used for typing indicators and read deltas where the sender
        shouldn't see their own event.
        """
        connections = [
            conn for conn in self.active_connections.get(group_id, [])
            if conn is not exclude_websocket
        ]
        if not connections:
            return

        results = await asyncio.gather(
            *[self._safe_send(conn, message) for conn in connections],
            return_exceptions=True
        )

        failed_connections = [
            conn for conn, success in zip(connections, results)
            if success is not True
        ]
        self._cleanup_connections(group_id, failed_connections)

    async def send_personal(self, websocket: WebSocket, message: dict) -> bool:
        """Send to one connection (acks, errors). False if the socket is gone."""
        return await self._safe_send(websocket, message)

    async def _safe_send(self, connection: WebSocket, message: dict) -> bool:
        """Send a message to a WebSocket connection with error handling.

        Returns:
            True if successful, False if connection failed.
        """
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False

    def _cleanup_connections(
        self, group_id: str, failed_connections: List[WebSocket]
    ) -> None:
        if not failed_connections:
            return
        for conn in failed_connections:
            self.leave_room(conn, group_id)
            logger.debug(f"Removed dead connection from room {group_id}")

    def room_user_ids(self, group_id: str) -> Set[str]:
        """User ids with at least one connection currently in the room."""
        return {
            self.websocket_to_user[conn]
            for conn in self.active_connections.get(group_id, [])
            if conn in self.websocket_to_user
        }

    def get_room_size(self, group_id: str) -> int:
        """Get the number of active connections in a room."""
        return len(self.active_connections.get(group_id, []))

    def online_user_ids(self, group_id: str) -> List[str]:
        return self.presence.snapshot(group_id)
