"""Process-local connection state: who is online and which connection listens to which room.

Everything here lives in a single process. Running several workers needs a shared
pub/sub layer for presence and rooms, which this service does not provide.
"""
from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState
from typing import Dict, List, Optional, Set
import logging
import uuid

logger = logging.getLogger(__name__)


def chat_room(conversation_id: str) -> str:
    return f"chat:{conversation_id}"


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


class Connection:
    """One authenticated websocket."""

    def __init__(self, websocket: WebSocket, user_id: Optional[str] = None):
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.user_id = user_id
        self.rooms: Set[str] = set()

    async def send(self, event) -> bool:
        if getattr(self.websocket, "application_state", WebSocketState.CONNECTED) != WebSocketState.CONNECTED:
            return False
        try:
            await self.websocket.send_json(event.model_dump(mode="json"))
            return True
        except (WebSocketDisconnect, RuntimeError) as exc:
            logger.debug("Dropping event for closed socket %s: %s", self.id, exc)
            return False

    def __repr__(self):
        return f"<Connection {self.id} user={self.user_id}>"


class RoomRouter:
    def __init__(self):
        self.rooms: Dict[str, Set[Connection]] = {}

    def join(self, connection: Connection, room: str):
        self.rooms.setdefault(room, set()).add(connection)
        connection.rooms.add(room)

    def leave(self, connection: Connection, room: str):
        members = self.rooms.get(room)
        if members is not None:
            members.discard(connection)
            if not members:
                del self.rooms[room]
        connection.rooms.discard(room)

    def leave_all(self, connection: Connection):
        for room in list(connection.rooms):
            self.leave(connection, room)

    def drop(self, room: str):
        for connection in self.rooms.pop(room, set()):
            connection.rooms.discard(room)

    def members(self, room: str) -> List[Connection]:
        return list(self.rooms.get(room, ()))

    async def broadcast(self, room: str, event) -> int:
        delivered = 0
        # snapshot: the room may change while we await sends
        for connection in self.members(room):
            if await connection.send(event):
                delivered += 1
        return delivered


class SessionRegistry:
    """Tracks live connections per user; a user is online while any connection is."""

    def __init__(self, router: RoomRouter):
        self.router = router
        self.connections: Dict[str, Set[Connection]] = {}

    def register(self, connection: Connection, user_id: str) -> bool:
        """Bind the connection to ``user_id``. Returns True if the user just came online."""
        connection.user_id = user_id
        live = self.connections.setdefault(user_id, set())
        came_online = not live
        live.add(connection)
        self.router.join(connection, user_room(user_id))
        return came_online

    def unregister(self, connection: Connection) -> bool:
        """Release the connection. Returns True if its user just went offline."""
        self.router.leave_all(connection)
        user_id = connection.user_id
        if user_id is None:
            return False
        live = self.connections.get(user_id)
        if live is None or connection not in live:
            return False
        live.discard(connection)
        if live:
            return False
        del self.connections[user_id]
        return True

    def is_online(self, user_id: str) -> bool:
        return bool(self.connections.get(user_id))

    def snapshot(self) -> List[str]:
        return sorted(self.connections)

    def connections_for(self, user_id: str) -> List[Connection]:
        return list(self.connections.get(user_id, ()))

    def all_connections(self) -> List[Connection]:
        return [c for live in self.connections.values() for c in live]
