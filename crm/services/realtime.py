import asyncio
import uuid
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import anyio
import structlog
from fastapi import WebSocket


Event = Tuple[str, Any]

logger = structlog.get_logger()


def notification_room(user_id) -> str:
    return f"user-{user_id}"


class PresenceHub:
    """Process-wide realtime state.

    Three mappings, all guarded by one lock:
    connection id -> socket (transport), user id -> connection id (presence,
    last login wins) and room -> connection ids (notification channels).
    Presence and rooms are independent; leaving one never touches the other.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, WebSocket] = {}
        self._online: Dict[str, str] = {}
        self._rooms: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()
        self._pending: Set[asyncio.Task] = set()

    # Transport lifecycle

    async def register(self, ws: WebSocket) -> str:
        conn_id = str(uuid.uuid4())
        async with self._lock:
            self._connections[conn_id] = ws
        return conn_id

    async def unregister(self, conn_id: str) -> Optional[str]:
        """Drop a connection everywhere. Returns the user that went offline, if any."""
        async with self._lock:
            self._connections.pop(conn_id, None)
            for members in self._rooms.values():
                members.discard(conn_id)
            self._rooms = {room: members for room, members in self._rooms.items() if members}
        return await self.set_offline(conn_id)

    # Presence

    async def set_online(self, user_id: str, conn_id: str) -> None:
        async with self._lock:
            self._online[str(user_id)] = conn_id

    async def set_offline(self, conn_id: str) -> Optional[str]:
        async with self._lock:
            for user_id, current in list(self._online.items()):
                if current == conn_id:
                    del self._online[user_id]
                    return user_id
        return None

    async def lookup(self, user_id) -> Optional[str]:
        async with self._lock:
            return self._online.get(str(user_id))

    async def online_users(self) -> List[str]:
        async with self._lock:
            return list(self._online.keys())

    def online_snapshot(self) -> List[str]:
        return list(self._online.keys())

    # Notification rooms

    async def join(self, room: str, conn_id: str) -> None:
        async with self._lock:
            self._rooms.setdefault(room, set()).add(conn_id)

    async def leave(self, room: str, conn_id: str) -> None:
        async with self._lock:
            members = self._rooms.get(room)
            if members is not None:
                members.discard(conn_id)
                if not members:
                    self._rooms.pop(room, None)

    async def room_members(self, room: str) -> Set[str]:
        async with self._lock:
            return set(self._rooms.get(room, set()))

    # Delivery

    async def send_to_connection(self, conn_id: Optional[str], event: str, payload: Any) -> bool:
        if not conn_id:
            return False
        async with self._lock:
            ws = self._connections.get(conn_id)
        if ws is None:
            return False
        try:
            await ws.send_json({"event": event, "data": payload})
            return True
        except Exception as e:
            logger.warning("realtime_push_failed", event=event, connection=conn_id, error=str(e))
            return False

    async def send_to_user(self, user_id, event: str, payload: Any) -> bool:
        return await self.send_to_connection(await self.lookup(user_id), event, payload)

    async def send_to_room(self, room: str, events: Iterable[Event]) -> None:
        """Deliver events in order to every connection in the room."""
        targets = await self.room_members(room)
        for event, payload in events:
            for conn_id in targets:
                await self.send_to_connection(conn_id, event, payload)

    async def broadcast(self, event: str, payload: Any) -> None:
        async with self._lock:
            targets = list(self._connections.keys())
        for conn_id in targets:
            await self.send_to_connection(conn_id, event, payload)

    async def broadcast_active_users(self) -> None:
        await self.broadcast("active-users", await self.online_users())

    async def clear(self) -> None:
        async with self._lock:
            self._connections.clear()
            self._online.clear()
            self._rooms.clear()

    # Fire-and-forget scheduling

    def spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)


# Global singleton hub
hub = PresenceHub()


def schedule(coro_fn, *args) -> None:
    """Schedule hub delivery from a sync route without waiting for it.

    Runs `coro_fn(*args)` as a task on the server's event loop. Outside a
    worker thread (no loop to hand off to) the push is dropped and logged.
    """
    def _spawn():
        hub.spawn(coro_fn(*args))

    try:
        anyio.from_thread.run_sync(_spawn)
    except RuntimeError as e:
        logger.warning("realtime_push_skipped", error=str(e))


def publish_to_room(room: str, events: List[Event]) -> None:
    schedule(hub.send_to_room, room, events)


def publish_to_user(user_id, event: str, payload: Any) -> None:
    schedule(hub.send_to_user, str(user_id), event, payload)
