from __future__ import annotations

import os
import tempfile
import unittest
import uuid

from fastapi.websockets import WebSocketDisconnect
from sqlalchemy import create_engine
from sqlalchemy.pool import QueuePool

from crm.routes.realtime import dispatch_event
from crm.services.realtime import PresenceHub, notification_room
from tests.support import DatabaseTestCase


class _FakeSocket:
    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.fail = fail

    async def send_json(self, data) -> None:
        if self.fail:
            raise RuntimeError("connection reset")
        self.sent.append(data)

    def events(self) -> list[str]:
        return [m["event"] for m in self.sent]


class PresenceHubTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.hub = PresenceHub()
        self.alice, self.bob = str(uuid.uuid4()), str(uuid.uuid4())
        self.alice_ws, self.bob_ws = _FakeSocket(), _FakeSocket()
        self.alice_conn = await self.hub.register(self.alice_ws)
        self.bob_conn = await self.hub.register(self.bob_ws)

    async def test_login_announces_active_users(self) -> None:
        await dispatch_event(self.hub, self.alice_conn, self.alice, "user-login", self.alice)
        self.assertEqual(await self.hub.lookup(self.alice), self.alice_conn)
        self.assertEqual(self.bob_ws.sent, [{"event": "active-users", "data": [self.alice]}])

    async def test_login_for_someone_else_is_ignored(self) -> None:
        await dispatch_event(self.hub, self.alice_conn, self.alice, "user-login", self.bob)
        self.assertIsNone(await self.hub.lookup(self.bob))
        self.assertEqual(self.bob_ws.sent, [])

    async def test_direct_message_reaches_receiver_and_echoes(self) -> None:
        await self.hub.set_online(self.bob, self.bob_conn)
        payload = {"receiver_id": self.bob, "message": "hi"}

        await dispatch_event(self.hub, self.alice_conn, self.alice, "send-message", payload)

        self.assertEqual(self.bob_ws.sent, [{"event": "new-message", "data": payload}])
        self.assertEqual(self.alice_ws.sent, [{"event": "new-message", "data": payload}])

    async def test_message_without_receiver_is_broadcast(self) -> None:
        await dispatch_event(self.hub, self.alice_conn, self.alice, "send-message", {"message": "all hands"})
        self.assertEqual(self.alice_ws.events(), ["new-message"])
        self.assertEqual(self.bob_ws.events(), ["new-message"])

    async def test_typing_indicators(self) -> None:
        await self.hub.set_online(self.bob, self.bob_conn)
        await dispatch_event(self.hub, self.alice_conn, self.alice, "typing", {"receiverId": self.bob, "sender_name": "Alice"})
        await dispatch_event(self.hub, self.alice_conn, self.alice, "stop-typing", {"receiverId": self.bob})
        self.assertEqual(
            self.bob_ws.sent,
            [
                {"event": "user-typing", "data": {"sender_id": self.alice, "sender_name": "Alice"}},
                {"event": "user-stop-typing", "data": {"sender_id": self.alice}},
            ],
        )

    async def test_typing_to_offline_user_is_dropped(self) -> None:
        await dispatch_event(self.hub, self.alice_conn, self.alice, "typing", {"receiver_id": self.bob})
        self.assertEqual(self.bob_ws.sent, [])

    async def test_notification_rooms_are_per_user(self) -> None:
        await dispatch_event(self.hub, self.alice_conn, self.alice, "join-notifications", self.bob)
        self.assertEqual(await self.hub.room_members(notification_room(self.bob)), set())

        await dispatch_event(self.hub, self.alice_conn, self.alice, "join-notifications", self.alice)
        await self.hub.send_to_room(notification_room(self.alice), [("new-notification", {"id": 1}), ("unread-count-update", {"count": 1})])
        self.assertEqual(self.alice_ws.events(), ["new-notification", "unread-count-update"])
        self.assertEqual(self.bob_ws.sent, [])

        await dispatch_event(self.hub, self.alice_conn, self.alice, "leave-notifications", self.alice)
        self.assertEqual(await self.hub.room_members(notification_room(self.alice)), set())

    async def test_last_login_wins_and_unregister(self) -> None:
        second = _FakeSocket()
        second_conn = await self.hub.register(second)
        await self.hub.set_online(self.alice, self.alice_conn)
        await self.hub.set_online(self.alice, second_conn)
        await self.hub.join(notification_room(self.alice), self.alice_conn)

        self.assertIsNone(await self.hub.unregister(self.alice_conn))
        self.assertEqual(await self.hub.lookup(self.alice), second_conn)
        self.assertEqual(await self.hub.room_members(notification_room(self.alice)), set())

        self.assertEqual(await self.hub.unregister(second_conn), self.alice)
        self.assertEqual(await self.hub.online_users(), [])

    async def test_failed_send_is_contained(self) -> None:
        broken = _FakeSocket(fail=True)
        conn = await self.hub.register(broken)
        await self.hub.set_online(self.bob, conn)
        self.assertFalse(await self.hub.send_to_user(self.bob, "new-message", {}))
        self.assertFalse(await self.hub.send_to_user(str(uuid.uuid4()), "new-message", {}))
        await self.hub.broadcast("active-users", [])
        self.assertEqual(self.alice_ws.events(), ["active-users"])


class WebSocketEndpointTests(DatabaseTestCase):
    def test_bad_token_closes_connection(self) -> None:
        with self.assertRaises(WebSocketDisconnect) as ctx:
            with self.client.websocket_connect("/ws?token=bogus"):
                pass
        self.assertEqual(ctx.exception.code, 4401)

    def test_ping_and_login(self) -> None:
        user = self.make_user("socket@crm.sk", permissions=("use_chat",))
        token = self.auth(user)["Authorization"].split(" ", 1)[1]
        with self.client.websocket_connect(f"/ws?token={token}") as ws:
            ws.send_text("ping")
            self.assertEqual(ws.receive_text(), "pong")
            ws.send_json({"event": "user-login", "data": str(user.id)})
            message = ws.receive_json()
            self.assertEqual(message["event"], "active-users")
            self.assertIn(str(user.id), message["data"])


class WebSocketConnectionPoolTests(DatabaseTestCase):
    """One pooled connection only: an open socket must leave it free for HTTP requests."""

    def build_engine(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        return create_engine(
            "sqlite:///" + os.path.join(self.tmpdir.name, "ws.db"),
            connect_args={"check_same_thread": False},
            poolclass=QueuePool,
            pool_size=1,
            max_overflow=0,
            pool_timeout=2,
            future=True,
        )

    def tearDown(self) -> None:
        super().tearDown()
        self.tmpdir.cleanup()

    def test_open_socket_holds_no_db_connection(self) -> None:
        user = self.make_user("pool@crm.sk", permissions=("use_chat",))
        headers = self.auth(user)
        self.db.close()
        token = headers["Authorization"].split(" ", 1)[1]

        with self.client.websocket_connect(f"/ws?token={token}") as ws:
            ws.send_text("ping")
            self.assertEqual(ws.receive_text(), "pong")
            self.assertEqual(self.engine.pool.checkedout(), 0)

            me = self.client.get("/api/auth/me", headers=headers)
            self.assertEqual(me.status_code, 200, me.text)
            self.assertEqual(me.json()["email"], "pool@crm.sk")

    def test_inactive_user_is_refused_and_connection_returned(self) -> None:
        user = self.make_user("gone@crm.sk", is_active=False)
        token = self.auth(user)["Authorization"].split(" ", 1)[1]
        self.db.close()

        with self.assertRaises(WebSocketDisconnect) as ctx:
            with self.client.websocket_connect(f"/ws?token={token}"):
                pass
        self.assertEqual(ctx.exception.code, 4401)
        self.assertEqual(self.engine.pool.checkedout(), 0)
