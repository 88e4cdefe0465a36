import json
from typing import Any, Optional

import anyio.to_thread
import structlog
from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import sessionmaker

from ..auth.security import resolve_user
from ..db import get_session_factory
from ..services.realtime import PresenceHub, hub, notification_room


router = APIRouter(tags=["realtime"])

logger = structlog.get_logger()


def _receiver(data: Any) -> Optional[str]:
    if isinstance(data, dict):
        value = data.get("receiver_id") or data.get("receiverId")
        return str(value) if value else None
    return None


async def dispatch_event(h: PresenceHub, conn_id: str, user_id: str, event: str, data: Any) -> None:
    """Apply one client frame to the hub.

    Announcements naming another user (user-login, join/leave-notifications)
    are ignored; a connection only ever speaks for its token's user.
    """
    if event == "user-login":
        if str(data) != user_id:
            logger.warning("realtime_login_mismatch", user_id=user_id, claimed=str(data))
            return
        await h.set_online(user_id, conn_id)
        await h.broadcast_active_users()
    elif event == "send-message":
        receiver = _receiver(data)
        if receiver:
            await h.send_to_user(receiver, "new-message", data)
            await h.send_to_connection(conn_id, "new-message", data)
        else:
            await h.broadcast("new-message", data)
    elif event == "typing":
        receiver = _receiver(data)
        if receiver:
            await h.send_to_user(receiver, "user-typing", {"sender_id": user_id, "sender_name": data.get("sender_name")})
    elif event == "stop-typing":
        receiver = _receiver(data)
        if receiver:
            await h.send_to_user(receiver, "user-stop-typing", {"sender_id": user_id})
    elif event in ("join-notifications", "leave-notifications"):
        if str(data) != user_id:
            logger.warning("realtime_room_mismatch", user_id=user_id, claimed=str(data), event=event)
            return
        if event == "join-notifications":
            await h.join(notification_room(user_id), conn_id)
        else:
            await h.leave(notification_room(user_id), conn_id)
    else:
        logger.info("realtime_unknown_event", event=event, user_id=user_id)


def _authenticate(session_factory: sessionmaker, token: Optional[str]) -> str:
    with session_factory() as db:
        return str(resolve_user(db, token).id)


@router.websocket("/ws")
async def ws_realtime(
    websocket: WebSocket,
    token: Optional[str] = None,
    session_factory: sessionmaker = Depends(get_session_factory),
):
    # The session is closed before accept; a socket never pins a pooled connection
    try:
        user_id = await anyio.to_thread.run_sync(_authenticate, session_factory, token)
    except HTTPException:
        await websocket.close(code=4401)
        return

    await websocket.accept()
    conn_id = await hub.register(websocket)
    logger.info("realtime_connected", user_id=user_id, connection=conn_id)
    try:
        while True:
            raw = await websocket.receive_text()
            if raw and raw.strip().lower() in {"ping", "keepalive"}:
                await websocket.send_text("pong")
                continue
            try:
                frame = json.loads(raw)
            except ValueError:
                logger.info("realtime_bad_frame", user_id=user_id)
                continue
            if not isinstance(frame, dict) or not frame.get("event"):
                continue
            await dispatch_event(hub, conn_id, user_id, str(frame["event"]), frame.get("data"))
    except WebSocketDisconnect:
        pass
    finally:
        went_offline = await hub.unregister(conn_id)
        logger.info("realtime_disconnected", user_id=user_id, connection=conn_id)
        if went_offline:
            await hub.broadcast_active_users()
