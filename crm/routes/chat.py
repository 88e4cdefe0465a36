import os
import re
import uuid
from typing import Iterable, Optional

from fastapi import APIRouter, Depends, File as UploadParam, Form, HTTPException, Query, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from ..auth.security import require_permissions
from ..config import settings
from ..db import get_db
from ..errors import parse_uuid
from ..models.models import ChatGroup, ChatGroupMember, ChatMessage, User
from ..schemas.chat import GroupCreate, GroupMessageCreate, MarkRead, MessageCreate
from ..services.effects import Effect, run_effects
from ..services.policy import can_delete_chat_message
from ..services.realtime import hub, publish_to_user, schedule
from ..storage.local_provider import generate_key, get_storage
from ..storage.provider import FileTooLarge


router = APIRouter(prefix="/api/chat", tags=["chat"])

ATTACHMENT_EXTENSIONS = re.compile(r"^\.(jpe?g|png|gif|pdf|docx?|txt|mp4|mp3|zip|rar|webp|bmp|svg)$", re.IGNORECASE)
ATTACHMENT_MIME_TYPES = re.compile(r"^(image|video|audio|application|text)/")
ATTACHMENT_AREA = "chat-attachments"


def _user_basic(u: User) -> dict:
    return {
        "id": str(u.id),
        "first_name": u.first_name,
        "last_name": u.last_name,
        "nickname": u.nickname,
        "profile_photo": u.profile_photo,
    }


def _message_to_dict(m: ChatMessage) -> dict:
    sender = m.sender
    return {
        "id": str(m.id),
        "sender_id": str(m.sender_id),
        "sender_first_name": sender.first_name if sender else None,
        "sender_last_name": sender.last_name if sender else None,
        "sender_nickname": sender.nickname if sender else None,
        "receiver_id": str(m.receiver_id) if m.receiver_id else None,
        "group_id": str(m.group_id) if m.group_id else None,
        "message": m.message or "",
        "attachment_name": m.attachment_name,
        "attachment_type": m.attachment_type,
        "has_attachment": bool(m.attachment_path),
        "is_read": bool(m.is_read),
        "created_at": m.created_at.isoformat() if m.created_at else None,
    }


def _active_receiver(db: Session, receiver_id: Optional[str]) -> Optional[uuid.UUID]:
    if not receiver_id:
        return None
    rid = parse_uuid(receiver_id, "receiver id")
    if not db.query(User).filter(User.id == rid, User.is_active.is_(True)).first():
        raise HTTPException(status_code=404, detail="Receiver not found")
    return rid


def _push_message(data: dict, recipients: Iterable) -> None:
    """Deliver a new message to each recipient's live connection, or to everyone when there are none."""
    targets = {str(r) for r in recipients if r}
    if not targets:
        run_effects([Effect("broadcast_message", schedule, (hub.broadcast, "new-message", data))])
        return
    run_effects([Effect("push_message", publish_to_user, (t, "new-message", data)) for t in sorted(targets)])


def _save_attachment(file: UploadFile) -> tuple:
    """Validate and store a chat attachment. Returns (key, original name, mime type)."""
    name = os.path.basename(file.filename or "")
    if not ATTACHMENT_EXTENSIONS.match(os.path.splitext(name)[1]) or not ATTACHMENT_MIME_TYPES.match(file.content_type or ""):
        raise HTTPException(status_code=400, detail="File type not allowed")
    key = generate_key(name)
    try:
        get_storage(ATTACHMENT_AREA).save(file.file, key, max_bytes=settings.chat_attachment_max_bytes)
    except FileTooLarge:
        raise HTTPException(status_code=400, detail="File is too large")
    return key, name, file.content_type


def _store_message(db: Session, msg: ChatMessage, key: Optional[str] = None) -> ChatMessage:
    try:
        db.add(msg)
        db.commit()
        db.refresh(msg)
    except Exception:
        db.rollback()
        if key:
            get_storage(ATTACHMENT_AREA).delete(key)
        raise
    return msg


def _require_member(db: Session, group_id: uuid.UUID, me: User) -> ChatGroup:
    group = db.query(ChatGroup).filter(ChatGroup.id == group_id).first()
    if not group:
        raise HTTPException(status_code=404, detail="Group not found")
    member = (
        db.query(ChatGroupMember)
        .filter(ChatGroupMember.group_id == group_id, ChatGroupMember.user_id == me.id)
        .first()
    )
    if not member:
        raise HTTPException(status_code=403, detail="You are not a member of this group")
    return group


def _group_member_ids(db: Session, group_id: uuid.UUID) -> list:
    return [m.user_id for m in db.query(ChatGroupMember).filter(ChatGroupMember.group_id == group_id).all()]


# =====================
# Direct messages
# =====================


@router.get("/messages")
def get_messages(
    receiver_id: Optional[str] = Query(None, alias="receiverId"),
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    me: User = Depends(require_permissions("use_chat")),
):
    q = db.query(ChatMessage).filter(ChatMessage.group_id.is_(None))
    if receiver_id:
        other = parse_uuid(receiver_id, "receiver id")
        q = q.filter(
            or_(
                and_(ChatMessage.sender_id == me.id, ChatMessage.receiver_id == other),
                and_(ChatMessage.sender_id == other, ChatMessage.receiver_id == me.id),
            )
        )
    else:
        q = q.filter(ChatMessage.receiver_id.is_(None))
    rows = q.order_by(ChatMessage.created_at.desc()).limit(max(1, min(200, limit))).offset(max(0, offset)).all()
    # Newest page first from storage, oldest first on the wire
    return [_message_to_dict(m) for m in reversed(rows)]


@router.post("/messages", status_code=201)
def send_message(payload: MessageCreate, db: Session = Depends(get_db), me: User = Depends(require_permissions("use_chat"))):
    text = (payload.message or "").strip()
    if not text:
        raise HTTPException(status_code=400, detail="Message or attachment is required")
    receiver = _active_receiver(db, payload.receiver_id)
    msg = _store_message(db, ChatMessage(sender_id=me.id, receiver_id=receiver, message=text))
    data = _message_to_dict(msg)
    _push_message(data, [receiver, me.id] if receiver else [])
    return data


@router.post("/messages/attachment", status_code=201)
def send_attachment(
    file: UploadFile = UploadParam(...),
    receiver_id: Optional[str] = Form(None),
    message: Optional[str] = Form(None),
    db: Session = Depends(get_db),
    me: User = Depends(require_permissions("use_chat")),
):
    receiver = _active_receiver(db, receiver_id)
    key, name, mime = _save_attachment(file)
    msg = ChatMessage(
        sender_id=me.id,
        receiver_id=receiver,
        message=(message or "").strip(),
        attachment_path=key,
        attachment_name=name,
        attachment_type=mime,
    )
    data = _message_to_dict(_store_message(db, msg, key))
    _push_message(data, [receiver, me.id] if receiver else [])
    return data


@router.get("/messages/{message_id}/attachment")
def download_attachment(message_id: str, db: Session = Depends(get_db), me: User = Depends(require_permissions("use_chat"))):
    m = db.query(ChatMessage).filter(ChatMessage.id == parse_uuid(message_id, "message id")).first()
    if not m or not m.attachment_path:
        raise HTTPException(status_code=404, detail="Attachment not found")
    if m.group_id:
        _require_member(db, m.group_id, me)
    elif m.receiver_id and me.id not in (m.sender_id, m.receiver_id):
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    storage = get_storage(ATTACHMENT_AREA)
    if not storage.exists(m.attachment_path):
        raise HTTPException(status_code=404, detail="File missing from storage")
    return FileResponse(storage.path_for(m.attachment_path), media_type=m.attachment_type or "application/octet-stream", filename=m.attachment_name)


@router.patch("/messages/read")
def mark_read(payload: MarkRead, db: Session = Depends(get_db), me: User = Depends(require_permissions("use_chat"))):
    if not payload.sender_id and not payload.group_id:
        raise HTTPException(status_code=400, detail="Sender ID or Group ID is required")
    q = db.query(ChatMessage).filter(ChatMessage.is_read.is_(False), ChatMessage.sender_id != me.id)
    if payload.sender_id:
        q = q.filter(ChatMessage.sender_id == parse_uuid(payload.sender_id, "sender id"), ChatMessage.receiver_id == me.id)
    else:
        gid = parse_uuid(payload.group_id, "group id")
        _require_member(db, gid, me)
        q = q.filter(ChatMessage.group_id == gid)
    updated = q.update({ChatMessage.is_read: True}, synchronize_session=False)
    db.commit()
    return {"message": "Messages marked as read", "updated": updated}


@router.delete("/messages/{message_id}")
def delete_message(message_id: str, db: Session = Depends(get_db), me: User = Depends(require_permissions("use_chat"))):
    m = db.query(ChatMessage).filter(ChatMessage.id == parse_uuid(message_id, "message id")).first()
    if not m:
        raise HTTPException(status_code=404, detail="Message not found")
    if not can_delete_chat_message(me, m):
        raise HTTPException(status_code=403, detail="You can only delete your own messages")
    key = m.attachment_path
    db.delete(m)
    db.commit()
    if key:
        get_storage(ATTACHMENT_AREA).delete(key)
    return {"message": "Message deleted successfully"}


@router.get("/participants")
def participants(db: Session = Depends(get_db), me: User = Depends(require_permissions("use_chat"))):
    """Users the caller has exchanged direct messages with, most recent first."""
    rows = (
        db.query(ChatMessage)
        .filter(
            ChatMessage.group_id.is_(None),
            or_(ChatMessage.sender_id == me.id, ChatMessage.receiver_id == me.id),
            ChatMessage.receiver_id.isnot(None),
        )
        .order_by(ChatMessage.created_at.desc())
        .all()
    )
    out, seen = [], set()
    for m in rows:
        other = m.receiver_id if m.sender_id == me.id else m.sender_id
        if other in seen:
            continue
        seen.add(other)
        u = db.query(User).filter(User.id == other).first()
        if not u:
            continue
        unread = (
            db.query(func.count(ChatMessage.id))
            .filter(ChatMessage.sender_id == other, ChatMessage.receiver_id == me.id, ChatMessage.is_read.is_(False))
            .scalar()
            or 0
        )
        item = _user_basic(u)
        item.update({
            "last_message": m.message or m.attachment_name,
            "last_message_at": m.created_at.isoformat() if m.created_at else None,
            "unread_count": int(unread),
        })
        out.append(item)
    return out


@router.get("/users")
def chat_users(db: Session = Depends(get_db), me: User = Depends(require_permissions("use_chat"))):
    rows = (
        db.query(User)
        .filter(User.id != me.id, User.is_active.is_(True))
        .order_by(User.first_name, User.last_name)
        .all()
    )
    return [_user_basic(u) for u in rows]


@router.get("/unread/count")
def unread_count(db: Session = Depends(get_db), me: User = Depends(require_permissions("use_chat"))):
    count = (
        db.query(func.count(ChatMessage.id))
        .filter(ChatMessage.receiver_id == me.id, ChatMessage.is_read.is_(False))
        .scalar()
    )
    return {"count": int(count or 0)}


# =====================
# Groups
# =====================


@router.post("/groups", status_code=201)
def create_group(payload: GroupCreate, db: Session = Depends(get_db), me: User = Depends(require_permissions("use_chat"))):
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Group name is required")
    member_ids = {parse_uuid(x, "member id") for x in payload.member_ids if x}
    member_ids.discard(me.id)
    if member_ids:
        found = db.query(User.id).filter(User.id.in_(member_ids), User.is_active.is_(True)).count()
        if found != len(member_ids):
            raise HTTPException(status_code=400, detail="Unknown or inactive group member")
    try:
        group = ChatGroup(name=name, description=payload.description, created_by=me.id)
        db.add(group)
        db.flush()
        db.add(ChatGroupMember(group_id=group.id, user_id=me.id, role="admin"))
        db.add_all([ChatGroupMember(group_id=group.id, user_id=uid, role="member") for uid in member_ids])
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(group)
    return {
        "id": str(group.id),
        "name": group.name,
        "description": group.description,
        "created_by": str(me.id),
        "member_count": len(member_ids) + 1,
    }


@router.get("/groups")
def list_groups(db: Session = Depends(get_db), me: User = Depends(require_permissions("use_chat"))):
    groups = (
        db.query(ChatGroup)
        .join(ChatGroupMember, ChatGroupMember.group_id == ChatGroup.id)
        .filter(ChatGroupMember.user_id == me.id)
        .order_by(ChatGroup.created_at.desc())
        .all()
    )
    out = []
    for g in groups:
        members = db.query(ChatGroupMember).filter(ChatGroupMember.group_id == g.id).all()
        my_role = next((m.role for m in members if m.user_id == me.id), None)
        out.append({
            "id": str(g.id),
            "name": g.name,
            "description": g.description,
            "created_by": str(g.created_by) if g.created_by else None,
            "member_count": len(members),
            "role": my_role,
            "created_at": g.created_at.isoformat() if g.created_at else None,
        })
    return out


@router.get("/groups/{group_id}/messages")
def group_messages(
    group_id: str,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    me: User = Depends(require_permissions("use_chat")),
):
    gid = parse_uuid(group_id, "group id")
    _require_member(db, gid, me)
    rows = (
        db.query(ChatMessage)
        .filter(ChatMessage.group_id == gid)
        .order_by(ChatMessage.created_at.desc())
        .limit(max(1, min(200, limit)))
        .offset(max(0, offset))
        .all()
    )
    return [_message_to_dict(m) for m in reversed(rows)]


@router.post("/groups/{group_id}/messages", status_code=201)
def send_group_message(group_id: str, payload: GroupMessageCreate, db: Session = Depends(get_db), me: User = Depends(require_permissions("use_chat"))):
    gid = parse_uuid(group_id, "group id")
    _require_member(db, gid, me)
    text = payload.message.strip()
    if not text:
        raise HTTPException(status_code=400, detail="Message is required")
    data = _message_to_dict(_store_message(db, ChatMessage(sender_id=me.id, group_id=gid, message=text)))
    _push_message(data, _group_member_ids(db, gid))
    return data


@router.post("/groups/{group_id}/upload", status_code=201)
def send_group_attachment(
    group_id: str,
    file: UploadFile = UploadParam(...),
    db: Session = Depends(get_db),
    me: User = Depends(require_permissions("use_chat")),
):
    gid = parse_uuid(group_id, "group id")
    _require_member(db, gid, me)
    key, name, mime = _save_attachment(file)
    msg = ChatMessage(sender_id=me.id, group_id=gid, message="", attachment_path=key, attachment_name=name, attachment_type=mime)
    data = _message_to_dict(_store_message(db, msg, key))
    _push_message(data, _group_member_ids(db, gid))
    return data
