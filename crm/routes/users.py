import os
import re
from typing import Optional

from fastapi import APIRouter, Depends, File as UploadParam, Form, HTTPException, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, get_password_hash, require_permissions
from ..config import settings
from ..db import get_db
from ..errors import parse_uuid
from ..models.models import Permission, User
from ..schemas.users import UserCreate, UserUpdate
from ..services.policy import can_view_user
from ..services.realtime import hub
from ..services.users import delete_or_deactivate_user, resolve_permissions, user_to_dict
from ..storage.local_provider import generate_key, get_storage
from ..storage.provider import FileTooLarge


router = APIRouter(prefix="/api/users", tags=["users"])

PROFILE_PHOTO_AREA = "profile-photos"
PROFILE_PHOTO_EXTENSIONS = re.compile(r"^\.(jpe?g|png|gif)$", re.IGNORECASE)
PROFILE_PHOTO_MIME_TYPES = re.compile(r"^image/(jpe?g|png|gif)$", re.IGNORECASE)


def _get_user(db: Session, user_id: str) -> User:
    uid = parse_uuid(user_id, "user id")
    u = db.query(User).filter(User.id == uid).first()
    if not u:
        raise HTTPException(status_code=404, detail="User not found")
    return u


@router.get("/profile")
def get_profile(me: User = Depends(get_current_user)):
    return user_to_dict(me)


def _save_profile_photo(photo: UploadFile) -> str:
    """Validate and store an uploaded profile photo. Returns its storage key."""
    name = os.path.basename(photo.filename or "")
    if not PROFILE_PHOTO_EXTENSIONS.match(os.path.splitext(name)[1]) or not PROFILE_PHOTO_MIME_TYPES.match(photo.content_type or ""):
        raise HTTPException(status_code=400, detail="Only images are allowed (jpeg, jpg, png, gif)")
    key = generate_key(name)
    try:
        get_storage(PROFILE_PHOTO_AREA).save(photo.file, key, max_bytes=settings.profile_photo_max_bytes)
    except FileTooLarge:
        raise HTTPException(status_code=400, detail="File is too large")
    return key


@router.put("/profile")
def update_profile(
    first_name: Optional[str] = Form(None),
    last_name: Optional[str] = Form(None),
    nickname: Optional[str] = Form(None),
    profile_photo: Optional[UploadFile] = UploadParam(None, alias="profilePhoto"),
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    """Multipart form; a new photo replaces the stored one."""
    for field, value in (("first_name", first_name), ("last_name", last_name)):
        if value is None:
            continue
        if not value.strip():
            raise HTTPException(status_code=400, detail=f"{field} cannot be empty")
        setattr(me, field, value.strip())
    if nickname is not None:
        me.nickname = nickname.strip() or None

    storage = get_storage(PROFILE_PHOTO_AREA)
    old_key = new_key = None
    if profile_photo is not None and profile_photo.filename:
        new_key = _save_profile_photo(profile_photo)
        old_key, me.profile_photo = me.profile_photo, new_key
    try:
        db.commit()
    except Exception:
        db.rollback()
        if new_key:
            storage.delete(new_key)
        raise
    if old_key:
        storage.delete(old_key)
    db.refresh(me)
    return user_to_dict(me)


@router.get("/online-info")
def online_info(db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    online = set(hub.online_snapshot())
    rows = db.query(User).filter(User.is_active.is_(True)).order_by(User.first_name, User.last_name).all()
    return [
        {
            "id": str(u.id),
            "first_name": u.first_name,
            "last_name": u.last_name,
            "nickname": u.nickname,
            "profile_photo": u.profile_photo,
            "online": str(u.id) in online,
        }
        for u in rows
    ]


@router.get("/permissions/list")
def list_permissions(db: Session = Depends(get_db), _=Depends(require_permissions("manage_users"))):
    return [{"id": str(p.id), "name": p.name, "description": p.description} for p in db.query(Permission).order_by(Permission.name).all()]


@router.get("")
def list_users(
    q: Optional[str] = None,
    include_inactive: bool = True,
    db: Session = Depends(get_db),
    _=Depends(require_permissions("manage_users")),
):
    query = db.query(User)
    if not include_inactive:
        query = query.filter(User.is_active.is_(True))
    if q:
        like = f"%{q}%"
        query = query.filter(
            (User.email.ilike(like)) | (User.first_name.ilike(like)) | (User.last_name.ilike(like)) | (User.nickname.ilike(like))
        )
    return [user_to_dict(u) for u in query.order_by(User.created_at.desc()).all()]


@router.get("/{user_id}")
def get_user(user_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    target = _get_user(db, user_id)
    if not can_view_user(me, target.id):
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    return user_to_dict(target)


@router.post("", status_code=201)
def create_user(payload: UserCreate, db: Session = Depends(get_db), _=Depends(require_permissions("manage_users"))):
    email = payload.email.lower()
    if db.query(User).filter(User.email == email).first():
        raise HTTPException(status_code=400, detail="User with this email already exists")
    perms = resolve_permissions(db, payload.permissions)
    u = User(
        email=email,
        password_hash=get_password_hash(payload.password),
        first_name=payload.first_name.strip(),
        last_name=payload.last_name.strip(),
        nickname=payload.nickname,
        role=payload.role,
        hourly_rate=payload.hourly_rate,
        is_active=True,
        must_change_password=True,
    )
    u.permissions = perms
    db.add(u)
    db.commit()
    db.refresh(u)
    return user_to_dict(u)


@router.put("/{user_id}")
def update_user(user_id: str, payload: UserUpdate, db: Session = Depends(get_db), _=Depends(require_permissions("manage_users"))):
    u = _get_user(db, user_id)
    data = payload.model_dump(exclude_unset=True)
    if "email" in data and data["email"]:
        email = data["email"].lower()
        clash = db.query(User).filter(User.email == email, User.id != u.id).first()
        if clash:
            raise HTTPException(status_code=400, detail="User with this email already exists")
        u.email = email
    for field in ("first_name", "last_name", "nickname", "role", "hourly_rate", "is_active"):
        if field in data and data[field] is not None:
            setattr(u, field, data[field])
    if data.get("password"):
        u.password_hash = get_password_hash(data["password"])
        u.must_change_password = True
    if data.get("permissions") is not None:
        u.permissions = resolve_permissions(db, data["permissions"])
    db.commit()
    db.refresh(u)
    return user_to_dict(u)


@router.delete("/{user_id}")
def delete_user(user_id: str, db: Session = Depends(get_db), me: User = Depends(require_permissions("manage_users"))):
    target = _get_user(db, user_id)
    return delete_or_deactivate_user(db, target, me)


@router.get("/{user_id}/photo")
def get_profile_photo(user_id: str, db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    u = _get_user(db, user_id)
    storage = get_storage(PROFILE_PHOTO_AREA)
    if not u.profile_photo or not storage.exists(u.profile_photo):
        raise HTTPException(status_code=404, detail="Profile photo not found")
    return FileResponse(storage.path_for(u.profile_photo))
