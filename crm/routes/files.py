import os
import re
from typing import List, Optional

from fastapi import APIRouter, Depends, File as UploadParam, Form, HTTPException, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session

from ..auth.security import require_permissions
from ..config import settings
from ..db import get_db
from ..errors import parse_uuid
from ..models.models import File, FileActivity, Folder, Project, ProjectEmployee, Team, User
from ..services.file_access import (
    accessible_files_query,
    check_file_permission,
    grants_from_share,
    log_file_activity,
    normalize_grants,
    serialize_grant,
    set_file_permissions,
)
from ..services.policy import is_admin
from ..storage.local_provider import generate_key, get_storage
from ..storage.provider import FileTooLarge


router = APIRouter(prefix="/api/files", tags=["files"])

ALLOWED_EXTENSIONS = re.compile(r"^\.(jpe?g|png|gif|pdf|docx?|xlsx?|pptx?|txt|zip|rar|mp4|avi|mov)$", re.IGNORECASE)


def ensure_allowed_extension(filename: Optional[str]) -> None:
    ext = os.path.splitext(filename or "")[1]
    if not ALLOWED_EXTENSIONS.match(ext):
        raise HTTPException(status_code=400, detail="File type not allowed")


def _file_to_dict(db: Session, f: File, with_details: bool = False) -> dict:
    uploader = db.query(User).filter(User.id == f.uploaded_by).first()
    d = {
        "id": str(f.id),
        "filename": f.filename,
        "original_name": f.original_name,
        "mime_type": f.mime_type,
        "size": f.size,
        "description": f.description,
        "folder_id": str(f.folder_id) if f.folder_id else None,
        "uploaded_by": str(f.uploaded_by),
        "uploader_name": uploader.full_name if uploader else None,
        "created_at": f.created_at.isoformat() if f.created_at else None,
        "permission_types": sorted({g.permission_type for g in f.grants}),
    }
    if with_details:
        d["permissions"] = [serialize_grant(g) for g in f.grants]
        d["download_count"] = (
            db.query(FileActivity).filter(FileActivity.file_id == f.id, FileActivity.action == "download").count()
        )
    return d


def _get_file(db: Session, file_id: str) -> File:
    f = db.query(File).filter(File.id == parse_uuid(file_id, "file id")).first()
    if not f:
        raise HTTPException(status_code=404, detail="File not found")
    return f


def _require(db: Session, f: File, me: User, action: str) -> None:
    if not check_file_permission(db, f, me, action):
        raise HTTPException(status_code=403, detail="You do not have access to this file")


@router.post("/upload", status_code=201)
def upload_file(
    file: UploadFile = UploadParam(...),
    description: Optional[str] = Form(None),
    folder_id: Optional[str] = Form(None),
    share_type: Optional[str] = Form(None),
    share_with: Optional[List[str]] = Form(None),
    db: Session = Depends(get_db),
    me: User = Depends(require_permissions("use_files")),
):
    ensure_allowed_extension(file.filename)
    folder_uuid = None
    if folder_id:
        folder_uuid = parse_uuid(folder_id, "folder id")
        if not db.query(Folder).filter(Folder.id == folder_uuid).first():
            raise HTTPException(status_code=404, detail="Folder not found")
    try:
        grants = normalize_grants(grants_from_share(share_type, share_with))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    storage = get_storage()
    key = generate_key(file.filename)
    try:
        size = storage.save(file.file, key, max_bytes=settings.file_max_bytes)
    except FileTooLarge:
        raise HTTPException(status_code=400, detail="File is too large")

    f = File(
        filename=key,
        original_name=os.path.basename(file.filename or key),
        mime_type=file.content_type,
        size=size,
        path=str(storage.path_for(key)),
        description=description,
        folder_id=folder_uuid,
        uploaded_by=me.id,
    )
    try:
        db.add(f)
        db.commit()
        db.refresh(f)
    except Exception:
        db.rollback()
        storage.delete(key)
        raise
    if grants:
        set_file_permissions(db, f, grants, me.id)
    log_file_activity(db, f.id, me.id, "upload")
    return {
        "id": str(f.id),
        "filename": f.filename,
        "original_name": f.original_name,
        "size": f.size,
        "message": "File uploaded",
    }


@router.get("")
def list_files(folder_id: Optional[str] = None, db: Session = Depends(get_db), me: User = Depends(require_permissions("use_files"))):
    folder_uuid = parse_uuid(folder_id, "folder id") if folder_id else None
    return [_file_to_dict(db, f) for f in accessible_files_query(db, me, folder_uuid).all()]


@router.get("/share/options")
def share_options(db: Session = Depends(get_db), me: User = Depends(require_permissions("use_files"))):
    users = (
        db.query(User)
        .filter(User.id != me.id, User.is_active.is_(True))
        .order_by(User.first_name, User.last_name)
        .all()
    )
    projects = db.query(Project).filter(Project.status == "active")
    if not is_admin(me):
        projects = projects.join(ProjectEmployee, ProjectEmployee.project_id == Project.id).filter(ProjectEmployee.user_id == me.id)
    teams = db.query(Team).order_by(Team.name).all()
    return {
        "users": [{"id": str(u.id), "first_name": u.first_name, "last_name": u.last_name, "email": u.email} for u in users],
        "projects": [{"id": str(p.id), "name": p.name} for p in projects.order_by(Project.name).all()],
        "teams": [{"id": str(t.id), "name": t.name} for t in teams],
    }


@router.get("/folders")
def list_folders(parent_id: Optional[str] = None, db: Session = Depends(get_db), me: User = Depends(require_permissions("use_files"))):
    q = db.query(Folder)
    q = q.filter(Folder.parent_id == parse_uuid(parent_id, "folder id")) if parent_id else q.filter(Folder.parent_id.is_(None))
    return [
        {"id": str(f.id), "name": f.name, "parent_id": str(f.parent_id) if f.parent_id else None, "created_by": str(f.created_by) if f.created_by else None}
        for f in q.order_by(Folder.name).all()
    ]


@router.post("/folders", status_code=201)
def create_folder(payload: dict, db: Session = Depends(get_db), me: User = Depends(require_permissions("use_files"))):
    name = (payload.get("name") or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Folder name is required")
    parent = parse_uuid(payload["parent_id"], "folder id") if payload.get("parent_id") else None
    if parent and not db.query(Folder).filter(Folder.id == parent).first():
        raise HTTPException(status_code=404, detail="Parent folder not found")
    folder = Folder(name=name, parent_id=parent, created_by=me.id)
    db.add(folder)
    db.commit()
    db.refresh(folder)
    return {"id": str(folder.id), "name": folder.name, "parent_id": str(parent) if parent else None}


@router.get("/{file_id}")
def get_file(file_id: str, db: Session = Depends(get_db), me: User = Depends(require_permissions("use_files"))):
    f = _get_file(db, file_id)
    _require(db, f, me, "read")
    log_file_activity(db, f.id, me.id, "view")
    return _file_to_dict(db, f, with_details=True)


@router.get("/{file_id}/download")
def download_file(file_id: str, db: Session = Depends(get_db), me: User = Depends(require_permissions("use_files"))):
    f = _get_file(db, file_id)
    _require(db, f, me, "read")
    storage = get_storage()
    if not storage.exists(f.filename):
        raise HTTPException(status_code=404, detail="File missing from storage")
    path = storage.path_for(f.filename)
    media_type = f.mime_type or "application/octet-stream"
    original_name = f.original_name
    log_file_activity(db, f.id, me.id, "download")
    return FileResponse(path, media_type=media_type, filename=original_name)


@router.delete("/{file_id}")
def delete_file(file_id: str, db: Session = Depends(get_db), me: User = Depends(require_permissions("use_files"))):
    f = _get_file(db, file_id)
    _require(db, f, me, "delete")
    key = f.filename
    db.delete(f)
    db.commit()
    get_storage().delete(key)
    return {"message": "File deleted"}


@router.put("/{file_id}/permissions")
def update_file_permissions(file_id: str, payload: dict, db: Session = Depends(get_db), me: User = Depends(require_permissions("use_files"))):
    f = _get_file(db, file_id)
    if str(f.uploaded_by) != str(me.id):
        raise HTTPException(status_code=403, detail="Only the file owner can change its permissions")
    try:
        rows = set_file_permissions(db, f, payload.get("permissions") or [], me.id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    log_file_activity(db, f.id, me.id, "share")
    return {"message": "Permissions updated", "permissions": [serialize_grant(g) for g in rows]}
