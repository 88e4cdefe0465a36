"""
File access control.

Grant types:
    user     target_id is a user id
    project  target_id is a project id; applies to its project_employees
    team     target_id is a team id; applies to its team_members
    public   target_id is NULL; applies to every active user

The uploader may do anything. Anyone else is allowed an action when at
least one grant that applies to them has the action's flag set.
"""
import uuid
from typing import Dict, Iterable, List, Optional

import structlog
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from ..models.models import File, FileActivity, FilePermission, ProjectEmployee, TeamMember

ACTIONS = {"read": "can_read", "write": "can_write", "delete": "can_delete"}
GRANT_TYPES = {"user", "project", "team", "public"}
ACTIVITY_ACTIONS = {"upload", "view", "download", "share"}

logger = structlog.get_logger()


def _project_ids(db: Session, user_id) -> List[uuid.UUID]:
    return [row.project_id for row in db.query(ProjectEmployee.project_id).filter(ProjectEmployee.user_id == user_id).all()]


def _team_ids(db: Session, user_id) -> List[uuid.UUID]:
    return [row.team_id for row in db.query(TeamMember.team_id).filter(TeamMember.user_id == user_id).all()]


def _grant_applies(db: Session, user_id):
    """SQL condition for grant rows that apply to the user."""
    clauses = [
        and_(FilePermission.permission_type == "user", FilePermission.target_id == user_id),
        FilePermission.permission_type == "public",
    ]
    projects = _project_ids(db, user_id)
    if projects:
        clauses.append(and_(FilePermission.permission_type == "project", FilePermission.target_id.in_(projects)))
    teams = _team_ids(db, user_id)
    if teams:
        clauses.append(and_(FilePermission.permission_type == "team", FilePermission.target_id.in_(teams)))
    return or_(*clauses)


def matching_grants(db: Session, file: File, user) -> List[FilePermission]:
    return (
        db.query(FilePermission)
        .filter(FilePermission.file_id == file.id, _grant_applies(db, user.id))
        .all()
    )


def check_file_permission(db: Session, file: Optional[File], user, action: str = "read") -> bool:
    if file is None or user is None:
        return False
    flag = ACTIONS.get(action)
    if flag is None:
        return False
    if str(file.uploaded_by) == str(user.id):
        return True
    return any(bool(getattr(g, flag)) for g in matching_grants(db, file, user))


def accessible_files_query(db: Session, user, folder_id=None):
    """Files the user can read, newest first. folder_id=None lists the root."""
    readable = (
        db.query(FilePermission.file_id)
        .filter(_grant_applies(db, user.id), FilePermission.can_read.is_(True))
    )
    q = db.query(File).filter(or_(File.uploaded_by == user.id, File.id.in_(readable)))
    if folder_id:
        q = q.filter(File.folder_id == folder_id)
    else:
        q = q.filter(File.folder_id.is_(None))
    return q.order_by(File.created_at.desc())


def normalize_grants(grants: Iterable[Dict]) -> List[Dict]:
    """Validate grant dicts and fill defaults.

    Raises:
        ValueError: unknown type, or a missing/invalid target for a non-public grant
    """
    out = []
    for g in grants or []:
        ptype = (g.get("permission_type") or g.get("type") or "").strip().lower()
        if ptype not in GRANT_TYPES:
            raise ValueError(f"Invalid permission type: {ptype or '<empty>'}")
        target = None
        if ptype != "public":
            raw = g.get("target_id")
            try:
                target = uuid.UUID(str(raw))
            except (TypeError, ValueError):
                raise ValueError(f"A {ptype} grant needs a valid target_id")
        out.append(
            {
                "permission_type": ptype,
                "target_id": target,
                "can_read": bool(g.get("can_read", True)),
                "can_write": bool(g.get("can_write", False)),
                "can_delete": bool(g.get("can_delete", False)),
            }
        )
    return out


def grants_from_share(share_type: Optional[str], share_with: Iterable) -> List[Dict]:
    """Upload form shorthand: one share type and a list of targets, read-only."""
    if not share_type:
        return []
    if share_type == "public":
        return [{"permission_type": "public"}]
    return [{"permission_type": share_type, "target_id": t} for t in share_with or [] if t]


def set_file_permissions(db: Session, file: File, grants: Iterable[Dict], granted_by) -> List[FilePermission]:
    """Replace every grant on the file in one transaction."""
    rows = normalize_grants(grants)
    try:
        db.query(FilePermission).filter(FilePermission.file_id == file.id).delete(synchronize_session=False)
        created = []
        for g in rows:
            row = FilePermission(file_id=file.id, granted_by=granted_by, **g)
            db.add(row)
            created.append(row)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.expire(file, ["grants"])
    return created


def log_file_activity(db: Session, file_id, user_id, action: str) -> None:
    """Append an activity row. Failures are logged, never raised."""
    if action not in ACTIVITY_ACTIONS:
        raise ValueError(f"Unknown file activity: {action}")
    try:
        db.add(FileActivity(file_id=file_id, user_id=user_id, action=action))
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning("file_activity_log_failed", file_id=str(file_id), action=action, error=str(e))


def serialize_grant(g: FilePermission) -> Dict:
    return {
        "id": str(g.id),
        "permission_type": g.permission_type,
        "target_id": str(g.target_id) if g.target_id else None,
        "can_read": bool(g.can_read),
        "can_write": bool(g.can_write),
        "can_delete": bool(g.can_delete),
    }
