from typing import Dict, Iterable, List

from fastapi import HTTPException
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..models.models import (
    Attachment,
    ChatGroup,
    ChatMessage,
    File,
    FileActivity,
    FilePermission,
    Folder,
    Permission,
    Project,
    ProjectEmployee,
    Quote,
    QuoteComment,
    Task,
    TaskComment,
    Team,
    Timesheet,
    User,
)


def _dependency_queries(db: Session, user_id) -> Dict[str, object]:
    return {
        "tasks": db.query(Task).filter(or_(Task.assigned_to == user_id, Task.created_by == user_id)),
        "projects": db.query(Project).filter(Project.created_by == user_id),
        "project_employees": db.query(ProjectEmployee).filter(ProjectEmployee.user_id == user_id),
        "timesheets": db.query(Timesheet).filter(Timesheet.user_id == user_id),
        "chat_messages": db.query(ChatMessage).filter(or_(ChatMessage.sender_id == user_id, ChatMessage.receiver_id == user_id)),
        "chat_groups": db.query(ChatGroup).filter(ChatGroup.created_by == user_id),
        "files": db.query(File).filter(File.uploaded_by == user_id),
        "folders": db.query(Folder).filter(Folder.created_by == user_id),
        "file_activities": db.query(FileActivity).filter(FileActivity.user_id == user_id),
        "file_grants": db.query(FilePermission).filter(FilePermission.granted_by == user_id),
        "attachments": db.query(Attachment).filter(Attachment.uploaded_by == user_id),
        "quotes": db.query(Quote).filter(or_(Quote.created_by == user_id, Quote.reviewed_by == user_id)),
        "quote_comments": db.query(QuoteComment).filter(QuoteComment.user_id == user_id),
        "task_comments": db.query(TaskComment).filter(TaskComment.user_id == user_id),
        "teams": db.query(Team).filter(or_(Team.leader_id == user_id, Team.created_by == user_id)),
    }


def dependent_counts(db: Session, user_id) -> Dict[str, int]:
    """Rows elsewhere in the system that reference the user, per table (non-zero only)."""
    counts = {name: q.count() for name, q in _dependency_queries(db, user_id).items()}
    return {name: n for name, n in counts.items() if n}


def delete_or_deactivate_user(db: Session, target: User, acting_user: User) -> Dict[str, object]:
    """
    Remove a user account.

    A user referenced anywhere is deactivated; a user with no references is
    deleted together with its grants in one transaction.
    """
    if str(target.id) == str(acting_user.id):
        raise HTTPException(status_code=400, detail="You cannot delete your own account")
    if (target.role or "").lower() == "admin" and target.is_active:
        other_admins = (
            db.query(User)
            .filter(User.role == "admin", User.is_active.is_(True), User.id != target.id)
            .count()
        )
        if other_admins == 0:
            raise HTTPException(status_code=400, detail="Cannot delete the last administrator")

    refs = dependent_counts(db, target.id)
    if refs:
        target.is_active = False
        db.commit()
        return {
            "action": "deactivated",
            "deactivated": True,
            "references": refs,
            "message": "User was deactivated because existing records reference it",
        }

    try:
        target.permissions = []
        db.flush()
        db.delete(target)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return {"action": "deleted", "deleted": True, "message": "User was deleted"}


def resolve_permissions(db: Session, names: Iterable[str]) -> List[Permission]:
    """Look up catalog permissions by name. Unknown names raise 400."""
    wanted = sorted({n for n in names or [] if n})
    if not wanted:
        return []
    rows = db.query(Permission).filter(Permission.name.in_(wanted)).all()
    missing = set(wanted) - {p.name for p in rows}
    if missing:
        raise HTTPException(status_code=400, detail=f"Unknown permission: {sorted(missing)[0]}")
    return rows


def user_to_dict(u: User, include_permissions: bool = True) -> Dict[str, object]:
    data = {
        "id": str(u.id),
        "email": u.email,
        "first_name": u.first_name,
        "last_name": u.last_name,
        "nickname": u.nickname,
        "profile_photo": u.profile_photo,
        "role": u.role,
        "hourly_rate": float(u.hourly_rate or 0),
        "is_active": bool(u.is_active),
        "must_change_password": bool(u.must_change_password),
        "created_at": u.created_at.isoformat() if u.created_at else None,
    }
    if include_permissions:
        data["permissions"] = u.permission_names
    return data

