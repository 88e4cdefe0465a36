import os
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File as UploadParam, HTTPException, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_permissions
from ..config import settings
from ..db import get_db, to_utc_naive, utcnow
from ..errors import parse_uuid
from ..models.models import Attachment, Project, Task, TaskComment, TeamMember, Timesheet, User
from ..schemas.tasks import CommentCreate, TaskConfirm, TaskCreate, TaskStatusUpdate, TaskUpdate
from ..services.app_settings import load_app_settings
from ..services.effects import Effect, defer_effects, run_effects
from ..services.email import CommentSummary, EmailService, Person, TaskSummary
from ..services.notifications import create_bulk_notifications, create_notification
from ..services.policy import allow, can_edit_task, can_view_task
from ..services.timesheets import cost_of
from ..storage.local_provider import generate_key, get_storage
from ..storage.provider import FileTooLarge
from .files import ensure_allowed_extension


router = APIRouter(prefix="/api/tasks", tags=["tasks"])

MAX_ATTACHMENTS_PER_UPLOAD = 5


def _name(u: Optional[User]) -> Optional[str]:
    return u.full_name if u else None


def _serialize_task(t: Task) -> dict:
    return {
        "id": str(t.id),
        "title": t.title,
        "description": t.description,
        "project_id": str(t.project_id) if t.project_id else None,
        "project_name": t.project.name if t.project else None,
        "assigned_to": str(t.assigned_to) if t.assigned_to else None,
        "assigned_to_name": _name(t.assignee),
        "created_by": str(t.created_by) if t.created_by else None,
        "created_by_name": _name(t.creator),
        "team_id": str(t.team_id) if t.team_id else None,
        "status": t.status,
        "priority": t.priority,
        "due_date": t.due_date.isoformat() if t.due_date else None,
        "estimated_hours": t.estimated_hours,
        "confirmation_status": t.confirmation_status,
        "confirmation_message": t.confirmation_message,
        "confirmed_at": t.confirmed_at.isoformat() if t.confirmed_at else None,
        "created_at": t.created_at.isoformat() if t.created_at else None,
        "updated_at": t.updated_at.isoformat() if t.updated_at else None,
    }


def _get_task(db: Session, task_id: str) -> Task:
    t = db.query(Task).filter(Task.id == parse_uuid(task_id, "task id")).first()
    if not t:
        raise HTTPException(status_code=404, detail="Task not found")
    return t


def _get_active_user(db: Session, user_id, label: str = "assignee") -> User:
    u = db.query(User).filter(User.id == parse_uuid(user_id, f"{label} id")).first()
    if not u or not u.is_active:
        raise HTTPException(status_code=400, detail=f"Unknown or inactive {label}")
    return u


def _check_project(db: Session, project_id) -> Optional[object]:
    if not project_id:
        return None
    pid = parse_uuid(project_id, "project id")
    if not db.query(Project).filter(Project.id == pid).first():
        raise HTTPException(status_code=404, detail="Project not found")
    return pid


def _assignment_effects(db: Session, task: Task, assignee: User, assigner: User, background_tasks: BackgroundTasks) -> None:
    """Notify and email a new assignee. Runs after the task is committed."""
    run_effects([
        Effect(
            "notify_task_assigned",
            create_notification,
            (db, assignee.id, "task_assigned", "New task assigned", f"{assigner.full_name} assigned you the task: {task.title}", task.id),
        )
    ])
    mailer = EmailService(load_app_settings(db))
    defer_effects(background_tasks, [
        Effect("email_task_assigned", mailer.send_task_assignment_email, (TaskSummary.of(task), Person.of(assignee), Person.of(assigner))),
    ])


@router.get("")
def list_tasks(
    status: Optional[str] = None,
    project_id: Optional[str] = None,
    assigned_to: Optional[str] = None,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    q = db.query(Task)
    if not allow(me, "manage_tasks"):
        q = q.filter(or_(Task.assigned_to == me.id, Task.created_by == me.id))
    if status:
        q = q.filter(Task.status == status)
    if project_id:
        q = q.filter(Task.project_id == parse_uuid(project_id, "project id"))
    if assigned_to:
        q = q.filter(Task.assigned_to == parse_uuid(assigned_to, "user id"))
    return [_serialize_task(t) for t in q.order_by(Task.created_at.desc()).all()]


@router.get("/pending-confirmation")
def pending_confirmation(db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    rows = (
        db.query(Task)
        .filter(Task.assigned_to == me.id, Task.confirmation_status == "pending")
        .order_by(Task.created_at.desc())
        .all()
    )
    return [_serialize_task(t) for t in rows]


@router.get("/projects/list")
def projects_for_tasks(db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    rows = db.query(Project).filter(Project.status == "active").order_by(Project.name).all()
    return [{"id": str(p.id), "name": p.name} for p in rows]


@router.get("/employees/list")
def employees_for_tasks(db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    rows = db.query(User).filter(User.is_active.is_(True)).order_by(User.first_name, User.last_name).all()
    return [{"id": str(u.id), "first_name": u.first_name, "last_name": u.last_name, "email": u.email} for u in rows]


@router.get("/{task_id}")
def get_task(task_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    t = _get_task(db, task_id)
    if not can_view_task(me, t):
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    comments = db.query(TaskComment).filter(TaskComment.task_id == t.id).order_by(TaskComment.created_at.asc()).all()
    sheets = db.query(Timesheet).filter(Timesheet.task_id == t.id).order_by(Timesheet.start_time.desc()).all()
    attachments = db.query(Attachment).filter(Attachment.task_id == t.id).order_by(Attachment.created_at.desc()).all()
    data = _serialize_task(t)
    data["comments"] = [
        {
            "id": str(c.id),
            "user_id": str(c.user_id),
            "user_name": _name(c.user),
            "comment": c.comment,
            "created_at": c.created_at.isoformat() if c.created_at else None,
        }
        for c in comments
    ]
    data["timesheets"] = [
        {
            "id": str(s.id),
            "user_id": str(s.user_id),
            "user_name": _name(s.user),
            "start_time": s.start_time.isoformat() if s.start_time else None,
            "end_time": s.end_time.isoformat() if s.end_time else None,
            "duration": s.duration,
            "cost": cost_of(s.duration, s.user.hourly_rate if s.user else 0),
            "description": s.description,
        }
        for s in sheets
    ]
    data["attachments"] = [_attachment_to_dict(a) for a in attachments]
    return data


@router.post("", status_code=201)
def create_task(
    payload: TaskCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    me: User = Depends(require_permissions("manage_tasks")),
):
    project_id = _check_project(db, payload.project_id)
    assignee = _get_active_user(db, payload.assigned_to) if payload.assigned_to else None
    team_id = parse_uuid(payload.team_id, "team id") if payload.team_id else None
    t = Task(
        title=payload.title.strip(),
        description=payload.description,
        project_id=project_id,
        assigned_to=assignee.id if assignee else None,
        created_by=me.id,
        team_id=team_id,
        status=payload.status,
        priority=payload.priority,
        due_date=to_utc_naive(payload.due_date),
        estimated_hours=payload.estimated_hours,
        confirmation_status="pending" if assignee and assignee.id != me.id else None,
    )
    db.add(t)
    db.commit()
    db.refresh(t)
    result = _serialize_task(t)

    if assignee and assignee.id != me.id:
        _assignment_effects(db, t, assignee, me, background_tasks)
    if team_id:
        member_ids = [
            m.user_id
            for m in db.query(TeamMember).filter(TeamMember.team_id == team_id).all()
            if m.user_id != me.id and (assignee is None or m.user_id != assignee.id)
        ]
        if member_ids:
            run_effects([
                Effect(
                    "notify_team_task",
                    create_bulk_notifications,
                    (db, member_ids, "task_assigned", "New team task", f"New task for your team: {result['title']}", t.id),
                )
            ])
    return result


@router.put("/{task_id}")
def update_task(
    task_id: str,
    payload: TaskUpdate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    t = _get_task(db, task_id)
    if not can_edit_task(me, t):
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    data = payload.model_dump(exclude_unset=True)
    new_assignee = None
    if "assigned_to" in data:
        if not allow(me, "manage_tasks"):
            raise HTTPException(status_code=403, detail="Only task managers can reassign tasks")
        if data["assigned_to"]:
            new_assignee = _get_active_user(db, data["assigned_to"])
            if t.assigned_to != new_assignee.id:
                t.assigned_to = new_assignee.id
                t.confirmation_status = "pending" if new_assignee.id != me.id else None
                t.confirmation_message = None
                t.confirmed_at = None
            else:
                new_assignee = None
        else:
            t.assigned_to = None
            t.confirmation_status = None
    if "project_id" in data:
        t.project_id = _check_project(db, data["project_id"])
    for field in ("title", "description", "status", "priority", "estimated_hours"):
        if field in data and data[field] is not None:
            setattr(t, field, data[field])
    if "due_date" in data:
        t.due_date = to_utc_naive(data["due_date"])
    db.commit()
    db.refresh(t)
    result = _serialize_task(t)
    if new_assignee and new_assignee.id != me.id:
        _assignment_effects(db, t, new_assignee, me, background_tasks)
    return result


@router.patch("/{task_id}/status")
def update_task_status(task_id: str, payload: TaskStatusUpdate, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    t = _get_task(db, task_id)
    if not can_edit_task(me, t):
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    t.status = payload.status
    db.commit()
    return {"message": "Task status updated successfully", "status": payload.status}


@router.patch("/{task_id}/confirm")
def confirm_task(
    task_id: str,
    payload: TaskConfirm,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    tid = parse_uuid(task_id, "task id")
    t = db.query(Task).filter(Task.id == tid, Task.assigned_to == me.id).first()
    if not t:
        raise HTTPException(status_code=404, detail="Task not found or not assigned to you")
    if t.confirmation_status != "pending":
        raise HTTPException(status_code=400, detail="Task has already been confirmed or rejected")

    accepted = payload.action == "accept"
    t.confirmation_status = "accepted" if accepted else "rejected"
    t.status = "in_progress" if accepted else "pending"
    t.confirmation_message = payload.message
    t.confirmed_at = utcnow()
    db.commit()
    db.refresh(t)
    result = _serialize_task(t)

    creator = db.query(User).filter(User.id == t.created_by).first() if t.created_by else None
    if creator and creator.id != me.id:
        verb = "accepted" if accepted else "rejected"
        message = f"{me.full_name} {verb} the task: {t.title}"
        if payload.message:
            message += f" ({payload.message})"
        run_effects([
            Effect(
                "notify_task_confirmation",
                create_notification,
                (db, creator.id, "task_confirmed" if accepted else "task_rejected", f"Task {verb}", message, t.id),
            )
        ])
        mailer = EmailService(load_app_settings(db))
        defer_effects(background_tasks, [
            Effect(
                "email_task_confirmation",
                mailer.send_task_confirmation_email,
                (TaskSummary.of(t), Person.of(creator), Person.of(me), payload.action, payload.message),
            )
        ])
    return result


@router.delete("/{task_id}")
def delete_task(task_id: str, db: Session = Depends(get_db), _=Depends(require_permissions("manage_tasks"))):
    t = _get_task(db, task_id)
    storage = get_storage("attachments")
    keys = [a.filename for a in db.query(Attachment).filter(Attachment.task_id == t.id).all()]
    db.delete(t)
    db.commit()
    for key in keys:
        storage.delete(key)
    return {"message": "Task deleted"}


@router.post("/{task_id}/comments", status_code=201)
def add_comment(
    task_id: str,
    payload: CommentCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    t = _get_task(db, task_id)
    if not can_view_task(me, t):
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    c = TaskComment(task_id=t.id, user_id=me.id, comment=payload.comment.strip())
    db.add(c)
    db.commit()
    db.refresh(c)
    result = {
        "id": str(c.id),
        "task_id": str(t.id),
        "user_id": str(me.id),
        "user_name": me.full_name,
        "comment": c.comment,
        "created_at": c.created_at.isoformat() if c.created_at else None,
    }

    # The other side of the assignment hears about it
    recipient_id = t.created_by if t.assigned_to == me.id else t.assigned_to
    recipient = db.query(User).filter(User.id == recipient_id).first() if recipient_id else None
    if recipient and recipient.id != me.id and recipient.is_active:
        run_effects([
            Effect(
                "notify_task_comment",
                create_notification,
                (db, recipient.id, "task_comment", "New comment", f"{me.full_name} commented on: {t.title}", t.id),
            )
        ])
        mailer = EmailService(load_app_settings(db))
        defer_effects(background_tasks, [
            Effect(
                "email_task_comment",
                mailer.send_task_comment_email,
                (TaskSummary.of(t), CommentSummary(result["id"], result["comment"]), Person.of(me), Person.of(recipient)),
            )
        ])
    return result


# =====================
# Attachments
# =====================


def _attachment_to_dict(a: Attachment) -> dict:
    return {
        "id": str(a.id),
        "task_id": str(a.task_id),
        "original_name": a.original_name,
        "mime_type": a.mime_type,
        "size": a.size,
        "uploaded_by": str(a.uploaded_by) if a.uploaded_by else None,
        "created_at": a.created_at.isoformat() if a.created_at else None,
    }


@router.post("/{task_id}/attachments", status_code=201)
def upload_attachments(
    task_id: str,
    files: List[UploadFile] = UploadParam(...),
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    t = _get_task(db, task_id)
    if not can_view_task(me, t):
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    if not files:
        raise HTTPException(status_code=400, detail="No files uploaded")
    if len(files) > MAX_ATTACHMENTS_PER_UPLOAD:
        raise HTTPException(status_code=400, detail=f"At most {MAX_ATTACHMENTS_PER_UPLOAD} files per upload")
    for f in files:
        ensure_allowed_extension(f.filename)

    storage = get_storage("attachments")
    saved: List[Attachment] = []
    written_keys: List[str] = []
    try:
        for f in files:
            key = generate_key(f.filename)
            size = storage.save(f.file, key, max_bytes=settings.file_max_bytes)
            written_keys.append(key)
            a = Attachment(
                task_id=t.id,
                filename=key,
                original_name=os.path.basename(f.filename or key),
                mime_type=f.content_type,
                size=size,
                path=str(storage.path_for(key)),
                uploaded_by=me.id,
            )
            db.add(a)
            saved.append(a)
        db.commit()
    except FileTooLarge:
        db.rollback()
        for key in written_keys:
            storage.delete(key)
        raise HTTPException(status_code=400, detail="File is too large")
    for a in saved:
        db.refresh(a)
    return [_attachment_to_dict(a) for a in saved]


def _get_attachment(db: Session, attachment_id: str, me: User) -> Attachment:
    a = db.query(Attachment).filter(Attachment.id == parse_uuid(attachment_id, "attachment id")).first()
    if not a:
        raise HTTPException(status_code=404, detail="Attachment not found")
    t = db.query(Task).filter(Task.id == a.task_id).first()
    if not t or not can_view_task(me, t):
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    return a


@router.get("/attachments/{attachment_id}/download")
def download_attachment(attachment_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    a = _get_attachment(db, attachment_id, me)
    storage = get_storage("attachments")
    if not storage.exists(a.filename):
        raise HTTPException(status_code=404, detail="File missing from storage")
    return FileResponse(storage.path_for(a.filename), media_type=a.mime_type or "application/octet-stream", filename=a.original_name)


@router.delete("/attachments/{attachment_id}")
def delete_attachment(attachment_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    a = _get_attachment(db, attachment_id, me)
    if str(a.uploaded_by) != str(me.id) and not allow(me, "manage_tasks"):
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    key = a.filename
    db.delete(a)
    db.commit()
    get_storage("attachments").delete(key)
    return {"message": "Attachment deleted"}
