from datetime import datetime, timedelta

import pytz
from fastapi import APIRouter, Depends
from sqlalchemy import func, or_
from sqlalchemy.orm import Query, Session

from ..auth.security import get_current_user
from ..db import get_db, utcnow
from ..models.models import Company, Project, ProjectEmployee, Task, TaskComment, Timesheet, User
from ..services.app_settings import load_app_settings
from ..services.notifications import unread_count
from ..services.policy import allow
from ..services.timesheets import cost_of, get_open_timer


router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])

OPEN_STATUSES = ("pending", "in_progress")


def _tasks(db: Session, me: User) -> Query:
    q = db.query(Task)
    if not allow(me, "manage_tasks"):
        q = q.filter(or_(Task.assigned_to == me.id, Task.created_by == me.id))
    return q


def _timesheets(db: Session, me: User) -> Query:
    q = db.query(Timesheet).filter(Timesheet.duration.isnot(None))
    if not allow(me, "manage_tasks"):
        q = q.filter(Timesheet.user_id == me.id)
    return q


def month_start_utc(now: datetime, timezone_str: str) -> datetime:
    """
    First instant of the current month in the given timezone, as naive UTC.

    Args:
        now: Current time (naive UTC)
        timezone_str: Timezone string (e.g., "Europe/Bratislava"); unknown names fall back to UTC
    """
    try:
        tz = pytz.timezone(timezone_str)
    except pytz.UnknownTimeZoneError:
        tz = pytz.UTC
    local_now = pytz.UTC.localize(now).astimezone(tz)
    local_start = tz.localize(datetime(local_now.year, local_now.month, 1))
    return local_start.astimezone(pytz.UTC).replace(tzinfo=None)


@router.get("/stats")
def stats(db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    now = utcnow()
    by_status = dict(
        _tasks(db, me).with_entities(Task.status, func.count(Task.id)).group_by(Task.status).all()
    )
    month_rows = _timesheets(db, me).filter(Timesheet.start_time >= month_start_utc(now, load_app_settings(db).timezone)).all()
    month_minutes = sum(ts.duration or 0 for ts in month_rows)
    month_cost = sum(cost_of(ts.duration, ts.user.hourly_rate if ts.user else 0) for ts in month_rows)

    projects = db.query(Project).filter(Project.status == "active")
    if not allow(me, "manage_projects"):
        projects = projects.join(ProjectEmployee, ProjectEmployee.project_id == Project.id).filter(ProjectEmployee.user_id == me.id)

    timer = get_open_timer(db, me.id)
    out = {
        "tasks_by_status": {k: int(v) for k, v in by_status.items()},
        "activeTasks": int(sum(by_status.get(s, 0) for s in OPEN_STATUSES)),
        "projects": projects.count(),
        "monthlyHours": round(month_minutes / 60, 2),
        "monthlyRevenue": round(month_cost, 2),
        "activeTimer": {"id": str(timer.id), "task_id": str(timer.task_id), "start_time": timer.start_time.isoformat()} if timer else None,
        "unreadNotifications": unread_count(db, me.id),
    }
    if allow(me, "manage_users"):
        out["users"] = db.query(User).filter(User.is_active.is_(True)).count()
    if allow(me, "manage_companies"):
        out["companies"] = db.query(Company).count()
    return out


@router.get("/activities")
def activities(limit: int = 10, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    limit = max(1, min(50, limit))
    items = []
    for t in _tasks(db, me).order_by(Task.created_at.desc()).limit(limit).all():
        items.append({
            "type": "task",
            "title": t.title,
            "description": "Task created",
            "user": t.creator.full_name if t.creator else None,
            "timestamp": t.created_at,
            "status": t.status,
        })
    for ts in _timesheets(db, me).order_by(Timesheet.created_at.desc()).limit(limit).all():
        hours, minutes = divmod(ts.duration or 0, 60)
        items.append({
            "type": "timesheet",
            "title": ts.task.title if ts.task else None,
            "description": f"Time logged: {hours}h {minutes}m",
            "user": ts.user.full_name if ts.user else None,
            "timestamp": ts.created_at,
            "status": "completed",
        })
    comments = db.query(TaskComment).join(Task, Task.id == TaskComment.task_id)
    if not allow(me, "manage_tasks"):
        comments = comments.filter(or_(Task.assigned_to == me.id, Task.created_by == me.id))
    for c in comments.order_by(TaskComment.created_at.desc()).limit(limit).all():
        task = db.query(Task).filter(Task.id == c.task_id).first()
        items.append({
            "type": "comment",
            "title": task.title if task else None,
            "description": c.comment[:120],
            "user": c.user.full_name if c.user else None,
            "timestamp": c.created_at,
            "status": None,
        })
    items.sort(key=lambda a: a["timestamp"] or datetime.min, reverse=True)
    for a in items:
        a["timestamp"] = a["timestamp"].isoformat() if a["timestamp"] else None
    return items[:limit]


@router.get("/deadlines")
def deadlines(db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    now = utcnow()
    rows = (
        _tasks(db, me)
        .filter(
            Task.due_date.isnot(None),
            Task.status.notin_(("completed", "cancelled")),
            Task.due_date >= now.replace(hour=0, minute=0, second=0, microsecond=0),
            Task.due_date <= now + timedelta(days=7),
        )
        .order_by(Task.due_date.asc())
        .limit(10)
        .all()
    )
    return [
        {
            "id": str(t.id),
            "title": t.title,
            "due_date": t.due_date.isoformat() if t.due_date else None,
            "status": t.status,
            "priority": t.priority,
            "project_name": t.project.name if t.project else None,
            "assigned_to_name": t.assignee.full_name if t.assignee else None,
        }
        for t in rows
    ]
