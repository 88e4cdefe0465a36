from datetime import date, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_permissions
from ..db import get_db, to_utc_naive
from ..errors import parse_uuid
from ..models.models import Task, Timesheet, User
from ..schemas.timesheets import ManualEntry, TimerStart, TimerStop, TimesheetUpdate
from ..services.policy import allow, can_access_timesheet
from ..services.reports import closed_timesheets, time_tracking
from ..services.timesheets import (
    add_manual_entry,
    cost_of,
    current_duration,
    duration_minutes,
    get_open_timer,
    start_timer,
    stop_timer,
)


router = APIRouter(prefix="/api/timesheets", tags=["timesheets"])


def _parse_day(value: Optional[str], label: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {label}")


def _timesheet_to_dict(ts: Timesheet) -> dict:
    rate = ts.user.hourly_rate if ts.user else 0
    return {
        "id": str(ts.id),
        "task_id": str(ts.task_id),
        "task_title": ts.task.title if ts.task else None,
        "user_id": str(ts.user_id),
        "user_name": ts.user.full_name if ts.user else None,
        "start_time": ts.start_time.isoformat() if ts.start_time else None,
        "end_time": ts.end_time.isoformat() if ts.end_time else None,
        "duration": ts.duration,
        "description": ts.description,
        "cost": cost_of(ts.duration, rate),
        "created_at": ts.created_at.isoformat() if ts.created_at else None,
    }


def _get_timesheet(db: Session, timesheet_id: str, me: User) -> Timesheet:
    ts = db.query(Timesheet).filter(Timesheet.id == parse_uuid(timesheet_id, "timesheet id")).first()
    if not ts:
        raise HTTPException(status_code=404, detail="Timesheet not found")
    if not can_access_timesheet(me, ts):
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    return ts


@router.get("")
def list_timesheets(
    task_id: Optional[str] = None,
    user_id: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    db: Session = Depends(get_db),
    me: User = Depends(require_permissions("add_timesheets", "manage_tasks")),
):
    """Closed entries grouped by (task, user) with totals and per-entry detail."""
    if not allow(me, "manage_tasks"):
        user_id = str(me.id)
    rows = closed_timesheets(
        db,
        _parse_day(start_date, "start_date"),
        _parse_day(end_date, "end_date"),
        user_id=parse_uuid(user_id, "user id") if user_id else None,
        task_id=parse_uuid(task_id, "task id") if task_id else None,
    ).all()
    return time_tracking(rows)["aggregatedTasks"]


@router.get("/active/current")
def active_timer(db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    ts = get_open_timer(db, me.id)
    if ts is None:
        return None
    data = _timesheet_to_dict(ts)
    data["current_duration"] = current_duration(ts)
    return data


@router.get("/tasks/list")
def trackable_tasks(db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    q = db.query(Task).filter(Task.status != "cancelled")
    if not allow(me, "manage_tasks"):
        q = q.filter(Task.assigned_to == me.id)
    return [
        {
            "id": str(t.id),
            "title": t.title,
            "status": t.status,
            "project_name": t.project.name if t.project else None,
        }
        for t in q.order_by(Task.title).all()
    ]


@router.get("/{timesheet_id}")
def get_timesheet(timesheet_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    return _timesheet_to_dict(_get_timesheet(db, timesheet_id, me))


@router.post("/start", status_code=201)
def start(payload: TimerStart, db: Session = Depends(get_db), me: User = Depends(require_permissions("add_timesheets"))):
    ts = start_timer(db, me, payload.task_id, payload.description)
    return _timesheet_to_dict(ts)


@router.post("/stop")
def stop(payload: Optional[TimerStop] = None, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    ts = stop_timer(db, me, payload.description if payload else None)
    return _timesheet_to_dict(ts)


@router.post("", status_code=201)
def manual_entry(payload: ManualEntry, db: Session = Depends(get_db), me: User = Depends(require_permissions("add_timesheets"))):
    ts = add_manual_entry(db, me, payload.task_id, payload.duration, payload.description, payload.work_date)
    return _timesheet_to_dict(ts)


@router.put("/{timesheet_id}")
def update_timesheet(timesheet_id: str, payload: TimesheetUpdate, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    ts = _get_timesheet(db, timesheet_id, me)
    data = payload.model_dump(exclude_unset=True)
    if "start_time" in data and data["start_time"] is not None:
        ts.start_time = to_utc_naive(data["start_time"])
    if "duration" in data and data["duration"] is not None:
        if ts.end_time is None:
            raise HTTPException(status_code=400, detail="Stop the running timer before editing its duration")
        ts.duration = data["duration"]
        ts.end_time = ts.start_time + timedelta(minutes=data["duration"])
    elif "start_time" in data and ts.end_time is not None:
        ts.duration = max(0, duration_minutes(ts.start_time, to_utc_naive(ts.end_time)))
    if "description" in data:
        ts.description = data["description"]
    db.commit()
    db.refresh(ts)
    return _timesheet_to_dict(ts)


@router.delete("/{timesheet_id}")
def delete_timesheet(timesheet_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    ts = _get_timesheet(db, timesheet_id, me)
    db.delete(ts)
    db.commit()
    return {"message": "Timesheet deleted"}

