"""
Timesheet timer.

A user is Idle (no open row) or Running (exactly one row with end_time NULL).
The partial unique index on timesheets(user_id) WHERE end_time IS NULL backs
the Running check, so two concurrent starts cannot both commit.
"""
import math
import uuid
from datetime import datetime, timedelta
from typing import Optional

import structlog
from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db import utcnow, to_utc_naive
from ..models.models import Task, Timesheet, User
from .policy import can_track_time

ACTIVE_TIMER_EXISTS = "You already have an active time tracking session"
NO_ACTIVE_TIMER = "No active time tracking session found"

logger = structlog.get_logger()


def duration_minutes(start: datetime, end: datetime) -> int:
    """Whole minutes between two instants, rounded half up."""
    return int(math.floor((end - start).total_seconds() / 60 + 0.5))


def cost_of(duration: Optional[int], hourly_rate: Optional[float]) -> float:
    return round((duration or 0) / 60 * float(hourly_rate or 0), 2)


def _load_task(db: Session, task_id) -> Task:
    try:
        tid = uuid.UUID(str(task_id))
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="Invalid task id")
    task = db.query(Task).filter(Task.id == tid).first()
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


def get_open_timer(db: Session, user_id) -> Optional[Timesheet]:
    return (
        db.query(Timesheet)
        .filter(Timesheet.user_id == user_id, Timesheet.end_time.is_(None))
        .first()
    )


def start_timer(db: Session, user: User, task_id, description: Optional[str] = None) -> Timesheet:
    task = _load_task(db, task_id)
    if not can_track_time(user, task):
        raise HTTPException(status_code=403, detail="You can only track time on tasks assigned to you")
    if get_open_timer(db, user.id) is not None:
        raise HTTPException(status_code=400, detail=ACTIVE_TIMER_EXISTS)

    row = Timesheet(task_id=task.id, user_id=user.id, start_time=utcnow(), description=description)
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # Lost a race with a concurrent start for the same user
        db.rollback()
        raise HTTPException(status_code=400, detail=ACTIVE_TIMER_EXISTS)
    db.refresh(row)
    return row


def stop_timer(db: Session, user: User, description: Optional[str] = None) -> Timesheet:
    row = get_open_timer(db, user.id)
    if row is None:
        raise HTTPException(status_code=400, detail=NO_ACTIVE_TIMER)
    end = utcnow()
    minutes = duration_minutes(to_utc_naive(row.start_time), end)
    if minutes < 0:
        logger.warning("timesheet_negative_duration_clamped", timesheet_id=str(row.id), minutes=minutes)
        minutes = 0
    row.end_time = end
    row.duration = minutes
    if description is not None:
        row.description = description
    db.commit()
    db.refresh(row)
    return row


def add_manual_entry(
    db: Session,
    user: User,
    task_id,
    duration: int,
    description: Optional[str] = None,
    work_date: Optional[datetime] = None,
) -> Timesheet:
    """Closed entry, independent of any running timer."""
    if duration is None or duration <= 0:
        raise HTTPException(status_code=400, detail="Duration must be a positive number of minutes")
    task = _load_task(db, task_id)
    if not can_track_time(user, task):
        raise HTTPException(status_code=403, detail="You can only track time on tasks assigned to you")
    start = to_utc_naive(work_date) or utcnow()
    row = Timesheet(
        task_id=task.id,
        user_id=user.id,
        start_time=start,
        end_time=start + timedelta(minutes=duration),
        duration=duration,
        description=description,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def current_duration(row: Timesheet, now: Optional[datetime] = None) -> int:
    return max(0, duration_minutes(to_utc_naive(row.start_time), now or utcnow()))
