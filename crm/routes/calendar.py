from datetime import date, datetime, time, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import or_
from sqlalchemy.orm import Query, Session

from ..auth.security import get_current_user
from ..db import get_db, to_utc_naive, utcnow
from ..errors import parse_uuid
from ..models.models import CalendarEvent, CalendarEventParticipant, User
from ..schemas.calendar import EventCreate, EventUpdate
from ..services.policy import can_modify_event, can_view_event


router = APIRouter(prefix="/api/calendar", tags=["calendar"])


def _visible(db: Session, me: User) -> Query:
    """Events the user created or takes part in."""
    participating = db.query(CalendarEventParticipant.event_id).filter(CalendarEventParticipant.user_id == me.id)
    return db.query(CalendarEvent).filter(or_(CalendarEvent.created_by == me.id, CalendarEvent.id.in_(participating)))


def _overlapping(q: Query, start: datetime, end: datetime) -> Query:
    return q.filter(CalendarEvent.start_datetime <= end, CalendarEvent.end_datetime >= start)


def _parse_dt(value: str, label: str) -> datetime:
    try:
        return to_utc_naive(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {label}")


def _parse_day(value: str, label: str) -> date:
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {label}")


def _event_to_dict(db: Session, e: CalendarEvent, me: User) -> dict:
    creator = db.query(User).filter(User.id == e.created_by).first()
    people = []
    for p in e.participants:
        u = db.query(User).filter(User.id == p.user_id).first()
        people.append({
            "user_id": str(p.user_id),
            "status": p.status,
            "first_name": u.first_name if u else None,
            "last_name": u.last_name if u else None,
            "email": u.email if u else None,
        })
    return {
        "id": str(e.id),
        "title": e.title,
        "description": e.description,
        "start_datetime": e.start_datetime.isoformat() if e.start_datetime else None,
        "end_datetime": e.end_datetime.isoformat() if e.end_datetime else None,
        "all_day": bool(e.all_day),
        "event_type": e.event_type,
        "priority": e.priority,
        "color": e.color,
        "location": e.location,
        "task_id": str(e.task_id) if e.task_id else None,
        "project_id": str(e.project_id) if e.project_id else None,
        "created_by": str(e.created_by),
        "creator_name": creator.full_name if creator else None,
        "user_role": "owner" if e.created_by == me.id else "participant",
        "participants": people,
        "created_at": e.created_at.isoformat() if e.created_at else None,
    }


def _participant_ids(db: Session, ids: List[str], creator_id) -> set:
    out = {parse_uuid(x, "participant id") for x in ids if x}
    out.discard(creator_id)
    if out:
        found = db.query(User.id).filter(User.id.in_(out), User.is_active.is_(True)).count()
        if found != len(out):
            raise HTTPException(status_code=400, detail="Unknown or inactive participant")
    return out


def _get_event(db: Session, event_id: str) -> CalendarEvent:
    e = db.query(CalendarEvent).filter(CalendarEvent.id == parse_uuid(event_id, "event id")).first()
    if not e:
        raise HTTPException(status_code=404, detail="Event not found")
    return e


@router.get("")
def list_events(start: Optional[str] = None, end: Optional[str] = None, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    q = _visible(db, me)
    if start and end:
        q = _overlapping(q, _parse_dt(start, "start"), _parse_dt(end, "end"))
    return [_event_to_dict(db, e, me) for e in q.order_by(CalendarEvent.start_datetime.asc()).all()]


@router.get("/upcoming/count")
def upcoming_count(db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    now = utcnow()
    count = (
        _visible(db, me)
        .filter(CalendarEvent.start_datetime >= now, CalendarEvent.start_datetime <= now + timedelta(days=7))
        .count()
    )
    return {"count": count}


@router.get("/week/{day}")
def week_events(day: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    d = _parse_day(day, "date")
    monday = d - timedelta(days=d.weekday())
    week_start = datetime.combine(monday, time.min)
    week_end = datetime.combine(monday + timedelta(days=6), time.max)
    rows = _overlapping(_visible(db, me), week_start, week_end).order_by(CalendarEvent.start_datetime.asc()).all()
    return {
        "events": [_event_to_dict(db, e, me) for e in rows],
        "weekStart": week_start.isoformat(),
        "weekEnd": week_end.isoformat(),
    }


@router.get("/range/{start}/{end}")
def range_events(start: str, end: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    range_start = datetime.combine(_parse_day(start, "start"), time.min)
    range_end = datetime.combine(_parse_day(end, "end"), time.max)
    if range_end < range_start:
        raise HTTPException(status_code=400, detail="End date must not be before start date")
    rows = _overlapping(_visible(db, me), range_start, range_end).order_by(CalendarEvent.start_datetime.asc()).all()
    return {
        "events": [_event_to_dict(db, e, me) for e in rows],
        "rangeStart": range_start.isoformat(),
        "rangeEnd": range_end.isoformat(),
    }


@router.get("/{event_id}")
def get_event(event_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    e = _get_event(db, event_id)
    if not can_view_event(me, e, [p.user_id for p in e.participants]):
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    return _event_to_dict(db, e, me)


@router.post("", status_code=201)
def create_event(payload: EventCreate, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    participants = _participant_ids(db, payload.participants, me.id)
    e = CalendarEvent(
        title=payload.title.strip(),
        description=payload.description,
        start_datetime=to_utc_naive(payload.start_datetime),
        end_datetime=to_utc_naive(payload.end_datetime),
        all_day=payload.all_day,
        event_type=payload.event_type,
        priority=payload.priority,
        color=payload.color,
        location=payload.location,
        task_id=parse_uuid(payload.task_id, "task id") if payload.task_id else None,
        project_id=parse_uuid(payload.project_id, "project id") if payload.project_id else None,
        created_by=me.id,
    )
    try:
        db.add(e)
        db.flush()
        db.add_all([CalendarEventParticipant(event_id=e.id, user_id=uid) for uid in participants])
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(e)
    return _event_to_dict(db, e, me)


@router.put("/{event_id}")
def update_event(event_id: str, payload: EventUpdate, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    e = _get_event(db, event_id)
    if not can_modify_event(me, e):
        raise HTTPException(status_code=403, detail="Only the event owner can change it")
    data = payload.model_dump(exclude_unset=True)
    for field in ("start_datetime", "end_datetime"):
        if data.get(field) is not None:
            setattr(e, field, to_utc_naive(data[field]))
    if to_utc_naive(e.end_datetime) < to_utc_naive(e.start_datetime):
        raise HTTPException(status_code=400, detail="end_datetime must not be before start_datetime")
    for field in ("title", "description", "all_day", "event_type", "priority", "color", "location"):
        if field in data and (data[field] is not None or field in ("description", "location")):
            setattr(e, field, data[field])
    try:
        if data.get("participants") is not None:
            wanted = _participant_ids(db, data["participants"], me.id)
            db.query(CalendarEventParticipant).filter(CalendarEventParticipant.event_id == e.id).delete(synchronize_session=False)
            db.add_all([CalendarEventParticipant(event_id=e.id, user_id=uid) for uid in wanted])
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(e)
    return _event_to_dict(db, e, me)


@router.delete("/{event_id}")
def delete_event(event_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    e = _get_event(db, event_id)
    if not can_modify_event(me, e):
        raise HTTPException(status_code=403, detail="Only the event owner can delete it")
    db.delete(e)
    db.commit()
    return {"message": "Event deleted"}
