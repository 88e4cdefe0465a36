from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth.security import get_current_user
from ..db import get_db
from ..errors import parse_uuid
from ..models.models import Notification, User
from ..services.notifications import serialize_notification, unread_count


router = APIRouter(prefix="/api/notifications", tags=["notifications"])


def _owned(db: Session, notification_id: str, me: User) -> Notification:
    n = db.query(Notification).filter(Notification.id == parse_uuid(notification_id, "notification id")).first()
    if not n:
        raise HTTPException(status_code=404, detail="Notification not found")
    if n.user_id != me.id:
        raise HTTPException(status_code=403, detail="Access denied")
    return n


@router.get("")
def list_notifications(
    limit: int = 20,
    offset: int = 0,
    unread_only: bool = False,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    q = db.query(Notification).filter(Notification.user_id == me.id)
    if unread_only:
        q = q.filter(Notification.is_read.is_(False))
    total = q.count()
    rows = q.order_by(Notification.created_at.desc()).limit(max(1, min(100, limit))).offset(max(0, offset)).all()
    return {
        "notifications": [serialize_notification(db, n) for n in rows],
        "total": total,
        "unread_count": unread_count(db, me.id),
    }


@router.get("/unread-count")
def get_unread_count(db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    return {"count": unread_count(db, me.id)}


@router.put("/mark-all-read")
def mark_all_read(db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    updated = (
        db.query(Notification)
        .filter(Notification.user_id == me.id, Notification.is_read.is_(False))
        .update({Notification.is_read: True}, synchronize_session=False)
    )
    db.commit()
    return {"message": "All notifications marked as read", "updated": updated}


@router.put("/{notification_id}/read")
def mark_read(notification_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    n = _owned(db, notification_id, me)
    n.is_read = True
    db.commit()
    return {"message": "Notification marked as read"}


@router.delete("/{notification_id}")
def delete_notification(notification_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    n = _owned(db, notification_id, me)
    db.delete(n)
    db.commit()
    return {"message": "Notification deleted"}
