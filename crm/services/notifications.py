"""
Notification dispatcher.

Persists in-app notifications raised by task events and pushes them to the
recipient's notification room. The row is the source of truth; realtime
delivery is best-effort and never fails the caller.
"""
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..models.models import Notification, Project, Task
from .realtime import Event, notification_room, publish_to_room

Publisher = Callable[[str, List[Event]], None]

logger = structlog.get_logger()


def unread_count(db: Session, user_id) -> int:
    return (
        db.query(Notification)
        .filter(Notification.user_id == user_id, Notification.is_read.is_(False))
        .count()
    )


def serialize_notification(db: Session, n: Notification) -> Dict[str, Any]:
    """Notification joined with its task and project for display."""
    task_title = task_status = project_name = None
    project_id = n.project_id
    if n.task_id:
        task = db.query(Task).filter(Task.id == n.task_id).first()
        if task:
            task_title, task_status = task.title, task.status
            project_id = project_id or task.project_id
    if project_id:
        project = db.query(Project).filter(Project.id == project_id).first()
        project_name = project.name if project else None
    return {
        "id": str(n.id),
        "user_id": str(n.user_id),
        "type": n.type,
        "title": n.title,
        "message": n.message,
        "task_id": str(n.task_id) if n.task_id else None,
        "task_title": task_title,
        "task_status": task_status,
        "project_name": project_name,
        "is_read": bool(n.is_read),
        "created_at": n.created_at.isoformat() if n.created_at else None,
    }


def create_notification(
    db: Session,
    user_id,
    type: str,
    title: str,
    message: Optional[str] = None,
    task_id=None,
    *,
    publisher: Optional[Publisher] = None,
) -> uuid.UUID:
    """
    Create a notification and push it to the recipient.

    Args:
        db: Database session
        user_id: Recipient user ID
        type: Notification type tag (task_assigned, task_confirmed, ...)
        title: Short title
        message: Optional body
        task_id: Optional related task

    Returns:
        The new notification id. Storage failures raise after rolling back;
        push failures are logged only.
    """
    n = Notification(
        user_id=uuid.UUID(str(user_id)),
        type=type,
        title=title,
        message=message,
        task_id=uuid.UUID(str(task_id)) if task_id else None,
        is_read=False,
    )
    try:
        db.add(n)
        db.commit()
        db.refresh(n)
    except Exception:
        db.rollback()
        raise

    payload = serialize_notification(db, n)
    payload["timestamp"] = payload["created_at"]
    events: List[Event] = [
        ("new-notification", payload),
        ("unread-count-update", {"count": unread_count(db, n.user_id)}),
    ]
    try:
        (publisher or publish_to_room)(notification_room(n.user_id), events)
    except Exception as e:
        logger.warning("notification_push_failed", user_id=str(n.user_id), error=str(e))
    return n.id


def create_bulk_notifications(
    db: Session,
    user_ids: Iterable,
    type: str,
    title: str,
    message: Optional[str] = None,
    task_id=None,
    *,
    publisher: Optional[Publisher] = None,
) -> Dict[str, List[str]]:
    """
    Fan out one notification per recipient.

    Each recipient is handled on its own; a failure is recorded and the
    remaining recipients still get theirs. Pushes are scheduled on the event
    loop, so delivery to different recipients proceeds concurrently.

    Returns:
        {"created": [notification ids], "failed": [user ids]}
    """
    created: List[str] = []
    failed: List[str] = []
    seen = set()
    for uid in user_ids:
        key = str(uid)
        if key in seen:
            continue
        seen.add(key)
        try:
            created.append(str(create_notification(db, uid, type, title, message, task_id, publisher=publisher)))
        except Exception as e:
            logger.warning("bulk_notification_failed", user_id=key, error=str(e))
            failed.append(key)
    return {"created": created, "failed": failed}
