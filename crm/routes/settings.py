from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_permissions
from ..db import get_db
from ..models.models import Setting, User
from ..services.app_settings import (
    is_valid_key,
    load_app_settings,
    mask_value,
    parse_bool,
    read_raw_settings,
    upsert_settings,
)
from ..services.email import EmailService
from ..services.policy import can_read_notification_settings


router = APIRouter(prefix="/api/settings", tags=["settings"])


@router.get("")
def get_settings(db: Session = Depends(get_db), _: User = Depends(require_permissions("manage_settings"))):
    raw = read_raw_settings(db)
    return {key: mask_value(key, raw[key]) for key in sorted(raw)}


@router.put("")
def update_settings(
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    _: User = Depends(require_permissions("manage_settings")),
):
    if not payload:
        raise HTTPException(status_code=400, detail="Invalid settings data")
    try:
        written = upsert_settings(db, payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"message": "Settings updated successfully", "updated": sorted(written)}


@router.post("/test-email")
def test_email(payload: Dict[str, Any] = Body(...), db: Session = Depends(get_db), _: User = Depends(require_permissions("manage_settings"))):
    to = (payload.get("test_email") or payload.get("testEmail") or "").strip()
    if not to:
        raise HTTPException(status_code=400, detail="Test email address is required")
    mailer = EmailService(load_app_settings(db))
    validation = mailer.validate_configuration()
    if not validation["valid"]:
        raise HTTPException(status_code=400, detail=f"Email configuration is invalid: {validation['message']}")
    result = mailer.send_test_email(to)
    if not result.get("success"):
        raise HTTPException(status_code=502, detail=f"Failed to send test email: {result.get('error')}")
    if result.get("disabled"):
        return {"message": "Email notifications are disabled; nothing was sent", "disabled": True}
    return {"message": "Test email sent successfully", "messageId": result.get("message_id")}


@router.get("/email/validate")
def validate_email(db: Session = Depends(get_db), _: User = Depends(require_permissions("manage_settings"))):
    return EmailService(load_app_settings(db)).validate_configuration()


@router.get("/notifications/{user_id}")
def notification_settings(user_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    """Notification and reminder toggles. Global for now, exposed per user."""
    if not can_read_notification_settings(me, user_id):
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    raw = read_raw_settings(db)
    return {
        key: parse_bool(value)
        for key, value in sorted(raw.items())
        if "notification" in key or "reminder" in key
    }


@router.get("/{key}")
def get_setting(key: str, db: Session = Depends(get_db), _: User = Depends(require_permissions("manage_settings"))):
    if not is_valid_key(key):
        raise HTTPException(status_code=400, detail=f"Invalid setting key: {key}")
    row = db.query(Setting).filter(Setting.key == key).first()
    if not row:
        raise HTTPException(status_code=404, detail="Setting not found")
    return {"key": key, "value": mask_value(key, row.value)}


@router.put("/{key}")
def update_setting(
    key: str,
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    _: User = Depends(require_permissions("manage_settings")),
):
    if "value" not in payload:
        raise HTTPException(status_code=400, detail="Setting value is required")
    try:
        upsert_settings(db, {key: payload["value"]})
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"key": key, "value": mask_value(key, read_raw_settings(db).get(key))}
