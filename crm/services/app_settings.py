"""
Typed view over the key-value `settings` table.

Call sites read `AppSettings` fields instead of comparing raw strings. A
snapshot is loaded per request, so writes are visible on the next request.
"""
import re
from typing import Dict, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..db import utcnow
from ..models.models import Setting

SETTING_KEY_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

SECRET_KEYS = {"sendgrid_api_key"}
MASK = "*" * 8

DEFAULT_SETTINGS: Dict[str, str] = {
    "sendgrid_api_key": "",
    "sendgrid_from_email": "noreply@crm.sk",
    "sendgrid_from_name": "CRM System",
    "email_notifications_enabled": "false",
    "task_assignment_notifications": "true",
    "task_comment_notifications": "true",
    "task_reminder_notifications": "true",
    "company_name": "",
    "company_address": "",
    "company_phone": "",
    "company_email": "",
    "default_hourly_rate": "25.00",
    "currency": "EUR",
    "timezone": "Europe/Bratislava",
    "date_format": "DD.MM.YYYY",
    "auto_task_reminders": "true",
    "reminder_hours_before": "24",
}


def parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"true", "1", "yes", "on"}


def _parse_float(value: Optional[str], default: float) -> float:
    try:
        return float(value) if value not in (None, "") else default
    except ValueError:
        return default


def _parse_int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value not in (None, "") else default
    except ValueError:
        return default


class AppSettings(BaseModel):
    sendgrid_api_key: str = ""
    sendgrid_from_email: str = "noreply@crm.sk"
    sendgrid_from_name: str = "CRM System"
    email_notifications_enabled: bool = False
    task_assignment_notifications: bool = True
    task_comment_notifications: bool = True
    task_reminder_notifications: bool = True
    company_name: str = ""
    default_hourly_rate: float = 25.0
    currency: str = "EUR"
    timezone: str = "Europe/Bratislava"
    date_format: str = "DD.MM.YYYY"
    auto_task_reminders: bool = True
    reminder_hours_before: int = 24

    @property
    def email_enabled(self) -> bool:
        return bool(self.sendgrid_api_key.strip()) and self.email_notifications_enabled

    @classmethod
    def from_raw(cls, raw: Dict[str, Optional[str]]) -> "AppSettings":
        merged = {**DEFAULT_SETTINGS, **{k: v for k, v in raw.items() if v is not None}}
        return cls(
            sendgrid_api_key=merged["sendgrid_api_key"] or "",
            sendgrid_from_email=merged["sendgrid_from_email"] or DEFAULT_SETTINGS["sendgrid_from_email"],
            sendgrid_from_name=merged["sendgrid_from_name"] or DEFAULT_SETTINGS["sendgrid_from_name"],
            email_notifications_enabled=parse_bool(merged["email_notifications_enabled"]),
            task_assignment_notifications=parse_bool(merged["task_assignment_notifications"], True),
            task_comment_notifications=parse_bool(merged["task_comment_notifications"], True),
            task_reminder_notifications=parse_bool(merged["task_reminder_notifications"], True),
            company_name=merged["company_name"] or "",
            default_hourly_rate=_parse_float(merged["default_hourly_rate"], 25.0),
            currency=merged["currency"] or "EUR",
            timezone=merged["timezone"] or "Europe/Bratislava",
            date_format=merged["date_format"] or "DD.MM.YYYY",
            auto_task_reminders=parse_bool(merged["auto_task_reminders"], True),
            reminder_hours_before=_parse_int(merged["reminder_hours_before"], 24),
        )


def read_raw_settings(db: Session) -> Dict[str, Optional[str]]:
    return {row.key: row.value for row in db.query(Setting).all()}


def load_app_settings(db: Session) -> AppSettings:
    return AppSettings.from_raw(read_raw_settings(db))


def is_valid_key(key: str) -> bool:
    return bool(SETTING_KEY_RE.match(key or ""))


def mask_value(key: str, value: Optional[str]) -> Optional[str]:
    if key in SECRET_KEYS and value:
        return MASK + value[-4:] if len(value) > 4 else MASK
    return value


def upsert_settings(db: Session, values: Dict[str, object]) -> Dict[str, str]:
    """Write several settings at once. Every key is validated before anything is written.

    Raises:
        ValueError: a key does not match the allowed pattern
    """
    bad = [k for k in values if not is_valid_key(k)]
    if bad:
        raise ValueError(f"Invalid setting key: {bad[0]}")
    written: Dict[str, str] = {}
    try:
        for key, value in values.items():
            text_value = "" if value is None else (str(value).lower() if isinstance(value, bool) else str(value))
            if key in SECRET_KEYS and text_value.startswith(MASK):
                # Masked value echoed back by a client; keep the stored secret
                continue
            row = db.query(Setting).filter(Setting.key == key).first()
            if row is None:
                db.add(Setting(key=key, value=text_value))
            else:
                row.value = text_value
                row.updated_at = utcnow()
            written[key] = text_value
        db.commit()
    except Exception:
        db.rollback()
        raise
    return written
