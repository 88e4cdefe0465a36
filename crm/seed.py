"""
Idempotent bootstrap data: the permission catalog, the first administrator
and default settings. Safe to run on every startup.
"""
from typing import Dict

import structlog
from sqlalchemy.orm import Session

from .auth.security import get_password_hash
from .config import settings
from .models.models import Permission, Setting, User
from .services.app_settings import DEFAULT_SETTINGS
from .services.policy import ADMIN_ROLE, PERMISSION_CATALOG

logger = structlog.get_logger()


def seed_permissions(db: Session) -> int:
    """Insert missing catalog permissions and refresh descriptions. Returns how many were added."""
    existing = {p.name: p for p in db.query(Permission).all()}
    added = 0
    for name, description in PERMISSION_CATALOG.items():
        row = existing.get(name)
        if row is None:
            db.add(Permission(name=name, description=description))
            added += 1
        elif row.description != description:
            row.description = description
    db.commit()
    return added


def seed_admin(db: Session) -> bool:
    """Create the first administrator when no admin exists. Returns True when one was created."""
    if db.query(User).filter(User.role == ADMIN_ROLE).first():
        return False
    email = settings.seed_admin_email.strip().lower()
    if db.query(User).filter(User.email == email).first():
        return False
    admin = User(
        email=email,
        password_hash=get_password_hash(settings.seed_admin_password),
        first_name="Admin",
        last_name="User",
        role=ADMIN_ROLE,
        hourly_rate=0.0,
        is_active=True,
        must_change_password=True,
    )
    admin.permissions = db.query(Permission).all()
    db.add(admin)
    db.commit()
    return True


def seed_default_settings(db: Session, defaults: Dict[str, str] = DEFAULT_SETTINGS) -> int:
    """Insert missing settings keys; existing values are never overwritten."""
    present = {key for (key,) in db.query(Setting.key).all()}
    missing = [k for k in defaults if k not in present]
    db.add_all([Setting(key=k, value=defaults[k]) for k in missing])
    db.commit()
    return len(missing)


def run_seed(db: Session) -> dict:
    result = {
        "permissions_added": seed_permissions(db),
        "admin_created": seed_admin(db),
        "settings_added": seed_default_settings(db),
    }
    logger.info("seed_completed", **result)
    return result
