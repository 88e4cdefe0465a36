from __future__ import annotations

import unittest
from collections.abc import Generator
from typing import Iterable

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm.auth.security import create_access_token, get_password_hash
from crm.db import Base, enable_sqlite_foreign_keys, get_db, get_session_factory
from crm.main import app
from crm.models.models import Permission, User
from crm.services.policy import PERMISSION_CATALOG


def make_session_factory(engine=None):
    if engine is None:
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            future=True,
        )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(bind=engine)
    return engine, sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def _override_get_db(session_factory):
    def _override() -> Generator[Session, None, None]:
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    return _override


class DatabaseTestCase(unittest.TestCase):
    """Fresh in-memory database per test, wired into the app's get_db."""

    def build_engine(self):
        """Engine for this test; None means a shared in-memory database."""
        return None

    def setUp(self) -> None:
        self.engine, self.Session = make_session_factory(self.build_engine())
        self.db = self.Session()
        self.db.add_all([Permission(name=name, description=desc) for name, desc in PERMISSION_CATALOG.items()])
        self.db.commit()
        app.dependency_overrides[get_db] = _override_get_db(self.Session)
        app.dependency_overrides[get_session_factory] = lambda: self.Session
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self.db.close()
        self.engine.dispose()

    def make_user(
        self,
        email: str,
        *,
        role: str = "employee",
        permissions: Iterable[str] = (),
        hourly_rate: float = 0.0,
        is_active: bool = True,
        password: str = "secret123",
    ) -> User:
        user = User(
            email=email,
            password_hash=get_password_hash(password),
            first_name=email.split("@")[0].capitalize(),
            last_name="Tester",
            role=role,
            hourly_rate=hourly_rate,
            is_active=is_active,
        )
        names = list(permissions)
        if names:
            user.permissions = self.db.query(Permission).filter(Permission.name.in_(names)).all()
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        return user

    def auth(self, user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(str(user.id), role=user.role)}"}

    def reload(self, obj):
        self.db.expire_all()
        return self.db.get(type(obj), obj.id)
