from __future__ import annotations

import os
from unittest.mock import patch

from fastapi import HTTPException

from crm.config import settings
from crm.models.models import Company, Permission, Task, User, UserPermission
from crm.routes.users import PROFILE_PHOTO_AREA
from crm.services.users import delete_or_deactivate_user, dependent_counts
from crm.storage.local_provider import get_storage
from tests.support import DatabaseTestCase


class AuthGuardTests(DatabaseTestCase):
    def test_missing_token_is_401_with_error_body(self) -> None:
        response = self.client.get("/api/tasks")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {"error": "Please authenticate"})

    def test_garbage_token_is_401(self) -> None:
        response = self.client.get("/api/tasks", headers={"Authorization": "Bearer nope"})
        self.assertEqual(response.status_code, 401)

    def test_inactive_user_token_is_rejected(self) -> None:
        user = self.make_user("gone@crm.sk", is_active=False)
        response = self.client.get("/api/auth/me", headers=self.auth(user))
        self.assertEqual(response.status_code, 401)

    def test_missing_permission_is_403(self) -> None:
        user = self.make_user("plain@crm.sk")
        response = self.client.get("/api/users", headers=self.auth(user))
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json(), {"error": "Insufficient permissions"})

    def test_grants_are_read_per_request(self) -> None:
        user = self.make_user("promoted@crm.sk")
        headers = self.auth(user)
        self.assertEqual(self.client.get("/api/users", headers=headers).status_code, 403)

        user.permissions = self.db.query(Permission).filter(Permission.name == "manage_users").all()
        self.db.commit()
        self.assertEqual(self.client.get("/api/users", headers=headers).status_code, 200)

    def test_login_and_me(self) -> None:
        self.make_user("login@crm.sk", permissions=("use_chat",), password="pa55word")
        bad = self.client.post("/api/auth/login", json={"email": "login@crm.sk", "password": "wrong"})
        self.assertEqual(bad.status_code, 401)
        self.assertEqual(bad.json(), {"error": "Invalid credentials"})

        ok = self.client.post("/api/auth/login", json={"email": "LOGIN@crm.sk", "password": "pa55word"})
        self.assertEqual(ok.status_code, 200, ok.text)
        token = ok.json()["token"]
        me = self.client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(me.status_code, 200)
        self.assertEqual(me.json()["permissions"], ["use_chat"])

    def test_validation_errors_are_400(self) -> None:
        manager = self.make_user("boss@crm.sk", permissions=("manage_tasks",))
        response = self.client.post("/api/tasks", json={"priority": "urgent"}, headers=self.auth(manager))
        self.assertEqual(response.status_code, 400)
        self.assertIn("error", response.json())

    def test_health(self) -> None:
        response = self.client.get("/api/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "OK")


class UserRemovalTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.admin = self.make_user("root@crm.sk", role="admin")

    def test_unreferenced_user_is_deleted_with_grants(self) -> None:
        target = self.make_user("temp@crm.sk", permissions=("use_chat", "use_files"))
        result = delete_or_deactivate_user(self.db, target, self.admin)
        self.assertEqual(result["action"], "deleted")
        self.assertIsNone(self.db.query(User).filter(User.email == "temp@crm.sk").first())
        self.assertEqual(self.db.query(UserPermission).count(), 0)

    def test_referenced_user_is_deactivated(self) -> None:
        target = self.make_user("busy@crm.sk")
        self.db.add(Task(title="Paint walls", assigned_to=target.id))
        self.db.commit()

        self.assertEqual(dependent_counts(self.db, target.id), {"tasks": 1})
        result = delete_or_deactivate_user(self.db, target, self.admin)

        self.assertEqual(result["action"], "deactivated")
        self.assertEqual(result["references"], {"tasks": 1})
        self.assertFalse(self.reload(target).is_active)

    def test_cannot_delete_self_or_last_admin(self) -> None:
        other_admin_actor = self.make_user("ops@crm.sk", permissions=("manage_users",))
        with self.assertRaises(HTTPException) as ctx:
            delete_or_deactivate_user(self.db, self.admin, self.admin)
        self.assertEqual(ctx.exception.status_code, 400)
        with self.assertRaises(HTTPException) as ctx:
            delete_or_deactivate_user(self.db, self.admin, other_admin_actor)
        self.assertEqual(ctx.exception.detail, "Cannot delete the last administrator")

    def test_delete_endpoint(self) -> None:
        target = self.make_user("leaver@crm.sk")
        response = self.client.delete(f"/api/users/{target.id}", headers=self.auth(self.admin))
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["action"], "deleted")


class ProfilePhotoTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = self.make_user("photo@crm.sk")
        self.headers = self.auth(self.user)
        self.storage = get_storage(PROFILE_PHOTO_AREA)

    def _upload(self, name: str, body: bytes, mime: str, **fields):
        return self.client.put(
            "/api/users/profile",
            data=fields,
            files={"profilePhoto": (name, body, mime)},
            headers=self.headers,
        )

    def test_new_photo_replaces_the_old_file(self) -> None:
        first = self._upload("me.png", b"\x89PNG first", "image/png", first_name="Petra", nickname="pet")
        self.assertEqual(first.status_code, 200, first.text)
        first_key = first.json()["profile_photo"]
        self.assertEqual(first.json()["first_name"], "Petra")
        self.assertEqual(first.json()["nickname"], "pet")
        self.assertTrue(self.storage.exists(first_key))

        second = self._upload("me.jpg", b"\xff\xd8 second", "image/jpeg")
        self.assertEqual(second.status_code, 200, second.text)
        second_key = second.json()["profile_photo"]
        self.assertNotEqual(first_key, second_key)
        self.assertFalse(self.storage.exists(first_key))
        self.assertTrue(self.storage.exists(second_key))
        self.assertEqual(second.json()["first_name"], "Petra")

        served = self.client.get(f"/api/users/{self.user.id}/photo", headers=self.headers)
        self.assertEqual(served.status_code, 200)
        self.assertEqual(served.content, b"\xff\xd8 second")

    def test_non_image_is_rejected(self) -> None:
        response = self._upload("notes.txt", b"hello", "text/plain")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "Only images are allowed (jpeg, jpg, png, gif)"})
        self.assertIsNone(self.reload(self.user).profile_photo)

    def test_oversized_photo_leaves_nothing_behind(self) -> None:
        before = set(os.listdir(self.storage.root))
        with patch.object(settings, "profile_photo_max_bytes", 10):
            response = self._upload("big.png", b"x" * 11, "image/png")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "File is too large"})
        self.assertEqual(set(os.listdir(self.storage.root)), before)
        self.assertIsNone(self.reload(self.user).profile_photo)

    def test_text_fields_without_a_photo(self) -> None:
        response = self.client.put("/api/users/profile", data={"last_name": "Nova"}, headers=self.headers)
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["last_name"], "Nova")
        self.assertIsNone(response.json()["profile_photo"])

    def test_missing_photo_is_404(self) -> None:
        response = self.client.get(f"/api/users/{self.user.id}/photo", headers=self.headers)
        self.assertEqual(response.status_code, 404)


class ProjectPickListTests(DatabaseTestCase):
    def test_companies_and_employees_for_project_forms(self) -> None:
        manager = self.make_user("pm@crm.sk", permissions=("manage_projects",))
        self.make_user("admin@crm.sk", role="admin")
        self.make_user("left@crm.sk", is_active=False)
        self.db.add_all([Company(name="Zeta s.r.o."), Company(name="Alfa a.s.")])
        self.db.commit()

        companies = self.client.get("/api/projects/companies/list", headers=self.auth(manager))
        self.assertEqual(companies.status_code, 200, companies.text)
        self.assertEqual([c["name"] for c in companies.json()], ["Alfa a.s.", "Zeta s.r.o."])

        employees = self.client.get("/api/projects/employees/list", headers=self.auth(manager))
        self.assertEqual(employees.status_code, 200, employees.text)
        self.assertEqual([e["email"] for e in employees.json()], ["pm@crm.sk"])

    def test_pick_lists_need_manage_projects(self) -> None:
        worker = self.make_user("worker@crm.sk")
        response = self.client.get("/api/projects/companies/list", headers=self.auth(worker))
        self.assertEqual(response.status_code, 403)
