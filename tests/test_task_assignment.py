from __future__ import annotations

import uuid
from unittest.mock import patch

from crm.models.models import Notification, Setting, Task, Team, TeamMember
from crm.services.effects import run_effects
from crm.services.email import EmailService
from crm.services.realtime import notification_room
from tests.support import DatabaseTestCase


class TaskAssignmentTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.manager = self.make_user("manager@crm.sk", permissions=("manage_tasks",))
        self.worker = self.make_user("worker@crm.sk", permissions=("edit_own_tasks",))

    def _create(self, **extra) -> dict:
        response = self.client.post(
            "/api/tasks",
            json={"title": "Fit new sockets", "assigned_to": str(self.worker.id), **extra},
            headers=self.auth(self.manager),
        )
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def _notifications(self, user) -> list[Notification]:
        self.db.expire_all()
        return self.db.query(Notification).filter(Notification.user_id == user.id).all()

    def test_assignment_notifies_assignee_and_awaits_confirmation(self) -> None:
        task = self._create()
        self.assertEqual(task["confirmation_status"], "pending")
        self.assertEqual(task["assigned_to_name"], "Worker Tester")

        notes = self._notifications(self.worker)
        self.assertEqual([n.type for n in notes], ["task_assigned"])
        self.assertEqual(str(notes[0].task_id), task["id"])

        pending = self.client.get("/api/tasks/pending-confirmation", headers=self.auth(self.worker))
        self.assertEqual([t["id"] for t in pending.json()], [task["id"]])

    def test_accept_starts_work_and_second_confirm_fails(self) -> None:
        task = self._create()
        url = f"/api/tasks/{task['id']}/confirm"

        accepted = self.client.patch(url, json={"action": "accept", "message": "On it"}, headers=self.auth(self.worker))
        self.assertEqual(accepted.status_code, 200, accepted.text)
        self.assertEqual(accepted.json()["status"], "in_progress")
        self.assertEqual(accepted.json()["confirmation_status"], "accepted")

        again = self.client.patch(url, json={"action": "reject"}, headers=self.auth(self.worker))
        self.assertEqual(again.status_code, 400)
        self.assertEqual(again.json(), {"error": "Task has already been confirmed or rejected"})

        creator_notes = self._notifications(self.manager)
        self.assertEqual([n.type for n in creator_notes], ["task_confirmed"])
        self.assertIn("On it", creator_notes[0].message)

    def test_reject_keeps_task_pending(self) -> None:
        task = self._create()
        rejected = self.client.patch(
            f"/api/tasks/{task['id']}/confirm", json={"action": "reject"}, headers=self.auth(self.worker)
        )
        self.assertEqual(rejected.status_code, 200)
        self.assertEqual(rejected.json()["status"], "pending")
        self.assertEqual(self._notifications(self.manager)[0].type, "task_rejected")

    def test_only_assignee_can_confirm(self) -> None:
        task = self._create()
        response = self.client.patch(
            f"/api/tasks/{task['id']}/confirm", json={"action": "accept"}, headers=self.auth(self.manager)
        )
        self.assertEqual(response.status_code, 404)

    def test_self_assignment_needs_no_confirmation(self) -> None:
        response = self.client.post(
            "/api/tasks",
            json={"title": "Order parts", "assigned_to": str(self.manager.id)},
            headers=self.auth(self.manager),
        )
        self.assertEqual(response.status_code, 201, response.text)
        self.assertIsNone(response.json()["confirmation_status"])
        self.assertEqual(self._notifications(self.manager), [])

    def test_team_members_are_notified(self) -> None:
        mate = self.make_user("mate@crm.sk")
        team = Team(name="Electricians")
        self.db.add(team)
        self.db.commit()
        self.db.add_all([
            TeamMember(team_id=team.id, user_id=mate.id),
            TeamMember(team_id=team.id, user_id=self.worker.id),
        ])
        self.db.commit()

        self._create(team_id=str(team.id))

        self.assertEqual([n.title for n in self._notifications(mate)], ["New team task"])
        self.assertEqual(len(self._notifications(self.worker)), 1)

    def test_comment_notifies_other_side(self) -> None:
        task = self._create()
        response = self.client.post(
            f"/api/tasks/{task['id']}/comments", json={"comment": "Which floor?"}, headers=self.auth(self.worker)
        )
        self.assertEqual(response.status_code, 201, response.text)
        self.assertEqual([n.type for n in self._notifications(self.manager)], ["task_comment"])

    def test_assignee_edits_but_cannot_reassign(self) -> None:
        task = self._create()
        edited = self.client.put(f"/api/tasks/{task['id']}", json={"status": "completed"}, headers=self.auth(self.worker))
        self.assertEqual(edited.status_code, 200, edited.text)
        reassign = self.client.put(
            f"/api/tasks/{task['id']}", json={"assigned_to": str(self.manager.id)}, headers=self.auth(self.worker)
        )
        self.assertEqual(reassign.status_code, 403)
        self.db.expire_all()
        self.assertEqual(self.db.get(Task, uuid.UUID(task["id"])).status, "completed")


class AssignmentWithoutEmailKeyTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.db.add_all([
            Setting(key="sendgrid_api_key", value=""),
            Setting(key="email_notifications_enabled", value="true"),
        ])
        self.db.commit()
        self.manager = self.make_user("lead@crm.sk", permissions=("manage_tasks",))
        self.worker = self.make_user("fitter@crm.sk")

    def test_assignment_is_notified_and_email_short_circuits(self) -> None:
        deferred = []
        pushes = []

        def run_now(background_tasks, effects):
            deferred.extend(run_effects(effects))

        def record_push(room, events):
            pushes.append((room, [name for name, _ in events]))

        with patch("crm.routes.tasks.defer_effects", side_effect=run_now), \
                patch("crm.services.notifications.publish_to_room", side_effect=record_push), \
                patch.object(EmailService, "_post") as transport:
            response = self.client.post(
                "/api/tasks",
                json={"title": "Replace breaker", "assigned_to": str(self.worker.id)},
                headers=self.auth(self.manager),
            )

        self.assertEqual(response.status_code, 201, response.text)
        transport.assert_not_called()
        self.assertEqual(
            [(r.name, r.ok, r.value) for r in deferred],
            [("email_task_assigned", True, {"success": True, "disabled": True})],
        )

        self.db.expire_all()
        notes = self.db.query(Notification).filter(Notification.user_id == self.worker.id).all()
        self.assertEqual([n.type for n in notes], ["task_assigned"])
        self.assertEqual(pushes, [(notification_room(self.worker.id), ["new-notification", "unread-count-update"])])
