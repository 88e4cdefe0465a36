from __future__ import annotations

import uuid

from crm.models.models import Notification, Task
from crm.services.effects import Effect, run_effects
from crm.services.notifications import create_bulk_notifications, create_notification, unread_count
from crm.services.realtime import notification_room
from tests.support import DatabaseTestCase


class _RecordingPublisher:
    def __init__(self, fail_for: set[str] | None = None):
        self.calls: list[tuple[str, list]] = []
        self.fail_for = fail_for or set()

    def __call__(self, room, events) -> None:
        if room in self.fail_for:
            raise RuntimeError("socket gone")
        self.calls.append((room, list(events)))


class NotificationServiceTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.alice = self.make_user("alice@crm.sk")
        self.bob = self.make_user("bob@crm.sk")

    def test_create_persists_and_pushes_to_user_room(self) -> None:
        task = Task(title="Replace cable")
        self.db.add(task)
        self.db.commit()
        publisher = _RecordingPublisher()

        nid = create_notification(
            self.db, self.alice.id, "task_assigned", "New task assigned", "Replace cable", task.id, publisher=publisher
        )

        row = self.db.get(Notification, nid)
        self.assertFalse(row.is_read)
        self.assertEqual(row.task_id, task.id)
        self.assertEqual(len(publisher.calls), 1)
        room, events = publisher.calls[0]
        self.assertEqual(room, notification_room(self.alice.id))
        self.assertEqual([e for e, _ in events], ["new-notification", "unread-count-update"])
        self.assertEqual(events[0][1]["task_title"], "Replace cable")
        self.assertEqual(events[1][1], {"count": 1})

    def test_push_failure_keeps_the_row(self) -> None:
        publisher = _RecordingPublisher(fail_for={notification_room(self.alice.id)})
        create_notification(self.db, self.alice.id, "task_comment", "New comment", publisher=publisher)
        self.assertEqual(unread_count(self.db, self.alice.id), 1)

    def test_bulk_isolates_failures_and_skips_duplicates(self) -> None:
        ghost = uuid.uuid4()
        publisher = _RecordingPublisher(fail_for={notification_room(self.bob.id)})

        result = create_bulk_notifications(
            self.db,
            [self.alice.id, ghost, self.bob.id, str(self.alice.id)],
            "task_assigned",
            "New team task",
            publisher=publisher,
        )

        self.assertEqual(len(result["created"]), 2)
        self.assertEqual(result["failed"], [str(ghost)])
        self.assertEqual(unread_count(self.db, self.alice.id), 1)
        self.assertEqual(unread_count(self.db, self.bob.id), 1)
        self.assertEqual(self.db.query(Notification).count(), 2)

    def test_run_effects_reports_each_outcome(self) -> None:
        def boom():
            raise ValueError("mail server down")

        results = run_effects([
            Effect("first", boom),
            Effect("second", lambda x: x * 2, (21,)),
        ])

        self.assertEqual([r.ok for r in results], [False, True])
        self.assertEqual(results[0].error, "mail server down")
        self.assertEqual(results[1].value, 42)


class NotificationEndpointTests(DatabaseTestCase):
    def test_list_mark_read_and_ownership(self) -> None:
        alice = self.make_user("anna@crm.sk")
        bob = self.make_user("boris@crm.sk")
        nid = create_notification(self.db, alice.id, "task_assigned", "Hello", publisher=lambda room, events: None)

        listed = self.client.get("/api/notifications", headers=self.auth(alice))
        self.assertEqual(listed.status_code, 200, listed.text)
        self.assertEqual(listed.json()["unread_count"], 1)

        foreign = self.client.put(f"/api/notifications/{nid}/read", headers=self.auth(bob))
        self.assertEqual(foreign.status_code, 403)
        self.assertEqual(foreign.json(), {"error": "Access denied"})

        own = self.client.put(f"/api/notifications/{nid}/read", headers=self.auth(alice))
        self.assertEqual(own.status_code, 200, own.text)
        count = self.client.get("/api/notifications/unread-count", headers=self.auth(alice))
        self.assertEqual(count.status_code, 200)
        self.assertEqual(count.json()["count"], 0)
