from __future__ import annotations

from crm.db import utcnow
from crm.models.models import Notification
from tests.support import DatabaseTestCase


class CalendarTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.owner = self.make_user("owner@crm.sk")
        self.guest = self.make_user("guest@crm.sk")
        self.stranger = self.make_user("stranger@crm.sk")

    def _create(self, **extra) -> dict:
        body = {
            "title": "Site inspection",
            "start_datetime": "2024-06-12T09:00:00",
            "end_datetime": "2024-06-12T10:30:00",
            "participants": [str(self.guest.id), str(self.owner.id)],
            **extra,
        }
        response = self.client.post("/api/calendar", json=body, headers=self.auth(self.owner))
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def test_participants_exclude_owner_and_can_view(self) -> None:
        event = self._create()
        self.assertEqual([p["user_id"] for p in event["participants"]], [str(self.guest.id)])

        week = self.client.get("/api/calendar/week/2024-06-14", headers=self.auth(self.guest)).json()
        self.assertEqual([e["id"] for e in week["events"]], [event["id"]])
        self.assertEqual(week["weekStart"], "2024-06-10T00:00:00")
        self.assertEqual(week["events"][0]["user_role"], "participant")

        self.assertEqual(self.client.get(f"/api/calendar/{event['id']}", headers=self.auth(self.guest)).status_code, 200)
        self.assertEqual(self.client.get(f"/api/calendar/{event['id']}", headers=self.auth(self.stranger)).status_code, 403)
        self.assertEqual(self.client.get("/api/calendar/week/2024-06-14", headers=self.auth(self.stranger)).json()["events"], [])

    def test_only_owner_mutates(self) -> None:
        event = self._create()
        url = f"/api/calendar/{event['id']}"
        self.assertEqual(self.client.put(url, json={"title": "Moved"}, headers=self.auth(self.guest)).status_code, 403)
        self.assertEqual(self.client.delete(url, headers=self.auth(self.guest)).status_code, 403)

        updated = self.client.put(url, json={"title": "Moved", "participants": []}, headers=self.auth(self.owner))
        self.assertEqual(updated.status_code, 200, updated.text)
        self.assertEqual(updated.json()["title"], "Moved")
        self.assertEqual(updated.json()["participants"], [])

        self.assertEqual(self.client.delete(url, headers=self.auth(self.owner)).status_code, 200)

    def test_end_before_start_rejected(self) -> None:
        event = self._create()
        bad = self.client.put(
            f"/api/calendar/{event['id']}", json={"end_datetime": "2024-06-12T08:00:00"}, headers=self.auth(self.owner)
        )
        self.assertEqual(bad.status_code, 400)

    def test_range_and_overlap(self) -> None:
        self._create(start_datetime="2024-06-30T22:00:00", end_datetime="2024-07-01T02:00:00")
        july = self.client.get("/api/calendar/range/2024-07-01/2024-07-31", headers=self.auth(self.owner)).json()
        self.assertEqual(len(july["events"]), 1)
        backwards = self.client.get("/api/calendar/range/2024-07-31/2024-07-01", headers=self.auth(self.owner))
        self.assertEqual(backwards.status_code, 400)


class QuoteTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.sales = self.make_user("sales@crm.sk", permissions=("manage_quotes",))
        self.reviewer = self.make_user("reviewer@crm.sk", permissions=("manage_quotes",))

    def test_numbering_and_review_flow(self) -> None:
        year = utcnow().year
        first = self.client.post("/api/quotes", json={"title": "Rewire", "amount": "1200.50"}, headers=self.auth(self.sales))
        second = self.client.post("/api/quotes", json={"title": "Lighting"}, headers=self.auth(self.sales))
        self.assertEqual(first.status_code, 201, first.text)
        self.assertEqual(first.json()["quote_number"], f"Q-{year}-00001")
        self.assertEqual(second.json()["quote_number"], f"Q-{year}-00002")

        reviewed = self.client.post(
            f"/api/quotes/{first.json()['id']}/send-for-review",
            json={"reviewerId": str(self.reviewer.id)},
            headers=self.auth(self.sales),
        )
        self.assertEqual(reviewed.status_code, 200, reviewed.text)
        self.assertEqual(reviewed.json()["status"], "pending_review")

        self.db.expire_all()
        notes = self.db.query(Notification).filter(Notification.user_id == self.reviewer.id).all()
        self.assertEqual([n.type for n in notes], ["quote_review"])

    def test_quotes_need_permission(self) -> None:
        plain = self.make_user("plain@crm.sk")
        self.assertEqual(self.client.get("/api/quotes", headers=self.auth(plain)).status_code, 403)
