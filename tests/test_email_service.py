from __future__ import annotations

import json
import unittest
from datetime import datetime, timedelta

import httpx

from crm.services.app_settings import AppSettings
from crm.services.email import CommentSummary, EmailService, Person, TaskSummary, reminder_urgency


def _service(responses: list[httpx.Response], requests: list[httpx.Request], sleeps: list[float], **config) -> EmailService:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return responses.pop(0)

    settings = AppSettings(sendgrid_api_key="SG.test-key", email_notifications_enabled=True, **config)
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return EmailService(settings, client=client, sleep=sleeps.append, max_attempts=3)


TASK = TaskSummary(id="t-1", title="Replace boiler", description="Basement", priority="high")
ALICE = Person(id="u-1", email="alice@crm.sk", first_name="Alice", last_name="Novak")
BOB = Person(id="u-2", email="bob@crm.sk", first_name="Bob", last_name="Kral")


class EmailServiceTests(unittest.TestCase):
    def test_disabled_without_api_key(self) -> None:
        service = EmailService(AppSettings(email_notifications_enabled=True))
        self.assertFalse(service.is_enabled())
        self.assertEqual(service.send_test_email("x@crm.sk"), {"success": True, "disabled": True})

    def test_disabled_by_toggle(self) -> None:
        service = EmailService(AppSettings(sendgrid_api_key="SG.key", email_notifications_enabled=False))
        self.assertEqual(service.send_task_assignment_email(TASK, ALICE, BOB), {"success": True, "disabled": True})

    def test_per_event_toggle_skips(self) -> None:
        requests: list[httpx.Request] = []
        service = _service([], requests, [], task_assignment_notifications=False)
        self.assertEqual(service.send_task_assignment_email(TASK, ALICE, BOB), {"success": True, "skipped": True})
        self.assertEqual(requests, [])

    def test_server_errors_retry_with_backoff(self) -> None:
        requests: list[httpx.Request] = []
        sleeps: list[float] = []
        service = _service(
            [httpx.Response(500), httpx.Response(503), httpx.Response(202, headers={"x-message-id": "m-1"})],
            requests,
            sleeps,
        )

        result = service.send_task_assignment_email(TASK, ALICE, BOB)

        self.assertEqual(result, {"success": True, "message_id": "m-1"})
        self.assertEqual(len(requests), 3)
        self.assertEqual(sleeps, [2, 4])
        self.assertEqual(requests[0].headers["authorization"], "Bearer SG.test-key")

    def test_client_error_is_not_retried(self) -> None:
        requests: list[httpx.Request] = []
        sleeps: list[float] = []
        service = _service([httpx.Response(401, text="bad key")], requests, sleeps)

        result = service.send_test_email("ops@crm.sk")

        self.assertFalse(result["success"])
        self.assertFalse(result["retryable"])
        self.assertEqual(result["code"], 401)
        self.assertEqual(len(requests), 1)
        self.assertEqual(sleeps, [])

    def test_rate_limit_honours_retry_after(self) -> None:
        requests: list[httpx.Request] = []
        sleeps: list[float] = []
        service = _service(
            [httpx.Response(429, headers={"retry-after": "7"}), httpx.Response(202)],
            requests,
            sleeps,
        )
        self.assertTrue(service.send_test_email("ops@crm.sk")["success"])
        self.assertEqual(sleeps, [7])

    def test_gives_up_after_max_attempts(self) -> None:
        requests: list[httpx.Request] = []
        sleeps: list[float] = []
        service = _service([httpx.Response(500) for _ in range(3)], requests, sleeps)
        result = service.send_test_email("ops@crm.sk")
        self.assertFalse(result["success"])
        self.assertTrue(result["retryable"])
        self.assertEqual(len(requests), 3)
        self.assertEqual(sleeps, [2, 4])

    def test_message_body(self) -> None:
        requests: list[httpx.Request] = []
        service = _service([httpx.Response(202)], requests, [])
        service.send_task_comment_email(TASK, CommentSummary("c-1", "Done?"), BOB, ALICE)
        body = json.loads(requests[0].content)
        self.assertEqual(body["personalizations"][0]["to"][0]["email"], "alice@crm.sk")
        self.assertEqual(body["custom_args"]["commentId"], "c-1")
        self.assertIn("Done?", body["content"][0]["value"])

    def test_reminder_urgency(self) -> None:
        now = datetime(2024, 6, 1, 12, 0)
        self.assertEqual(reminder_urgency(now + timedelta(hours=5), now), "urgent")
        self.assertEqual(reminder_urgency(now + timedelta(hours=48), now), "warning")
        self.assertEqual(reminder_urgency(now + timedelta(days=5), now), "normal")
        self.assertEqual(reminder_urgency(None, now), "normal")


if __name__ == "__main__":
    unittest.main()
