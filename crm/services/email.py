"""
Transactional email through the SendGrid v3 API.

Every public send returns a result dict and never raises:
    {"success": True, "message_id": ...}
    {"success": True, "disabled": True}       email switched off or no API key
    {"success": True, "skipped": True}        per-event toggle off
    {"success": False, "error", "code", "retryable"}
"""
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx
import structlog

from ..config import settings as app_config
from ..db import utcnow
from .app_settings import AppSettings

NON_RETRYABLE_STATUS = {400, 401, 403, 413}
DEFAULT_RETRY_AFTER = 60

logger = structlog.get_logger()


class EmailSendError(Exception):
    def __init__(self, message: str, code: Optional[int] = None, retry_after: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.retry_after = retry_after


@dataclass(frozen=True)
class Person:
    id: str
    email: Optional[str]
    first_name: str = ""
    last_name: str = ""

    @classmethod
    def of(cls, user) -> "Person":
        return cls(str(user.id), user.email, user.first_name or "", user.last_name or "")


@dataclass(frozen=True)
class TaskSummary:
    """Detached copy of the task fields a message needs; safe to use after the session closes."""
    id: str
    title: str
    description: Optional[str] = None
    priority: str = "medium"
    due_date: Optional[datetime] = None

    @classmethod
    def of(cls, task) -> "TaskSummary":
        return cls(str(task.id), task.title, task.description, task.priority, task.due_date)


@dataclass(frozen=True)
class CommentSummary:
    id: str
    comment: str


def reminder_urgency(due_date: Optional[datetime], now: Optional[datetime] = None) -> str:
    if due_date is None:
        return "normal"
    hours = int((due_date - (now or utcnow())).total_seconds() // 3600)
    if hours <= 24:
        return "urgent"
    if hours <= 72:
        return "warning"
    return "normal"


def _person(user) -> str:
    return f"{getattr(user, 'first_name', '')} {getattr(user, 'last_name', '')}".strip()


class EmailService:
    def __init__(
        self,
        config: AppSettings,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
        max_attempts: Optional[int] = None,
    ):
        self.config = config
        self._client = client
        self._sleep = sleep
        self.max_attempts = max_attempts or app_config.email_max_attempts
        self.base_url = app_config.public_base_url.rstrip("/")

    def is_enabled(self) -> bool:
        return self.config.email_enabled

    # Transport

    def _post(self, body: Dict[str, Any]) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.config.sendgrid_api_key.strip()}"}
        if self._client is not None:
            return self._client.post(app_config.sendgrid_api_url, json=body, headers=headers)
        with httpx.Client(timeout=app_config.email_timeout_seconds) as client:
            return client.post(app_config.sendgrid_api_url, json=body, headers=headers)

    def _deliver(self, body: Dict[str, Any]) -> Optional[str]:
        try:
            resp = self._post(body)
        except httpx.HTTPError as e:
            raise EmailSendError(str(e))
        if resp.status_code >= 400:
            retry_after = None
            if resp.status_code == 429:
                try:
                    retry_after = int(resp.headers.get("retry-after", ""))
                except ValueError:
                    retry_after = None
            raise EmailSendError(resp.text or resp.reason_phrase, code=resp.status_code, retry_after=retry_after)
        return resp.headers.get("x-message-id")

    def build_message(
        self,
        to: str,
        subject: str,
        text: str,
        categories: Optional[List[str]] = None,
        custom_args: Optional[Dict[str, str]] = None,
        sandbox: bool = False,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.config.sendgrid_from_email, "name": self.config.sendgrid_from_name},
            "subject": subject,
            "content": [{"type": "text/plain", "value": text}],
        }
        if categories:
            body["categories"] = categories
        if custom_args:
            body["custom_args"] = {k: str(v) for k, v in custom_args.items()}
        if sandbox:
            body["mail_settings"] = {"sandbox_mode": {"enable": True}}
        return body

    def send_with_retry(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Send with bounded retry.

        Client errors (400/401/403/413) stop immediately. 429 waits for the
        provider's retry-after, anything else backs off 2^attempt seconds.
        """
        to = body["personalizations"][0]["to"][0]["email"]
        last_error: Optional[EmailSendError] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                message_id = self._deliver(body)
                logger.info("email_sent", to=to, message_id=message_id, attempt=attempt)
                return {"success": True, "message_id": message_id}
            except EmailSendError as e:
                last_error = e
                logger.warning("email_send_failed", to=to, attempt=attempt, code=e.code, error=str(e))
                if e.code in NON_RETRYABLE_STATUS:
                    return {"success": False, "error": str(e), "code": e.code, "retryable": False}
                if attempt >= self.max_attempts:
                    break
                if e.code == 429:
                    self._sleep(e.retry_after or DEFAULT_RETRY_AFTER)
                else:
                    self._sleep(2 ** attempt)
        return {
            "success": False,
            "error": str(last_error) if last_error else "Unknown error",
            "code": last_error.code if last_error else None,
            "retryable": True,
        }

    def _send(self, to: str, subject: str, text: str, **kwargs) -> Dict[str, Any]:
        if not self.is_enabled():
            logger.info("email_disabled", to=to, subject=subject)
            return {"success": True, "disabled": True}
        if not to:
            return {"success": False, "error": "Recipient has no email address", "code": None, "retryable": False}
        return self.send_with_retry(self.build_message(to, subject, text, **kwargs))

    # Messages

    def send_task_assignment_email(self, task, assignee, assigned_by) -> Dict[str, Any]:
        if self.is_enabled() and not self.config.task_assignment_notifications:
            return {"success": True, "skipped": True}
        due = task.due_date.strftime("%Y-%m-%d") if task.due_date else "no due date"
        text = (
            f"Hello {_person(assignee)},\n\n"
            f"{_person(assigned_by)} assigned you a new task: {task.title}\n"
            f"Priority: {task.priority}\nDue: {due}\n\n"
            f"{task.description or ''}\n\n"
            f"Please accept or reject it: {self.base_url}/tasks"
        )
        return self._send(
            assignee.email,
            f"New task: {task.title}",
            text,
            categories=["CRM", "Task Assignment"],
            custom_args={"taskId": task.id, "assigneeId": assignee.id, "eventType": "task_assignment"},
        )

    def send_task_comment_email(self, task, comment, commenter, recipient) -> Dict[str, Any]:
        if self.is_enabled() and not self.config.task_comment_notifications:
            return {"success": True, "skipped": True}
        text = (
            f"Hello {_person(recipient)},\n\n"
            f"{_person(commenter)} commented on task {task.title}:\n\n"
            f"{comment.comment}\n\n{self.base_url}/tasks"
        )
        return self._send(
            recipient.email,
            f"New comment on task: {task.title}",
            text,
            categories=["CRM", "Task Comment"],
            custom_args={"taskId": task.id, "commentId": comment.id, "eventType": "task_comment"},
        )

    def send_task_confirmation_email(self, task, creator, assignee, action: str, message: Optional[str] = None) -> Dict[str, Any]:
        verb = "accepted" if action == "accept" else "rejected"
        text = f"Hello {_person(creator)},\n\n{_person(assignee)} {verb} the task {task.title}.\n"
        if message:
            text += f"\nMessage: {message}\n"
        text += f"\n{self.base_url}/tasks"
        return self._send(
            creator.email,
            f"Task {verb}: {task.title}",
            text,
            categories=["CRM", "Task Confirmation"],
            custom_args={"taskId": task.id, "assigneeId": assignee.id, "eventType": f"task_{action}"},
        )

    def send_task_reminder_email(self, task, recipient) -> Dict[str, Any]:
        if self.is_enabled() and not self.config.task_reminder_notifications:
            return {"success": True, "skipped": True}
        urgency = reminder_urgency(task.due_date)
        prefix = {"urgent": "URGENT: ", "warning": "Reminder: "}.get(urgency, "")
        due = task.due_date.strftime("%Y-%m-%d %H:%M") if task.due_date else "no due date"
        text = (
            f"Hello {_person(recipient)},\n\n"
            f"Task {task.title} is due {due}.\n\n{self.base_url}/tasks"
        )
        return self._send(
            recipient.email,
            f"{prefix}{task.title}",
            text,
            categories=["CRM", "Task Reminder"],
            custom_args={"taskId": task.id, "urgency": urgency, "eventType": "task_reminder"},
        )

    def send_test_email(self, to: str) -> Dict[str, Any]:
        text = f"This is a test message from {self.config.company_name or 'CRM System'}. Email delivery works."
        return self._send(to, "CRM test email", text, categories=["CRM", "Test"])

    def validate_configuration(self) -> Dict[str, Any]:
        if not self.config.sendgrid_api_key.strip():
            return {"valid": False, "message": "SendGrid API key not configured"}
        body = self.build_message("test@example.com", "Test", "Test", sandbox=True)
        try:
            self._deliver(body)
        except EmailSendError as e:
            return {"valid": False, "message": f"SendGrid configuration error: {e}"}
        return {"valid": True, "message": "SendGrid configuration is valid"}
