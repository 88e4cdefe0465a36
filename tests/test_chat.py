from __future__ import annotations

import os

from crm.config import settings
from crm.models.models import ChatMessage
from tests.support import DatabaseTestCase


def _attachment_files() -> set[str]:
    root = os.path.join(settings.upload_dir, "chat-attachments")
    return set(os.listdir(root)) if os.path.isdir(root) else set()


class DirectMessageTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.alice = self.make_user("alice@crm.sk", permissions=("use_chat",))
        self.bob = self.make_user("bob@crm.sk", permissions=("use_chat",))

    def test_send_and_read_conversation(self) -> None:
        for text in ("hi", "lunch?"):
            sent = self.client.post(
                "/api/chat/messages",
                json={"receiver_id": str(self.bob.id), "message": text},
                headers=self.auth(self.alice),
            )
            self.assertEqual(sent.status_code, 201, sent.text)

        thread = self.client.get(f"/api/chat/messages?receiverId={self.alice.id}", headers=self.auth(self.bob))
        self.assertEqual([m["message"] for m in thread.json()], ["hi", "lunch?"])

        unread = self.client.get("/api/chat/unread/count", headers=self.auth(self.bob))
        self.assertEqual(unread.json(), {"count": 2})
        marked = self.client.patch("/api/chat/messages/read", json={"sender_id": str(self.alice.id)}, headers=self.auth(self.bob))
        self.assertEqual(marked.json()["updated"], 2)

        partners = self.client.get("/api/chat/participants", headers=self.auth(self.bob)).json()
        self.assertEqual([p["id"] for p in partners], [str(self.alice.id)])
        self.assertEqual(partners[0]["unread_count"], 0)

    def test_empty_message_rejected(self) -> None:
        response = self.client.post(
            "/api/chat/messages", json={"receiver_id": str(self.bob.id), "message": "   "}, headers=self.auth(self.alice)
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "Message or attachment is required"})

    def test_unknown_receiver(self) -> None:
        inactive = self.make_user("left@crm.sk", is_active=False)
        response = self.client.post(
            "/api/chat/messages", json={"receiver_id": str(inactive.id), "message": "hello?"}, headers=self.auth(self.alice)
        )
        self.assertEqual(response.status_code, 404)

    def test_chat_requires_permission(self) -> None:
        outsider = self.make_user("nochat@crm.sk")
        response = self.client.get("/api/chat/users", headers=self.auth(outsider))
        self.assertEqual(response.status_code, 403)

    def test_oversized_attachment_leaves_nothing_behind(self) -> None:
        before = _attachment_files()
        response = self.client.post(
            "/api/chat/messages/attachment",
            files={"file": ("photo.png", b"\x00" * (12 * 1024 * 1024), "image/png")},
            data={"receiver_id": str(self.bob.id)},
            headers=self.auth(self.alice),
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "File is too large"})
        self.db.expire_all()
        self.assertEqual(self.db.query(ChatMessage).count(), 0)
        self.assertEqual(_attachment_files(), before)

    def test_attachment_type_checked(self) -> None:
        response = self.client.post(
            "/api/chat/messages/attachment",
            files={"file": ("run.sh", b"echo", "text/x-sh")},
            data={"receiver_id": str(self.bob.id)},
            headers=self.auth(self.alice),
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "File type not allowed"})

    def test_attachment_roundtrip_and_delete(self) -> None:
        sent = self.client.post(
            "/api/chat/messages/attachment",
            files={"file": ("doc.pdf", b"%PDF-1.4", "application/pdf")},
            data={"receiver_id": str(self.bob.id), "message": "contract"},
            headers=self.auth(self.alice),
        )
        self.assertEqual(sent.status_code, 201, sent.text)
        message_id = sent.json()["id"]
        self.assertTrue(sent.json()["has_attachment"])

        fetched = self.client.get(f"/api/chat/messages/{message_id}/attachment", headers=self.auth(self.bob))
        self.assertEqual(fetched.status_code, 200)
        self.assertEqual(fetched.content, b"%PDF-1.4")

        not_mine = self.client.delete(f"/api/chat/messages/{message_id}", headers=self.auth(self.bob))
        self.assertEqual(not_mine.status_code, 403)
        mine = self.client.delete(f"/api/chat/messages/{message_id}", headers=self.auth(self.alice))
        self.assertEqual(mine.status_code, 200)


class GroupChatTests(DatabaseTestCase):
    def test_members_only(self) -> None:
        owner = self.make_user("owner@crm.sk", permissions=("use_chat",))
        member = self.make_user("member@crm.sk", permissions=("use_chat",))
        outsider = self.make_user("outsider@crm.sk", permissions=("use_chat",))

        created = self.client.post(
            "/api/chat/groups", json={"name": "Site A", "member_ids": [str(member.id)]}, headers=self.auth(owner)
        )
        self.assertEqual(created.status_code, 201, created.text)
        group_id = created.json()["id"]
        self.assertEqual(created.json()["member_count"], 2)

        posted = self.client.post(f"/api/chat/groups/{group_id}/messages", json={"message": "crane at 9"}, headers=self.auth(member))
        self.assertEqual(posted.status_code, 201, posted.text)

        blocked = self.client.get(f"/api/chat/groups/{group_id}/messages", headers=self.auth(outsider))
        self.assertEqual(blocked.status_code, 403)
        self.assertEqual(blocked.json(), {"error": "You are not a member of this group"})

        groups = self.client.get("/api/chat/groups", headers=self.auth(owner)).json()
        self.assertEqual(groups[0]["role"], "admin")
        history = self.client.get(f"/api/chat/groups/{group_id}/messages", headers=self.auth(owner)).json()
        self.assertEqual([m["message"] for m in history], ["crane at 9"])
