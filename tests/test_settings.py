from __future__ import annotations

import unittest

from crm.models.models import Setting
from crm.seed import run_seed
from crm.services.app_settings import AppSettings, MASK, is_valid_key, mask_value, upsert_settings
from tests.support import DatabaseTestCase


class AppSettingsParsingTests(unittest.TestCase):
    def test_from_raw_types_and_defaults(self) -> None:
        config = AppSettings.from_raw({
            "email_notifications_enabled": "TRUE",
            "default_hourly_rate": "31.5",
            "reminder_hours_before": "oops",
            "company_name": None,
        })
        self.assertTrue(config.email_notifications_enabled)
        self.assertEqual(config.default_hourly_rate, 31.5)
        self.assertEqual(config.reminder_hours_before, 24)
        self.assertEqual(config.company_name, "")
        self.assertFalse(config.email_enabled)

    def test_key_pattern(self) -> None:
        self.assertTrue(is_valid_key("sendgrid_api_key"))
        self.assertTrue(is_valid_key("_private2"))
        self.assertFalse(is_valid_key("2fa"))
        self.assertFalse(is_valid_key("bad-key"))
        self.assertFalse(is_valid_key(""))

    def test_mask(self) -> None:
        self.assertEqual(mask_value("sendgrid_api_key", "SG.abcdef1234"), MASK + "1234")
        self.assertEqual(mask_value("sendgrid_api_key", ""), "")
        self.assertEqual(mask_value("currency", "EUR"), "EUR")


class SettingsStoreTests(DatabaseTestCase):
    def test_bad_key_writes_nothing(self) -> None:
        with self.assertRaises(ValueError):
            upsert_settings(self.db, {"currency": "USD", "bad key": "x"})
        self.assertEqual(self.db.query(Setting).count(), 0)

    def test_masked_secret_is_not_overwritten(self) -> None:
        upsert_settings(self.db, {"sendgrid_api_key": "SG.real-secret", "email_notifications_enabled": True})
        written = upsert_settings(self.db, {"sendgrid_api_key": MASK + "cret"})
        self.assertEqual(written, {})
        stored = self.db.query(Setting).filter(Setting.key == "sendgrid_api_key").one()
        self.assertEqual(stored.value, "SG.real-secret")
        flag = self.db.query(Setting).filter(Setting.key == "email_notifications_enabled").one()
        self.assertEqual(flag.value, "true")

    def test_seed_is_idempotent(self) -> None:
        first = run_seed(self.db)
        second = run_seed(self.db)
        self.assertTrue(first["admin_created"])
        self.assertGreater(first["settings_added"], 0)
        self.assertEqual(second, {"permissions_added": 0, "admin_created": False, "settings_added": 0})


class SettingsEndpointTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.admin = self.make_user("settings@crm.sk", permissions=("manage_settings",))
        self.headers = self.auth(self.admin)

    def test_bulk_update_and_masked_read(self) -> None:
        response = self.client.put(
            "/api/settings", json={"sendgrid_api_key": "SG.abcdef9876", "currency": "CZK"}, headers=self.headers
        )
        self.assertEqual(response.status_code, 200, response.text)
        listed = self.client.get("/api/settings", headers=self.headers).json()
        self.assertEqual(listed["sendgrid_api_key"], MASK + "9876")
        self.assertEqual(listed["currency"], "CZK")

    def test_invalid_key_is_400(self) -> None:
        response = self.client.put("/api/settings", json={"not-valid": 1}, headers=self.headers)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "Invalid setting key: not-valid"})

    def test_single_key(self) -> None:
        missing_value = self.client.put("/api/settings/currency", json={}, headers=self.headers)
        self.assertEqual(missing_value.status_code, 400)
        updated = self.client.put("/api/settings/currency", json={"value": "USD"}, headers=self.headers)
        self.assertEqual(updated.json(), {"key": "currency", "value": "USD"})
        self.assertEqual(self.client.get("/api/settings/currency", headers=self.headers).json()["value"], "USD")
        self.assertEqual(self.client.get("/api/settings/unknown_key", headers=self.headers).status_code, 404)

    def test_notification_settings_self_access(self) -> None:
        upsert_settings(self.db, {"task_comment_notifications": "false", "currency": "EUR"})
        plain = self.make_user("plain@crm.sk")
        own = self.client.get(f"/api/settings/notifications/{plain.id}", headers=self.auth(plain))
        self.assertEqual(own.status_code, 200)
        self.assertEqual(own.json(), {"task_comment_notifications": False})
        other = self.client.get(f"/api/settings/notifications/{self.admin.id}", headers=self.auth(plain))
        self.assertEqual(other.status_code, 403)

    def test_test_email_without_key_is_rejected(self) -> None:
        response = self.client.post("/api/settings/test-email", json={"testEmail": "ops@crm.sk"}, headers=self.headers)
        self.assertEqual(response.status_code, 400)
        self.assertIn("SendGrid API key not configured", response.json()["error"])


if __name__ == "__main__":
    unittest.main()
