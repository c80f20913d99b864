"""Tests for the project settings."""
from __future__ import annotations

from unittest import mock

from django.conf import settings
from django.test import SimpleTestCase

from workflow_service import settings as project_settings


class DatabaseSettingsTests(SimpleTestCase):
    @mock.patch.dict("os.environ", {"WORKFLOW_DATABASE_URL": "postgresql://svc:secret@db:5544/cmms"})
    def test_postgres_url(self) -> None:
        database = project_settings._database_settings()["default"]

        self.assertEqual(database["ENGINE"], "django.db.backends.postgresql")
        self.assertEqual(
            (database["NAME"], database["USER"], database["HOST"], database["PORT"]),
            ("cmms", "svc", "db", "5544"),
        )

    @mock.patch.dict("os.environ", {"WORKFLOW_DATABASE_URL": "mysql://db/cmms"})
    def test_unsupported_url(self) -> None:
        with self.assertRaises(ValueError):
            project_settings._database_settings()


class PasswordSettingsTests(SimpleTestCase):
    def test_service_stores_no_passwords(self) -> None:
        self.assertEqual(settings.AUTH_PASSWORD_VALIDATORS, [])
        self.assertNotIn("django.contrib.auth.hashers.MD5PasswordHasher", settings.PASSWORD_HASHERS)
