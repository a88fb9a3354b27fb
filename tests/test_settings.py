import os
import unittest
from unittest.mock import patch

from src.infrastructure.settings import Settings


class TestSettings(unittest.TestCase):
    def test_from_env_reads_overrides(self) -> None:
        env = {
            "DATABASE_URL": "sqlite+aiosqlite:///mirror.db",
            "GITHUB_WEBHOOK_SECRET": "hook-secret",
            "SYNC_COOLDOWN_SECONDS": "5",
            "CACHE_TTL_ISSUES": "30",
            "LOG_LEVEL": "debug",
            "PORT": "9000",
        }
        with patch("src.infrastructure.settings.load_dotenv"), patch.dict(os.environ, env, clear=True):
            settings = Settings.from_env()

        self.assertEqual(settings.database_url, "sqlite+aiosqlite:///mirror.db")
        self.assertEqual(settings.sync_cooldown_seconds, 5.0)
        self.assertEqual(settings.cache_policies["issues"].memory_ttl, 30.0)
        self.assertEqual(settings.cache_policies["issues"].durable_ttl, 15 * 60)
        self.assertEqual(settings.log_level, "DEBUG")
        self.assertEqual(settings.port, 9000)
        # The webhook secret doubles as the encryption key.
        self.assertEqual(settings.encryption_key, "hook-secret")

    def test_defaults(self) -> None:
        with patch("src.infrastructure.settings.load_dotenv"), patch.dict(os.environ, {}, clear=True):
            settings = Settings.from_env()

        self.assertIsNone(settings.database_url)
        self.assertEqual(settings.default_page_size, 10)
        self.assertEqual(settings.sync_cooldown_seconds, 60.0)
        self.assertEqual(settings.sync_freshness_hours, 24.0)

    def test_invalid_number_raises(self) -> None:
        with patch("src.infrastructure.settings.load_dotenv"), \
                patch.dict(os.environ, {"SYNC_COOLDOWN_SECONDS": "soon"}, clear=True):
            with self.assertRaises(ValueError):
                Settings.from_env()

    def test_secrets_are_hidden_from_repr(self) -> None:
        settings = Settings(github_token="ghp_secret", webhook_secret="hook")
        self.assertNotIn("ghp_secret", repr(settings))
