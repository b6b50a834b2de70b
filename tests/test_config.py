import os
import unittest
from unittest.mock import patch

from src.config import load_settings
from src.domain.exceptions import ConfigurationException


@patch("src.config.load_dotenv")
class TestLoadSettings(unittest.TestCase):
    def test_defaults(self, _load_dotenv) -> None:
        with patch.dict(os.environ, {"DATABASE_URL": "postgresql+asyncpg://u:p@localhost/db"}, clear=True):
            settings = load_settings()

        self.assertEqual(settings.database_url, "postgresql+asyncpg://u:p@localhost/db")
        self.assertIsNone(settings.github_token)
        self.assertEqual(settings.github_api_url, "https://api.github.com")
        self.assertEqual(settings.db_pool_size, 25)
        self.assertEqual(settings.db_max_overflow, 10)
        self.assertEqual(settings.log_level, "INFO")

    def test_environment_overrides(self, _load_dotenv) -> None:
        env = {
            "DATABASE_URL": "sqlite+aiosqlite:///issues.db",
            "GITHUB_TOKEN": "ghp_token",
            "DB_POOL_SIZE": "5",
            "LOG_LEVEL": "debug",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = load_settings()

        self.assertEqual(settings.github_token, "ghp_token")
        self.assertEqual(settings.db_pool_size, 5)
        self.assertEqual(settings.log_level, "DEBUG")

    def test_missing_database_url(self, _load_dotenv) -> None:
        with patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(ConfigurationException):
                load_settings()

    def test_non_numeric_pool_size(self, _load_dotenv) -> None:
        env = {"DATABASE_URL": "sqlite+aiosqlite:///issues.db", "DB_POOL_SIZE": "many"}
        with patch.dict(os.environ, env, clear=True):
            with self.assertRaises(ConfigurationException):
                load_settings()

    def test_unknown_log_level(self, _load_dotenv) -> None:
        env = {"DATABASE_URL": "sqlite+aiosqlite:///issues.db", "LOG_LEVEL": "verbose"}
        with patch.dict(os.environ, env, clear=True):
            with self.assertRaises(ConfigurationException):
                load_settings()

    def test_out_of_range_pool_size(self, _load_dotenv) -> None:
        env = {"DATABASE_URL": "sqlite+aiosqlite:///issues.db", "DB_POOL_SIZE": "0"}
        with patch.dict(os.environ, env, clear=True):
            with self.assertRaises(ConfigurationException):
                load_settings()
