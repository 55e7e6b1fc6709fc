import os
import unittest
from unittest import mock

from moneyflow.settings import load_settings


class SettingsTests(unittest.TestCase):
    def test_defaults(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            settings = load_settings()

        self.assertEqual(settings.database_url, "sqlite:///./moneyflow.db")
        self.assertEqual(settings.default_currency, "USD")
        self.assertEqual(settings.max_occurrences, 24)
        self.assertEqual(settings.max_workers, 1)
        self.assertFalse(settings.allow_unconverted)

    def test_reads_environment(self) -> None:
        env = {
            "DATABASE_URL": "sqlite://",
            "DEFAULT_CURRENCY": " uzs ",
            "RECONCILE_MAX_OCCURRENCES": "12",
            "RECONCILE_MAX_WORKERS": "4",
            "RECONCILE_ALLOW_UNCONVERTED": "yes",
            "LOG_LEVEL": "debug",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            settings = load_settings()

        self.assertEqual(settings.database_url, "sqlite://")
        self.assertEqual(settings.default_currency, "UZS")
        self.assertEqual(settings.max_occurrences, 12)
        self.assertEqual(settings.max_workers, 4)
        self.assertTrue(settings.allow_unconverted)
        self.assertEqual(settings.log_level, "DEBUG")

    def test_invalid_default_currency_falls_back_to_usd(self) -> None:
        with mock.patch.dict(os.environ, {"DEFAULT_CURRENCY": "dollars"}, clear=True):
            self.assertEqual(load_settings().default_currency, "USD")

    def test_non_positive_limits_are_rejected(self) -> None:
        with mock.patch.dict(os.environ, {"RECONCILE_MAX_WORKERS": "0"}, clear=True):
            with self.assertRaises(ValueError):
                load_settings()


if __name__ == "__main__":
    unittest.main()
