import os
import unittest
from unittest import mock

from careportal.config import PortalConfig, load_config_from_env


class LoadConfigTests(unittest.TestCase):
    def test_defaults(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            config = load_config_from_env()

        self.assertEqual(config, PortalConfig())
        self.assertEqual(config.default_duration_minutes, 30)
        self.assertIsNone(config.history_limit_or_none)
        self.assertEqual(config.reconnect_backoff_s, 0.5)

    def test_overrides(self):
        env = {
            "CAREPORTAL_ECHO_WINDOW_MS": "2500",
            "CAREPORTAL_MAX_RECONNECT_ATTEMPTS": "5",
            "CAREPORTAL_RECONNECT_BACKOFF_MS": "0",
            "CAREPORTAL_HISTORY_LIMIT": "200",
            "CAREPORTAL_DEFAULT_DURATION_MIN": "45",
            "CAREPORTAL_REQUEST_TIMEOUT_S": "",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = load_config_from_env()

        self.assertEqual(config.echo_window_ms, 2500)
        self.assertEqual(config.max_reconnect_attempts, 5)
        self.assertEqual(config.reconnect_backoff_s, 0)
        self.assertEqual(config.history_limit_or_none, 200)
        self.assertEqual(config.default_duration_minutes, 45)
        self.assertEqual(config.request_timeout_s, 10)

    def test_rejects_bad_values(self):
        for name, value in (
            ("CAREPORTAL_ECHO_WINDOW_MS", "soon"),
            ("CAREPORTAL_MAX_RECONNECT_ATTEMPTS", "-1"),
            ("CAREPORTAL_DEFAULT_DURATION_MIN", "0"),
        ):
            with self.subTest(name=name):
                with mock.patch.dict(os.environ, {name: value}, clear=True):
                    with self.assertRaisesRegex(ValueError, name):
                        load_config_from_env()


if __name__ == "__main__":
    unittest.main()
