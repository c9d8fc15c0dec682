import os
import unittest
from unittest import mock

from chatsync.config import ClientConfig, load_client_config_from_env


class ClientConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            config = load_client_config_from_env()
        self.assertEqual(config, ClientConfig())
        self.assertEqual(config.ws_url, "ws://127.0.0.1:8080/v1/ws")

    def test_env_overrides(self) -> None:
        env = {
            "CHATSYNC_BASE_URL": "https://chat.example.test/",
            "CHATSYNC_TYPING_IDLE_S": "1.5",
            "CHATSYNC_TYPING_TTL_S": "6",
            "CHATSYNC_RECONNECT_MAX_S": "4",
            "CHATSYNC_HISTORY_PAGE_SIZE": "1000",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = load_client_config_from_env()
        self.assertEqual(config.base_url, "https://chat.example.test")
        self.assertEqual(config.ws_url, "wss://chat.example.test/v1/ws")
        self.assertEqual((config.typing_idle_s, config.typing_ttl_s), (1.5, 6))
        self.assertEqual(config.reconnect_max_s, 4.0)
        self.assertEqual(config.history_page_size, 1000)

    def test_invalid_values_are_rejected(self) -> None:
        for name, value in (
            ("CHATSYNC_BASE_URL", "chat.example.test"),
            ("CHATSYNC_TYPING_IDLE_S", "soon"),
            ("CHATSYNC_TYPING_IDLE_S", "0"),
            ("CHATSYNC_TYPING_TTL_S", "2.5"),
            ("CHATSYNC_HEARTBEAT_S", "-1"),
            ("CHATSYNC_HISTORY_PAGE_SIZE", "0"),
            ("CHATSYNC_HISTORY_PAGE_SIZE", "1001"),
        ):
            with self.subTest(name=name, value=value):
                with mock.patch.dict(os.environ, {name: value}, clear=True):
                    with self.assertRaises(ValueError):
                        load_client_config_from_env()


if __name__ == "__main__":
    unittest.main()
