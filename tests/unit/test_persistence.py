"""
SessionStorageのユニットテスト
"""

import json
import tempfile
import unittest
from pathlib import Path

from authbridge.persistence import SessionStorage, get_session_identifier
from authbridge.storage import TokenManager

USER = {"email": "user@example.com", "session_state": "session-1", "name": "User"}


class TestGetSessionIdentifier(unittest.TestCase):
    def test_prefers_session_state(self):
        self.assertEqual(get_session_identifier({"session_state": "a", "sid": "b"}), "a")

    def test_falls_back_to_sid(self):
        self.assertEqual(get_session_identifier({"sid": "b"}), "b")

    def test_missing(self):
        self.assertIsNone(get_session_identifier({}))
        self.assertIsNone(get_session_identifier(None))


class TestSessionStorage(unittest.TestCase):
    """永続化レイアウトと検証のテスト"""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.token_manager = TokenManager(
            fallback_path=Path(self._tmp.name) / "tokens.json", use_keyring=False
        )
        self.storage = SessionStorage("test-client", self.token_manager)

    def tearDown(self):
        self._tmp.cleanup()

    def test_token_entries(self):
        """token / idToken / refreshToken を個別のエントリに保存する"""
        self.storage.save_tokens("access", "id", None)

        self.assertEqual(self.token_manager.get_token("token"), "access")
        self.assertEqual(self.token_manager.get_token("idToken"), "id")
        self.assertEqual(
            self.storage.get_tokens(),
            {"token": "access", "idToken": "id", "refreshToken": None},
        )

    def test_user_data_layout(self):
        self.storage.save_user(USER, {"session_state": "session-1"})

        raw = json.loads(self.token_manager.get_token("test-client-userData"))
        self.assertEqual(raw, {"identifier": "session-1", "user": USER})

    def test_empty_user_is_saved_as_empty_string(self):
        self.storage.save_user(None, {"sid": "session-1"})

        raw = json.loads(self.token_manager.get_token(self.storage.user_data_key))
        self.assertEqual(raw["user"], "")
        self.assertIsNone(self.storage.get_user({"sid": "session-1"}))

    def test_get_user_with_matching_session(self):
        self.storage.save_user(USER, {"session_state": "session-1"})

        self.assertEqual(self.storage.get_user({"session_state": "session-1"}), USER)

    def test_mismatched_session_invalidates_entry(self):
        """セッションIDが一致しない場合はエントリを破棄する"""
        self.storage.save_user(USER, {"session_state": "session-1"})

        self.assertIsNone(self.storage.get_user({"session_state": "session-2"}))
        self.assertIsNone(self.token_manager.get_token(self.storage.user_data_key))

    def test_malformed_entry_is_invalidated(self):
        self.token_manager.set_token(self.storage.user_data_key, "{broken")

        self.assertIsNone(self.storage.get_user({"session_state": "session-1"}))
        self.assertIsNone(self.token_manager.get_token(self.storage.user_data_key))

    def test_clear(self):
        self.storage.save_tokens("access", "id", "refresh")
        self.storage.save_user(USER, {"session_state": "session-1"})

        self.storage.clear()

        self.assertEqual(
            self.storage.get_tokens(),
            {"token": None, "idToken": None, "refreshToken": None},
        )
        self.assertIsNone(self.token_manager.get_token(self.storage.user_data_key))


if __name__ == "__main__":
    unittest.main()
