"""
共通データモデルのユニットテスト
"""

import unittest
from dataclasses import FrozenInstanceError

from authbridge.models import (
    ClientEvent,
    ClientStatus,
    ClientType,
    FetchApiTokenConfiguration,
    FetchApiTokenOptions,
)


class TestClientStatus(unittest.TestCase):
    """ClientStatus列挙型のテスト"""

    def test_values(self):
        self.assertEqual(
            [status.value for status in ClientStatus],
            ["NONE", "INITIALIZING", "AUTHORIZED", "UNAUTHORIZED"],
        )

    def test_renders_as_value(self):
        self.assertEqual(f"{ClientStatus.AUTHORIZED}", "AUTHORIZED")
        self.assertEqual(str(ClientStatus.NONE), "NONE")


class TestClientEvent(unittest.TestCase):
    """ClientEvent列挙型のテスト"""

    def test_well_known_events(self):
        for name in (
            "STATUS_CHANGE",
            "AUTHORIZED",
            "UNAUTHORIZED",
            "ERROR",
            "LOGGING_OUT",
            "TOKEN_EXPIRED",
            "TOKEN_EXPIRING",
            "CLIENT_READY",
            "CLIENT_AUTH_SUCCESS",
        ):
            self.assertEqual(ClientEvent(name).value, name)

    def test_compares_with_plain_string(self):
        """文字列のイベント種別と同じキーとして扱える"""
        self.assertEqual(ClientEvent.ERROR, "ERROR")
        self.assertEqual(hash(ClientEvent.ERROR), hash("ERROR"))


class TestClientType(unittest.TestCase):
    def test_from_setting_value(self):
        self.assertIs(ClientType("keycloak"), ClientType.KEYCLOAK)
        self.assertIs(ClientType("oidc"), ClientType.OIDC)


class TestFetchApiTokenConfiguration(unittest.TestCase):
    """トークン交換設定のテスト"""

    def test_from_options(self):
        options = FetchApiTokenOptions(grant_type="grant", audience="api", permission="read")

        configuration = FetchApiTokenConfiguration.from_options(
            options, "https://sso.example.com/token", "access-token"
        )

        self.assertEqual(configuration.uri, "https://sso.example.com/token")
        self.assertEqual(configuration.access_token, "access-token")
        self.assertEqual(configuration.grant_type, "grant")
        self.assertEqual(configuration.audience, "api")
        self.assertEqual(configuration.permission, "read")

    def test_is_immutable(self):
        options = FetchApiTokenOptions(grant_type="grant", audience="api", permission="read")

        with self.assertRaises(FrozenInstanceError):
            options.audience = "other"


if __name__ == "__main__":
    unittest.main()
