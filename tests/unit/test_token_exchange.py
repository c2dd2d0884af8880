"""APIアクセストークン交換のテスト."""

import dataclasses
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

import httpx

from authbridge.core.token_exchange import (
    NETWORK_ERROR_MESSAGE,
    PARSE_ERROR_MESSAGE,
    fetch_api_token,
)
from authbridge.errors import FetchError, TokenExchangeError
from authbridge.models import FetchApiTokenConfiguration


class TestFetchApiToken(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.configuration = FetchApiTokenConfiguration(
            uri="https://sso.example.com/realms/test/protocol/openid-connect/token",
            access_token="session-token",
            grant_type="urn:ietf:params:oauth:grant-type:uma-ticket",
            audience="profile-api",
            permission="#access",
        )

    async def _fetch(self, handler, configuration=None):
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await fetch_api_token(configuration or self.configuration, http_client=client)

    async def test_request_contract(self):
        """フォーム形式のボディと Bearer ヘッダーを送信する"""
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["method"] = request.method
            captured["auth"] = request.headers["Authorization"]
            captured["content_type"] = request.headers["Content-Type"]
            captured["form"] = dict(httpx.QueryParams(request.content.decode()))
            return httpx.Response(200, json={"profile-api": "api-token"})

        result = await self._fetch(handler)

        self.assertEqual(result, {"profile-api": "api-token"})
        self.assertEqual(captured["method"], "POST")
        self.assertEqual(captured["auth"], "Bearer session-token")
        self.assertEqual(captured["content_type"], "application/x-www-form-urlencoded")
        self.assertEqual(
            captured["form"],
            {
                "grant_type": "urn:ietf:params:oauth:grant-type:uma-ticket",
                "audience": "profile-api",
                "permission": "#access",
            },
        )

    async def test_http_error_status(self):
        """2xx以外はステータスと本文を持つ FetchError になる"""
        result = await self._fetch(lambda request: httpx.Response(400, text="an error"))

        self.assertIsInstance(result, FetchError)
        self.assertEqual(result.status, 400)
        self.assertEqual(result.message, "an error")
        self.assertIsInstance(result.error, TokenExchangeError)
        self.assertEqual(result.error.status, 400)

    async def test_invalid_json(self):
        result = await self._fetch(lambda request: httpx.Response(200, text="not json"))

        self.assertIsInstance(result, FetchError)
        self.assertIsNone(result.status)
        self.assertEqual(result.message, PARSE_ERROR_MESSAGE)
        self.assertIsNotNone(result.error)

    async def test_non_object_json(self):
        result = await self._fetch(lambda request: httpx.Response(200, json=["a", "b"]))

        self.assertIsInstance(result, FetchError)
        self.assertEqual(result.message, PARSE_ERROR_MESSAGE)

    async def test_network_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        result = await self._fetch(handler)

        self.assertIsInstance(result, FetchError)
        self.assertIsNone(result.status)
        self.assertEqual(result.message, NETWORK_ERROR_MESSAGE)
        self.assertIsInstance(result.error, httpx.ConnectError)

    async def test_invalid_uri(self):
        """URLとして解釈できないエンドポイントは送信せずに FetchError を返す"""
        requests = []
        configuration = dataclasses.replace(
            self.configuration, uri="https://sso.example.com/\x00token"
        )

        result = await self._fetch(
            lambda request: requests.append(request) or httpx.Response(200, json={}),
            configuration,
        )

        self.assertIsInstance(result, FetchError)
        self.assertIsNone(result.status)
        self.assertEqual(result.message, NETWORK_ERROR_MESSAGE)
        self.assertIsInstance(result.error, httpx.InvalidURL)
        self.assertEqual(requests, [])

    @patch("authbridge.core.token_exchange.httpx.AsyncClient")
    async def test_creates_client_when_not_given(self, mock_client_cls):
        """http_client 未指定時はタイムアウト付きのクライアントを生成する"""
        response = MagicMock()
        response.status_code = 200
        response.json.return_value = {"profile-api": "api-token"}
        client = AsyncMock()
        client.post.return_value = response
        mock_client_cls.return_value.__aenter__.return_value = client

        result = await fetch_api_token(self.configuration, timeout=5.0)

        self.assertEqual(result, {"profile-api": "api-token"})
        mock_client_cls.assert_called_once_with(timeout=5.0)


if __name__ == "__main__":
    unittest.main()
