"""
ClientContext と ClientHandle のユニットテスト
"""

import os
import tempfile
import time
import unittest
from pathlib import Path
from unittest.mock import patch

from authbridge.clients import OidcClient
from authbridge.config import ClientSettings
from authbridge.context import ClientContext, ClientHandle
from authbridge.errors import ClientErrorType, ConfigurationException
from authbridge.models import ClientEvent, ClientStatus
from authbridge.persistence import SessionStorage
from authbridge.sdk.oidc import (
    LoginRequiredError,
    OidcUser,
    UserManagerEvents,
    UserManagerSettings,
)
from authbridge.storage import TokenManager


class StubUserManager:
    """サインイン結果を固定で返す UserManager"""

    def __init__(self, signed_in: bool):
        self.settings = UserManagerSettings(
            authority="https://sso.example.com/realms/test",
            client_id="client",
            redirect_uri="http://localhost:3000/callback",
        )
        self.events = UserManagerEvents()
        self.signed_in = signed_in
        self.silent_calls = 0

    def _user(self) -> OidcUser:
        return OidcUser(
            access_token="access-token",
            session_state="session-1",
            profile={"sub": "user-1", "email": "user@example.com"},
            expires_at=int(time.time()) + 300,
        )

    async def get_user(self):
        return self._user() if self.signed_in else None

    async def remove_user(self):
        self.signed_in = False
        self.events.unload()

    async def signin_silent(self):
        self.silent_calls += 1
        if not self.signed_in:
            raise LoginRequiredError()
        return self._user()

    async def signin_redirect(self):
        pass

    async def signin_redirect_callback(self, url):
        self.signed_in = True
        return self._user()

    async def signout_redirect(self):
        await self.remove_user()


class ClientContextTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        token_manager = TokenManager(
            fallback_path=Path(self._tmp.name) / "tokens.json", use_keyring=False
        )
        self.storage = SessionStorage("client", token_manager)
        with patch.dict(os.environ, {}, clear=True):
            self.settings = ClientSettings(
                _env_file=None,
                url="https://sso.example.com",
                realm="test",
                client_id="client",
            )

    def tearDown(self):
        self._tmp.cleanup()

    def make_context(self, signed_in=True, **kwargs) -> ClientContext:
        self.manager = StubUserManager(signed_in)
        return ClientContext(self.settings, storage=self.storage, sdk=self.manager, **kwargs)


class TestClientContext(ClientContextTestCase):
    """ClientContext のテスト"""

    def test_creates_client_from_settings(self):
        context = self.make_context()

        self.assertIsInstance(context.client, OidcClient)
        self.assertIs(context.client.manager, self.manager)
        self.assertTrue(context.bridge.connected)

    def test_invalid_settings(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = ClientSettings(_env_file=None)

        with self.assertRaises(ConfigurationException):
            ClientContext(settings, storage=self.storage)

    async def test_start(self):
        context = self.make_context()

        first = context.start()
        self.assertIs(context.start(), first)
        user = await first

        self.assertEqual(user["email"], "user@example.com")
        self.assertEqual(self.manager.silent_calls, 1)
        state = context.get_state()
        self.assertEqual(state.status, ClientStatus.AUTHORIZED)
        self.assertEqual(state.user, user)

    async def test_start_without_session(self):
        context = self.make_context(signed_in=False)

        await context.start()

        state = context.get_state()
        self.assertTrue(state.initialized)
        self.assertFalse(state.authenticated)
        self.assertIsNone(state.error)

    async def test_start_from_callback(self):
        context = self.make_context(signed_in=False)

        user = await context.start_from_callback("http://localhost:3000/callback?code=c")

        self.assertEqual(user["sub"], "user-1")
        self.assertTrue(context.get_state().authenticated)

    async def test_store_not_connected(self):
        context = self.make_context(connect_store=False)

        await context.start()

        self.assertFalse(context.bridge.connected)
        self.assertEqual(context.get_state().status, ClientStatus.NONE)

    async def test_close(self):
        context = self.make_context()
        await context.start()

        context.close()
        await context.client.logout()

        self.assertFalse(context.bridge.connected)
        self.assertTrue(context.get_state().authenticated)

    async def test_contexts_are_independent(self):
        first = self.make_context()
        second = self.make_context(signed_in=False)

        await first.start()

        self.assertTrue(first.get_state().authenticated)
        self.assertEqual(second.get_state().status, ClientStatus.NONE)


class TestClientHandle(ClientContextTestCase):
    """ClientHandle のテスト"""

    def test_exposes_read_only_view(self):
        handle = self.make_context().handle()

        self.assertIsInstance(handle, ClientHandle)
        for name in ("logout", "login", "set_status", "set_error", "clear_session"):
            self.assertFalse(hasattr(handle, name), name)

    async def test_reflects_client_state(self):
        context = self.make_context()
        handle = context.handle()
        events = []
        handle.add_listener(ClientEvent.AUTHORIZED, events.append)

        self.assertFalse(handle.is_initialized())
        user = await handle.get_or_load_user()

        self.assertEqual(events, [user])
        self.assertTrue(handle.is_authenticated())
        self.assertTrue(handle.is_initialized())
        self.assertEqual(handle.get_status(), ClientStatus.AUTHORIZED)
        self.assertEqual(handle.get_user(), user)
        self.assertIsNone(handle.get_error())

    async def test_reports_session_end(self):
        context = self.make_context()
        handle = context.handle()
        await handle.get_or_load_user()

        self.manager.events.raise_user_signed_out()

        self.assertFalse(handle.is_authenticated())
        self.assertEqual(handle.get_error().type, ClientErrorType.UNEXPECTED_AUTH_CHANGE)
        self.assertEqual(context.error_prompt.current().type, ClientErrorType.UNEXPECTED_AUTH_CHANGE)


if __name__ == "__main__":
    unittest.main()
