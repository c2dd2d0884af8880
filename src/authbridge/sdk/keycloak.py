"""Keycloak SSO クライアント。

keycloak-js と同じコールバックフック方式（on_ready / on_auth_success など）で
状態変化を通知する、httpx ベースのレルムクライアント。
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
import logging
import time
from typing import Any, AsyncIterator, Callable, Dict, Optional, Protocol, runtime_checkable
import webbrowser

import httpx

from authbridge.sdk.tokens import (
    TokenDecodeError,
    decode_token,
    generate_challenge,
    generate_state,
    generate_verifier,
    parse_callback_url,
    pop_pending_signin,
    save_pending_signin,
    seconds_until_expiry,
)
from authbridge.storage import TokenManager

logger = logging.getLogger(__name__)

DEFAULT_MIN_VALIDITY = 5

_RESPONSE_TYPES = {
    "standard": "code",
    "implicit": "id_token token",
    "hybrid": "code id_token token",
}


class KeycloakError(Exception):
    """Keycloak のエラーレスポンス。"""

    def __init__(self, error: str, error_description: str = "") -> None:
        self.error = error
        self.error_description = error_description
        super().__init__(error_description or error)

    def to_dict(self) -> Dict[str, str]:
        return {"error": self.error, "error_description": self.error_description}


@dataclass(slots=True)
class KeycloakConfig:
    """レルム接続情報。"""

    url: str
    realm: str
    client_id: str


@dataclass(slots=True)
class KeycloakInitOptions:
    """init() に渡すオプション。"""

    on_load: str = "check-sso"
    flow: str = "standard"
    token: str | None = None
    id_token: str | None = None
    refresh_token: str | None = None
    redirect_uri: str | None = None
    silent_check_sso_redirect_uri: str | None = None
    callback_url: str | None = None
    scope: str | None = None


@dataclass(slots=True)
class KeycloakLoginOptions:
    redirect_uri: str | None = None
    scope: str | None = None
    prompt: str | None = None


@dataclass(slots=True)
class KeycloakLogoutOptions:
    redirect_uri: str | None = None


@dataclass(slots=True)
class _PendingLogin:
    state: str
    nonce: str
    verifier: str
    redirect_uri: str


@runtime_checkable
class KeycloakInstance(Protocol):
    """アダプタが依存する Keycloak SDK の契約。"""

    token: Optional[str]
    id_token: Optional[str]
    refresh_token: Optional[str]
    token_parsed: Optional[Dict[str, Any]]
    id_token_parsed: Optional[Dict[str, Any]]
    authenticated: bool

    on_ready: Optional[Callable[[bool], None]]
    on_auth_success: Optional[Callable[[], None]]
    on_auth_error: Optional[Callable[[Dict[str, str]], None]]
    on_auth_refresh_success: Optional[Callable[[], None]]
    on_auth_refresh_error: Optional[Callable[[], None]]
    on_auth_logout: Optional[Callable[[], None]]
    on_token_expired: Optional[Callable[[], None]]

    async def init(self, options: KeycloakInitOptions) -> bool: ...

    async def login(self, options: KeycloakLoginOptions | None = None) -> None: ...

    async def logout(self, options: KeycloakLogoutOptions | None = None) -> None: ...

    async def load_user_profile(self) -> Dict[str, Any]: ...

    async def handle_callback(self, url: str) -> bool: ...


class Keycloak:
    """Keycloak レルムに対する OIDC クライアント。"""

    def __init__(
        self,
        config: KeycloakConfig,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
        open_browser: Callable[[str], Any] = webbrowser.open,
        token_manager: TokenManager | None = None,
    ) -> None:
        """Keycloakを初期化する。

        Args:
            config: レルム接続情報。
            http_client: 使用するHTTPクライアント。
            timeout_seconds: http_client未指定時のタイムアウト。
            open_browser: リダイレクトURLを開く関数。
            token_manager: ログイン中の検証用の値（state, nonce, PKCE）の保存先。
        """

        self._config = config
        self._http_client = http_client
        self._timeout_seconds = timeout_seconds
        self._open_browser = open_browser
        self._token_manager = token_manager or TokenManager()
        self._expiry_handle: asyncio.TimerHandle | None = None

        self.flow = "standard"
        self.token: str | None = None
        self.id_token: str | None = None
        self.refresh_token: str | None = None
        self.token_parsed: Dict[str, Any] | None = None
        self.id_token_parsed: Dict[str, Any] | None = None
        self.authenticated = False
        self.profile: Dict[str, Any] | None = None

        self.on_ready: Callable[[bool], None] | None = None
        self.on_auth_success: Callable[[], None] | None = None
        self.on_auth_error: Callable[[Dict[str, str]], None] | None = None
        self.on_auth_refresh_success: Callable[[], None] | None = None
        self.on_auth_refresh_error: Callable[[], None] | None = None
        self.on_auth_logout: Callable[[], None] | None = None
        self.on_token_expired: Callable[[], None] | None = None

    @property
    def realm_url(self) -> str:
        return f"{self._config.url.rstrip('/')}/realms/{self._config.realm}"

    def _endpoint(self, name: str) -> str:
        return f"{self.realm_url}/protocol/openid-connect/{name}"

    async def init(self, options: KeycloakInitOptions) -> bool:
        """保存済みトークンやリダイレクト結果からセッションを復元する。

        Returns:
            認証済みかどうか。

        Raises:
            httpx.HTTPError: レルムとの通信に失敗した場合。
        """

        if options.flow not in _RESPONSE_TYPES:
            raise KeycloakError("invalid_request", f"Unsupported flow: {options.flow}")
        self.flow = options.flow

        if options.callback_url and self._is_callback(options.callback_url):
            await self._process_callback(options.callback_url)
        elif options.refresh_token:
            self._set_token(options.token, options.refresh_token, options.id_token)
            if self.token is None or self.is_token_expired(DEFAULT_MIN_VALIDITY):
                await self._restore_by_refresh()
            if self.authenticated:
                self._notify(self.on_auth_success)
        elif options.token:
            self._set_token(options.token, None, options.id_token)
            if self.is_token_expired():
                self._reset_tokens()
            if self.authenticated:
                self._notify(self.on_auth_success)

        if not self.authenticated and options.on_load == "login-required":
            await self.login(KeycloakLoginOptions(redirect_uri=options.redirect_uri, scope=options.scope))

        logger.debug("Keycloak initialized, authenticated=%s", self.authenticated)
        self._notify(self.on_ready, self.authenticated)
        return self.authenticated

    def create_login_url(self, options: KeycloakLoginOptions | None = None) -> str:
        """認可エンドポイントのURLを作成し、コールバック検証用の状態を保持する。"""

        options = options or KeycloakLoginOptions()
        if not options.redirect_uri:
            raise KeycloakError("invalid_request", "redirect_uri is required")

        pending = _PendingLogin(
            state=generate_state(),
            nonce=generate_state(),
            verifier=generate_verifier(),
            redirect_uri=options.redirect_uri,
        )
        scope = "openid"
        if options.scope:
            scope = options.scope if "openid" in options.scope.split() else f"openid {options.scope}"

        params = {
            "client_id": self._config.client_id,
            "redirect_uri": options.redirect_uri,
            "state": pending.state,
            "response_mode": "query" if self.flow == "standard" else "fragment",
            "response_type": _RESPONSE_TYPES[self.flow],
            "scope": scope,
            "nonce": pending.nonce,
        }
        if self.flow != "implicit":
            params["code_challenge"] = generate_challenge(pending.verifier)
            params["code_challenge_method"] = "S256"
        if options.prompt:
            params["prompt"] = options.prompt

        save_pending_signin(self._token_manager, self._callback_key(pending.state), asdict(pending))
        return f"{self._endpoint('auth')}?{httpx.QueryParams(params)}"

    def create_logout_url(self, options: KeycloakLogoutOptions | None = None) -> str:
        options = options or KeycloakLogoutOptions()
        params = {"client_id": self._config.client_id}
        if options.redirect_uri:
            params["post_logout_redirect_uri"] = options.redirect_uri
        if self.id_token:
            params["id_token_hint"] = self.id_token
        return f"{self._endpoint('logout')}?{httpx.QueryParams(params)}"

    async def login(self, options: KeycloakLoginOptions | None = None) -> None:
        """ブラウザで認可エンドポイントへリダイレクトする。"""

        url = self.create_login_url(options)
        await asyncio.to_thread(self._open_browser, url)

    async def logout(self, options: KeycloakLogoutOptions | None = None) -> None:
        """ブラウザでログアウトエンドポイントへリダイレクトし、トークンを破棄する。"""

        url = self.create_logout_url(options)
        self.clear_token()
        await asyncio.to_thread(self._open_browser, url)

    async def load_user_profile(self) -> Dict[str, Any]:
        """アカウントエンドポイントからプロフィールを取得する。"""

        if not self.token:
            raise KeycloakError("not_authenticated", "No access token available")

        headers = {"Authorization": f"Bearer {self.token}", "Accept": "application/json"}
        async with self._client() as client:
            response = await client.get(f"{self.realm_url}/account", headers=headers)
        if response.status_code != 200:
            raise KeycloakError("profile_load_failed", response.text)
        self.profile = response.json()
        return self.profile

    async def update_token(self, min_validity: int = DEFAULT_MIN_VALIDITY) -> bool:
        """有効期限が min_validity 秒未満ならリフレッシュする。

        min_validity に負数を渡すと常にリフレッシュする。

        Returns:
            リフレッシュを実行したかどうか。
        """

        if not self.refresh_token:
            raise KeycloakError("invalid_grant", "No refresh token available")
        if min_validity >= 0 and not self.is_token_expired(min_validity):
            return False

        try:
            payload = await self._request_token(
                {
                    "grant_type": "refresh_token",
                    "refresh_token": self.refresh_token,
                    "client_id": self._config.client_id,
                }
            )
            for name in ("access_token", "id_token"):
                if payload.get(name):
                    decode_token(payload[name])
        except (KeycloakError, TokenDecodeError, httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning("Token refresh failed: %s", exc)
            self._notify(self.on_auth_refresh_error)
            self.clear_token()
            if isinstance(exc, TokenDecodeError):
                raise KeycloakError("invalid_token", str(exc)) from exc
            raise

        self._apply_token_response(payload)
        self._notify(self.on_auth_refresh_success)
        return True

    def is_token_expired(self, min_validity: int = 0) -> bool:
        remaining = seconds_until_expiry(self.token_parsed)
        if remaining is None:
            return False
        return remaining - min_validity < 0

    def clear_token(self) -> None:
        """トークンを破棄する。認証済みだった場合は on_auth_logout を通知する。"""

        if self.token:
            self._reset_tokens()
            self._notify(self.on_auth_logout)

    async def _restore_by_refresh(self) -> None:
        try:
            payload = await self._request_token(
                {
                    "grant_type": "refresh_token",
                    "refresh_token": self.refresh_token or "",
                    "client_id": self._config.client_id,
                }
            )
        except KeycloakError as exc:
            # 期限切れのセッションは未認証として扱う
            logger.debug("Stored refresh token rejected: %s", exc)
            self._reset_tokens()
            return
        self._apply_token_response(payload)

    async def handle_callback(self, url: str) -> bool:
        """init() の後に受け取ったリダイレクト結果を処理する。

        Returns:
            認証済みかどうか。
        """

        if self._is_callback(url):
            await self._process_callback(url)
        return self.authenticated

    def _callback_key(self, state: str) -> str:
        return f"kc-callback-{self._config.client_id}-{state}"

    def _pop_pending(self, state: str | None) -> _PendingLogin | None:
        if not state:
            return None
        values = pop_pending_signin(self._token_manager, self._callback_key(state))
        if values is None:
            return None
        try:
            return _PendingLogin(**values)
        except TypeError:
            logger.warning("Discarding incomplete callback state")
            return None

    def _is_callback(self, url: str) -> bool:
        params = parse_callback_url(url)
        return "state" in params and any(key in params for key in ("code", "error", "access_token"))

    async def _process_callback(self, url: str) -> None:
        params = parse_callback_url(url)
        pending = self._pop_pending(params.get("state"))
        if pending is None:
            logger.warning("No pending login matches the callback state")
            self._notify(self.on_auth_error, {"error": "invalid_state", "error_description": "Invalid state"})
            return
        if "error" in params:
            self._notify(
                self.on_auth_error,
                {"error": params["error"], "error_description": params.get("error_description", "")},
            )
            return

        if "code" in params:
            try:
                payload = await self._request_token(
                    {
                        "grant_type": "authorization_code",
                        "code": params["code"],
                        "client_id": self._config.client_id,
                        "redirect_uri": pending.redirect_uri,
                        "code_verifier": pending.verifier,
                    }
                )
            except KeycloakError as exc:
                self._notify(self.on_auth_error, exc.to_dict())
                return
            self._apply_token_response(payload)
        else:
            self._set_token(params.get("access_token"), None, params.get("id_token"))

        if self.id_token_parsed and self.id_token_parsed.get("nonce") not in (None, pending.nonce):
            self._reset_tokens()
            self._notify(self.on_auth_error, {"error": "invalid_nonce", "error_description": "Invalid nonce"})
            return
        if self.authenticated:
            self._notify(self.on_auth_success)

    async def _request_token(self, data: Dict[str, str]) -> Dict[str, Any]:
        async with self._client() as client:
            response = await client.post(
                self._endpoint("token"), data=data, headers={"Accept": "application/json"}
            )
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if response.status_code != 200 or not isinstance(payload, dict):
            error = payload.get("error", "token_request_failed") if isinstance(payload, dict) else "token_request_failed"
            description = payload.get("error_description", response.text) if isinstance(payload, dict) else response.text
            raise KeycloakError(str(error), str(description))
        if "access_token" not in payload:
            raise KeycloakError("invalid_token", "Token response did not contain an access token")
        return payload

    def _apply_token_response(self, payload: Dict[str, Any]) -> None:
        self._set_token(
            payload.get("access_token"),
            payload.get("refresh_token") or self.refresh_token,
            payload.get("id_token") or self.id_token,
        )

    def _set_token(self, token: str | None, refresh_token: str | None, id_token: str | None) -> None:
        self._cancel_expiry()
        try:
            self.token_parsed = decode_token(token) if token else None
            self.id_token_parsed = decode_token(id_token) if id_token else None
        except TokenDecodeError as exc:
            logger.warning("Discarding undecodable token: %s", exc)
            self._reset_tokens()
            return

        self.token = token
        self.id_token = id_token
        self.refresh_token = refresh_token
        self.authenticated = token is not None
        if self.authenticated:
            self._schedule_expiry()

    def _reset_tokens(self) -> None:
        self._cancel_expiry()
        self.token = None
        self.id_token = None
        self.refresh_token = None
        self.token_parsed = None
        self.id_token_parsed = None
        self.authenticated = False

    def _schedule_expiry(self) -> None:
        remaining = seconds_until_expiry(self.token_parsed)
        if remaining is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._expiry_handle = loop.call_later(max(0.0, remaining), self._token_expired)

    def _cancel_expiry(self) -> None:
        if self._expiry_handle is not None:
            self._expiry_handle.cancel()
            self._expiry_handle = None

    def _token_expired(self) -> None:
        self._expiry_handle = None
        logger.debug("Access token expired at %s", time.time())
        self._notify(self.on_token_expired)

    @staticmethod
    def _notify(hook: Callable[..., None] | None, *args: Any) -> None:
        if hook is not None:
            hook(*args)

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
            yield client
