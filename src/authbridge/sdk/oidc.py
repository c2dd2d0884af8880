"""標準 OpenID Connect のユーザーマネージャー。

oidc-client と同じイベント登録方式（add_user_loaded など）でセッションの
変化を通知する。ユーザーは TokenManager に JSON として保存する。
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
import json
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
)
from authbridge.storage import TokenManager

logger = logging.getLogger(__name__)

# プロフィールに含めないプロトコル用クレーム
_PROTOCOL_CLAIMS = ("nonce", "at_hash", "c_hash", "iat", "nbf", "exp", "aud", "iss", "azp", "auth_time")

_LOGIN_REQUIRED_ERRORS = ("login_required", "invalid_grant", "interaction_required")


class OidcError(Exception):
    """OIDCプロバイダのエラーレスポンス、またはプロトコル違反。"""

    def __init__(self, error: str, error_description: str = "") -> None:
        self.error = error
        self.error_description = error_description
        super().__init__(error_description or error)


class LoginRequiredError(OidcError):
    """サイレント更新できるセッションが存在しない。"""

    def __init__(self, error_description: str = "Login required") -> None:
        super().__init__("login_required", error_description)


@dataclass(slots=True)
class UserManagerSettings:
    """UserManager の設定。"""

    authority: str
    client_id: str
    redirect_uri: str
    response_type: str = "code"
    scope: str = "openid"
    silent_redirect_uri: str | None = None
    post_logout_redirect_uri: str | None = None
    automatic_silent_renew: bool = True
    access_token_expiring_notification_time: int = 60
    client_secret: str | None = None


@dataclass
class OidcUser:
    """サインイン済みユーザーとそのトークン。"""

    access_token: str
    id_token: str | None = None
    refresh_token: str | None = None
    token_type: str = "Bearer"
    scope: str | None = None
    session_state: str | None = None
    profile: Dict[str, Any] = field(default_factory=dict)
    expires_at: int | None = None

    @property
    def expires_in(self) -> float | None:
        if self.expires_at is None:
            return None
        return self.expires_at - time.time()

    @property
    def expired(self) -> bool:
        remaining = self.expires_in
        return remaining is not None and remaining <= 0

    @classmethod
    def from_token_response(
        cls, payload: Dict[str, Any], previous: Optional["OidcUser"] = None
    ) -> "OidcUser":
        """トークンエンドポイントの応答からユーザーを作成する。

        応答に含まれない値は previous から引き継ぐ。
        """

        id_token = payload.get("id_token") or (previous.id_token if previous else None)
        profile = dict(previous.profile) if previous else {}
        if payload.get("id_token"):
            claims = decode_token(payload["id_token"])
            profile = {key: value for key, value in claims.items() if key not in _PROTOCOL_CLAIMS}

        expires_in = payload.get("expires_in")
        expires_at = int(time.time() + float(expires_in)) if expires_in is not None else None
        return cls(
            access_token=payload["access_token"],
            id_token=id_token,
            refresh_token=payload.get("refresh_token") or (previous.refresh_token if previous else None),
            token_type=payload.get("token_type", "Bearer"),
            scope=payload.get("scope") or (previous.scope if previous else None),
            session_state=payload.get("session_state") or profile.get("sid") or (previous.session_state if previous else None),
            profile=profile,
            expires_at=expires_at,
        )

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)

    @classmethod
    def from_json(cls, text: str) -> "OidcUser":
        data = json.loads(text)
        if not isinstance(data, dict) or "access_token" not in data:
            raise ValueError("Stored user is not an object with an access token")
        return cls(**{key: data.get(key) for key in cls.__dataclass_fields__ if key in data})


class _Event:
    def __init__(self, name: str) -> None:
        self.name = name
        self._callbacks: list[Callable[..., None]] = []

    def add(self, callback: Callable[..., None]) -> Callable[[], None]:
        self._callbacks.append(callback)
        return lambda: self.remove(callback)

    def remove(self, callback: Callable[..., None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def raise_event(self, *args: Any) -> None:
        logger.debug("Raising %s", self.name)
        for callback in list(self._callbacks):
            callback(*args)


class UserManagerEvents:
    """UserManager のイベント登録と有効期限タイマー。"""

    def __init__(self, expiring_notification_time: int = 60) -> None:
        self._expiring_notification_time = expiring_notification_time
        self._user_loaded = _Event("userLoaded")
        self._user_unloaded = _Event("userUnloaded")
        self._access_token_expiring = _Event("accessTokenExpiring")
        self._access_token_expired = _Event("accessTokenExpired")
        self._silent_renew_error = _Event("silentRenewError")
        self._user_signed_out = _Event("userSignedOut")
        self._user_session_changed = _Event("userSessionChanged")
        self._timers: list[asyncio.TimerHandle] = []
        self._expires_at: int | None = None

    def add_user_loaded(self, callback: Callable[[OidcUser], None]) -> Callable[[], None]:
        return self._user_loaded.add(callback)

    def remove_user_loaded(self, callback: Callable[[OidcUser], None]) -> None:
        self._user_loaded.remove(callback)

    def add_user_unloaded(self, callback: Callable[[], None]) -> Callable[[], None]:
        return self._user_unloaded.add(callback)

    def remove_user_unloaded(self, callback: Callable[[], None]) -> None:
        self._user_unloaded.remove(callback)

    def add_access_token_expiring(self, callback: Callable[[], None]) -> Callable[[], None]:
        return self._access_token_expiring.add(callback)

    def remove_access_token_expiring(self, callback: Callable[[], None]) -> None:
        self._access_token_expiring.remove(callback)

    def add_access_token_expired(self, callback: Callable[[], None]) -> Callable[[], None]:
        return self._access_token_expired.add(callback)

    def remove_access_token_expired(self, callback: Callable[[], None]) -> None:
        self._access_token_expired.remove(callback)

    def add_silent_renew_error(self, callback: Callable[[Exception], None]) -> Callable[[], None]:
        return self._silent_renew_error.add(callback)

    def remove_silent_renew_error(self, callback: Callable[[Exception], None]) -> None:
        self._silent_renew_error.remove(callback)

    def add_user_signed_out(self, callback: Callable[[], None]) -> Callable[[], None]:
        return self._user_signed_out.add(callback)

    def remove_user_signed_out(self, callback: Callable[[], None]) -> None:
        self._user_signed_out.remove(callback)

    def add_user_session_changed(self, callback: Callable[[], None]) -> Callable[[], None]:
        return self._user_session_changed.add(callback)

    def remove_user_session_changed(self, callback: Callable[[], None]) -> None:
        self._user_session_changed.remove(callback)

    def load(self, user: OidcUser, raise_event: bool = True) -> None:
        """有効期限タイマーを設定し、必要なら user_loaded を通知する。

        有効期限が前回と同じ場合はタイマーを張り直さない。
        """

        if user.expires_at is None or user.expires_at != self._expires_at:
            self._cancel_timers()
            self._schedule(user)
        if raise_event:
            self._user_loaded.raise_event(user)

    def _schedule(self, user: OidcUser) -> None:
        remaining = user.expires_in
        if remaining is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        expiring_in = max(0.0, remaining - self._expiring_notification_time)
        self._timers.append(loop.call_later(expiring_in, self._access_token_expiring.raise_event))
        self._timers.append(loop.call_later(max(0.0, remaining), self._access_token_expired.raise_event))
        self._expires_at = user.expires_at

    def unload(self) -> None:
        self._cancel_timers()
        self._user_unloaded.raise_event()

    def raise_silent_renew_error(self, error: Exception) -> None:
        self._silent_renew_error.raise_event(error)

    def raise_user_signed_out(self) -> None:
        self._user_signed_out.raise_event()

    def raise_user_session_changed(self) -> None:
        self._user_session_changed.raise_event()

    def _cancel_timers(self) -> None:
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        self._expires_at = None


@runtime_checkable
class UserManagerProtocol(Protocol):
    """アダプタが依存する OIDC SDK の契約。"""

    settings: UserManagerSettings
    events: UserManagerEvents

    async def get_user(self) -> Optional[OidcUser]: ...

    async def remove_user(self) -> None: ...

    async def signin_silent(self) -> OidcUser: ...

    async def signin_redirect(self) -> None: ...

    async def signin_redirect_callback(self, url: str) -> OidcUser: ...

    async def signout_redirect(self) -> None: ...


@dataclass(slots=True)
class _SigninState:
    verifier: str
    nonce: str
    redirect_uri: str


class UserManager:
    """OIDCプロバイダに対するサインイン/サインアウトを管理する。"""

    def __init__(
        self,
        settings: UserManagerSettings,
        token_manager: TokenManager | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
        open_browser: Callable[[str], Any] = webbrowser.open,
    ) -> None:
        """UserManagerを初期化する。

        Args:
            settings: プロバイダとクライアントの設定。
            token_manager: ユーザーの保存先。
            http_client: 使用するHTTPクライアント。
            timeout_seconds: http_client未指定時のタイムアウト。
            open_browser: リダイレクトURLを開く関数。
        """

        self.settings = settings
        self.events = UserManagerEvents(settings.access_token_expiring_notification_time)
        self._token_manager = token_manager or TokenManager()
        self._http_client = http_client
        self._timeout_seconds = timeout_seconds
        self._open_browser = open_browser
        self._metadata: Dict[str, Any] | None = None
        self._renew_task: asyncio.Task | None = None

        if settings.automatic_silent_renew:
            self.events.add_access_token_expiring(self._start_silent_renew)

    @property
    def user_store_key(self) -> str:
        return f"oidc.user:{self.settings.authority}:{self.settings.client_id}"

    def _signin_state_key(self, state: str) -> str:
        return f"oidc.signin:{self.settings.client_id}:{state}"

    async def get_metadata(self) -> Dict[str, Any]:
        """ディスカバリードキュメントを取得する（取得後はキャッシュ）。"""

        if self._metadata is None:
            url = f"{self.settings.authority.rstrip('/')}/.well-known/openid-configuration"
            async with self._client() as client:
                response = await client.get(url, headers={"Accept": "application/json"})
            if response.status_code != 200:
                raise OidcError("metadata_error", f"Failed to load metadata from {url}: {response.status_code}")
            try:
                metadata = response.json()
            except ValueError as exc:
                raise OidcError("metadata_error", "Metadata is not valid json") from exc
            if not isinstance(metadata, dict):
                raise OidcError("metadata_error", "Metadata is not an object")
            self._metadata = metadata
        return self._metadata

    async def get_user(self) -> Optional[OidcUser]:
        """保存済みユーザーを返す。"""

        stored = self._token_manager.get_token(self.user_store_key)
        if not stored:
            return None
        try:
            user = OidcUser.from_json(stored)
        except (ValueError, TypeError) as exc:
            logger.warning("Discarding malformed stored user: %s", exc)
            self._token_manager.delete_token(self.user_store_key)
            return None
        self.events.load(user, raise_event=False)
        return user

    async def store_user(self, user: Optional[OidcUser]) -> None:
        if user is None:
            self._token_manager.delete_token(self.user_store_key)
        else:
            self._token_manager.set_token(self.user_store_key, user.to_json())

    async def remove_user(self) -> None:
        """保存済みユーザーを削除し、user_unloaded を通知する。"""

        await self.store_user(None)
        self.events.unload()

    async def signin_silent(self) -> OidcUser:
        """リフレッシュトークンでセッションを更新する。

        Raises:
            LoginRequiredError: 更新できるセッションが無い場合。
            OidcError: プロバイダがエラーを返した場合。
        """

        current = await self.get_user()
        if current is None or not current.refresh_token:
            raise LoginRequiredError()

        data = {
            "grant_type": "refresh_token",
            "refresh_token": current.refresh_token,
            "client_id": self.settings.client_id,
        }
        try:
            payload = await self._request_token(data)
        except OidcError as exc:
            if exc.error in _LOGIN_REQUIRED_ERRORS:
                await self.store_user(None)
                raise LoginRequiredError(exc.error_description) from exc
            raise

        try:
            user = OidcUser.from_token_response(payload, previous=current)
        except TokenDecodeError as exc:
            raise OidcError("invalid_token", str(exc)) from exc
        await self.store_user(user)
        self.events.load(user)
        return user

    async def create_signin_url(self) -> str:
        """認可エンドポイントのURLを作成し、コールバック検証用の状態を登録する。"""

        metadata = await self.get_metadata()
        state = generate_state()
        signin_state = _SigninState(
            verifier=generate_verifier(),
            nonce=generate_state(),
            redirect_uri=self.settings.redirect_uri,
        )
        params = {
            "client_id": self.settings.client_id,
            "redirect_uri": signin_state.redirect_uri,
            "response_type": self.settings.response_type,
            "scope": self.settings.scope,
            "state": state,
            "nonce": signin_state.nonce,
        }
        if "code" in self.settings.response_type.split():
            params["code_challenge"] = generate_challenge(signin_state.verifier)
            params["code_challenge_method"] = "S256"

        save_pending_signin(self._token_manager, self._signin_state_key(state), asdict(signin_state))
        return f"{metadata['authorization_endpoint']}?{httpx.QueryParams(params)}"

    async def signin_redirect(self) -> None:
        url = await self.create_signin_url()
        await asyncio.to_thread(self._open_browser, url)

    async def signin_redirect_callback(self, url: str) -> OidcUser:
        """リダイレクト結果を処理してユーザーを保存する。

        Args:
            url: プロバイダからリダイレクトされたURL。

        Returns:
            サインインしたユーザー。

        Raises:
            OidcError: エラー応答、不正な state / nonce の場合。
        """

        params = parse_callback_url(url)
        signin_state = self._pop_signin_state(params.get("state"))
        if signin_state is None:
            raise OidcError("invalid_state", "No matching state found in storage")
        if "error" in params:
            raise OidcError(params["error"], params.get("error_description", ""))

        if "code" in params:
            data = {
                "grant_type": "authorization_code",
                "code": params["code"],
                "client_id": self.settings.client_id,
                "redirect_uri": signin_state.redirect_uri,
                "code_verifier": signin_state.verifier,
            }
            payload = await self._request_token(data)
        elif "access_token" in params:
            payload = dict(params)
        else:
            raise OidcError("invalid_request", "No code or token in response")

        try:
            user = OidcUser.from_token_response(payload)
            if payload.get("id_token"):
                nonce = decode_token(payload["id_token"]).get("nonce")
                if nonce is not None and nonce != signin_state.nonce:
                    raise OidcError("invalid_nonce", "Invalid nonce in id_token")
        except TokenDecodeError as exc:
            raise OidcError("invalid_token", str(exc)) from exc

        await self.store_user(user)
        self.events.load(user)
        return user

    async def signout_redirect(self) -> None:
        """ユーザーを削除し、ブラウザでログアウトエンドポイントへリダイレクトする。"""

        metadata = await self.get_metadata()
        user = await self.get_user()
        params = {"client_id": self.settings.client_id}
        if user is not None and user.id_token:
            params["id_token_hint"] = user.id_token
        if self.settings.post_logout_redirect_uri:
            params["post_logout_redirect_uri"] = self.settings.post_logout_redirect_uri

        await self.remove_user()
        end_session = metadata.get("end_session_endpoint")
        if not end_session:
            raise OidcError("no_end_session_endpoint", "Provider does not support sign out")
        await asyncio.to_thread(self._open_browser, f"{end_session}?{httpx.QueryParams(params)}")

    def _pop_signin_state(self, state: str | None) -> _SigninState | None:
        if not state:
            return None
        values = pop_pending_signin(self._token_manager, self._signin_state_key(state))
        if values is None:
            return None
        try:
            return _SigninState(**values)
        except TypeError:
            logger.warning("Discarding incomplete sign-in state")
            return None

    def _start_silent_renew(self) -> None:
        if self._renew_task is not None and not self._renew_task.done():
            return
        self._renew_task = asyncio.get_running_loop().create_task(self._silent_renew())

    async def _silent_renew(self) -> None:
        try:
            await self.signin_silent()
        except (OidcError, httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning(f"Automatic silent renew failed: {exc}")
            self.events.raise_silent_renew_error(exc)

    async def _request_token(self, data: Dict[str, str]) -> Dict[str, Any]:
        metadata = await self.get_metadata()
        if self.settings.client_secret:
            data = {**data, "client_secret": self.settings.client_secret}
        async with self._client() as client:
            response = await client.post(
                metadata["token_endpoint"], data=data, headers={"Accept": "application/json"}
            )
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if response.status_code != 200 or not isinstance(payload, dict):
            if isinstance(payload, dict) and "error" in payload:
                raise OidcError(str(payload["error"]), str(payload.get("error_description", "")))
            raise OidcError("token_request_failed", response.text)
        if "access_token" not in payload:
            raise OidcError("invalid_token", "Token response did not contain an access token")
        return payload

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
            yield client
