"""OIDC UserManager をラップする認証クライアント"""

import asyncio
import logging
from typing import Any, Dict, Optional, Union

from authbridge.clients.base import ClientCore
from authbridge.config import ClientSettings, get_location_based_uri
from authbridge.core.events import EventListener, Subscription
from authbridge.core.session import SessionState
from authbridge.errors import ClientError, ClientErrorType, FetchError, create_client_error
from authbridge.models import (
    ClientEvent,
    ClientStatus,
    ClientType,
    FetchApiTokenOptions,
    JWTPayload,
    User,
    UserTokens,
)
from authbridge.persistence import SessionStorage
from authbridge.sdk.oidc import (
    LoginRequiredError,
    OidcError,
    OidcUser,
    UserManager,
    UserManagerProtocol,
    UserManagerSettings,
)
from authbridge.storage import TokenManager

logger = logging.getLogger(__name__)

DEFAULT_CALLBACK_PATH = "/callback"


def create_user_manager(settings: ClientSettings, token_manager: TokenManager) -> UserManager:
    """クライアント設定から UserManager を作成する"""
    manager_settings = UserManagerSettings(
        authority=settings.authority,
        client_id=settings.client_id,
        redirect_uri=get_location_based_uri(settings, settings.callback_path or DEFAULT_CALLBACK_PATH),
        response_type=settings.response_type or "code",
        scope=settings.scope or "openid",
        silent_redirect_uri=get_location_based_uri(settings, settings.silent_auth_path),
        post_logout_redirect_uri=get_location_based_uri(settings, settings.logout_path),
        automatic_silent_renew=settings.automatic_silent_renew,
    )
    return UserManager(manager_settings, token_manager=token_manager, timeout_seconds=settings.http_timeout)


class OidcClient:
    """OIDC アダプタ

    UserManager のイベント（user_loaded, user_unloaded など）を
    SessionState の変更とイベントに変換する。
    """

    client_type = ClientType.OIDC

    def __init__(
        self,
        settings: ClientSettings,
        manager: Optional[UserManagerProtocol] = None,
        session: Optional[SessionState] = None,
        storage: Optional[SessionStorage] = None,
    ):
        """
        Args:
            settings: クライアント設定
            manager: 使用する UserManager。未指定時は settings から作成する。
            session: 共有する SessionState
            storage: セッションの永続化先
        """
        token_manager = TokenManager(settings.keyring_service, settings.storage_path)
        self._settings = settings
        self._session = session or SessionState(http_timeout=settings.http_timeout)
        self._storage = storage or SessionStorage(settings.client_id, token_manager)
        self._manager = manager or create_user_manager(settings, token_manager)
        self._core = ClientCore(settings, self._session, self._storage, name="oidc.init")
        self._oidc_user: Optional[OidcUser] = None
        self._bind_events()

    @property
    def session(self) -> SessionState:
        return self._session

    @property
    def manager(self) -> UserManagerProtocol:
        return self._manager

    # 初期化

    def init(self) -> "asyncio.Future[Optional[User]]":
        """セッションを復元する（何度呼んでも同じ Future を返す）"""
        return self._core.run_once(self._initialize)

    def handle_callback(self, url: Optional[str] = None) -> "asyncio.Future[Optional[User]]":
        """リダイレクト結果を処理する

        初期化前に呼ばれた場合は init と同じ Future を共有する。
        """
        return self._core.run_callback(
            url or "",
            lambda: self._process_callback(url),
            lambda: self._process_callback(url),
        )

    async def _initialize(self) -> Optional[User]:
        try:
            if self._settings.auto_sign_in:
                user = await self._manager.signin_silent()
            else:
                user = await self._manager.get_user()
        except LoginRequiredError:
            logger.debug("No session to renew")
            self.on_auth_change(False)
            return None
        except Exception as exc:
            self._fail(exc)
            raise
        return self._complete(user)

    async def _process_callback(self, url: Optional[str]) -> Optional[User]:
        try:
            if not url:
                raise OidcError("invalid_request", "Callback URL is required")
            user = await self._manager.signin_redirect_callback(url)
        except Exception as exc:
            self._fail(exc)
            raise
        return self._complete(user)

    def _complete(self, user: Optional[OidcUser]) -> Optional[User]:
        if user is not None and user.expired:
            user = None
        self._oidc_user = user
        self.on_auth_change(user is not None)
        return self.get_user()

    def _fail(self, exc: Exception) -> None:
        self.on_auth_change(False)
        self._session.set_error(create_client_error(ClientErrorType.AUTH_ERROR, exc))

    # ログイン / ログアウト

    async def login(self) -> None:
        await self._manager.signin_redirect()

    async def logout(self) -> None:
        await self._core.prepare_logout()
        try:
            await self._manager.signout_redirect()
        except Exception as exc:
            self._oidc_user = None
            self._core.abort_logout(exc)
            raise

    # 認証状態

    def on_auth_change(self, authenticated: bool) -> bool:
        claims: Optional[Dict[str, Any]] = None
        if self._oidc_user is not None:
            claims = dict(self._oidc_user.profile)
            if self._oidc_user.session_state:
                claims["session_state"] = self._oidc_user.session_state
        return self._core.apply_auth_change(authenticated, self.get_user_tokens(), claims)

    def is_authenticated(self) -> bool:
        return self._session.is_authenticated()

    def is_initialized(self) -> bool:
        return self._session.is_initialized()

    def clear_session(self) -> None:
        self._core.clear_session()

    def get_status(self) -> ClientStatus:
        return self._session.get_status()

    def set_status(self, new_status: ClientStatus) -> bool:
        return self._session.set_status(new_status)

    def get_error(self) -> Optional[ClientError]:
        return self._session.get_error()

    def set_error(self, new_error: Optional[ClientError]) -> bool:
        return self._session.set_error(new_error)

    def add_listener(self, event_type: ClientEvent, listener: EventListener) -> Subscription:
        return self._session.add_listener(event_type, listener)

    # ユーザー

    def get_user(self) -> Optional[User]:
        return self._core.get_user()

    async def get_or_load_user(self) -> Optional[User]:
        return await self._core.get_or_load_user(self.init)

    async def load_user_profile(self) -> Dict[str, Any]:
        return await self._core.load_user_profile(self._load_profile)

    async def _load_profile(self) -> Dict[str, Any]:
        user = await self._manager.get_user()
        if user is None:
            raise OidcError("not_authenticated", "No user available")
        return dict(user.profile)

    def get_user_profile(self) -> Optional[Dict[str, Any]]:
        return self._core.get_user_profile()

    def get_user_tokens(self) -> Optional[UserTokens]:
        if self._oidc_user is None:
            return None
        return {
            "access_token": self._oidc_user.access_token,
            "id_token": self._oidc_user.id_token,
            "refresh_token": self._oidc_user.refresh_token,
        }

    # APIトークン

    async def get_api_access_token(
        self, options: FetchApiTokenOptions
    ) -> Union[JWTPayload, FetchError]:
        access_token = self._oidc_user.access_token if self._oidc_user else None
        return await self._core.get_api_access_token(access_token, options)

    def get_api_tokens(self) -> JWTPayload:
        return self._session.get_api_tokens()

    def add_api_tokens(self, new_tokens: Dict[str, Any]) -> JWTPayload:
        return self._session.add_api_tokens(new_tokens)

    def remove_api_token(self, name: str) -> JWTPayload:
        return self._session.remove_api_token(name)

    # UserManager イベント

    def _bind_events(self) -> None:
        events = self._manager.events
        events.add_user_loaded(self._on_user_loaded)
        events.add_user_unloaded(self._on_user_ended)
        events.add_user_signed_out(self._on_user_ended)
        events.add_user_session_changed(self._on_user_ended)
        events.add_silent_renew_error(self._on_silent_renew_error)
        events.add_access_token_expiring(self._on_access_token_expiring)
        events.add_access_token_expired(self._on_access_token_expired)

    def _on_user_loaded(self, user: OidcUser) -> None:
        self._oidc_user = user
        self._storage.save_tokens(user.access_token, user.id_token, user.refresh_token)
        self._session.trigger(ClientEvent.CLIENT_AUTH_SUCCESS)

    def _on_user_ended(self) -> None:
        self._oidc_user = None
        self.clear_session()
        self.on_auth_change(False)

    def _on_silent_renew_error(self, error: Exception) -> None:
        self._session.set_error(create_client_error(ClientErrorType.AUTH_REFRESH_ERROR, error))

    def _on_access_token_expiring(self) -> None:
        self._session.trigger(ClientEvent.TOKEN_EXPIRING)

    def _on_access_token_expired(self) -> None:
        self._session.trigger(ClientEvent.TOKEN_EXPIRED)
