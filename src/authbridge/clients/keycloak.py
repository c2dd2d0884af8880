"""Keycloak SDK をラップする認証クライアント"""

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
from authbridge.sdk.keycloak import (
    Keycloak,
    KeycloakConfig,
    KeycloakInitOptions,
    KeycloakInstance,
    KeycloakLoginOptions,
    KeycloakLogoutOptions,
)
from authbridge.storage import TokenManager

logger = logging.getLogger(__name__)


class KeycloakClient:
    """Keycloak アダプタ

    SDKのフック（on_ready, on_auth_success など）を SessionState の変更と
    イベントに変換する。
    """

    client_type = ClientType.KEYCLOAK

    def __init__(
        self,
        settings: ClientSettings,
        keycloak: Optional[KeycloakInstance] = None,
        session: Optional[SessionState] = None,
        storage: Optional[SessionStorage] = None,
    ):
        """
        Args:
            settings: クライアント設定
            keycloak: 使用するSDK。未指定時は settings から作成する。
            session: 共有する SessionState
            storage: セッションの永続化先
        """
        self._settings = settings
        self._session = session or SessionState(http_timeout=settings.http_timeout)
        token_manager = TokenManager(settings.keyring_service, settings.storage_path)
        self._storage = storage or SessionStorage(settings.client_id, token_manager)
        self._keycloak = keycloak or Keycloak(
            KeycloakConfig(url=settings.url, realm=settings.realm, client_id=settings.client_id),
            timeout_seconds=settings.http_timeout,
            token_manager=token_manager,
        )
        self._core = ClientCore(settings, self._session, self._storage, name="keycloak.init")
        self._bind_events()

    @property
    def session(self) -> SessionState:
        return self._session

    @property
    def keycloak(self) -> KeycloakInstance:
        return self._keycloak

    # 初期化

    def init(self) -> "asyncio.Future[Optional[User]]":
        """SDKを初期化する（何度呼んでも同じ Future を返す）"""
        return self._core.run_once(lambda: self._initialize(None))

    def handle_callback(self, url: Optional[str] = None) -> "asyncio.Future[Optional[User]]":
        """リダイレクト結果を処理する

        初期化前であれば SDK の初期化で処理し、初期化後であれば SDK に直接渡す。
        """
        if url is None:
            return self.init()
        return self._core.run_callback(
            url,
            lambda: self._initialize(url),
            lambda: self._process_callback(url),
        )

    async def _initialize(self, callback_url: Optional[str]) -> Optional[User]:
        options = self._init_options(callback_url)
        logger.debug(f"Initializing Keycloak (on_load={options.on_load}, flow={options.flow})")
        try:
            authenticated = await self._keycloak.init(options)
        except Exception as exc:
            self._session.set_error(create_client_error(ClientErrorType.INIT_ERROR, exc))
            self.on_auth_change(False)
            raise
        self.on_auth_change(bool(authenticated))
        return self.get_user()

    async def _process_callback(self, url: str) -> Optional[User]:
        try:
            authenticated = await self._keycloak.handle_callback(url)
        except Exception as exc:
            self.on_auth_change(False)
            self._session.set_error(create_client_error(ClientErrorType.AUTH_ERROR, exc))
            raise
        self.on_auth_change(bool(authenticated))
        return self.get_user()

    def _init_options(self, callback_url: Optional[str]) -> KeycloakInitOptions:
        settings = self._settings
        stored = self._storage.get_tokens()
        return KeycloakInitOptions(
            on_load=settings.login_type or "check-sso",
            flow=settings.flow or "standard",
            token=stored["token"],
            id_token=stored["idToken"],
            refresh_token=stored["refreshToken"],
            redirect_uri=get_location_based_uri(settings, settings.callback_path),
            silent_check_sso_redirect_uri=get_location_based_uri(settings, settings.silent_auth_path),
            callback_url=callback_url,
            scope=settings.scope,
        )

    # ログイン / ログアウト

    async def login(self) -> None:
        await self._keycloak.login(
            KeycloakLoginOptions(
                redirect_uri=get_location_based_uri(self._settings, self._settings.callback_path),
                scope=self._settings.scope,
            )
        )

    async def logout(self) -> None:
        await self._core.prepare_logout()
        try:
            await self._keycloak.logout(
                KeycloakLogoutOptions(
                    redirect_uri=get_location_based_uri(self._settings, self._settings.logout_path)
                )
            )
        except Exception as exc:
            self._core.abort_logout(exc)
            raise

    # 認証状態

    def on_auth_change(self, authenticated: bool) -> bool:
        claims: Dict[str, Any] = {
            **(self._keycloak.id_token_parsed or {}),
            **(self._keycloak.token_parsed or {}),
        }
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
        return await self._core.load_user_profile(self._keycloak.load_user_profile)

    def get_user_profile(self) -> Optional[Dict[str, Any]]:
        return self._core.get_user_profile()

    def get_user_tokens(self) -> Optional[UserTokens]:
        if not self._keycloak.token:
            return None
        return {
            "access_token": self._keycloak.token,
            "id_token": self._keycloak.id_token,
            "refresh_token": self._keycloak.refresh_token,
        }

    # APIトークン

    async def get_api_access_token(
        self, options: FetchApiTokenOptions
    ) -> Union[JWTPayload, FetchError]:
        return await self._core.get_api_access_token(self._keycloak.token, options)

    def get_api_tokens(self) -> JWTPayload:
        return self._session.get_api_tokens()

    def add_api_tokens(self, new_tokens: Dict[str, Any]) -> JWTPayload:
        return self._session.add_api_tokens(new_tokens)

    def remove_api_token(self, name: str) -> JWTPayload:
        return self._session.remove_api_token(name)

    # SDKフック

    def _bind_events(self) -> None:
        keycloak = self._keycloak
        keycloak.on_ready = self._on_ready
        keycloak.on_auth_success = self._on_auth_success
        keycloak.on_auth_error = self._on_auth_error
        keycloak.on_auth_refresh_success = self._on_auth_refresh_success
        keycloak.on_auth_refresh_error = self._on_auth_refresh_error
        keycloak.on_auth_logout = self._on_auth_logout
        keycloak.on_token_expired = self._on_token_expired

    def _on_ready(self, authenticated: bool) -> None:
        self._session.trigger(ClientEvent.CLIENT_READY, authenticated)

    def _on_auth_success(self) -> None:
        self._session.trigger(ClientEvent.CLIENT_AUTH_SUCCESS)

    def _on_auth_error(self, error_data: Optional[Dict[str, str]] = None) -> None:
        message = (error_data or {}).get("error_description", "")
        self.on_auth_change(False)
        self._session.set_error(create_client_error(ClientErrorType.AUTH_ERROR, message))

    def _on_auth_refresh_success(self) -> None:
        tokens = self.get_user_tokens()
        if tokens:
            self._storage.save_tokens(
                tokens["access_token"], tokens["id_token"], tokens["refresh_token"]
            )

    def _on_auth_refresh_error(self) -> None:
        self._session.set_error(
            create_client_error(ClientErrorType.AUTH_REFRESH_ERROR, "Token refresh failed")
        )

    def _on_auth_logout(self) -> None:
        self.clear_session()
        self.on_auth_change(False)

    def _on_token_expired(self) -> None:
        self._session.trigger(ClientEvent.TOKEN_EXPIRED)
