"""認証クライアントの共通契約。

Keycloak / OIDC の両アダプタが実装する Client プロトコルと、
両者が合成して使う ClientCore（状態遷移・ユーザー解決・トークン交換）を定義する。
"""

from __future__ import annotations

import asyncio
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Mapping,
    Optional,
    Protocol,
    Union,
    runtime_checkable,
)

from authbridge.config import ClientSettings, get_token_uri
from authbridge.core.concurrency import SingleFlight
from authbridge.core.events import EventListener, Subscription
from authbridge.core.session import SessionState
from authbridge.errors import ClientError, ClientErrorType, FetchError, create_client_error
from authbridge.models import (
    ClientEvent,
    ClientStatus,
    FetchApiTokenConfiguration,
    FetchApiTokenOptions,
    JWTPayload,
    User,
    UserTokens,
)
from authbridge.persistence import SessionStorage, get_session_identifier

logger = logging.getLogger(__name__)

NOT_AUTHENTICATED_MESSAGE = "Client is not authenticated"

USER_CLAIMS = (
    "sub",
    "session_state",
    "sid",
    "name",
    "given_name",
    "family_name",
    "email",
    "preferred_username",
)


@runtime_checkable
class Client(Protocol):
    """認証クライアントの振る舞いの契約"""

    def init(self) -> "asyncio.Future[Optional[User]]": ...

    def handle_callback(self, url: Optional[str] = None) -> "asyncio.Future[Optional[User]]": ...

    async def login(self) -> None: ...

    async def logout(self) -> None: ...

    def is_authenticated(self) -> bool: ...

    def is_initialized(self) -> bool: ...

    def clear_session(self) -> None: ...

    def get_user(self) -> Optional[User]: ...

    async def get_or_load_user(self) -> Optional[User]: ...

    async def load_user_profile(self) -> Dict[str, Any]: ...

    def get_user_profile(self) -> Optional[Dict[str, Any]]: ...

    def get_status(self) -> ClientStatus: ...

    def set_status(self, new_status: ClientStatus) -> bool: ...

    def get_error(self) -> Optional[ClientError]: ...

    def set_error(self, new_error: Optional[ClientError]) -> bool: ...

    def add_listener(self, event_type: ClientEvent, listener: EventListener) -> Subscription: ...

    def on_auth_change(self, authenticated: bool) -> bool: ...

    async def get_api_access_token(
        self, options: FetchApiTokenOptions
    ) -> Union[JWTPayload, FetchError]: ...

    def get_api_tokens(self) -> JWTPayload: ...

    def add_api_tokens(self, new_tokens: Dict[str, Any]) -> JWTPayload: ...

    def remove_api_token(self, name: str) -> JWTPayload: ...

    def get_user_tokens(self) -> Optional[UserTokens]: ...


def user_from_claims(claims: Optional[Mapping[str, Any]]) -> Optional[User]:
    """
    トークンのクレームからユーザーを作成する。

    email とセッションIDが無い場合は None を返す。

    Args:
        claims: アクセストークンまたはIDトークンのクレーム

    Returns:
        Optional[User]: ユーザー情報
    """
    if not claims or not claims.get("email") or get_session_identifier(claims) is None:
        return None
    return {
        key: claims[key]
        for key in USER_CLAIMS
        if isinstance(claims.get(key), (str, int, bool))
    }


class ClientCore:
    """アダプタ間で共通の処理

    アダプタはこのクラスを保持し、SDK固有の値（トークンとクレーム）を渡して呼び出す。
    """

    def __init__(
        self,
        settings: ClientSettings,
        session: SessionState,
        storage: SessionStorage,
        name: str,
    ):
        self.settings = settings
        self.session = session
        self.storage = storage
        self.gate: SingleFlight[Optional[User]] = SingleFlight(name)
        self._callbacks: Dict[str, SingleFlight[Optional[User]]] = {}
        self._profile: Optional[Dict[str, Any]] = None

    def run_once(
        self, factory: Callable[[], Awaitable[Optional[User]]]
    ) -> "asyncio.Future[Optional[User]]":
        """
        初期化を一度だけ実行し、共有の Future を返す。

        初回呼び出し時はステータスを同期的に INITIALIZING にする。
        """
        if not self.gate.started:
            asyncio.get_running_loop()
            if self.session.get_status() == ClientStatus.NONE:
                self.session.set_status(ClientStatus.INITIALIZING)
        return self.gate.run(factory)

    def run_callback(
        self,
        url: str,
        initial: Callable[[], Awaitable[Optional[User]]],
        followup: Callable[[], Awaitable[Optional[User]]],
    ) -> "asyncio.Future[Optional[User]]":
        """
        リダイレクト結果を処理する。

        初期化前であれば初期化そのものとして実行する。初期化後は初期化の完了を待ってから
        URLごとに一度だけ followup を実行する。初期化が失敗していればその失敗を返す。
        """
        if not self.gate.started:
            return self.run_once(initial)
        flight = self._callbacks.get(url)
        if flight is None:
            flight = SingleFlight(f"{self.gate.name}-callback")
            self._callbacks[url] = flight
        init_future = self.gate.peek()

        async def after_init() -> Optional[User]:
            await asyncio.shield(init_future)
            return await followup()

        return flight.run(after_init)

    def apply_auth_change(
        self,
        authenticated: bool,
        tokens: Optional[UserTokens],
        claims: Optional[Mapping[str, Any]],
    ) -> bool:
        """
        認証状態の遷移を適用する。

        Args:
            authenticated: 要求された認証状態
            tokens: SDKの現在のトークン
            claims: ユーザー解決に使うクレーム

        Returns:
            bool: ステータスが変化した場合のみ True
        """
        session = self.session
        if session.is_initialized() and authenticated == session.is_authenticated():
            return False

        user: Optional[User] = None
        if authenticated:
            user = self._resolve_user(tokens, claims)
            if user is None:
                session.set_error(
                    create_client_error(
                        ClientErrorType.USER_DATA_ERROR,
                        "Authenticated session has no usable user data",
                    )
                )
                authenticated = False

        if authenticated:
            session.set_stored_user(user)
            changed = session.set_status(ClientStatus.AUTHORIZED)
            if changed:
                session.trigger(ClientEvent.AUTHORIZED, user)
            return changed

        self.clear_session()
        changed = session.set_status(ClientStatus.UNAUTHORIZED)
        if changed:
            session.trigger(ClientEvent.UNAUTHORIZED)
        return changed

    def _resolve_user(
        self,
        tokens: Optional[UserTokens],
        claims: Optional[Mapping[str, Any]],
    ) -> Optional[User]:
        if tokens:
            self.storage.save_tokens(
                tokens.get("access_token"),
                tokens.get("id_token"),
                tokens.get("refresh_token"),
            )
        user = self.storage.get_user(claims)
        if user is not None:
            return user
        user = user_from_claims(claims)
        if user is not None:
            self.storage.save_user(user, claims)
        return user

    def clear_session(self) -> None:
        """永続化されたセッションと保持中のユーザーを削除する"""
        self.storage.clear()
        self.session.set_stored_user(None)

    def get_user(self) -> Optional[User]:
        if not self.session.is_authenticated():
            return None
        return self.session.get_stored_user()

    async def get_or_load_user(
        self, init: Callable[[], Awaitable[Optional[User]]]
    ) -> Optional[User]:
        """
        ユーザーを返す。未初期化の場合のみ初期化を待つ。

        Args:
            init: 初期化を開始する関数（アダプタの init）
        """
        user = self.get_user()
        if user is not None:
            return user
        if self.session.is_initialized():
            return None
        await init()
        return self.get_user()

    async def load_user_profile(
        self, loader: Callable[[], Awaitable[Dict[str, Any]]]
    ) -> Dict[str, Any]:
        """
        プロフィールを読み込む。失敗時は LOAD_ERROR を設定して再送出する。
        """
        try:
            profile = await loader()
        except Exception as exc:
            self._profile = None
            self.session.set_error(create_client_error(ClientErrorType.LOAD_ERROR, exc))
            raise
        self._profile = profile
        return profile

    def get_user_profile(self) -> Optional[Dict[str, Any]]:
        if self._profile is not None:
            return self._profile
        return self.session.get_stored_user()

    async def prepare_logout(self) -> None:
        """LOGGING_OUT を配信し、永続化データとAPIトークンを削除する"""
        self.session.begin_logout()
        self.clear_session()
        self.session.clear_api_tokens()
        self._profile = None

    def abort_logout(self, exc: BaseException) -> None:
        """SDK側のログアウトが失敗した場合でもローカルでは未認証にする"""
        logger.warning("Logout failed, clearing local session: %s", exc)
        self.apply_auth_change(False, None, None)

    async def get_api_access_token(
        self, access_token: Optional[str], options: FetchApiTokenOptions
    ) -> Union[JWTPayload, FetchError]:
        """
        セッションのアクセストークンでAPIアクセストークンを交換する。

        Args:
            access_token: SDKの現在のアクセストークン
            options: 交換オプション

        Returns:
            成功時はトークンペイロード、失敗時は FetchError
        """
        if not access_token:
            return FetchError(message=NOT_AUTHENTICATED_MESSAGE)
        configuration = FetchApiTokenConfiguration.from_options(
            options, get_token_uri(self.settings), access_token
        )
        return await self.session.fetch_api_token(configuration)
