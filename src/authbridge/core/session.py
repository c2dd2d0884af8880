"""
SessionStateの実装

ステータス・直近のエラー・ユーザー・APIトークンキャッシュを保持し、
変更をEventHub経由で通知するセッション状態コンテナ。
"""

import logging
from typing import Any, Dict, Optional, Union

import httpx

from authbridge.core.events import EventHub, EventListener, Subscription
from authbridge.core.token_exchange import fetch_api_token
from authbridge.errors import ERROR_TYPE_LOG_LEVEL, ClientError, ClientErrorType, FetchError
from authbridge.models import (
    ClientEvent,
    ClientStatus,
    FetchApiTokenConfiguration,
    JWTPayload,
    User,
)

logger = logging.getLogger(__name__)

_RESOLVED_STATUSES = (ClientStatus.AUTHORIZED, ClientStatus.UNAUTHORIZED)


class SessionState:
    """セッション状態コンテナ

    set_status / set_error の戻り値は「実際に変化したか」を表し、
    アダプタはこれを見て AUTHORIZED / UNAUTHORIZED の追加配信を判断する。
    """

    def __init__(
        self,
        hub: Optional[EventHub] = None,
        detect_unexpected_auth_change: bool = True,
        http_client: Optional[httpx.AsyncClient] = None,
        http_timeout: float = 30.0,
    ):
        """
        Args:
            hub: 使用するEventHub。未指定時は新規作成する。
            detect_unexpected_auth_change: ログアウト操作なしの認証終了を
                UNEXPECTED_AUTH_CHANGE として検出するかどうか。
            http_client: トークン交換に使用するHTTPクライアント。
            http_timeout: トークン交換のタイムアウト秒数。
        """
        self._hub = hub or EventHub()
        self._status = ClientStatus.NONE
        self._error: Optional[ClientError] = None
        self._user: Optional[User] = None
        self._api_tokens: JWTPayload = {}
        self._detect_unexpected = detect_unexpected_auth_change
        self._was_authorized = False
        self._http_client = http_client
        self._http_timeout = http_timeout

    @property
    def hub(self) -> EventHub:
        return self._hub

    def add_listener(self, event_type: ClientEvent, listener: EventListener) -> Subscription:
        return self._hub.add_listener(event_type, listener)

    def trigger(self, event_type: ClientEvent, payload: Optional[Any] = None) -> None:
        self._hub.trigger(event_type, payload)

    # ステータス

    def get_status(self) -> ClientStatus:
        return self._status

    def set_status(self, new_status: ClientStatus) -> bool:
        """
        ステータスを変更する。

        初期化完了後に NONE / INITIALIZING へ戻す遷移は拒否する。

        Args:
            new_status: 新しいステータス

        Returns:
            bool: ステータスが変化した場合のみ True
        """
        new_status = ClientStatus(new_status)
        if new_status == self._status:
            return False
        if self.is_initialized() and new_status not in _RESOLVED_STATUSES:
            logger.warning(f"Refusing status transition {self._status.value} -> {new_status.value}")
            return False

        previous = self._status
        self._status = new_status
        logger.info(f"Client status changed: {previous.value} -> {self._status.value}")
        self._hub.trigger(ClientEvent.STATUS_CHANGE, self._status)
        self._detect_auth_change(previous, self._status)
        return True

    def is_authenticated(self) -> bool:
        return self._status == ClientStatus.AUTHORIZED

    def is_initialized(self) -> bool:
        return self._status in _RESOLVED_STATUSES

    # エラー

    def get_error(self) -> Optional[ClientError]:
        return self._error

    def set_error(self, new_error: Optional[ClientError]) -> bool:
        """
        エラーを設定する。

        現在のエラーと種別が同じ場合は何もしない（メッセージの違いは無視）。

        Args:
            new_error: 新しいエラー。None でクリア。

        Returns:
            bool: エラー種別が変化した場合のみ True
        """
        old_type = self._error.type if self._error else None
        new_type = new_error.type if new_error else None
        if old_type == new_type:
            return False

        self._error = new_error
        if new_error is not None:
            logger.log(
                ERROR_TYPE_LOG_LEVEL.get(new_error.type, logging.ERROR),
                f"Client error set: {new_error.type} {new_error.message}".rstrip(),
            )
        self._hub.trigger(ClientEvent.ERROR, self._error)
        return True

    # ユーザー

    def get_stored_user(self) -> Optional[User]:
        return self._user

    def set_stored_user(self, new_user: Optional[User]) -> None:
        self._user = new_user

    # ログアウトと予期しない認証終了の検出

    def begin_logout(self) -> None:
        """LOGGING_OUT を配信し、次の UNAUTHORIZED を意図した遷移として扱う"""
        self._was_authorized = False
        self._hub.trigger(ClientEvent.LOGGING_OUT)

    def _detect_auth_change(self, previous: ClientStatus, current: ClientStatus) -> None:
        if current == ClientStatus.AUTHORIZED:
            self._was_authorized = True
            return
        if current != ClientStatus.UNAUTHORIZED or previous != ClientStatus.AUTHORIZED:
            return
        # 別ウィンドウや期限切れでセッションが終了した
        if self._was_authorized and self._detect_unexpected:
            self.set_error(ClientError(type=ClientErrorType.UNEXPECTED_AUTH_CHANGE, message=""))
        self._was_authorized = False

    # APIトークンキャッシュ

    def get_api_tokens(self) -> JWTPayload:
        return dict(self._api_tokens)

    def add_api_tokens(self, new_tokens: Dict[str, Any]) -> JWTPayload:
        self._api_tokens.update(new_tokens)
        return self.get_api_tokens()

    def remove_api_token(self, name: str) -> JWTPayload:
        self._api_tokens.pop(name, None)
        return self.get_api_tokens()

    def clear_api_tokens(self) -> None:
        self._api_tokens.clear()

    async def fetch_api_token(
        self, configuration: FetchApiTokenConfiguration
    ) -> Union[JWTPayload, FetchError]:
        """
        トークン交換を実行し、成功時はペイロードをキャッシュへマージする。

        Args:
            configuration: 交換リクエストの設定

        Returns:
            成功時はトークンペイロード、失敗時は FetchError
        """
        result = await fetch_api_token(
            configuration, http_client=self._http_client, timeout=self._http_timeout
        )
        if isinstance(result, FetchError):
            return result
        self.add_api_tokens(result)
        return result
