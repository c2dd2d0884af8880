"""
外部ストアへのブリッジ

クライアントのイベントを購読し、純粋関数 reduce で StoreState に射影する。
エラー通知の表示状態を管理する ErrorPrompt も提供する。
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, List, Optional

from authbridge.clients.base import Client
from authbridge.core.events import EventHub, Subscription
from authbridge.errors import ClientError, ClientErrorType
from authbridge.models import ClientEvent, ClientStatus, User

logger = logging.getLogger(__name__)

CONNECTED = "CONNECTED"
_STATE_CHANGED = "STATE_CHANGED"

SESSION_ENDED_MESSAGE = "The session has ended without logging out in this window."

StoreListener = Callable[["StoreState"], None]


@dataclass(frozen=True)
class StoreState:
    """ストアの状態

    Attributes:
        user: 認証済みユーザー
        status: クライアントのステータス
        authenticated: 認証済みかどうか
        initialized: 初期化済みかどうか
        error: 直近のエラー
    """
    user: Optional[User] = None
    status: ClientStatus = ClientStatus.NONE
    authenticated: bool = False
    initialized: bool = False
    error: Optional[ClientError] = None


def reduce(state: StoreState, event: str, payload: Optional[Any] = None) -> StoreState:
    """
    イベントを適用した新しい状態を返す（state は変更しない）

    Args:
        state: 現在の状態
        event: イベント種別（ClientEvent または CONNECTED）
        payload: イベントのペイロード

    Returns:
        StoreState: 新しい状態。対象外のイベントでは state をそのまま返す。
    """
    if event == CONNECTED:
        client: Client = payload
        return replace(
            state,
            user=None,
            status=client.get_status(),
            authenticated=client.is_authenticated(),
            initialized=client.is_initialized(),
            error=client.get_error(),
        )
    if event == ClientEvent.AUTHORIZED:
        return replace(
            state,
            user=payload,
            status=ClientStatus.AUTHORIZED,
            authenticated=True,
            initialized=True,
        )
    if event == ClientEvent.UNAUTHORIZED:
        return replace(
            state,
            user=None,
            status=ClientStatus.UNAUTHORIZED,
            authenticated=False,
            initialized=True,
        )
    if event == ClientEvent.ERROR:
        return replace(state, error=payload)
    if event == ClientEvent.STATUS_CHANGE and payload == ClientStatus.INITIALIZING:
        return replace(state, status=ClientStatus.INITIALIZING, initialized=False)
    return state


class StoreBridge:
    """クライアントのイベントを StoreState に反映するストア"""

    _EVENTS = (
        ClientEvent.AUTHORIZED,
        ClientEvent.UNAUTHORIZED,
        ClientEvent.ERROR,
        ClientEvent.STATUS_CHANGE,
    )

    def __init__(self, client: Client):
        self._client = client
        self._state = StoreState()
        self._subscriptions: List[Subscription] = []
        self._hub = EventHub()

    @property
    def connected(self) -> bool:
        return bool(self._subscriptions)

    def connect(self) -> None:
        """クライアントの現在の状態を取り込み、イベントの購読を開始する"""
        if self.connected:
            return
        self._dispatch(CONNECTED, self._client)
        for event in self._EVENTS:
            self._subscriptions.append(
                self._client.add_listener(event, self._listener_for(event))
            )
        logger.debug("Store bridge connected")

    def disconnect(self) -> None:
        for subscription in self._subscriptions:
            subscription.dispose()
        self._subscriptions.clear()
        logger.debug("Store bridge disconnected")

    def get_state(self) -> StoreState:
        return self._state

    def subscribe(self, listener: StoreListener) -> Subscription:
        """状態が変化するたびに listener を呼び出す"""
        return self._hub.add_listener(_STATE_CHANGED, listener)

    def _listener_for(self, event: ClientEvent) -> Callable[[Optional[Any]], None]:
        return lambda payload: self._dispatch(event, payload)

    def _dispatch(self, event: str, payload: Optional[Any]) -> None:
        new_state = reduce(self._state, event, payload)
        if new_state == self._state:
            return
        self._state = new_state
        self._hub.trigger(_STATE_CHANGED, new_state)


class ErrorPrompt:
    """エラー通知の表示状態

    閉じた通知はエラー種別で記憶するため、別の種別のエラーは再び表示される。
    """

    def __init__(self, client: Client):
        self._client = client
        self._dismissed_type: Optional[str] = None

    def current(self) -> Optional[ClientError]:
        """表示すべきエラーを返す"""
        error = self._client.get_error()
        if error is None or error.type == self._dismissed_type:
            return None
        return error

    def dismiss(self) -> None:
        error = self._client.get_error()
        self._dismissed_type = error.type if error else None

    def describe(self) -> Optional[str]:
        """表示するメッセージを返す"""
        error = self.current()
        if error is None:
            return None
        if error.type == ClientErrorType.UNEXPECTED_AUTH_CHANGE:
            return SESSION_ENDED_MESSAGE
        return f"Error code: {error.type}. Message: {error.message or ''}"
