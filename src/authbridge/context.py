"""
クライアントコンテキスト

アプリケーションのコンポジションルートが所有するオブジェクト群。
クライアント・ストアブリッジ・エラー通知をまとめて生成し、
利用側には読み取り専用のハンドルを渡す。
"""

import asyncio
import logging
from typing import Any, Optional

from authbridge.bridge import ErrorPrompt, StoreBridge, StoreState
from authbridge.clients import Client, create_client
from authbridge.config import ClientSettings, configure_logging
from authbridge.core.events import EventListener, Subscription
from authbridge.core.session import SessionState
from authbridge.errors import ClientError
from authbridge.models import ClientEvent, ClientStatus, User
from authbridge.persistence import SessionStorage

logger = logging.getLogger(__name__)


class ClientHandle:
    """利用側に渡す読み取り専用のクライアント参照

    状態の参照とリスナー登録のみを許可する。
    """

    def __init__(self, client: Client):
        self._client = client

    def get_status(self) -> ClientStatus:
        return self._client.get_status()

    def get_error(self) -> Optional[ClientError]:
        return self._client.get_error()

    def get_user(self) -> Optional[User]:
        return self._client.get_user()

    def is_authenticated(self) -> bool:
        return self._client.is_authenticated()

    def is_initialized(self) -> bool:
        return self._client.is_initialized()

    async def get_or_load_user(self) -> Optional[User]:
        return await self._client.get_or_load_user()

    def add_listener(self, event_type: ClientEvent, listener: EventListener) -> Subscription:
        return self._client.add_listener(event_type, listener)


class ClientContext:
    """クライアントと関連オブジェクトの所有者"""

    def __init__(
        self,
        settings: ClientSettings,
        *,
        session: Optional[SessionState] = None,
        storage: Optional[SessionStorage] = None,
        sdk: Optional[Any] = None,
        connect_store: bool = True,
    ):
        """
        Args:
            settings: クライアント設定
            session: 共有する SessionState
            storage: セッションの永続化先
            sdk: 上流SDK
            connect_store: 作成時にストアブリッジを接続するかどうか
        """
        configure_logging(settings)
        self.settings = settings
        self.client = create_client(settings, session=session, storage=storage, sdk=sdk)
        self.bridge = StoreBridge(self.client)
        self.error_prompt = ErrorPrompt(self.client)
        if connect_store:
            self.bridge.connect()

    def handle(self) -> ClientHandle:
        return ClientHandle(self.client)

    def get_state(self) -> StoreState:
        return self.bridge.get_state()

    def start(self) -> "asyncio.Future[Optional[User]]":
        """クライアントを初期化する（共有の Future を返す）"""
        return self.client.init()

    def start_from_callback(self, callback_url: str) -> "asyncio.Future[Optional[User]]":
        """リダイレクト結果を処理してクライアントを初期化する"""
        return self.client.handle_callback(callback_url)

    def close(self) -> None:
        self.bridge.disconnect()
