"""
EventHubの実装

クライアントの状態変化を購読者へ同期的に配信するPub/Subレジストリ。
イベント種別ごとのリスナー管理と、冪等に解除できる購読ハンドルを提供する。
"""
import logging
from typing import Any, Callable, Dict, Hashable, Optional, Set

logger = logging.getLogger(__name__)

EventListener = Callable[[Optional[Any]], None]


class Subscription:
    """購読ハンドル

    dispose() は1つの登録だけを解除し、2回目以降の呼び出しは何もしない。
    """

    def __init__(self, hub: "EventHub", event_type: Hashable, listener: EventListener):
        self._hub = hub
        self._event_type = event_type
        self._listener = listener
        self._active = True

    @property
    def event_type(self) -> Hashable:
        return self._event_type

    @property
    def active(self) -> bool:
        return self._active

    def dispose(self) -> None:
        """購読を解除する"""
        if not self._active:
            return
        self._active = False
        self._hub._remove(self._event_type, self._listener)

    def __call__(self) -> None:
        self.dispose()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.dispose()


class EventHub:
    """イベントハブ"""

    def __init__(self) -> None:
        # event_type -> Set[listener]
        self._listeners: Dict[Hashable, Set[EventListener]] = {}

    def add_listener(self, event_type: Hashable, listener: EventListener) -> Subscription:
        """
        イベントのリスナーを登録する。

        同じリスナーを同じイベントに複数回登録しても、呼び出しは1回のみ。

        Args:
            event_type: イベント種別
            listener: ペイロードを受け取るコールバック

        Returns:
            Subscription: 登録を解除するためのハンドル
        """
        self._listeners.setdefault(event_type, set()).add(listener)
        logger.debug(f"Listener added for {event_type}")
        return Subscription(self, event_type, listener)

    def _remove(self, event_type: Hashable, listener: EventListener) -> None:
        listeners = self._listeners.get(event_type)
        if listeners is None:
            return
        listeners.discard(listener)
        # セットが空になったらエントリを削除
        if not listeners:
            del self._listeners[event_type]
        logger.debug(f"Listener removed from {event_type}")

    def trigger(self, event_type: Hashable, payload: Optional[Any] = None) -> None:
        """
        イベントを配信する。

        配信開始時点のリスナーのスナップショットに対して呼び出しを行う。
        配信中に追加されたリスナーは今回の配信では呼ばれず、
        配信中に解除されたリスナーは未呼び出しであればスキップされる。
        リスナーの例外は呼び出し元へ伝播する。

        Args:
            event_type: イベント種別
            payload: リスナーへ渡すペイロード
        """
        current = self._listeners.get(event_type)
        if not current:
            return

        for listener in list(current):
            if listener not in self._listeners.get(event_type, ()):
                continue
            listener(payload)

    def listener_count(self, event_type: Hashable) -> int:
        """登録中のリスナー数を返す"""
        return len(self._listeners.get(event_type, ()))
