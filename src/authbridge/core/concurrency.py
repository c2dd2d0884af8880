"""SDK初期化を一度だけ実行する SingleFlight ゲート."""

import asyncio
import logging
from typing import Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """最初に生成した Future をプロセス寿命の間保持し、全呼び出し元で共有する.

    失敗した Future もリセットしない。再試行は新しいインスタンスでのみ可能。
    """

    def __init__(self, name: str = "init") -> None:
        self._name = name
        self._future: Optional["asyncio.Future[T]"] = None
        self._calls = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def started(self) -> bool:
        """Future が生成済みかどうか."""
        return self._future is not None

    @property
    def calls(self) -> int:
        """factory が実行された回数（0 または 1）."""
        return self._calls

    def run(self, factory: Callable[[], Awaitable[T]]) -> "asyncio.Future[T]":
        """初回のみ factory を実行し、以降は同じ Future を返す.

        実行中のイベントループから呼び出す必要がある。
        """
        if self._future is None:
            loop = asyncio.get_running_loop()
            self._calls += 1
            self._future = asyncio.ensure_future(factory(), loop=loop)
            self._future.add_done_callback(self._log_outcome)
            logger.debug("%s: single-flight operation started", self._name)
        return self._future

    def peek(self) -> Optional["asyncio.Future[T]"]:
        """保持している Future を返す（未開始なら None）."""
        return self._future

    def _log_outcome(self, future: "asyncio.Future[T]") -> None:
        if future.cancelled():
            logger.warning("%s: single-flight operation was cancelled", self._name)
        elif future.exception() is not None:
            logger.debug("%s: single-flight operation failed", self._name)
        else:
            logger.debug("%s: single-flight operation completed", self._name)
