"""クライアント共通の状態管理基盤"""

from authbridge.core.concurrency import SingleFlight
from authbridge.core.events import EventHub, EventListener, Subscription
from authbridge.core.session import SessionState
from authbridge.core.token_exchange import fetch_api_token

__all__ = [
    "EventHub",
    "EventListener",
    "SessionState",
    "SingleFlight",
    "Subscription",
    "fetch_api_token",
]
