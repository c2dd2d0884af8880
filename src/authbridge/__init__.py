"""
authbridge - イベント駆動の認証クライアント

Keycloak と標準 OpenID Connect の2種類のSDKを、単一の Client 契約の背後にまとめる。
"""

from authbridge.bridge import ErrorPrompt, StoreBridge, StoreState
from authbridge.clients import Client, KeycloakClient, OidcClient, create_client
from authbridge.config import ClientSettings
from authbridge.context import ClientContext, ClientHandle
from authbridge.core import EventHub, SessionState, SingleFlight, Subscription
from authbridge.errors import ClientError, ClientErrorType, FetchError
from authbridge.models import (
    ClientEvent,
    ClientStatus,
    ClientType,
    FetchApiTokenOptions,
)

__version__ = "0.1.0"

__all__ = [
    "Client",
    "ClientContext",
    "ClientError",
    "ClientErrorType",
    "ClientEvent",
    "ClientHandle",
    "ClientSettings",
    "ClientStatus",
    "ClientType",
    "ErrorPrompt",
    "EventHub",
    "FetchApiTokenOptions",
    "FetchError",
    "KeycloakClient",
    "OidcClient",
    "SessionState",
    "SingleFlight",
    "StoreBridge",
    "StoreState",
    "Subscription",
    "create_client",
]
