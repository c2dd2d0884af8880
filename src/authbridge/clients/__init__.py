"""認証クライアント - 設定に応じたアダプタの生成"""

import logging
from typing import Any, Optional

from authbridge.clients.base import Client, ClientCore, user_from_claims
from authbridge.clients.keycloak import KeycloakClient
from authbridge.clients.oidc import OidcClient
from authbridge.config import ClientSettings
from authbridge.core.session import SessionState
from authbridge.models import ClientType
from authbridge.persistence import SessionStorage

logger = logging.getLogger(__name__)


def create_client(
    settings: ClientSettings,
    *,
    session: Optional[SessionState] = None,
    storage: Optional[SessionStorage] = None,
    sdk: Optional[Any] = None,
) -> Client:
    """
    client_type に応じたアダプタを作成する

    Args:
        settings: クライアント設定
        session: 共有する SessionState
        storage: セッションの永続化先
        sdk: 上流SDK（Keycloak インスタンスまたは UserManager）

    Returns:
        Client: 作成したアダプタ
    """
    settings.require_valid()
    logger.debug(f"Creating {settings.client_type.value} client for {settings.client_id}")
    if settings.client_type == ClientType.KEYCLOAK:
        return KeycloakClient(settings, keycloak=sdk, session=session, storage=storage)
    return OidcClient(settings, manager=sdk, session=session, storage=storage)


__all__ = [
    "Client",
    "ClientCore",
    "KeycloakClient",
    "OidcClient",
    "create_client",
    "user_from_claims",
]
