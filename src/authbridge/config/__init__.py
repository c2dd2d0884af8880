"""設定管理 - クライアント設定の読み込みとURI解決"""

from authbridge.config.settings import (
    ClientSettings,
    configure_logging,
    get_location_based_uri,
    get_token_uri,
)

__all__ = [
    "ClientSettings",
    "configure_logging",
    "get_location_based_uri",
    "get_token_uri",
]
