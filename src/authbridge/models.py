"""
共通データモデル

認証クライアント全体で使用されるデータ構造を定義
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Union


class ClientStatus(str, Enum):
    """認証ライフサイクルのステータス

    NONE → INITIALIZING → {AUTHORIZED, UNAUTHORIZED} の順に遷移し、
    初期化完了後は AUTHORIZED と UNAUTHORIZED の間のみを行き来する。
    """
    NONE = "NONE"
    INITIALIZING = "INITIALIZING"
    AUTHORIZED = "AUTHORIZED"
    UNAUTHORIZED = "UNAUTHORIZED"

    def __str__(self) -> str:
        return self.value


class ClientEvent(str, Enum):
    """EventHubで配信されるイベント種別"""
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_EXPIRING = "TOKEN_EXPIRING"
    ERROR = "ERROR"
    STATUS_CHANGE = "STATUS_CHANGE"
    AUTHORIZATION_TERMINATED = "AUTHORIZATION_TERMINATED"
    LOGGING_OUT = "LOGGING_OUT"
    CLIENT_READY = "CLIENT_READY"
    CLIENT_AUTH_SUCCESS = "CLIENT_AUTH_SUCCESS"
    # ステータスと同名のイベント
    NONE = "NONE"
    INITIALIZING = "INITIALIZING"
    AUTHORIZED = "AUTHORIZED"
    UNAUTHORIZED = "UNAUTHORIZED"

    def __str__(self) -> str:
        return self.value


class ClientType(str, Enum):
    """ラップする上流SDKの種別"""
    KEYCLOAK = "keycloak"
    OIDC = "oidc"

    def __str__(self) -> str:
        return self.value


User = Dict[str, Union[str, int, bool]]
JWTPayload = Dict[str, str]
UserTokens = Dict[str, Optional[str]]


@dataclass(frozen=True)
class FetchApiTokenOptions:
    """APIアクセストークン交換の呼び出しオプション

    Attributes:
        grant_type: 交換に使用するグラント種別
        audience: 取得したいトークンのオーディエンス
        permission: 要求するパーミッション
    """
    grant_type: str
    audience: str
    permission: str


@dataclass(frozen=True)
class FetchApiTokenConfiguration:
    """トークン交換リクエスト全体の設定

    Attributes:
        uri: トークンエンドポイントのURI
        access_token: Bearerとして送信するセッションのアクセストークン
        grant_type: グラント種別
        audience: オーディエンス
        permission: パーミッション
    """
    uri: str
    access_token: str
    grant_type: str
    audience: str
    permission: str

    @classmethod
    def from_options(
        cls, options: FetchApiTokenOptions, uri: str, access_token: str
    ) -> "FetchApiTokenConfiguration":
        """呼び出しオプションとURI/トークンから設定を組み立てる"""
        return cls(
            uri=uri,
            access_token=access_token,
            grant_type=options.grant_type,
            audience=options.audience,
            permission=options.permission,
        )
