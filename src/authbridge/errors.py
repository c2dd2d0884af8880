"""
エラー定義

認証クライアントで使用されるエラー種別と例外クラス
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Union


class ClientErrorType(str, Enum):
    """クライアントエラー種別

    - INIT_ERROR: SDKの初期化失敗
    - AUTH_ERROR: 認証失敗
    - AUTH_REFRESH_ERROR: トークン更新失敗（ステータスは変化しない）
    - LOAD_ERROR: プロフィール読み込み失敗
    - UNEXPECTED_AUTH_CHANGE: ログアウト操作なしに認証が終了した
    - USER_DATA_ERROR: 認証済みだがユーザー情報を導出できない
    """
    INIT_ERROR = "INIT_ERROR"
    AUTH_ERROR = "AUTH_ERROR"
    AUTH_REFRESH_ERROR = "AUTH_REFRESH_ERROR"
    LOAD_ERROR = "LOAD_ERROR"
    UNEXPECTED_AUTH_CHANGE = "UNEXPECTED_AUTH_CHANGE"
    USER_DATA_ERROR = "USER_DATA_ERROR"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ClientError:
    """クライアントエラー情報

    同一性は type でのみ判定される（SessionState.set_error を参照）。

    Attributes:
        type: エラー種別
        message: エラーメッセージ
    """
    type: str
    message: str = ""


@dataclass
class FetchError:
    """トークン交換の失敗結果

    通信失敗・HTTPエラー・JSON解析失敗を区別して呼び出し元に返す。

    Attributes:
        status: HTTPステータス（HTTPエラー時のみ）
        error: 原因となった例外
        message: 表示用メッセージ
    """
    status: Optional[int] = None
    error: Optional[BaseException] = None
    message: Optional[str] = None


class AuthClientException(Exception):
    """認証クライアント例外

    ClientErrorをラップする例外クラス
    """

    def __init__(self, error: ClientError):
        """AuthClientExceptionを初期化

        Args:
            error: ClientErrorインスタンス
        """
        self.error = error
        self.log_level = ERROR_TYPE_LOG_LEVEL.get(error.type, logging.ERROR)
        super().__init__(f"[{error.type}] {error.message}")


class ConfigurationException(AuthClientException):
    """設定不備による例外"""


class TokenExchangeError(Exception):
    """トークン交換エンドポイントが2xx以外を返した"""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


ERROR_TYPE_LOG_LEVEL: Dict[str, int] = {
    ClientErrorType.INIT_ERROR: logging.ERROR,
    ClientErrorType.AUTH_ERROR: logging.ERROR,
    ClientErrorType.AUTH_REFRESH_ERROR: logging.WARNING,
    ClientErrorType.LOAD_ERROR: logging.WARNING,
    ClientErrorType.UNEXPECTED_AUTH_CHANGE: logging.WARNING,
    ClientErrorType.USER_DATA_ERROR: logging.ERROR,
}


def create_client_error(
    error_type: ClientErrorType,
    reason: Union[str, BaseException, None] = None,
) -> ClientError:
    """クライアントエラーを作成

    Args:
        error_type: エラー種別
        reason: メッセージまたは原因の例外

    Returns:
        ClientError: クライアントエラー
    """
    if reason is None:
        message = ""
    elif isinstance(reason, BaseException):
        message = str(reason) or reason.__class__.__name__
    else:
        message = reason
    return ClientError(type=error_type, message=message)
