"""Pydantic V2 ベースのクライアント設定モデル"""

import logging
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Union

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from authbridge.errors import ClientError, ClientErrorType, ConfigurationException
from authbridge.models import ClientType

logger = logging.getLogger(__name__)

_BOOLEAN_FIELDS = ("auto_sign_in", "automatic_silent_renew", "enable_logging")


class ClientSettings(BaseSettings):
    """認証クライアントの設定"""

    model_config = SettingsConfigDict(
        env_prefix="OIDC_",
        env_file=".env",
        extra="ignore",
    )

    # プロバイダ設定
    client_type: ClientType = ClientType.OIDC
    url: str = Field(default="", description="OIDC/OAuth2 エンドポイントのURL")
    realm: str = ""
    client_id: str = ""

    # リダイレクト先（origin からの相対パス）
    callback_path: Optional[str] = None
    logout_path: str = "/"
    silent_auth_path: Optional[str] = None
    origin: str = "http://localhost:3000"

    # サインイン設定
    response_type: Optional[str] = None
    scope: Optional[str] = None
    auto_sign_in: bool = True
    automatic_silent_renew: bool = True
    enable_logging: bool = False
    login_type: Optional[Literal["check-sso", "login-required"]] = None
    flow: Optional[Literal["standard", "implicit", "hybrid"]] = None

    # トークン交換
    token_exchange_path: Optional[str] = None

    # 永続化と通信
    keyring_service: str = "authbridge"
    storage_path: Optional[Path] = None
    http_timeout: float = Field(default=30.0, gt=0)

    @field_validator(*_BOOLEAN_FIELDS, mode="before")
    @classmethod
    def coerce_env_boolean(cls, value: Any) -> Any:
        """環境変数の真偽値表記を解釈する（空文字は False）"""
        if isinstance(value, bool) or value is None:
            return value
        text = str(value).strip().lower()
        if text in ("", "false", "0"):
            return False
        if text in ("true", "1"):
            return True
        return value

    @field_validator("login_type", "flow", "callback_path", "silent_auth_path", mode="before")
    @classmethod
    def empty_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def authority(self) -> str:
        """OIDC authority（url + /realms/ + realm）"""
        return f"{self.url}/realms/{self.realm}"

    def is_valid(self) -> bool:
        """url と client_id が揃っているか"""
        return bool(self.url and self.client_id)

    def require_valid(self) -> None:
        """設定不備の場合は ConfigurationException を送出する"""
        if not self.is_valid():
            raise ConfigurationException(
                ClientError(
                    type=ClientErrorType.INIT_ERROR,
                    message="url and client_id must be configured",
                )
            )

    @classmethod
    def from_yaml(cls, path: Union[str, Path], **overrides: Any) -> "ClientSettings":
        """YAMLファイルから設定を読み込む

        Args:
            path: 設定ファイルのパス
            **overrides: ファイルの値を上書きする値

        Returns:
            ClientSettings: 読み込んだ設定
        """
        file_path = Path(path)
        try:
            with file_path.open("r", encoding="utf-8") as file:
                data = yaml.safe_load(file) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationException(
                ClientError(
                    type=ClientErrorType.INIT_ERROR,
                    message=f"Failed to parse {file_path}: {exc}",
                )
            ) from exc

        if not isinstance(data, dict):
            raise ConfigurationException(
                ClientError(
                    type=ClientErrorType.INIT_ERROR,
                    message=f"{file_path} must contain a mapping",
                )
            )
        merged: Dict[str, Any] = {**data, **overrides}
        return cls(**merged)


def get_location_based_uri(settings: ClientSettings, path: Optional[str]) -> Optional[str]:
    """origin を基準にパスを解決する（呼び出し時点の origin を使用）"""
    if path is None:
        return None
    return f"{settings.origin.rstrip('/')}{path}"


def get_token_uri(settings: ClientSettings) -> str:
    """トークン交換エンドポイントのURIを返す"""
    if settings.token_exchange_path:
        return f"{settings.url}{settings.token_exchange_path}"
    return f"{settings.url}/realms/{settings.realm}/protocol/openid-connect/token"


def configure_logging(settings: ClientSettings) -> None:
    """enable_logging が有効な場合にパッケージのログを DEBUG にする"""
    if not settings.enable_logging:
        return
    package_logger = logging.getLogger("authbridge")
    package_logger.setLevel(logging.DEBUG)
    if not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s"))
        package_logger.addHandler(handler)
    logger.debug("Debug logging enabled")
