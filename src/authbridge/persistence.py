"""セッショントークンとユーザー情報の永続化。

保存レイアウト:
    <clientId>-userData  JSON {"identifier": <セッションID>, "user": <User|''>}
    token / idToken / refreshToken  文字列
"""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping

from authbridge.models import User
from authbridge.storage import TokenManager

logger = logging.getLogger(__name__)

TOKEN_KEYS = ("token", "idToken", "refreshToken")


def get_session_identifier(claims: Mapping[str, Any] | None) -> str | None:
    """トークンのクレームからセッションIDを取り出す。"""

    if not claims:
        return None
    identifier = claims.get("session_state") or claims.get("sid")
    if identifier is None:
        return None
    return str(identifier)


class SessionStorage:
    """クライアントIDごとのセッションデータを保存する。"""

    def __init__(self, client_id: str, token_manager: TokenManager | None = None) -> None:
        """SessionStorageを初期化する。

        Args:
            client_id: ユーザーデータのキーに使うクライアントID。
            token_manager: 保存先。
        """

        self._client_id = client_id
        self._token_manager = token_manager or TokenManager()

    @property
    def user_data_key(self) -> str:
        return f"{self._client_id}-userData"

    def save_tokens(
        self,
        token: str | None,
        id_token: str | None,
        refresh_token: str | None,
    ) -> None:
        """セッショントークンを保存する。"""

        values = (token, id_token, refresh_token)
        self._token_manager.set_tokens(
            {key: value or "" for key, value in zip(TOKEN_KEYS, values)}
        )

    def get_tokens(self) -> dict[str, str | None]:
        """保存済みトークンを返す。空文字はNoneとして扱う。"""

        return {key: self._token_manager.get_token(key) or None for key in TOKEN_KEYS}

    def clear_tokens(self) -> None:
        self._token_manager.delete_tokens(TOKEN_KEYS)

    def save_user(self, user: User | None, claims: Mapping[str, Any] | None) -> None:
        """ユーザー情報をトークンのセッションIDと紐付けて保存する。

        Args:
            user: 保存するユーザー。Noneの場合は空文字を保存する。
            claims: 現在のトークンのクレーム。
        """

        payload = {
            "identifier": get_session_identifier(claims),
            "user": user if user else "",
        }
        self._token_manager.set_token(self.user_data_key, json.dumps(payload, ensure_ascii=False))

    def get_user(self, claims: Mapping[str, Any] | None) -> User | None:
        """保存済みユーザーを返す。

        保存時のセッションIDが現在のトークンと一致しない場合はエントリを破棄する。

        Args:
            claims: 現在のトークンのクレーム。

        Returns:
            ユーザー。存在しないか無効な場合はNone。
        """

        stored = self._token_manager.get_token(self.user_data_key)
        if not stored:
            return None

        try:
            payload = json.loads(stored)
        except json.JSONDecodeError:
            logger.warning("Discarding malformed user data entry %s", self.user_data_key)
            self.clear_user()
            return None

        if not isinstance(payload, dict):
            self.clear_user()
            return None

        identifier = get_session_identifier(claims)
        if identifier is None or payload.get("identifier") != identifier:
            logger.debug("Stored user does not match current session; invalidating")
            self.clear_user()
            return None

        user = payload.get("user")
        if not isinstance(user, dict) or not user:
            return None
        return user

    def clear_user(self) -> None:
        self._token_manager.delete_token(self.user_data_key)

    def clear(self) -> None:
        """トークンとユーザー情報をすべて削除する。"""

        self.clear_tokens()
        self.clear_user()
