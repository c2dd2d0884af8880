"""SDK共通のトークン/リダイレクト補助関数。"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import secrets
import time
from typing import Any, Mapping
from urllib.parse import parse_qs, urlparse

import jwt

from authbridge.storage import TokenManager

logger = logging.getLogger(__name__)


class TokenDecodeError(ValueError):
    """JWTのクレームを読み取れない。"""


def decode_token(token: str) -> dict[str, Any]:
    """署名を検証せずにJWTのクレームを返す。

    署名の検証はリソースサーバー側の責務であり、クライアントは
    表示と有効期限の判定にのみクレームを使う。

    Raises:
        TokenDecodeError: JWTとして解釈できない場合。
    """

    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError as exc:
        raise TokenDecodeError(str(exc)) from exc
    if not isinstance(claims, dict):
        raise TokenDecodeError("Token payload is not an object")
    return claims


def seconds_until_expiry(claims: Mapping[str, Any] | None, now: float | None = None) -> float | None:
    """expクレームまでの残り秒数。expが無い場合はNone。"""

    if not claims:
        return None
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)):
        return None
    current = time.time() if now is None else now
    return float(exp) - current


def parse_callback_url(url: str) -> dict[str, str]:
    """リダイレクトURLのクエリとフラグメントからパラメータを取り出す。

    フラグメントの値がクエリの値より優先される。
    """

    parsed = urlparse(url)
    params: dict[str, str] = {}
    for part in (parsed.query, parsed.fragment):
        for key, values in parse_qs(part).items():
            if values:
                params[key] = values[0]
    return params


def generate_state() -> str:
    return secrets.token_urlsafe(16)


def generate_verifier() -> str:
    return _base64_url_encode(secrets.token_bytes(32))


def generate_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return _base64_url_encode(digest)


def _base64_url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def save_pending_signin(token_manager: TokenManager, key: str, values: Mapping[str, str]) -> None:
    """リダイレクト前の検証用の値を保存する。

    コールバックは別プロセス（再起動後）で処理されることがあるため、
    メモリではなく TokenManager に保存する。
    """

    token_manager.set_token(key, json.dumps(dict(values)))


def pop_pending_signin(token_manager: TokenManager, key: str) -> dict[str, str] | None:
    """保存済みの検証用の値を取り出して削除する。存在しないか不正な場合は None。"""

    stored = token_manager.get_token(key)
    if stored is None:
        return None
    token_manager.delete_token(key)
    try:
        values = json.loads(stored)
    except json.JSONDecodeError:
        logger.warning("Discarding malformed sign-in state %s", key)
        return None
    if not isinstance(values, dict):
        return None
    return {str(name): str(value) for name, value in values.items()}
