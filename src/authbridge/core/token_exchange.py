"""APIアクセストークン交換。

セッションのアクセストークンをBearerとして送り、オーディエンス/パーミッション
を限定したアクセストークンを取得する。
"""

from __future__ import annotations

import json
import logging
from typing import Union

import httpx

from authbridge.errors import FetchError, TokenExchangeError
from authbridge.models import FetchApiTokenConfiguration, JWTPayload

logger = logging.getLogger(__name__)

NETWORK_ERROR_MESSAGE = "Network or CORS error occurred"
PARSE_ERROR_MESSAGE = "Returned data is not valid json"


async def fetch_api_token(
    configuration: FetchApiTokenConfiguration,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = 30.0,
) -> Union[JWTPayload, FetchError]:
    """トークン交換エンドポイントへフォーム形式でPOSTする。

    失敗は例外ではなく FetchError として返し、通信失敗・HTTPエラー・
    JSON解析失敗を区別する。

    Args:
        configuration: 交換リクエストの設定。
        http_client: 使用するHTTPクライアント。未指定時は都度生成する。
        timeout: http_client未指定時のタイムアウト秒数。

    Returns:
        成功時はトークンペイロード、失敗時は FetchError。
    """

    headers = {
        "Authorization": f"Bearer {configuration.access_token}",
        "Content-Type": "application/x-www-form-urlencoded",
    }
    data = {
        "grant_type": configuration.grant_type,
        "audience": configuration.audience,
        "permission": configuration.permission,
    }

    try:
        if http_client is None:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(configuration.uri, data=data, headers=headers)
        else:
            response = await http_client.post(configuration.uri, data=data, headers=headers)
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        # 不正なURLも通信失敗として扱う
        logger.warning("Token exchange request to %s failed: %s", configuration.uri, exc)
        return FetchError(error=exc, message=NETWORK_ERROR_MESSAGE)

    if not 200 <= response.status_code < 300:
        body = response.text
        logger.warning(
            "Token exchange for audience %s returned HTTP %s",
            configuration.audience,
            response.status_code,
        )
        return FetchError(
            status=response.status_code,
            message=body,
            error=TokenExchangeError(body, status=response.status_code),
        )

    try:
        payload = response.json()
    except ValueError as exc:
        logger.warning("Token exchange response is not valid JSON: %s", exc)
        return FetchError(error=exc, message=PARSE_ERROR_MESSAGE)

    if not isinstance(payload, dict):
        exc = json.JSONDecodeError("Expected a JSON object", response.text, 0)
        return FetchError(error=exc, message=PARSE_ERROR_MESSAGE)

    return {str(key): value for key, value in payload.items()}
