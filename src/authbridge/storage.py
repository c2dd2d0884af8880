"""セッションエントリの永続化を提供する。

keyring を優先し、使えない環境ではサービス名ごとに区切った JSON ファイルへ保存する。
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
import tempfile
from typing import Iterable, Mapping
import warnings

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_PATH = Path.home() / ".authbridge" / "tokens.json"


class TokenManager:
    """再起動をまたいで残るキー/値エントリを管理する。

    ファイル保存時の形式は ``{keyring_service: {key: value}}`` で、
    複数のサービス名が同じファイルを共有できる。
    """

    def __init__(
        self,
        keyring_service: str = "authbridge",
        fallback_path: Path | None = None,
        use_keyring: bool = True,
    ) -> None:
        """
        Args:
            keyring_service: keyring のサービス名。ファイル保存時の区画名にもなる。
            fallback_path: keyring が使えない場合の保存先。
            use_keyring: False の場合は最初からファイルに保存する。
        """

        self._service = keyring_service
        self._path = fallback_path or DEFAULT_FALLBACK_PATH
        self._use_keyring = use_keyring

    @property
    def uses_keyring(self) -> bool:
        return self._use_keyring

    @property
    def fallback_path(self) -> Path:
        return self._path

    def set_token(self, key: str, value: str) -> None:
        self.set_tokens({key: value})

    def get_token(self, key: str) -> str | None:
        """エントリを取得する。存在しない場合は None。"""

        if self._use_keyring:
            try:
                return keyring.get_password(self._service, key)
            except KeyringError as exc:
                self._disable_keyring(exc)
        return self._load_section().get(key)

    def delete_token(self, key: str) -> None:
        self.delete_tokens([key])

    def set_tokens(self, entries: Mapping[str, str]) -> None:
        """複数のエントリをまとめて保存する。

        ファイル保存時は1回の書き込みで反映する。
        """

        if not entries:
            return
        if self._use_keyring:
            try:
                for key, value in entries.items():
                    keyring.set_password(self._service, key, value)
                return
            except KeyringError as exc:
                self._disable_keyring(exc)

        section = self._load_section()
        section.update(entries)
        self._store_section(section)

    def delete_tokens(self, keys: Iterable[str]) -> None:
        """複数のエントリを削除する。存在しないキーは無視する。"""

        keys = list(keys)
        if self._use_keyring:
            try:
                for key in keys:
                    try:
                        keyring.delete_password(self._service, key)
                    except PasswordDeleteError:
                        continue
                return
            except KeyringError as exc:
                self._disable_keyring(exc)

        section = self._load_section()
        removed = [key for key in keys if section.pop(key, None) is not None]
        if removed:
            self._store_section(section)

    def _disable_keyring(self, exc: Exception) -> None:
        logger.warning("keyring unavailable (%s); using %s", exc, self._path)
        warnings.warn(
            "keyringが利用できないため、ローカルファイルに保存します。",
            RuntimeWarning,
            stacklevel=3,
        )
        self._use_keyring = False

    def _load_all(self) -> dict[str, dict[str, str]]:
        if not self._path.exists():
            return {}

        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            warnings.warn(
                "トークン保存ファイルの形式が不正です。空として扱います。",
                RuntimeWarning,
                stacklevel=3,
            )
            return {}
        if not isinstance(data, dict):
            return {}

        return {
            str(service): {str(key): str(value) for key, value in entries.items()}
            for service, entries in data.items()
            if isinstance(entries, dict)
        }

    def _load_section(self) -> dict[str, str]:
        return self._load_all().get(self._service, {})

    def _store_section(self, section: dict[str, str]) -> None:
        data = self._load_all()
        if section:
            data[self._service] = section
        else:
            data.pop(self._service, None)
        self._write(data)

    def _write(self, data: dict[str, dict[str, str]]) -> None:
        # 一時ファイルに書いてから置き換え、所有者のみ読み書きできるようにする
        self._path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".tokens-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file:
                json.dump(data, file, ensure_ascii=False, indent=2)
            os.chmod(temp_name, 0o600)
            os.replace(temp_name, self._path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise
