"""In-memory key-value store with snapshot persistence for mini-kvstore.

このモジュールは、キー・バリューペアの保存・取得・削除、
有効期限（Lazy expiration）の管理、およびスナップショットの永続化を担当します。

"""

import json
import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .persistence import FileBlobStore, PersistenceError

logger = logging.getLogger(__name__)

# 「有効期限なし」を表すTTL
NEVER_EXPIRE = -1


def current_time_millis() -> int:
    """現在時刻（Unixエポックからのミリ秒）を返す"""
    return time.time_ns() // 1_000_000


@dataclass
class StoreEntry:
    """ストレージのエントリ.

    Attributes:
        value: 保存される文字列値
        expires_at_ms: 有効期限（ミリ秒のUnix timestamp、Noneの場合は期限なし）
    """

    value: str
    expires_at_ms: int | None = field(default=None)

    def is_expired(self, now_ms: int) -> bool:
        return self.expires_at_ms is not None and self.expires_at_ms <= now_ms


class KeyValueStore:
    """スナップショット永続化つきのキー・バリューストア.

    責務:
    - キー・バリューペアの保存・取得・削除
    - GET時の期限切れチェックと削除（Lazy expiration、バックグラウンドでの削除は行わない）
    - 変更のたびにストア全体をBlobへ保存し、起動時に復元する

    すべての操作は同じロックの中で実行されるため、スナップショットの書き込みも含めて
    操作同士が重なることはない。

    Args:
        blob: 保存先のパス、またはread()/write()を持つBlobストア
        now_ms: 現在時刻（ミリ秒）を返す関数
        strict_persistence: Trueの場合、保存失敗時にPersistenceErrorをraiseする
    """

    def __init__(
        self,
        blob,
        now_ms: Callable[[], int] = current_time_millis,
        strict_persistence: bool = False,
    ) -> None:
        if isinstance(blob, (str, os.PathLike)):
            blob = FileBlobStore(blob)
        self._blob = blob
        self._now_ms = now_ms
        self._strict = strict_persistence
        self._data: dict[str, StoreEntry] = {}
        self._lock = threading.Lock()
        self.last_save_ok = True

        self.load()

    def set(self, key: str, value: str, ttl_ms: int = NEVER_EXPIRE) -> None:
        """キーに値を設定して保存する.

        Args:
            key: 設定するキー
            value: 設定する値
            ttl_ms: 有効期間（ミリ秒）。NEVER_EXPIREの場合は期限なし

        既存のエントリは有効期限も含めて上書きされる。
        """
        with self._lock:
            expires_at = None if ttl_ms == NEVER_EXPIRE else self._now_ms() + ttl_ms
            self._data[key] = StoreEntry(value=value, expires_at_ms=expires_at)
            self._save_locked()

    def get(self, key: str) -> tuple[str, bool]:
        """キーの値を取得する.

        Returns:
            (値, True)、キーが存在しないか期限切れの場合は("", False)
        """
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return "", False

            if entry.is_expired(self._now_ms()):
                # 期限切れ: 削除して保存し直す
                logger.debug(f"Key expired on access: {key!r}")
                del self._data[key]
                self._save_locked()
                return "", False

            return entry.value, True

    def delete(self, key: str) -> bool:
        """キーを削除して保存する.

        Returns:
            True: キーが存在して削除された
            False: キーが存在しなかった
        """
        with self._lock:
            existed = self._data.pop(key, None) is not None
            self._save_locked()
            return existed

    def exists(self, key: str) -> bool:
        """キーが存在するかチェック（期限切れの削除は行わない）"""
        with self._lock:
            return key in self._data

    def get_expiry(self, key: str) -> int | None:
        """キーの有効期限（ミリ秒）を取得する"""
        with self._lock:
            entry = self._data.get(key)
            return entry.expires_at_ms if entry else None

    def get_all_keys(self) -> list[str]:
        """全てのキー一覧を取得する"""
        with self._lock:
            return list(self._data.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def load(self) -> None:
        """Blobからストアの内容を復元する.

        Blobが存在しない、または読み込めない場合は空のストアで開始する。
        有効期限は保存されないため、復元したキーはすべて期限なしになる。
        """
        try:
            raw = self._blob.read()
        except PersistenceError as e:
            logger.warning(f"Could not read snapshot, starting empty: {e}")
            return

        if raw is None:
            logger.info(f"No existing data file found at {self._blob!r}")
            return

        try:
            data = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Could not parse snapshot, starting empty: {e}")
            return

        if not isinstance(data, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in data.items()
        ):
            logger.warning("Snapshot is not a mapping of strings, starting empty")
            return

        with self._lock:
            self._data = {key: StoreEntry(value=value) for key, value in data.items()}
        logger.info(f"Loaded {len(data)} keys from {self._blob!r}")

    def save(self) -> bool:
        """ストア全体をBlobに保存する.

        Returns:
            True: 保存に成功した
            False: 保存に失敗した（ログに出力される）
        """
        with self._lock:
            return self._save_locked()

    def _save_locked(self) -> bool:
        snapshot = {key: entry.value for key, entry in self._data.items()}
        try:
            self._blob.write(json.dumps(snapshot).encode("utf-8"))
        except PersistenceError as e:
            self.last_save_ok = False
            logger.error(f"Error writing snapshot: {e}")
            if self._strict:
                raise
            return False

        self.last_save_ok = True
        return True
