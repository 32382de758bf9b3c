"""Durable blob stores for KeyValueStore snapshots.

このモジュールは、スナップショットの読み書き先（ファイルまたはメモリ）を担当します。
ストアの内容は毎回まるごと上書きされます。
"""

import os
import tempfile
from pathlib import Path


class FileBlobStore:
    """ファイルに保存するBlobストア.

    write()は同じディレクトリの一時ファイルに書き込んでからos.replace()で置き換えるため、
    読み手が書きかけのスナップショットを見ることはない。
    """

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path)

    def read(self) -> bytes | None:
        """Blobを読み込む

        Returns:
            ファイルの内容（ファイルが存在しない場合はNone）

        Raises:
            PersistenceError: 読み込みに失敗した場合
        """
        try:
            return self.path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"failed to read {self.path}: {e}") from e

    def write(self, data: bytes) -> None:
        """Blobを上書きする

        Raises:
            PersistenceError: 書き込みに失敗した場合
        """
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except OSError as e:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise PersistenceError(f"failed to write {self.path}: {e}") from e

    def __repr__(self) -> str:
        return f"FileBlobStore({str(self.path)!r})"


class MemoryBlobStore:
    """メモリ上に保持するBlobストア（テスト・組み込み用）"""

    def __init__(self, data: bytes | None = None) -> None:
        self.data = data
        self.writes = 0

    def read(self) -> bytes | None:
        return self.data

    def write(self, data: bytes) -> None:
        self.data = bytes(data)
        self.writes += 1


class PersistenceError(Exception):
    """スナップショットの読み書きエラー.

    例:
        raise PersistenceError("failed to write ./data/kvstore.json: [Errno 28] No space left on device")
    """

    pass
