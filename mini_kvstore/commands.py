"""Command dispatcher for mini-kvstore.

このモジュールは、コマンドのルーティングと実行を担当します。

"""

from .protocol import BulkString, BulkStrings, Integer, SimpleString
from .storage import NEVER_EXPIRE, KeyValueStore


class CommandHandler:
    """コマンドのハンドラ.

    責務:
    - コマンド名（大文字・小文字を区別しない）から各execute_*メソッドへのルーティング
    - 引数の検証
    - KeyValueStoreの操作結果を応答値に変換
    """

    def __init__(self, store: KeyValueStore) -> None:
        """ハンドラを初期化.

        Args:
            store: KeyValueStoreのインスタンス

        """
        self._store = store

    async def execute(self, command: list[str]) -> SimpleString | BulkString | BulkStrings | Integer:
        """コマンドを実行する

        Raises:
            CommandError: 引数が不正な場合
            UnknownCommandError: 未知のコマンドの場合
        """
        if not command:
            raise CommandError("empty command")

        # コマンド名を大文字に正規化
        cmd_name = command[0].upper()
        args = command[1:]

        # ルーティング
        if cmd_name == "PING":
            return await self.execute_ping(args)
        elif cmd_name == "ECHO":
            return await self.execute_echo(args)
        elif cmd_name == "SET":
            return await self.execute_set(args)
        elif cmd_name == "GET":
            return await self.execute_get(args)
        elif cmd_name == "DELETE":
            return await self.execute_delete(args)
        else:
            raise UnknownCommandError(f"unknown command '{command[0]}'")

    async def execute_ping(self, args: list[str]) -> SimpleString | BulkString:
        """PINGコマンドを実行"""
        if len(args) == 0:
            return SimpleString("PONG")
        elif len(args) == 1:
            # 引数あり: メッセージをエコーバック
            return BulkString(args[0])
        else:
            raise CommandError("wrong number of arguments for 'ping' command")

    async def execute_echo(self, args: list[str]) -> BulkStrings:
        """ECHOコマンドを実行（引数ごとのBulk Stringを連結して返す）"""
        if len(args) == 0:
            raise CommandError("wrong number of arguments for 'echo' command")
        return BulkStrings(list(args))

    async def execute_set(self, args: list[str]) -> SimpleString:
        """SETコマンドを実行

        SET key value
        SET key value <ttlMillis>（-1は期限なし）
        SET key value PX <milliseconds> | EX <seconds>
        """
        if len(args) not in (2, 3, 4):
            raise CommandError("wrong number of arguments for 'set' command")

        key, value = args[0], args[1]
        ttl_ms = None

        if len(args) == 3:
            ttl_ms = _parse_int(args[2])
            if ttl_ms == NEVER_EXPIRE:
                ttl_ms = None
        elif len(args) == 4:
            option = args[2].upper()
            if option == "PX":
                ttl_ms = _parse_int(args[3])
            elif option == "EX":
                ttl_ms = _parse_int(args[3]) * 1000
            else:
                raise CommandError("syntax error")

        if ttl_ms is None:
            self._store.set(key, value)
        else:
            if ttl_ms <= 0:
                raise CommandError("invalid expire time in 'set' command")
            self._store.set(key, value, ttl_ms)

        return SimpleString("OK")

    async def execute_get(self, args: list[str]) -> BulkString:
        """GETコマンドを実行"""
        if len(args) != 1:
            raise CommandError("wrong number of arguments for 'get' command")

        value, found = self._store.get(args[0])
        return BulkString(value if found else None)

    async def execute_delete(self, args: list[str]) -> Integer:
        """DELETEコマンドを実行（削除したキーの数を返す）"""
        if len(args) != 1:
            raise CommandError("wrong number of arguments for 'delete' command")

        return Integer(1 if self._store.delete(args[0]) else 0)


def _parse_int(value: str) -> int:
    # int()が受け付ける空白・"_"・ASCII以外の数字は拒否する
    digits = value[1:] if value.startswith("-") else value
    if not (digits.isascii() and digits.isdigit()):
        raise CommandError("value is not an integer or out of range")
    return int(value)


class CommandError(Exception):
    """コマンド実行エラー.

    例:
        raise CommandError("wrong number of arguments for 'get' command")
        raise CommandError("value is not an integer or out of range")
    """

    pass


class UnknownCommandError(CommandError):
    """未知のコマンド.

    例:
        raise UnknownCommandError("unknown command 'FOO'")
    """

    pass
