"""TCP server and client handler for mini-kvstore.

このモジュールは、TCPサーバの起動と管理、
および個別クライアント接続の処理を担当します。
"""

import asyncio
import logging
from asyncio import StreamReader, StreamWriter
from typing import TYPE_CHECKING

from .commands import CommandError, CommandHandler
from .persistence import PersistenceError
from .protocol import FrameError, RESPParser

if TYPE_CHECKING:
    from .storage import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_DATA_FILE = "./data/kvstore.json"

# 1行（値を含む）の最大バイト数
DEFAULT_LINE_LIMIT = 1024 * 1024


class TCPServer:
    """mini-kvstoreのTCPサーバ.

    責務:
    - TCP接続の受け入れ
    - クライアントセッションの管理
    - サーバのライフサイクル管理
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 6379,
        store: "KeyValueStore | None" = None,
        client_handler: "ClientHandler | None" = None,
        limit: int = DEFAULT_LINE_LIMIT,
    ) -> None:
        """サーバを初期化.

        Args:
            host: バインドするホスト
            port: バインドするポート
            store: キー・バリューストア（Noneの場合はDEFAULT_DATA_FILEで新規作成）
            client_handler: クライアントハンドラ（Noneの場合は新規作成）
            limit: 1行の最大バイト数（StreamReaderのlimit）
        """
        self.host = host
        self.port = port
        self._server: asyncio.Server | None = None
        self._store = store
        self._client_handler = client_handler
        self.limit = limit

    async def start(self) -> None:
        """サーバを起動し、接続を待ち受ける.

        このメソッドはserve_forever()内で無限ループするため、
        KeyboardInterruptや例外が発生するまで戻らない。
        """
        await self.listen()

        async with self._server:
            await self._server.serve_forever()

    async def listen(self) -> tuple[str, int]:
        """ソケットをバインドして接続の受け入れを開始する.

        Returns:
            実際にバインドされた(host, port)
        """
        # 依存性の初期化（未指定の場合は新規作成）
        from .storage import KeyValueStore

        if self._client_handler is not None:
            client_handler = self._client_handler
        else:
            store = self._store if self._store is not None else KeyValueStore(DEFAULT_DATA_FILE)
            self._store = store
            client_handler = ClientHandler(RESPParser(), CommandHandler(store))
            self._client_handler = client_handler

        self._server = await asyncio.start_server(
            client_handler.handle, self.host, self.port, limit=self.limit
        )

        addr = self._server.sockets[0].getsockname() if self._server.sockets else (self.host, self.port)
        logger.info(f"mini-kvstore server started on {addr[0]}:{addr[1]}")
        return addr[0], addr[1]

    async def stop(self) -> None:
        """サーバを停止し、すべての接続をクローズする."""
        logger.info("Stopping mini-kvstore server...")

        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("mini-kvstore server stopped")


class ClientHandler:
    """クライアント接続のハンドラ.

    責務:
    - 個別クライアントとの通信ループ
    - リクエスト受信→レスポンス送信

    フレームエラーやコマンドエラーはエラー応答を返すだけで、接続は維持する。
    """

    def __init__(self, parser: RESPParser, handler: CommandHandler) -> None:
        """ハンドラを初期化.

        Args:
            parser: RESPパーサのインスタンス
            handler: コマンドハンドラのインスタンス
        """
        self._parser = parser
        self._handler = handler

    async def handle(self, reader: StreamReader, writer: StreamWriter) -> None:
        """クライアント接続を処理するメインループ.

        Args:
            reader: asyncioのStreamReader
            writer: asyncioのStreamWriter

        コマンドの読み取り→パース→実行→応答のループを実行する。
        接続切断時に適切にクリーンアップする。
        """
        addr = writer.get_extra_info("peername")
        logger.info(f"Client connected: {addr}")

        try:
            while True:
                try:
                    command = await self._parser.parse_command(reader)
                    result = await self._handler.execute(command)

                    writer.write(self._parser.encode_response(result))
                    await writer.drain()

                except FrameError as e:
                    # 不正なフレーム: エラーを返して次のコマンドを待つ
                    logger.warning(f"Frame error from {addr}: {e}")
                    writer.write(self._parser.encode_error(str(e)))
                    await writer.drain()

                except CommandError as e:
                    writer.write(self._parser.encode_error(str(e)))
                    await writer.drain()

                except PersistenceError as e:
                    writer.write(self._parser.encode_error(f"persistence failure: {e}"))
                    await writer.drain()

                except (asyncio.IncompleteReadError, ConnectionError):
                    logger.info(f"Client disconnected: {addr}")
                    break

                except asyncio.CancelledError:
                    logger.info(f"Connection to {addr} cancelled due to server shutdown")
                    raise

                except Exception as e:
                    logger.error(f"Unexpected error from {addr}: {e}")
                    break

        finally:
            writer.close()
            await writer.wait_closed()
            logger.info(f"Connection closed: {addr}")
