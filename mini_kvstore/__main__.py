"""mini-kvstore entry point.

このモジュールは、mini-kvstoreサーバのエントリポイントです。
`python -m mini_kvstore` で起動します。
"""

import argparse
import asyncio
import logging
import sys

from .commands import CommandHandler
from .protocol import RESPParser
from .server import DEFAULT_DATA_FILE, DEFAULT_LINE_LIMIT, ClientHandler, TCPServer
from .storage import KeyValueStore


def setup_logging(level: str = "INFO") -> None:
    """ログ設定を初期化."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """コマンドライン引数をパースする"""
    parser = argparse.ArgumentParser(
        prog="mini_kvstore",
        description="Minimal RESP key-value server with snapshot persistence",
    )
    parser.add_argument("--host", default="127.0.0.1", help="bind address")
    parser.add_argument("--port", type=int, default=6379, help="bind port")
    parser.add_argument(
        "--data-file", default=DEFAULT_DATA_FILE, help="snapshot file path"
    )
    parser.add_argument(
        "--max-line-bytes",
        type=int,
        default=DEFAULT_LINE_LIMIT,
        help="longest accepted request line, including values",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="logging level",
    )
    parser.add_argument(
        "--strict-frames",
        action="store_true",
        help="reject truncated commands instead of running the partial argument list",
    )
    parser.add_argument(
        "--strict-persistence",
        action="store_true",
        help="reply with an error when a snapshot write fails",
    )
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    setup_logging(args.log_level)
    logger = logging.getLogger(__name__)

    # コンポーネントの初期化
    store = KeyValueStore(args.data_file, strict_persistence=args.strict_persistence)
    command_handler = CommandHandler(store)
    parser = RESPParser(strict=args.strict_frames)
    client_handler = ClientHandler(parser, command_handler)

    # 初期化したコンポーネントをTCPServerに注入
    server = TCPServer(
        host=args.host,
        port=args.port,
        store=store,
        client_handler=client_handler,
        limit=args.max_line_bytes,
    )

    logger.info("Starting mini-kvstore server...")

    try:
        await server.start()
    except KeyboardInterrupt:
        logger.info("Received shutdown signal")
    except Exception as e:
        logger.error(f"Server error: {e}", exc_info=True)
    finally:
        logger.info("Shutting down mini-kvstore server...")
        await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
