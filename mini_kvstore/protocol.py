"""RESP (REdis Serialization Protocol) frame decoder and reply encoder.

このモジュールは、行単位のコマンドフレームのデコード（テキスト行→引数リスト）と
応答値のエンコード（応答オブジェクト→バイト列）を担当します。

"""

import asyncio
from asyncio import StreamReader
from collections.abc import Iterable
from dataclasses import dataclass, field

CRLF = "\r\n"


@dataclass
class SimpleString:
    """Simple String型を表すラッパー (+)"""
    value: str

@dataclass
class RedisError:
    """Error型を表すラッパー (-ERR)"""
    value: str

@dataclass
class Integer:
    """Integer型を表すラッパー (:)"""
    value: int

@dataclass
class BulkString:
    """Bulk String型を表すラッパー ($)"""
    value: str | None  # Noneの場合はNull Bulk String

@dataclass
class BulkStrings:
    """連結されたBulk Stringの並び（外側の*N配列ヘッダなし）"""
    values: list[str] = field(default_factory=list)


def _strip_line(raw: bytes) -> str:
    """改行コードを取り除いて文字列に変換する"""
    if raw.endswith(b"\n"):
        raw = raw[:-1]
    if raw.endswith(b"\r"):
        raw = raw[:-1]
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        raise FrameError("invalid UTF-8 in command")


def _is_marker(line: str) -> bool:
    """空行・*・$で始まる行はフレーミング用のマーカーとして読み飛ばす"""
    return line == "" or line[0] in "*$"


def _parse_header(line: str) -> int:
    """配列ヘッダ（*N）から引数の数を取得する"""
    if not line.startswith("*"):
        raise FrameError("expected array format")
    try:
        return int(line[1:])
    except ValueError:
        raise FrameError("invalid argument count")


def decode_command(lines: Iterable[str], strict: bool = False) -> list[str]:
    """行の並びから1コマンド分をデコードする.

    Args:
        lines: 改行コードで分割済みのテキスト行
        strict: Trueの場合、引数が揃う前に入力が尽きたらFrameErrorをraise

    Returns:
        コマンド名と引数のリスト（例: ["ECHO", "hey"]）

    Raises:
        FrameError: 配列ヘッダが不正な場合
    """
    it = iter(lines)
    try:
        header = next(it)
    except StopIteration:
        raise FrameError("expected array format")

    count = _parse_header(header)
    result: list[str] = []
    while len(result) < count:
        try:
            line = next(it)
        except StopIteration:
            break
        if _is_marker(line):
            continue
        result.append(line)

    if strict and len(result) < count:
        raise FrameError("incomplete command")
    return result


class RESPParser:
    """RESPプロトコルのデコーダ・エンコーダ.

    責務:
    - StreamReaderから1コマンド分の行を読み取ってデコード
    - 応答値をRESP形式のバイト列にエンコード

    Bulk Stringの長さ行（$N）は検証せずに読み飛ばす。
    strict=Falseの場合、途中で切れたコマンドは集まった分だけを返す。
    """

    def __init__(self, strict: bool = False) -> None:
        self.strict = strict

    async def parse_command(self, reader: StreamReader) -> list[str]:
        """コマンド（配列）をパースする

        Raises:
            FrameError: 配列ヘッダが不正
            asyncio.IncompleteReadError: ヘッダを読む前にストリームが終了した
        """
        # 最初の行を読む: *N
        header = await self._read_line(reader)
        count = _parse_header(_strip_line(header))

        result: list[str] = []
        while len(result) < count:
            try:
                raw = await self._read_line(reader)
            except asyncio.IncompleteReadError as e:
                # 改行なしの最終行も1行として扱う
                raw = e.partial
                if raw:
                    line = _strip_line(raw)
                    if not _is_marker(line):
                        result.append(line)
                break

            line = _strip_line(raw)
            if _is_marker(line):
                continue
            result.append(line)

        if self.strict and len(result) < count:
            raise FrameError("incomplete command")
        return result

    async def _read_line(self, reader: StreamReader) -> bytes:
        """1行を読む. StreamReaderのlimitを超える行は改行まで読み捨ててFrameErrorをraise"""
        try:
            return await reader.readuntil(b"\n")
        except asyncio.LimitOverrunError as e:
            consumed = e.consumed

        while True:
            try:
                await reader.readexactly(consumed)
                await reader.readuntil(b"\n")
                break
            except asyncio.LimitOverrunError as e:
                consumed = e.consumed
            except asyncio.IncompleteReadError:
                # 読み捨て中に切断された: 次の読み込みで検出される
                break

        raise FrameError("line too long")

    def encode_simple_string(self, value: str) -> bytes:
        """Simple Stringをエンコードする"""
        return f"+{value}{CRLF}".encode("utf-8")

    def encode_error(self, message: str) -> bytes:
        """エラーメッセージをエンコードする（ERRプレフィックスを付与）"""
        return f"-ERR {message}{CRLF}".encode("utf-8")

    def encode_integer(self, value: int) -> bytes:
        """整数をエンコードする"""
        return f":{value}{CRLF}".encode("utf-8")

    def encode_bulk_string(self, value: str | None) -> bytes:
        """Bulk Stringをエンコードする"""
        if value is None:
            # Null値
            return b"$-1\r\n"

        # 長さは文字数ではなくUTF-8のバイト数
        data = value.encode("utf-8")
        return f"${len(data)}{CRLF}".encode("utf-8") + data + b"\r\n"

    def encode_bulk_strings(self, values: list[str]) -> bytes:
        """複数のBulk Stringを連結してエンコードする"""
        return b"".join(self.encode_bulk_string(value) for value in values)

    def encode_response(self, result) -> bytes:
        """応答を適切な形式でエンコードする"""
        if isinstance(result, SimpleString):
            return self.encode_simple_string(result.value)
        elif isinstance(result, RedisError):
            return self.encode_error(result.value)
        elif isinstance(result, Integer):
            return self.encode_integer(result.value)
        elif isinstance(result, BulkString):
            return self.encode_bulk_string(result.value)
        elif isinstance(result, BulkStrings):
            return self.encode_bulk_strings(result.values)
        else:
            raise ValueError(f"Unsupported type: {type(result)}")


class RESPProtocolError(Exception):
    """RESPプロトコルのパースエラー."""

    pass


class FrameError(RESPProtocolError):
    """コマンドフレームの形式エラー.

    例:
        raise FrameError("expected array format")
        raise FrameError("invalid argument count")
    """

    pass
