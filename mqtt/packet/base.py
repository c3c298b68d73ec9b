"""MQTT packet base.

MQTTパケットの基本クラスと、固定ヘッダー・可変長の残りの長さ・
文字列フィールドのエンコード/デコードを提供するモジュール。
"""

import struct
from dataclasses import dataclass
from typing import ClassVar, Optional, Tuple, Union

from core.constants import (
    MAX_PACKET_ID,
    MAX_REMAINING_LENGTH,
    MAX_REMAINING_LENGTH_BYTES,
    MAX_STRING_LENGTH,
)
from core.exceptions import DecodeError, PacketError

from .types import (
    FIXED_REMAINING_LENGTH,
    PUBLISH_DUP,
    PUBLISH_QOS_MASK,
    REQUIRED_FLAGS,
    PacketType,
)

Buffer = Union[bytes, bytearray, memoryview]


def encode_remaining_length(length: int) -> bytes:
    """残りの長さを可変長エンコードする.

    下位の桁から順に7ビットずつ出力し、続きがある場合は最上位ビットを立てます。
    常に最小の桁数でエンコードします。

    Args:
        length (int): 残りの長さ

    Returns:
        bytes: エンコードされた1〜4バイト

    Raises:
        PacketError: 0未満または268,435,455を超える場合
    """
    if not 0 <= length <= MAX_REMAINING_LENGTH:
        raise PacketError(f"残りの長さが範囲外です: {length}")

    remaining_bytes = bytearray()
    while True:
        byte = length % 128
        length = length // 128
        if length > 0:
            byte |= 0x80
        remaining_bytes.append(byte)
        if length == 0:
            break

    return bytes(remaining_bytes)


def decode_remaining_length(
    data: Buffer, start: int = 1
) -> Optional[Tuple[int, int]]:
    """可変長の残りの長さをデコードする.

    Args:
        data (Buffer): パケットデータ
        start (int, optional): デコードを開始する位置。デフォルトは1。

    Returns:
        Optional[Tuple[int, int]]: (残りの長さ, 次の位置)のタプル。
            データが足りない場合はNone

    Raises:
        DecodeError: 4バイトを超える長さ形式の場合
    """
    multiplier = 1
    value = 0
    index = start

    for _ in range(MAX_REMAINING_LENGTH_BYTES):
        if index >= len(data):
            return None

        byte = data[index]
        value += (byte & 0x7F) * multiplier
        index += 1

        if not byte & 0x80:
            return value, index

        multiplier *= 128

    raise DecodeError("残りの長さが4バイトを超えています")


@dataclass(frozen=True)
class FixedHeader:
    """固定ヘッダー.

    Attributes:
        packet_type: パケットタイプ
        flags: 下位4ビットのフラグ
        remaining_length: 可変ヘッダーとペイロードの長さ
        size: 固定ヘッダー自体のバイト数
    """

    packet_type: PacketType
    flags: int
    remaining_length: int
    size: int

    @property
    def packet_size(self) -> int:
        """固定ヘッダーを含むパケット全体のバイト数."""
        return self.size + self.remaining_length


def validate_flags(packet_type: PacketType, flags: int) -> None:
    """パケットタイプに対して固定ヘッダーのフラグが正しいか検証する.

    Raises:
        DecodeError: フラグが不正な場合
    """
    if packet_type == PacketType.PUBLISH:
        qos = (flags & PUBLISH_QOS_MASK) >> 1
        if qos == 3:
            raise DecodeError("PUBLISHのQoSに3は使用できません")
        if qos == 0 and flags & PUBLISH_DUP:
            raise DecodeError("QoS 0のPUBLISHにDUPフラグは設定できません")
        return

    expected = REQUIRED_FLAGS[packet_type]
    if flags != expected:
        raise DecodeError(
            f"{packet_type.name}のフラグが不正です: "
            f"0b{flags:04b} (期待値 0b{expected:04b})"
        )


def parse_fixed_header(data: Buffer) -> Optional[FixedHeader]:
    """固定ヘッダーを解析する.

    先頭バイトが届いた時点でタイプとフラグを、残りの長さが揃った時点で
    固定長パケットの長さを検証します。

    Args:
        data (Buffer): 受信バッファ

    Returns:
        Optional[FixedHeader]: 固定ヘッダー。データが足りない場合はNone

    Raises:
        DecodeError: タイプ・フラグ・残りの長さの組み合わせが不正な場合
    """
    if len(data) < 1:
        return None

    first_byte = data[0]
    try:
        packet_type = PacketType(first_byte >> 4)
    except ValueError as err:
        raise DecodeError(
            f"未対応のパケットタイプです: {first_byte >> 4}"
        ) from err

    flags = first_byte & 0x0F
    validate_flags(packet_type, flags)

    decoded = decode_remaining_length(data, 1)
    if decoded is None:
        return None
    remaining_length, index = decoded

    expected = FIXED_REMAINING_LENGTH.get(packet_type)
    if expected is not None and remaining_length != expected:
        raise DecodeError(
            f"{packet_type.name}の残りの長さが不正です: "
            f"{remaining_length} (期待値 {expected})"
        )

    return FixedHeader(
        packet_type=packet_type,
        flags=flags,
        remaining_length=remaining_length,
        size=index,
    )


def encode_string(s: str) -> bytes:
    """文字列をMQTT形式でエンコードする.

    Args:
        s (str): エンコードする文字列

    Returns:
        bytes: 2バイト長 + UTF-8のバイト列

    Raises:
        PacketError: 65535バイトを超える場合
    """
    encoded = s.encode("utf-8")
    if len(encoded) > MAX_STRING_LENGTH:
        raise PacketError(f"文字列が長すぎます: {len(encoded)}バイト")
    return struct.pack("!H", len(encoded)) + encoded


def encode_binary(data: bytes) -> bytes:
    """バイナリデータを2バイト長付きでエンコードする."""
    if len(data) > MAX_STRING_LENGTH:
        raise PacketError(f"バイナリデータが長すぎます: {len(data)}バイト")
    return struct.pack("!H", len(data)) + bytes(data)


def check_packet_id(packet_id: Optional[int]) -> int:
    """エンコード時のパケット識別子の範囲を検証する.

    Raises:
        PacketError: 1〜65535の範囲外の場合
    """
    if packet_id is None or not 1 <= packet_id <= MAX_PACKET_ID:
        raise PacketError(f"パケット識別子が不正です: {packet_id}")
    return packet_id


def read_uint16(body: bytes, pos: int) -> Tuple[int, int]:
    """2バイトのビッグエンディアン整数を読む."""
    if pos + 2 > len(body):
        raise DecodeError("2バイト整数の途中でデータが終わっています")
    return struct.unpack_from("!H", body, pos)[0], pos + 2


def read_packet_id(body: bytes, pos: int) -> Tuple[int, int]:
    """パケット識別子を読む. 0は不正."""
    packet_id, pos = read_uint16(body, pos)
    if packet_id == 0:
        raise DecodeError("パケット識別子に0は使用できません")
    return packet_id, pos


def read_binary(body: bytes, pos: int) -> Tuple[bytes, int]:
    """2バイト長付きのバイナリデータを読む."""
    length, pos = read_uint16(body, pos)
    if pos + length > len(body):
        raise DecodeError("文字列の途中でデータが終わっています")
    return body[pos : pos + length], pos + length


def read_string(body: bytes, pos: int) -> Tuple[str, int]:
    """2バイト長付きのUTF-8文字列を読む."""
    raw, pos = read_binary(body, pos)
    try:
        return raw.decode("utf-8"), pos
    except UnicodeDecodeError as err:
        raise DecodeError(f"不正なUTF-8文字列です: {err}") from err


def read_byte(body: bytes, pos: int) -> Tuple[int, int]:
    """1バイトを読む."""
    if pos >= len(body):
        raise DecodeError("1バイトフィールドの途中でデータが終わっています")
    return body[pos], pos + 1


class MQTTPacket:
    """MQTTパケットの基本クラス.

    具象パケットはイミュータブルなデータクラスとして定義され、
    ``encode_body``で可変ヘッダーとペイロードを生成します。
    """

    packet_type: ClassVar[PacketType]

    @property
    def flags(self) -> int:
        """固定ヘッダーのフラグ."""
        return REQUIRED_FLAGS[self.packet_type]

    def encode_body(self) -> bytes:
        """可変ヘッダーとペイロードを生成する."""
        raise NotImplementedError

    @property
    def header(self) -> bytes:
        """パケットヘッダーを生成する.

        Returns:
            bytes: パケットヘッダーのバイト列
        """
        return self._build_header(len(self.encode_body()))

    @property
    def packet(self) -> bytes:
        """パケットのバイナリデータを取得します."""
        body = self.encode_body()
        return self._build_header(len(body)) + body

    def _build_header(self, remaining_length: int) -> bytes:
        first_byte = (self.packet_type.value << 4) | self.flags
        return bytes([first_byte]) + encode_remaining_length(remaining_length)

    def get_message_id(self) -> Optional[int]:
        """メッセージIDを取得する.

        Returns:
            Optional[int]: メッセージID。存在しない場合はNone。
        """
        return getattr(self, "packet_id", None)
