"""MQTTパケット解析モジュール.

このモジュールはMQTTパケットの解析機能を提供します。
受信バッファから固定ヘッダーを読み、残りの長さ分のデータが揃っていれば
パケットタイプに応じた具体的な解析を行います。

デコードは再開可能です。データが足りない場合はNoneを返し、
呼び出し側はより多くのデータを受信してから同じバッファで再試行します。
"""

from dataclasses import asdict
from typing import Any, Callable, Dict, Optional, Tuple

from core.exceptions import DecodeError

from .base import (
    Buffer,
    MQTTPacket,
    parse_fixed_header,
    read_binary,
    read_byte,
    read_packet_id,
    read_string,
    read_uint16,
)
from .models import (
    VALID_SUBACK_CODES,
    ConnackPacket,
    ConnectPacket,
    DisconnectPacket,
    PingreqPacket,
    PingrespPacket,
    PubackPacket,
    PubcompPacket,
    PublishPacket,
    PubrecPacket,
    PubrelPacket,
    SubackPacket,
    SubscribePacket,
    check_topic_name,
)
from .types import (
    CONNECT_CLEAN_SESSION,
    CONNECT_PASSWORD,
    CONNECT_RESERVED,
    CONNECT_USERNAME,
    CONNECT_WILL,
    PUBLISH_DUP,
    PUBLISH_QOS_MASK,
    PUBLISH_RETAIN,
    PacketType,
)


def decode_packet(data: Buffer) -> Optional[Tuple[MQTTPacket, int]]:
    """バイナリデータからMQTTパケットを1つ解析します.

    Args:
        data: 受信バッファ。先頭がパケットの境界である必要があります

    Returns:
        Optional[Tuple[MQTTPacket, int]]: (パケット, 消費したバイト数)。
            残りの長さ分のデータが揃っていない場合はNone

    Raises:
        DecodeError: タイプ・フラグ・残りの長さ・ボディが不正な場合
    """
    header = parse_fixed_header(data)
    if header is None or len(data) < header.packet_size:
        return None

    body = bytes(data[header.size : header.packet_size])
    packet = _PARSERS[header.packet_type](header.flags, body)
    return packet, header.packet_size


def _expect_end(body: bytes, pos: int, packet_type: PacketType) -> None:
    if pos != len(body):
        raise DecodeError(
            f"{packet_type.name}に余分なデータがあります: {len(body) - pos}バイト"
        )


def _parse_connect(flags: int, body: bytes) -> ConnectPacket:
    """CONNECTパケットの内容を解析します."""
    protocol_name, pos = read_string(body, 0)
    protocol_level, pos = read_byte(body, pos)
    connect_flags, pos = read_byte(body, pos)
    keep_alive, pos = read_uint16(body, pos)

    if connect_flags & CONNECT_RESERVED:
        raise DecodeError("CONNECTの予約ビットが設定されています")
    if connect_flags & CONNECT_WILL:
        raise DecodeError("Willメッセージはサポートしていません")
    if connect_flags & CONNECT_PASSWORD and not connect_flags & CONNECT_USERNAME:
        raise DecodeError("ユーザー名フラグなしでパスワードフラグが設定されています")

    client_id, pos = read_string(body, pos)
    username = None
    password = None
    if connect_flags & CONNECT_USERNAME:
        username, pos = read_string(body, pos)
    if connect_flags & CONNECT_PASSWORD:
        password, pos = read_binary(body, pos)
    _expect_end(body, pos, PacketType.CONNECT)

    return ConnectPacket(
        client_id=client_id,
        keep_alive=keep_alive,
        clean_session=bool(connect_flags & CONNECT_CLEAN_SESSION),
        username=username,
        password=password,
        protocol_name=protocol_name,
        protocol_level=protocol_level,
    )


def _parse_connack(flags: int, body: bytes) -> ConnackPacket:
    ack_flags, return_code = body[0], body[1]
    if ack_flags & 0xFE:
        raise DecodeError(f"CONNACKの予約ビットが設定されています: {ack_flags:#04x}")
    if return_code != 0 and ack_flags:
        raise DecodeError("拒否されたCONNACKにsession presentは設定できません")
    return ConnackPacket(
        session_present=bool(ack_flags & 0x01), return_code=return_code
    )


def _parse_publish(flags: int, body: bytes) -> PublishPacket:
    """PUBLISHパケットを解析します."""
    topic, pos = read_string(body, 0)
    problem = check_topic_name(topic)
    if problem:
        raise DecodeError(problem)

    # QoSレベルに応じてパケット識別子を取得
    qos = (flags & PUBLISH_QOS_MASK) >> 1
    packet_id = None
    if qos > 0:
        packet_id, pos = read_packet_id(body, pos)

    return PublishPacket(
        topic=topic,
        payload=body[pos:],
        qos=qos,
        packet_id=packet_id,
        retain=bool(flags & PUBLISH_RETAIN),
        dup=bool(flags & PUBLISH_DUP),
    )


def _ack_parser(
    packet_class: Callable[..., MQTTPacket],
) -> Callable[[int, bytes], MQTTPacket]:
    def parse(flags: int, body: bytes) -> MQTTPacket:
        packet_id, _ = read_packet_id(body, 0)
        return packet_class(packet_id=packet_id)

    return parse


def _parse_subscribe(flags: int, body: bytes) -> SubscribePacket:
    packet_id, pos = read_packet_id(body, 0)
    topics = []
    while pos < len(body):
        topic, pos = read_string(body, pos)
        requested, pos = read_byte(body, pos)
        if requested & 0xFC or requested == 3:
            raise DecodeError(f"要求QoSが不正です: {requested:#04x}")
        if not topic:
            raise DecodeError("トピックフィルターが空です")
        topics.append((topic, requested))
    if not topics:
        raise DecodeError("SUBSCRIBEにトピックがありません")
    return SubscribePacket(packet_id=packet_id, topics=tuple(topics))


def _parse_suback(flags: int, body: bytes) -> SubackPacket:
    packet_id, pos = read_packet_id(body, 0)
    return_codes = tuple(body[pos:])
    if not return_codes:
        raise DecodeError("SUBACKにリターンコードがありません")
    for code in return_codes:
        if code not in VALID_SUBACK_CODES:
            raise DecodeError(f"SUBACKのリターンコードが不正です: {code:#04x}")
    return SubackPacket(packet_id=packet_id, return_codes=return_codes)


_PARSERS: Dict[PacketType, Callable[[int, bytes], MQTTPacket]] = {
    PacketType.CONNECT: _parse_connect,
    PacketType.CONNACK: _parse_connack,
    PacketType.PUBLISH: _parse_publish,
    PacketType.PUBACK: _ack_parser(PubackPacket),
    PacketType.PUBREC: _ack_parser(PubrecPacket),
    PacketType.PUBREL: _ack_parser(PubrelPacket),
    PacketType.PUBCOMP: _ack_parser(PubcompPacket),
    PacketType.SUBSCRIBE: _parse_subscribe,
    PacketType.SUBACK: _parse_suback,
    PacketType.PINGREQ: lambda flags, body: PingreqPacket(),
    PacketType.PINGRESP: lambda flags, body: PingrespPacket(),
    PacketType.DISCONNECT: lambda flags, body: DisconnectPacket(),
}


def describe_packet(packet: MQTTPacket) -> Dict[str, Any]:
    """パケットの概要をログ出力用の辞書にします.

    Args:
        packet: 対象のパケット

    Returns:
        dict: タイプ、フラグ、各フィールド
    """
    result: Dict[str, Any] = {
        "type": packet.packet_type.name,
        "flags": f"0b{packet.flags:04b}",
    }
    for key, value in asdict(packet).items():
        if key == "password" and value is not None:
            result[key] = "***"
        elif isinstance(value, (bytes, bytearray)):
            result[key] = value.hex()
        else:
            result[key] = value
    return result
