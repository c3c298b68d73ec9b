"""MQTT packet models.

MQTTパケットの構造を表現するデータモデルを提供するモジュール。

各パケットはイミュータブルなデータクラスで、値として比較できます。
"""

import struct
from dataclasses import dataclass, field
from typing import ClassVar, Optional, Tuple

from core.constants import (
    MQTT_KEEP_ALIVE,
    MQTT_PROTOCOL_NAME,
    MQTT_PROTOCOL_VERSION,
    SUBACK_FAILURE,
)
from core.exceptions import PacketError

from .base import MQTTPacket, check_packet_id, encode_binary, encode_string
from .types import (
    CONNECT_CLEAN_SESSION,
    CONNECT_PASSWORD,
    CONNECT_USERNAME,
    PUBLISH_DUP,
    PUBLISH_RETAIN,
    PacketType,
)

VALID_SUBACK_CODES = frozenset({0, 1, 2, SUBACK_FAILURE})


def check_topic_name(topic: str) -> Optional[str]:
    """PUBLISHのトピック名を検証し、問題があれば理由を返す."""
    if not topic:
        return "トピック名が空です"
    if "+" in topic or "#" in topic:
        return f"トピック名にワイルドカードは使用できません: {topic}"
    if "\x00" in topic:
        return "トピック名にNUL文字は使用できません"
    return None


@dataclass(frozen=True)
class ConnectPacket(MQTTPacket):
    """CONNECTパケット.

    Attributes:
        client_id: クライアントID
        keep_alive: キープアライブ時間(秒)
        clean_session: クリーンセッションフラグ
        username: ユーザー名
        password: パスワード
        protocol_name: プロトコル名
        protocol_level: プロトコルレベル
    """

    packet_type: ClassVar[PacketType] = PacketType.CONNECT

    client_id: str
    keep_alive: int = MQTT_KEEP_ALIVE
    clean_session: bool = True
    username: Optional[str] = None
    password: Optional[bytes] = None
    protocol_name: str = MQTT_PROTOCOL_NAME
    protocol_level: int = MQTT_PROTOCOL_VERSION

    @property
    def connect_flags(self) -> int:
        flags = 0
        if self.clean_session:
            flags |= CONNECT_CLEAN_SESSION
        if self.username is not None:
            flags |= CONNECT_USERNAME
        if self.password is not None:
            flags |= CONNECT_PASSWORD
        return flags

    def encode_body(self) -> bytes:
        if not 0 <= self.keep_alive <= 0xFFFF:
            raise PacketError(f"キープアライブが範囲外です: {self.keep_alive}")
        if not 0 <= self.protocol_level <= 0xFF:
            raise PacketError(
                f"プロトコルレベルが範囲外です: {self.protocol_level}"
            )
        if self.password is not None and self.username is None:
            raise PacketError("ユーザー名なしでパスワードは指定できません")

        # 可変ヘッダーの構築
        var_header = (
            encode_string(self.protocol_name)
            + bytes([self.protocol_level, self.connect_flags])
            + struct.pack("!H", self.keep_alive)
        )

        # ペイロードの構築
        payload = encode_string(self.client_id)
        if self.username is not None:
            payload += encode_string(self.username)
        if self.password is not None:
            payload += encode_binary(self.password)

        return var_header + payload


@dataclass(frozen=True)
class ConnackPacket(MQTTPacket):
    """CONNACKパケット."""

    packet_type: ClassVar[PacketType] = PacketType.CONNACK

    session_present: bool = False
    return_code: int = 0

    def encode_body(self) -> bytes:
        if not 0 <= self.return_code <= 0xFF:
            raise PacketError(f"リターンコードが範囲外です: {self.return_code}")
        if self.session_present and self.return_code != 0:
            raise PacketError("拒否するCONNACKにsession presentは設定できません")
        return bytes([int(self.session_present), self.return_code])


@dataclass(frozen=True)
class PublishPacket(MQTTPacket):
    """PUBLISHパケット.

    Attributes:
        topic: トピック名
        payload: メッセージのペイロード
        qos: QoSレベル(0-2)
        packet_id: パケット識別子。QoS 0の場合はNone
        retain: 保持フラグ
        dup: 再送フラグ
    """

    packet_type: ClassVar[PacketType] = PacketType.PUBLISH

    topic: str
    payload: bytes = b""
    qos: int = 0
    packet_id: Optional[int] = None
    retain: bool = False
    dup: bool = False

    @property
    def flags(self) -> int:
        flags = (self.qos << 1) & 0x06
        if self.dup:
            flags |= PUBLISH_DUP
        if self.retain:
            flags |= PUBLISH_RETAIN
        return flags

    def encode_body(self) -> bytes:
        if self.qos not in (0, 1, 2):
            raise PacketError(f"QoSレベルが不正です: {self.qos}")
        problem = check_topic_name(self.topic)
        if problem:
            raise PacketError(problem)

        var_header = encode_string(self.topic)
        if self.qos > 0:
            var_header += struct.pack("!H", check_packet_id(self.packet_id))
        else:
            if self.packet_id is not None:
                raise PacketError("QoS 0のPUBLISHにパケット識別子は指定できません")
            if self.dup:
                raise PacketError("QoS 0のPUBLISHにDUPフラグは設定できません")

        return var_header + bytes(self.payload)


@dataclass(frozen=True)
class AckPacket(MQTTPacket):
    """PUBACK/PUBREC/PUBREL/PUBCOMPの共通部分.

    可変ヘッダーは2バイトのパケット識別子のみで、ペイロードはありません。
    """

    packet_id: int

    def encode_body(self) -> bytes:
        return struct.pack("!H", check_packet_id(self.packet_id))


class PubackPacket(AckPacket):
    """PUBACKパケット(QoS 1の確認応答)."""

    packet_type: ClassVar[PacketType] = PacketType.PUBACK


class PubrecPacket(AckPacket):
    """PUBRECパケット(QoS 2の受信記録)."""

    packet_type: ClassVar[PacketType] = PacketType.PUBREC


class PubrelPacket(AckPacket):
    """PUBRELパケット(QoS 2の解放). フラグは常に0b0010."""

    packet_type: ClassVar[PacketType] = PacketType.PUBREL


class PubcompPacket(AckPacket):
    """PUBCOMPパケット(QoS 2の完了)."""

    packet_type: ClassVar[PacketType] = PacketType.PUBCOMP


@dataclass(frozen=True)
class SubscribePacket(MQTTPacket):
    """SUBSCRIBEパケット.

    Attributes:
        packet_id: パケット識別子
        topics: (トピックフィルター, 要求QoS)のタプル
    """

    packet_type: ClassVar[PacketType] = PacketType.SUBSCRIBE

    packet_id: int
    topics: Tuple[Tuple[str, int], ...] = field(default_factory=tuple)

    def encode_body(self) -> bytes:
        if not self.topics:
            raise PacketError("SUBSCRIBEには1つ以上のトピックが必要です")

        var_header = struct.pack("!H", check_packet_id(self.packet_id))
        payload = b""
        for topic, qos in self.topics:
            if qos not in (0, 1, 2):
                raise PacketError(f"QoSレベルが不正です: {qos}")
            if not topic:
                raise PacketError("トピックフィルターが空です")
            payload += encode_string(topic) + bytes([qos])
        return var_header + payload


@dataclass(frozen=True)
class SubackPacket(MQTTPacket):
    """SUBACKパケット."""

    packet_type: ClassVar[PacketType] = PacketType.SUBACK

    packet_id: int
    return_codes: Tuple[int, ...] = field(default_factory=tuple)

    def encode_body(self) -> bytes:
        if not self.return_codes:
            raise PacketError("SUBACKには1つ以上のリターンコードが必要です")
        for code in self.return_codes:
            if code not in VALID_SUBACK_CODES:
                raise PacketError(f"SUBACKのリターンコードが不正です: {code}")
        return struct.pack("!H", check_packet_id(self.packet_id)) + bytes(
            self.return_codes
        )


@dataclass(frozen=True)
class PingreqPacket(MQTTPacket):
    """PINGREQパケット."""

    packet_type: ClassVar[PacketType] = PacketType.PINGREQ

    def encode_body(self) -> bytes:
        return b""


@dataclass(frozen=True)
class PingrespPacket(MQTTPacket):
    """PINGRESPパケット."""

    packet_type: ClassVar[PacketType] = PacketType.PINGRESP

    def encode_body(self) -> bytes:
        return b""


@dataclass(frozen=True)
class DisconnectPacket(MQTTPacket):
    """DISCONNECTパケット."""

    packet_type: ClassVar[PacketType] = PacketType.DISCONNECT

    def encode_body(self) -> bytes:
        return b""
