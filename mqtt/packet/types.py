"""MQTT packet types.

MQTTパケットタイプの定義を提供するモジュール。

このモジュールはMQTTプロトコルで使用される各種パケットタイプと、
固定ヘッダーのフラグ、CONNACKリターンコードを定義します。
"""

from enum import IntEnum, unique
from typing import Dict, Final


@unique
class PacketType(IntEnum):
    """MQTTパケットタイプを定義する列挙型.

    MQTT v3.1.1仕様に基づくパケットタイプの列挙です。
    0と15は予約済み、UNSUBSCRIBE(10)/UNSUBACK(11)はサポートしていません。

    Attributes:
        CONNECT (int): クライアントからサーバーへの接続要求パケット
        CONNACK (int): サーバーからクライアントへの接続応答パケット
        PUBLISH (int): メッセージの配信パケット
        PUBACK (int): QoS 1での PUBLISH パケットの受信確認
        PUBREC (int): QoS 2での PUBLISH パケットの受信記録
        PUBREL (int): QoS 2での配信解放
        PUBCOMP (int): QoS 2での配信完了
        SUBSCRIBE (int): トピックの購読要求パケット
        SUBACK (int): サーバーからの購読要求応答パケット
        PINGREQ (int): クライアントからのping要求パケット
        PINGRESP (int): サーバーからのping応答パケット
        DISCONNECT (int): クライアントからの正常切断要求パケット
    """

    CONNECT = 1
    CONNACK = 2
    PUBLISH = 3
    PUBACK = 4
    PUBREC = 5
    PUBREL = 6
    PUBCOMP = 7
    SUBSCRIBE = 8
    SUBACK = 9
    PINGREQ = 12
    PINGRESP = 13
    DISCONNECT = 14


@unique
class ConnackCode(IntEnum):
    """CONNACKのリターンコード."""

    ACCEPTED = 0
    UNACCEPTABLE_PROTOCOL_VERSION = 1
    IDENTIFIER_REJECTED = 2
    SERVER_UNAVAILABLE = 3
    BAD_USERNAME_OR_PASSWORD = 4
    NOT_AUTHORIZED = 5


# PUBLISH以外のパケットで必須の固定ヘッダーフラグ
REQUIRED_FLAGS: Final[Dict[PacketType, int]] = {
    PacketType.CONNECT: 0b0000,
    PacketType.CONNACK: 0b0000,
    PacketType.PUBACK: 0b0000,
    PacketType.PUBREC: 0b0000,
    PacketType.PUBREL: 0b0010,
    PacketType.PUBCOMP: 0b0000,
    PacketType.SUBSCRIBE: 0b0010,
    PacketType.SUBACK: 0b0000,
    PacketType.PINGREQ: 0b0000,
    PacketType.PINGRESP: 0b0000,
    PacketType.DISCONNECT: 0b0000,
}

# 残りの長さが固定されているパケット
FIXED_REMAINING_LENGTH: Final[Dict[PacketType, int]] = {
    PacketType.CONNACK: 2,
    PacketType.PUBACK: 2,
    PacketType.PUBREC: 2,
    PacketType.PUBREL: 2,
    PacketType.PUBCOMP: 2,
    PacketType.PINGREQ: 0,
    PacketType.PINGRESP: 0,
    PacketType.DISCONNECT: 0,
}

# PUBLISHフラグのビットマスク
PUBLISH_DUP: Final[int] = 0x08
PUBLISH_QOS_MASK: Final[int] = 0x06
PUBLISH_RETAIN: Final[int] = 0x01

# CONNECTフラグ
CONNECT_USERNAME: Final[int] = 0x80
CONNECT_PASSWORD: Final[int] = 0x40
CONNECT_WILL_RETAIN: Final[int] = 0x20
CONNECT_WILL_QOS_MASK: Final[int] = 0x18
CONNECT_WILL: Final[int] = 0x04
CONNECT_CLEAN_SESSION: Final[int] = 0x02
CONNECT_RESERVED: Final[int] = 0x01
