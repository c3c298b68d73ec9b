"""MQTT packet handling.

MQTTパケット処理を提供するパッケージ。

主な機能:
- MQTTパケットの基本クラスとデータモデル
- パケットの構築とエンコード
- 再開可能なパケットの解析
- パケットタイプの定義
"""

from .base import (
    FixedHeader,
    MQTTPacket,
    decode_remaining_length,
    encode_remaining_length,
    parse_fixed_header,
)
from .builder import (
    build_connect_packet,
    build_disconnect_packet,
    build_ping_packet,
    build_puback_packet,
    build_pubcomp_packet,
    build_publish_packet,
    build_pubrec_packet,
    build_pubrel_packet,
    build_subscribe_packet,
    encode_packet,
)
from .models import (
    AckPacket,
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
)
from .parser import decode_packet, describe_packet
from .types import ConnackCode, PacketType

__all__ = [
    # 基本クラス
    "MQTTPacket",
    "FixedHeader",
    "PacketType",
    "ConnackCode",
    # パケットモデル
    "ConnectPacket",
    "ConnackPacket",
    "PublishPacket",
    "AckPacket",
    "PubackPacket",
    "PubrecPacket",
    "PubrelPacket",
    "PubcompPacket",
    "SubscribePacket",
    "SubackPacket",
    "PingreqPacket",
    "PingrespPacket",
    "DisconnectPacket",
    # パケット構築
    "encode_packet",
    "encode_remaining_length",
    "build_connect_packet",
    "build_publish_packet",
    "build_puback_packet",
    "build_pubrec_packet",
    "build_pubrel_packet",
    "build_pubcomp_packet",
    "build_subscribe_packet",
    "build_ping_packet",
    "build_disconnect_packet",
    # パケット解析
    "decode_packet",
    "decode_remaining_length",
    "parse_fixed_header",
    "describe_packet",
]
