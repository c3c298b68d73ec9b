"""MQTT protocol handling.

MQTTプロトコル処理を提供するパッケージ。

このパッケージはMQTT 3.1.1クライアントのコア機能を提供します。
パケットのエンコードとデコード、接続と確認応答の状態機械、
およびバイトストリーム上でそれらを駆動するセッションドライバーが含まれています。
"""

from .packet import (
    ConnackPacket,
    ConnectPacket,
    MQTTPacket,
    PacketType,
    PubackPacket,
    PubcompPacket,
    PublishPacket,
    PubrecPacket,
    PubrelPacket,
    SubackPacket,
    SubscribePacket,
    decode_packet,
    encode_packet,
)
from .protocol import InFlightPublish, ProtocolMachine, PublishState
from .session import (
    ConnectOptions,
    MQTTSession,
    PublishHandle,
    PublishOutcome,
    SessionConfig,
)
from .transport import Channel, TransportConfig, open_channel

# パブリックAPIとして公開する要素を定義
__all__ = [
    # 基本型
    "MQTTPacket",
    "PacketType",
    "ConnectPacket",
    "ConnackPacket",
    "PublishPacket",
    "PubackPacket",
    "PubrecPacket",
    "PubrelPacket",
    "PubcompPacket",
    "SubscribePacket",
    "SubackPacket",
    # コーデック
    "encode_packet",
    "decode_packet",
    # 状態機械
    "ProtocolMachine",
    "PublishState",
    "InFlightPublish",
    # セッション
    "MQTTSession",
    "SessionConfig",
    "ConnectOptions",
    "PublishHandle",
    "PublishOutcome",
    # トランスポート
    "Channel",
    "TransportConfig",
    "open_channel",
]
