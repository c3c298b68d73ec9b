"""Core functionality.

コアとなる機能を提供するパッケージ。

以下の機能を提供します:
- ロギング機能
- 定数定義
- 例外クラス
"""

from .constants import (
    DEFAULT_HOST,
    DEFAULT_PORT,
    DEFAULT_TLS_PORT,
    MAX_PACKET_ID,
    MAX_REMAINING_LENGTH,
    MQTT_KEEP_ALIVE,
    MQTT_PROTOCOL_NAME,
    MQTT_PROTOCOL_VERSION,
    WS_SUBPROTOCOL,
    ConnectionState,
)
from .exceptions import (
    CONNACK_MESSAGES,
    ERROR_MESSAGES,
    ChannelError,
    ConfigError,
    ConnectionRefused,
    DecodeError,
    MQTTError,
    PacketError,
    ProtocolViolation,
    SessionDisconnected,
    SessionStateError,
)
from .logging import log_error, log_packet, logger, setup_logging

__all__ = [
    # ロギング関連
    "logger",
    "setup_logging",
    "log_packet",
    "log_error",
    # 定数関連
    "ConnectionState",
    "DEFAULT_HOST",
    "DEFAULT_PORT",
    "DEFAULT_TLS_PORT",
    "MAX_PACKET_ID",
    "MAX_REMAINING_LENGTH",
    "MQTT_KEEP_ALIVE",
    "MQTT_PROTOCOL_NAME",
    "MQTT_PROTOCOL_VERSION",
    "WS_SUBPROTOCOL",
    # 例外クラス
    "MQTTError",
    "ConfigError",
    "ChannelError",
    "PacketError",
    "DecodeError",
    "ConnectionRefused",
    "ProtocolViolation",
    "SessionDisconnected",
    "SessionStateError",
    "CONNACK_MESSAGES",
    "ERROR_MESSAGES",
]
