"""Constants definitions.

定数定義を提供するモジュール。
"""

from enum import IntEnum, unique
from typing import Dict, Final


@unique
class ConnectionState(IntEnum):
    """接続状態を表す列挙型.

    Attributes:
        DISCONNECTED (0): 未接続
        CONNECT_SENT (1): CONNECT送信済み、CONNACK待ち
        CONNECTED (2): 接続済み
    """

    DISCONNECTED = 0
    CONNECT_SENT = 1
    CONNECTED = 2


# ブローカー設定
DEFAULT_HOST: Final[str] = "localhost"
DEFAULT_PORT: Final[int] = 1883
DEFAULT_TLS_PORT: Final[int] = 8883
WS_SUBPROTOCOL: Final[str] = "mqtt"
READ_SIZE: Final[int] = 4096

# MQTT設定
MQTT_PROTOCOL_NAME: Final[str] = "MQTT"
MQTT_PROTOCOL_VERSION: Final[int] = 4
MQTT_KEEP_ALIVE: Final[int] = 60
MQTT_CLIENT_ID_PREFIX: Final[str] = "mqttflow-"

# ワイヤーフォーマットの制限
MAX_REMAINING_LENGTH: Final[int] = 268_435_455
MAX_REMAINING_LENGTH_BYTES: Final[int] = 4
MAX_PACKET_ID: Final[int] = 65535
MAX_STRING_LENGTH: Final[int] = 65535
SUBACK_FAILURE: Final[int] = 0x80

# ログとコンソール設定
LOG_FORMAT: Final[str] = "%(message)s"

CONSOLE_THEME: Final[Dict[str, str]] = {
    "info": "blue",
    "warning": "yellow",
    "error": "red",
    "debug": "dim white",
    "sent": "green",
    "received": "magenta",
}
