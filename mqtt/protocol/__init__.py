"""MQTT protocol state machine.

接続状態と確認応答状態を管理する状態機械を提供するパッケージ。
"""

from .events import (
    Connected,
    Disconnected,
    Event,
    Failure,
    MessageReceived,
    PingResponse,
    PublishCompleted,
    Reaction,
    SubscribeCompleted,
)
from .machine import ProtocolMachine
from .state import InFlightPublish, InFlightSubscribe, PublishState

__all__ = [
    "ProtocolMachine",
    "Reaction",
    # 状態
    "PublishState",
    "InFlightPublish",
    "InFlightSubscribe",
    # イベント
    "Event",
    "Connected",
    "Disconnected",
    "Failure",
    "MessageReceived",
    "PingResponse",
    "PublishCompleted",
    "SubscribeCompleted",
]
