"""Protocol events.

状態遷移の結果として呼び出し側に通知されるイベントと、
送信すべきパケットをまとめたReactionを定義するモジュール。
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from core.exceptions import MQTTError

from ..packet import MQTTPacket, PublishPacket
from .state import InFlightPublish, InFlightSubscribe


@dataclass(frozen=True)
class Connected:
    """CONNACK(0)を受信し接続が確立した."""

    session_present: bool = False


@dataclass(frozen=True)
class PublishCompleted:
    """パブリッシュが最終の確認応答まで完了した."""

    entry: InFlightPublish


@dataclass(frozen=True)
class SubscribeCompleted:
    """購読要求にSUBACKが返った."""

    packet_id: int
    return_codes: Tuple[int, ...]


@dataclass(frozen=True)
class MessageReceived:
    """ブローカーからのメッセージをアプリケーションに配信する."""

    message: PublishPacket


@dataclass(frozen=True)
class PingResponse:
    """PINGRESPを受信した."""


@dataclass(frozen=True)
class Failure:
    """接続拒否やプロトコル違反などの失敗."""

    error: MQTTError


@dataclass(frozen=True)
class Disconnected:
    """切断された.

    Attributes:
        unresolved: 確認応答を受け取れなかったパブリッシュ
        abandoned: SUBACKを受け取れなかった購読要求
        reason: 切断理由
    """

    unresolved: Tuple[InFlightPublish, ...] = ()
    abandoned: Tuple[InFlightSubscribe, ...] = ()
    reason: str = ""


Event = Union[
    Connected,
    PublishCompleted,
    SubscribeCompleted,
    MessageReceived,
    PingResponse,
    Failure,
    Disconnected,
]


@dataclass
class Reaction:
    """状態遷移の結果.

    Attributes:
        outbound: 送信すべきパケット(順序通り)
        events: 呼び出し側へのイベント
        packet_id: この操作で割り当てたパケット識別子
    """

    outbound: List[MQTTPacket] = field(default_factory=list)
    events: List[Event] = field(default_factory=list)
    packet_id: Optional[int] = None

    def extend(self, other: "Reaction") -> "Reaction":
        self.outbound.extend(other.outbound)
        self.events.extend(other.events)
        return self
