"""In-flight state.

確認応答待ちのパブリッシュと購読要求を表すデータモデル。
"""

from dataclasses import dataclass
from enum import Enum, unique
from typing import Tuple


@unique
class PublishState(Enum):
    """パブリッシュの確認応答状態.

    Attributes:
        AWAITING_PUBACK: QoS 1、PUBACK待ち
        AWAITING_PUBREC: QoS 2、PUBREC待ち
        AWAITING_PUBREL: 受信したQoS 2、ブローカーからのPUBREL待ち
        AWAITING_PUBCOMP: QoS 2、PUBREL送信済み、PUBCOMP待ち
    """

    AWAITING_PUBACK = "AwaitingPubAck"
    AWAITING_PUBREC = "AwaitingPubRec"
    AWAITING_PUBREL = "AwaitingPubRel"
    AWAITING_PUBCOMP = "AwaitingPubComp"


@dataclass(frozen=True)
class InFlightPublish:
    """確認応答待ちのパブリッシュ.

    再送に備えてトピックとペイロードを保持します。

    Attributes:
        packet_id: パケット識別子
        qos: QoSレベル(1または2)
        state: 現在の確認応答状態
        topic: トピック名
        payload: ペイロード
        retain: 保持フラグ
    """

    packet_id: int
    qos: int
    state: PublishState
    topic: str
    payload: bytes = b""
    retain: bool = False


@dataclass(frozen=True)
class InFlightSubscribe:
    """SUBACK待ちの購読要求."""

    packet_id: int
    topics: Tuple[Tuple[str, int], ...]
