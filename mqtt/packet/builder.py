"""MQTT packet builder.

MQTTパケットビルダーを提供するモジュール。

主な機能:
- パケットのワイヤー形式へのエンコード
- CONNECTパケットの生成
- PUBLISHパケットの生成
- PUBACK/PUBREC/PUBREL/PUBCOMPパケットの生成
- SUBSCRIBEパケットの生成
- PINGREQパケットの生成
- DISCONNECTパケットの生成
"""

from typing import Iterable, Optional, Tuple, Union

from .base import MQTTPacket
from .models import (
    ConnectPacket,
    DisconnectPacket,
    PingreqPacket,
    PubackPacket,
    PubcompPacket,
    PublishPacket,
    PubrecPacket,
    PubrelPacket,
    SubscribePacket,
)


def encode_packet(packet: MQTTPacket) -> bytes:
    """パケットをワイヤー形式のバイト列にエンコードする.

    固定ヘッダー(タイプ|フラグ、最小桁数の残りの長さ)に続けて
    可変ヘッダーとペイロードを出力します。

    Args:
        packet (MQTTPacket): エンコードするパケット

    Returns:
        bytes: エンコードされたバイト列

    Raises:
        PacketError: パケットのフィールド値が不正な場合
    """
    return packet.packet


def build_connect_packet(
    client_id: str,
    username: Optional[str] = None,
    password: Optional[Union[str, bytes]] = None,
    keep_alive: int = 60,
    clean_session: bool = True,
) -> ConnectPacket:
    """CONNECTパケットを生成する.

    Args:
        client_id (str): クライアントID
        username (Optional[str]): ユーザー名
        password (Optional[Union[str, bytes]]): パスワード
        keep_alive (int): キープアライブ時間(秒)。デフォルト60秒。
        clean_session (bool): セッションをクリーンに保つかどうか:デフォルトTrue

    Returns:
        ConnectPacket: 生成されたCONNECTパケット
    """
    if isinstance(password, str):
        password = password.encode("utf-8")
    return ConnectPacket(
        client_id=client_id,
        keep_alive=keep_alive,
        clean_session=clean_session,
        username=username,
        password=password,
    )


def build_publish_packet(
    topic: str,
    payload: Union[bytes, str],
    qos: int = 0,
    packet_id: Optional[int] = None,
    retain: bool = False,
    dup: bool = False,
) -> PublishPacket:
    """PUBLISHパケットを生成する.

    Args:
        topic (str): 発行するトピック
        payload (Union[bytes, str]): メッセージのペイロード
        qos (int): QoSレベル(0-2)。デフォルト0。
        packet_id (Optional[int]): パケット識別子。QoS > 0の場合は必須。
        retain (bool): 保持フラグ。デフォルトFalse。
        dup (bool): 再送フラグ。デフォルトFalse。

    Returns:
        PublishPacket: 生成されたPUBLISHパケット
    """
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return PublishPacket(
        topic=topic,
        payload=bytes(payload),
        qos=qos,
        packet_id=packet_id if qos > 0 else None,
        retain=retain,
        dup=dup,
    )


def build_puback_packet(packet_id: int) -> PubackPacket:
    """PUBACKパケットを生成する."""
    return PubackPacket(packet_id=packet_id)


def build_pubrec_packet(packet_id: int) -> PubrecPacket:
    """PUBRECパケットを生成する."""
    return PubrecPacket(packet_id=packet_id)


def build_pubrel_packet(packet_id: int) -> PubrelPacket:
    """PUBRELパケットを生成する. フラグは常に0b0010."""
    return PubrelPacket(packet_id=packet_id)


def build_pubcomp_packet(packet_id: int) -> PubcompPacket:
    """PUBCOMPパケットを生成する."""
    return PubcompPacket(packet_id=packet_id)


def build_subscribe_packet(
    packet_id: int, topics: Iterable[Tuple[str, int]]
) -> SubscribePacket:
    """SUBSCRIBEパケットを生成する.

    Args:
        packet_id (int): パケット識別子
        topics (Iterable[Tuple[str, int]]): (トピックフィルター, QoS)のリスト

    Returns:
        SubscribePacket: 生成されたSUBSCRIBEパケット
    """
    return SubscribePacket(
        packet_id=packet_id,
        topics=tuple((topic, qos) for topic, qos in topics),
    )


def build_ping_packet() -> PingreqPacket:
    """PINGREQパケットを生成する.

    Returns:
        PingreqPacket: 生成されたPINGREQパケット
    """
    return PingreqPacket()


def build_disconnect_packet() -> DisconnectPacket:
    """DISCONNECTパケットを生成する.

    Returns:
        DisconnectPacket: 生成されたDISCONNECTパケット
    """
    return DisconnectPacket()
