"""MQTT protocol state machine.

接続ハンドシェイクとQoS 1/QoS 2の確認応答フローを扱う状態機械。

トランスポートには依存せず、現在の状態と受信パケット(または送信要求)から
次の状態と、反応として送信すべきパケット・呼び出し側へのイベントを返します。
受信データに起因する問題は例外ではなくFailureイベントとして報告し、
APIの誤用のみSessionStateErrorを送出します。
"""

from dataclasses import replace
from typing import Callable, Dict, Iterable, Optional, Tuple

from core.constants import MAX_PACKET_ID, ConnectionState
from core.exceptions import ConnectionRefused, ProtocolViolation, SessionStateError

from ..packet import (
    ConnackCode,
    ConnackPacket,
    MQTTPacket,
    PacketType,
    PubackPacket,
    PubcompPacket,
    PublishPacket,
    PubrecPacket,
    PubrelPacket,
    SubackPacket,
    build_connect_packet,
    build_disconnect_packet,
    build_ping_packet,
    build_puback_packet,
    build_pubcomp_packet,
    build_publish_packet,
    build_pubrec_packet,
    build_pubrel_packet,
    build_subscribe_packet,
)
from .events import (
    Connected,
    Disconnected,
    Failure,
    MessageReceived,
    PingResponse,
    PublishCompleted,
    Reaction,
    SubscribeCompleted,
)
from .state import InFlightPublish, InFlightSubscribe, PublishState


class ProtocolMachine:
    """1接続分のプロトコル状態.

    Attributes:
        state: 現在の接続状態
        inflight: 送信したQoS 1/2パブリッシュ(パケット識別子ごと)
        incoming: 受信したQoS 2パブリッシュのうちPUBREL待ちのもの
            (クリーンセッションでなければ再接続後も保持する)
        subscriptions: SUBACK待ちの購読要求
        clean_session: 直近のCONNECTで指定したクリーンセッションフラグ
    """

    def __init__(self) -> None:
        self.state = ConnectionState.DISCONNECTED
        self.inflight: Dict[int, InFlightPublish] = {}
        self.incoming: Dict[int, InFlightPublish] = {}
        self.clean_session = True
        self.subscriptions: Dict[int, InFlightSubscribe] = {}
        self._last_packet_id = 0
        self._handlers: Dict[PacketType, Callable[[MQTTPacket], Reaction]] = {
            PacketType.CONNACK: self._on_connack,
            PacketType.PUBLISH: self._on_publish,
            PacketType.PUBACK: self._on_puback,
            PacketType.PUBREC: self._on_pubrec,
            PacketType.PUBREL: self._on_pubrel,
            PacketType.PUBCOMP: self._on_pubcomp,
            PacketType.SUBACK: self._on_suback,
            PacketType.PINGRESP: self._on_pingresp,
        }

    # パケット識別子

    def packet_id_in_use(self, packet_id: int) -> bool:
        """パケット識別子が確認応答待ちの操作で使われているか."""
        return packet_id in self.inflight or packet_id in self.subscriptions

    def next_packet_id(self) -> int:
        """次の未使用のパケット識別子を取得します.

        Returns:
            int: 1〜65535の識別子

        Raises:
            SessionStateError: すべての識別子が使用中の場合
        """
        for _ in range(MAX_PACKET_ID):
            self._last_packet_id = self._last_packet_id % MAX_PACKET_ID + 1
            if not self.packet_id_in_use(self._last_packet_id):
                return self._last_packet_id
        raise SessionStateError("使用可能なパケット識別子がありません")

    def _claim_packet_id(self, packet_id: Optional[int]) -> int:
        if packet_id is None:
            return self.next_packet_id()
        if not 1 <= packet_id <= MAX_PACKET_ID:
            raise SessionStateError(f"パケット識別子が範囲外です: {packet_id}")
        if self.packet_id_in_use(packet_id):
            raise SessionStateError(f"パケット識別子は使用中です: {packet_id}")
        return packet_id

    def _require(self, state: ConnectionState, action: str) -> None:
        if self.state != state:
            raise SessionStateError(
                f"{action}は{state.name}状態でのみ可能です "
                f"(現在: {self.state.name})"
            )

    # 送信要求

    def send_connect(
        self,
        client_id: str,
        keep_alive: int,
        clean_session: bool = True,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> Reaction:
        """CONNECTを送信しConnectSentへ遷移する."""
        self._require(ConnectionState.DISCONNECTED, "CONNECT")
        packet = build_connect_packet(
            client_id=client_id,
            username=username,
            password=password,
            keep_alive=keep_alive,
            clean_session=clean_session,
        )
        packet.encode_body()

        self.clean_session = clean_session
        if clean_session:
            self.incoming.clear()
        self.state = ConnectionState.CONNECT_SENT
        return Reaction(outbound=[packet])

    def send_publish(
        self,
        topic: str,
        payload: bytes,
        qos: int = 0,
        packet_id: Optional[int] = None,
        retain: bool = False,
        dup: bool = False,
    ) -> Reaction:
        """PUBLISHを送信し、QoS 1/2の場合は確認応答待ちとして登録する.

        Args:
            topic: トピック名
            payload: ペイロード
            qos: QoSレベル(0-2)
            packet_id: 再送時などに明示するパケット識別子
            retain: 保持フラグ
            dup: 再送フラグ

        Returns:
            Reaction: 送信するPUBLISHと割り当てたパケット識別子

        Raises:
            SessionStateError: 未接続、QoSが不正、識別子が使用中の場合
            PacketError: トピック名などが不正な場合
        """
        self._require(ConnectionState.CONNECTED, "PUBLISH")
        if qos not in (0, 1, 2):
            raise SessionStateError(f"QoSレベルが不正です: {qos}")

        if qos == 0:
            packet = build_publish_packet(topic, payload, qos=0, retain=retain)
            packet.encode_body()
            return Reaction(outbound=[packet])

        packet_id = self._claim_packet_id(packet_id)
        packet = build_publish_packet(
            topic, payload, qos=qos, packet_id=packet_id, retain=retain, dup=dup
        )
        packet.encode_body()

        self.inflight[packet_id] = InFlightPublish(
            packet_id=packet_id,
            qos=qos,
            state=(
                PublishState.AWAITING_PUBACK
                if qos == 1
                else PublishState.AWAITING_PUBREC
            ),
            topic=topic,
            payload=packet.payload,
            retain=retain,
        )
        return Reaction(outbound=[packet], packet_id=packet_id)

    def send_subscribe(
        self,
        topics: Iterable[Tuple[str, int]],
        packet_id: Optional[int] = None,
    ) -> Reaction:
        """SUBSCRIBEを送信しSUBACK待ちとして登録する."""
        self._require(ConnectionState.CONNECTED, "SUBSCRIBE")
        topic_list = tuple(topics)
        packet_id = self._claim_packet_id(packet_id)
        packet = build_subscribe_packet(packet_id, topic_list)
        packet.encode_body()

        self.subscriptions[packet_id] = InFlightSubscribe(
            packet_id=packet_id, topics=topic_list
        )
        return Reaction(outbound=[packet], packet_id=packet_id)

    def send_ping(self) -> Reaction:
        """PINGREQを送信する."""
        self._require(ConnectionState.CONNECTED, "PINGREQ")
        return Reaction(outbound=[build_ping_packet()])

    def send_disconnect(self) -> Reaction:
        """DISCONNECTを送信しDisconnectedへ遷移する."""
        self._require(ConnectionState.CONNECTED, "DISCONNECT")
        reaction = Reaction(outbound=[build_disconnect_packet()])
        return reaction.extend(self.connection_lost("disconnect"))

    def connection_lost(self, reason: str = "") -> Reaction:
        """トランスポートのエラーまたはクローズ.

        どの状態からでもDisconnectedへ遷移し、確認応答待ちのパブリッシュを
        すべて未解決として報告します。
        PUBREL待ちの受信メッセージはクリーンセッションでない場合のみ保持します。
        すでに切断済みなら何もしません。
        """
        if (
            self.state == ConnectionState.DISCONNECTED
            and not self.inflight
            and not self.subscriptions
        ):
            return Reaction()

        unresolved = tuple(self.inflight.values())
        abandoned = tuple(self.subscriptions.values())
        self.inflight.clear()
        self.subscriptions.clear()
        if self.clean_session:
            self.incoming.clear()
        self.state = ConnectionState.DISCONNECTED
        return Reaction(
            events=[
                Disconnected(
                    unresolved=unresolved, abandoned=abandoned, reason=reason
                )
            ]
        )

    # 受信

    def receive(self, packet: MQTTPacket) -> Reaction:
        """デコード済みの受信パケットを処理する."""
        handler = self._handlers.get(packet.packet_type)
        if handler is None:
            return self._violation(packet, "クライアントが受信できないパケットです")
        if (
            packet.packet_type != PacketType.CONNACK
            and self.state != ConnectionState.CONNECTED
        ):
            return self._violation(
                packet, f"{self.state.name}状態では受信できません"
            )
        return handler(packet)

    def _violation(self, packet: MQTTPacket, detail: str) -> Reaction:
        return Reaction(
            events=[
                Failure(
                    ProtocolViolation(
                        packet.packet_type.name,
                        packet.get_message_id(),
                        detail,
                    )
                )
            ]
        )

    def _on_connack(self, packet: ConnackPacket) -> Reaction:
        if self.state != ConnectionState.CONNECT_SENT:
            return self._violation(packet, "CONNECTを送信していません")

        if packet.return_code != ConnackCode.ACCEPTED:
            self.state = ConnectionState.DISCONNECTED
            return Reaction(events=[Failure(ConnectionRefused(packet.return_code))])

        self.state = ConnectionState.CONNECTED
        if not packet.session_present:
            # ブローカー側にセッションが無いためPUBRELは届かない
            self.incoming.clear()
        return Reaction(events=[Connected(session_present=packet.session_present)])

    def _take_inflight(
        self, packet_id: int, expected: PublishState
    ) -> Optional[InFlightPublish]:
        entry = self.inflight.get(packet_id)
        if entry is None or entry.state != expected:
            return None
        return entry

    def _on_puback(self, packet: PubackPacket) -> Reaction:
        entry = self._take_inflight(packet.packet_id, PublishState.AWAITING_PUBACK)
        if entry is None:
            return self._violation(packet, "PUBACK待ちのパブリッシュがありません")
        del self.inflight[packet.packet_id]
        return Reaction(events=[PublishCompleted(entry)])

    def _on_pubrec(self, packet: PubrecPacket) -> Reaction:
        entry = self._take_inflight(packet.packet_id, PublishState.AWAITING_PUBREC)
        if entry is None:
            return self._violation(packet, "PUBREC待ちのパブリッシュがありません")
        self.inflight[packet.packet_id] = replace(
            entry, state=PublishState.AWAITING_PUBCOMP
        )
        return Reaction(outbound=[build_pubrel_packet(packet.packet_id)])

    def _on_pubcomp(self, packet: PubcompPacket) -> Reaction:
        entry = self._take_inflight(packet.packet_id, PublishState.AWAITING_PUBCOMP)
        if entry is None:
            return self._violation(packet, "PUBCOMP待ちのパブリッシュがありません")
        del self.inflight[packet.packet_id]
        return Reaction(events=[PublishCompleted(entry)])

    def _on_publish(self, packet: PublishPacket) -> Reaction:
        if packet.qos == 0:
            return Reaction(events=[MessageReceived(packet)])

        packet_id = packet.packet_id
        if packet.qos == 1:
            return Reaction(
                outbound=[build_puback_packet(packet_id)],
                events=[MessageReceived(packet)],
            )

        # QoS 2はPUBRELを受け取った時点で一度だけ配信する
        if packet_id not in self.incoming:
            self.incoming[packet_id] = InFlightPublish(
                packet_id=packet_id,
                qos=2,
                state=PublishState.AWAITING_PUBREL,
                topic=packet.topic,
                payload=packet.payload,
                retain=packet.retain,
            )
        return Reaction(outbound=[build_pubrec_packet(packet_id)])

    def _on_pubrel(self, packet: PubrelPacket) -> Reaction:
        reaction = Reaction(outbound=[build_pubcomp_packet(packet.packet_id)])
        entry = self.incoming.pop(packet.packet_id, None)
        if entry is None:
            return reaction.extend(
                self._violation(packet, "PUBREL待ちのメッセージがありません")
            )

        message = PublishPacket(
            topic=entry.topic,
            payload=entry.payload,
            qos=2,
            packet_id=entry.packet_id,
            retain=entry.retain,
        )
        reaction.events.append(MessageReceived(message))
        return reaction

    def _on_suback(self, packet: SubackPacket) -> Reaction:
        entry = self.subscriptions.get(packet.packet_id)
        if entry is None:
            return self._violation(packet, "SUBACK待ちの購読要求がありません")
        if len(packet.return_codes) != len(entry.topics):
            return self._violation(
                packet,
                "戻り値の数が購読要求と一致しません: "
                f"{len(packet.return_codes)} != {len(entry.topics)}",
            )
        del self.subscriptions[packet.packet_id]
        return Reaction(
            events=[SubscribeCompleted(packet.packet_id, packet.return_codes)]
        )

    def _on_pingresp(self, packet: MQTTPacket) -> Reaction:
        return Reaction(events=[PingResponse()])
