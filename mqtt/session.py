"""MQTT session driver.

バイトストリームチャンネル上でプロトコル状態機械を駆動するセッションドライバー。
以下の機能を提供します:

- CONNECT/CONNACKによる接続の確立
- QoS 0/1/2のパブリッシュと確認応答の追跡
- 受信バイト列のデコードと状態機械への振り分け
- 購読要求とPING
- 切断時の未解決パブリッシュの報告
- パケットのログ出力
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum, unique
from typing import Callable, Dict, Generator, List, Optional, Sequence, Tuple, Union

from core import (
    ERROR_MESSAGES,
    MQTT_KEEP_ALIVE,
    ChannelError,
    ConfigError,
    ConnectionRefused,
    ConnectionState,
    DecodeError,
    MQTTError,
    PacketError,
    ProtocolViolation,
    SessionDisconnected,
    SessionStateError,
    log_error,
    log_packet,
    logger,
)
from core.constants import MQTT_CLIENT_ID_PREFIX

from .packet import MQTTPacket, PublishPacket, decode_packet, describe_packet
from .protocol import (
    Connected,
    Disconnected,
    Event,
    Failure,
    InFlightPublish,
    MessageReceived,
    PingResponse,
    ProtocolMachine,
    PublishCompleted,
    Reaction,
    SubscribeCompleted,
)
from .transport import Channel, TransportConfig, open_channel

MessageCallback = Callable[[PublishPacket], None]
ErrorCallback = Callable[[MQTTError], None]


@dataclass
class ConnectOptions:
    """CONNECTの設定.

    Attributes:
        client_id: クライアントID。空の場合は自動生成する
        keep_alive: キープアライブ間隔(秒)
        clean_session: クリーンセッションフラグ
        username: ユーザー名
        password: パスワード
    """

    client_id: str = ""
    keep_alive: int = MQTT_KEEP_ALIVE
    clean_session: bool = True
    username: Optional[str] = None
    password: Optional[str] = None

    def validate(self) -> None:
        """設定値を検証します.

        Raises:
            ConfigError: 設定値が不正な場合
        """
        if not 0 <= self.keep_alive <= 65535:
            raise ConfigError(
                ERROR_MESSAGES["INVALID_CONFIG"].format(
                    detail=f"keep_alive: {self.keep_alive}"
                )
            )
        if self.password is not None and self.username is None:
            raise ConfigError(
                ERROR_MESSAGES["INVALID_CONFIG"].format(
                    detail="password requires username"
                )
            )

    def resolve_client_id(self) -> str:
        if self.client_id:
            return self.client_id
        return f"{MQTT_CLIENT_ID_PREFIX}{uuid.uuid4().hex[:12]}"


@dataclass
class SessionConfig:
    """セッションの設定.

    Attributes:
        connect: CONNECTの設定
        transport: 接続先の設定
        close_on_violation: プロトコル違反で接続を閉じるかどうか
        close_on_decode_error: デコードエラーで接続を閉じるかどうか。
            閉じない場合、その時点でバッファにあったバイト列は破棄される
    """

    connect: ConnectOptions = field(default_factory=ConnectOptions)
    transport: TransportConfig = field(default_factory=TransportConfig)
    close_on_violation: bool = False
    close_on_decode_error: bool = True


@unique
class PublishOutcome(Enum):
    """パブリッシュの結果.

    Attributes:
        SENT: QoS 0で送信済み
        ACKNOWLEDGED: 最終の確認応答を受信した
        UNRESOLVED: 確認応答の前に切断された
    """

    SENT = "sent"
    ACKNOWLEDGED = "acknowledged"
    UNRESOLVED = "unresolved"


class PublishHandle:
    """パブリッシュの完了を待つためのハンドル.

    ``await handle``で結果(PublishOutcome)を取得します。
    未解決の場合は``entry``を使ってdup=Trueで再送できます。

    Attributes:
        packet_id: パケット識別子。QoS 0の場合はNone
        qos: QoSレベル
        entry: 確認応答待ちのパブリッシュ
    """

    def __init__(
        self,
        future: "asyncio.Future[PublishOutcome]",
        qos: int,
        packet_id: Optional[int] = None,
        entry: Optional[InFlightPublish] = None,
    ) -> None:
        self._future = future
        self.qos = qos
        self.packet_id = packet_id
        self.entry = entry

    def done(self) -> bool:
        return self._future.done()

    @property
    def outcome(self) -> Optional[PublishOutcome]:
        if not self._future.done():
            return None
        return self._future.result()

    @property
    def acknowledged(self) -> bool:
        return self.outcome is PublishOutcome.ACKNOWLEDGED

    def _resolve(
        self, outcome: PublishOutcome, entry: Optional[InFlightPublish] = None
    ) -> None:
        if entry is not None:
            self.entry = entry
        if not self._future.done():
            self._future.set_result(outcome)

    async def wait(self) -> PublishOutcome:
        return await self._future

    def __await__(self) -> Generator[None, None, PublishOutcome]:
        return self._future.__await__()

    def __repr__(self) -> str:
        return (
            f"PublishHandle(packet_id={self.packet_id}, qos={self.qos}, "
            f"outcome={self.outcome})"
        )


def _fail_future(future: Optional[asyncio.Future], error: BaseException) -> None:
    """未完了のFutureを例外で完了させる.

    呼び出し元がawaitしていなくてもasyncioが
    "Future exception was never retrieved" を出さないよう、例外は取得済みにしておく。
    """
    if future is None or future.done():
        return
    future.set_exception(error)
    future.exception()


class MQTTSession:
    """MQTTセッションドライバー.

    チャンネルへの送信、受信バイト列のバッファリングとデコード、
    状態機械への振り分け、ハンドルの解決を行います。
    バッファ、状態機械、ハンドルはこのクラスだけが変更します。
    処理は1ステップずつ直列に実行されます。

    Attributes:
        channel: バイトストリームチャンネル
        config: セッションの設定
        on_message: メッセージ受信時のコールバック
        on_error: 失敗の通知を受けるコールバック
    """

    def __init__(
        self,
        channel: Channel,
        config: Optional[SessionConfig] = None,
        on_message: Optional[MessageCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        """MQTTSessionを初期化します.

        Args:
            channel: 接続確立済みのチャンネル
            config: セッションの設定
            on_message: メッセージ受信時のコールバック
            on_error: 失敗の通知を受けるコールバック
        """
        self.channel = channel
        self.config = config or SessionConfig()
        self.on_message = on_message
        self.on_error = on_error

        self._machine = ProtocolMachine()
        self._buffer = bytearray()
        self._lock = asyncio.Lock()
        self._closed = False
        self._close_requested: Optional[str] = None
        self._connect_future: Optional["asyncio.Future[bool]"] = None
        self._publish_handles: Dict[int, PublishHandle] = {}
        self._subscribe_futures: Dict[int, "asyncio.Future[List[int]]"] = {}

    @classmethod
    async def open(
        cls,
        config: Optional[SessionConfig] = None,
        on_message: Optional[MessageCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> "MQTTSession":
        """設定された接続先へのチャンネルを開いてセッションを作成します."""
        config = config or SessionConfig()
        channel = await open_channel(config.transport)
        return cls(channel, config, on_message=on_message, on_error=on_error)

    async def __aenter__(self) -> "MQTTSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def state(self) -> ConnectionState:
        return self._machine.state

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def inflight(self) -> Dict[int, InFlightPublish]:
        """確認応答待ちのパブリッシュ(コピー)."""
        return dict(self._machine.inflight)

    @property
    def buffered(self) -> int:
        """未処理の受信バイト数."""
        return len(self._buffer)

    # 送信操作

    async def connect(
        self, options: Optional[ConnectOptions] = None
    ) -> "asyncio.Future[bool]":
        """CONNECTを送信します.

        Args:
            options: CONNECTの設定。省略時はconfig.connect

        Returns:
            asyncio.Future[bool]: CONNACK(0)でsession presentフラグを返す。
                拒否された場合はConnectionRefused、切断された場合は
                SessionDisconnectedで失敗する
        """
        options = options or self.config.connect
        options.validate()
        async with self._lock:
            self._ensure_open()
            client_id = options.resolve_client_id()
            reaction = self._machine.send_connect(
                client_id=client_id,
                keep_alive=options.keep_alive,
                clean_session=options.clean_session,
                username=options.username,
                password=options.password,
            )
            logger.info(f"MQTT接続を開始します (クライアントID: {client_id})")
            logger.debug(f"キープアライブ間隔: {options.keep_alive}秒")

            self._connect_future = asyncio.get_running_loop().create_future()
            future = self._connect_future
            await self._apply(reaction)
            return future

    async def publish(
        self,
        topic: str,
        payload: Union[bytes, str],
        qos: int = 0,
        retain: bool = False,
        packet_id: Optional[int] = None,
        dup: bool = False,
    ) -> PublishHandle:
        """PUBLISHを送信します.

        確認応答は待たず、完了は返されたハンドルで確認します。

        Args:
            topic: トピック名
            payload: ペイロード
            qos: QoSレベル(0-2)
            retain: 保持フラグ
            packet_id: パケット識別子。省略時は自動で割り当てる
            dup: 再送フラグ

        Returns:
            PublishHandle: 完了を待つハンドル

        Raises:
            SessionStateError: 未接続、または識別子が使用中の場合
            PacketError: トピック名が不正な場合
        """
        if isinstance(payload, str):
            payload = payload.encode("utf-8")

        async with self._lock:
            self._ensure_open()
            try:
                reaction = self._machine.send_publish(
                    topic,
                    bytes(payload),
                    qos=qos,
                    packet_id=packet_id,
                    retain=retain,
                    dup=dup,
                )
            except PacketError as err:
                log_error("PACKET_BUILD_ERROR", {"detail": str(err)})
                raise
            handle = PublishHandle(
                asyncio.get_running_loop().create_future(),
                qos=qos,
                packet_id=reaction.packet_id,
                entry=self._machine.inflight.get(reaction.packet_id)
                if reaction.packet_id is not None
                else None,
            )
            if reaction.packet_id is not None:
                self._publish_handles[reaction.packet_id] = handle

            await self._apply(reaction)
            if qos == 0:
                handle._resolve(PublishOutcome.SENT)
            return handle

    async def subscribe(
        self,
        topics: Union[str, Sequence[Tuple[str, int]]],
        qos: int = 0,
    ) -> "asyncio.Future[List[int]]":
        """SUBSCRIBEを送信します.

        Args:
            topics: トピックフィルター、または(トピックフィルター, QoS)のリスト
            qos: topicsが文字列の場合のQoS

        Returns:
            asyncio.Future[List[int]]: SUBACKのリターンコード
        """
        if isinstance(topics, str):
            topics = [(topics, qos)]

        async with self._lock:
            self._ensure_open()
            reaction = self._machine.send_subscribe(topics)
            future: "asyncio.Future[List[int]]" = (
                asyncio.get_running_loop().create_future()
            )
            self._subscribe_futures[reaction.packet_id] = future
            await self._apply(reaction)
            return future

    async def ping(self) -> None:
        """PINGREQを送信します."""
        async with self._lock:
            self._ensure_open()
            await self._apply(self._machine.send_ping())

    async def disconnect(self) -> None:
        """DISCONNECTを送信してセッションを閉じます."""
        async with self._lock:
            if self._closed:
                return
            if self._machine.state == ConnectionState.CONNECTED:
                try:
                    await self._apply(self._machine.send_disconnect())
                except ChannelError as err:
                    logger.error(f"切断エラー: {err}")
            await self._close_locked("disconnect")

    async def close(self) -> None:
        """セッションを閉じます.

        何度呼んでもかまいません。確認応答待ちのパブリッシュは
        未解決として報告されます。
        """
        async with self._lock:
            await self._close_locked("close")

    # 受信処理

    async def on_inbound_bytes(self, chunk: bytes) -> List[MQTTPacket]:
        """受信したバイト列を処理します.

        揃ったパケットをすべてデコードして状態機械に渡し、
        不完全な末尾のバイト列は次の受信まで保持します。
        不正なデータを受信した場合、バッファに残っている未処理のバイト列は
        すべて破棄されます。close_on_decode_errorがFalseならセッションは
        開いたままで、次に受信したバイト列から処理を再開します。

        Args:
            chunk: 受信したバイト列

        Returns:
            List[MQTTPacket]: デコードされたパケット

        Raises:
            DecodeError: 不正なデータを受信した場合
        """
        async with self._lock:
            if self._closed:
                logger.warning(f"クローズ後のデータを破棄します: {len(chunk)}バイト")
                return []

            self._buffer.extend(chunk)
            packets: List[MQTTPacket] = []
            while not self._closed:
                try:
                    decoded = decode_packet(self._buffer)
                except DecodeError as err:
                    log_error("PACKET_PARSE_ERROR", {"detail": str(err)})
                    # 境界が分からなくなるため未処理のバイト列はすべて破棄する
                    self._buffer.clear()
                    self._report(err)
                    if self.config.close_on_decode_error:
                        await self._close_locked(f"decode error: {err}")
                    raise

                if decoded is None:
                    break
                packet, consumed = decoded
                del self._buffer[:consumed]

                log_packet(packet.packet_type.name, describe_packet(packet), "<<")
                packets.append(packet)
                await self._apply(self._machine.receive(packet))

            return packets

    async def run(self) -> None:
        """チャンネルがEOFになるまで受信を続けます.

        終了時にはセッションを閉じます。
        """
        logger.info("メッセージ監視を開始します")
        try:
            while not self._closed:
                chunk = await self.channel.read()
                if not chunk:
                    logger.info("チャンネルが閉じられました")
                    break
                await self.on_inbound_bytes(chunk)
        except ChannelError as err:
            log_error("CHANNEL_IO_FAILED", {"reason": str(err)})
        finally:
            async with self._lock:
                await self._close_locked("transport closed")

    # 内部処理

    def _ensure_open(self) -> None:
        if self._closed:
            raise SessionStateError("セッションは閉じられています")

    async def _send(self, packet: MQTTPacket) -> None:
        data = packet.packet
        log_packet(packet.packet_type.name, data, ">>")
        try:
            await self.channel.write(data)
        except ChannelError:
            await self._close_locked("write failed")
            raise

    async def _apply(self, reaction: Reaction) -> None:
        for packet in reaction.outbound:
            await self._send(packet)
        for event in reaction.events:
            self._dispatch(event)

        if self._close_requested is not None:
            reason, self._close_requested = self._close_requested, None
            await self._close_locked(reason)

    def _dispatch(self, event: Event) -> None:
        if isinstance(event, Connected):
            logger.info("MQTT接続完了")
            if self._connect_future and not self._connect_future.done():
                self._connect_future.set_result(event.session_present)

        elif isinstance(event, PublishCompleted):
            handle = self._publish_handles.pop(event.entry.packet_id, None)
            logger.debug(f"パブリッシュ完了: id={event.entry.packet_id}")
            if handle is not None:
                handle._resolve(PublishOutcome.ACKNOWLEDGED, event.entry)

        elif isinstance(event, SubscribeCompleted):
            future = self._subscribe_futures.pop(event.packet_id, None)
            if future is not None and not future.done():
                future.set_result(list(event.return_codes))

        elif isinstance(event, MessageReceived):
            self._deliver(event.message)

        elif isinstance(event, PingResponse):
            logger.debug("PING応答受信")

        elif isinstance(event, Failure):
            self._on_failure(event.error)

        elif isinstance(event, Disconnected):
            self._on_disconnected(event)

    def _deliver(self, message: PublishPacket) -> None:
        if self.on_message is None:
            return
        try:
            self.on_message(message)
        except Exception as err:
            logger.exception(f"メッセージ処理エラー: {err}")

    def _on_failure(self, error: MQTTError) -> None:
        if isinstance(error, ConnectionRefused):
            logger.error(str(error))
            _fail_future(self._connect_future, error)
            self._close_requested = "connection refused"
            return

        logger.warning(str(error))
        self._report(error)
        if isinstance(error, ProtocolViolation) and self.config.close_on_violation:
            self._close_requested = "protocol violation"

    def _on_disconnected(self, event: Disconnected) -> None:
        logger.info(f"接続状態: {ConnectionState.DISCONNECTED.name}")

        for entry in event.unresolved:
            handle = self._publish_handles.pop(entry.packet_id, None)
            if handle is not None:
                handle._resolve(PublishOutcome.UNRESOLVED, entry)
        self._publish_handles.clear()

        error = SessionDisconnected(event.unresolved, event.reason)
        for future in self._subscribe_futures.values():
            _fail_future(future, error)
        self._subscribe_futures.clear()

        _fail_future(self._connect_future, error)

        if event.unresolved:
            self._report(error)

    def _report(self, error: MQTTError) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(error)
        except Exception as err:
            logger.exception(f"エラーコールバックの処理エラー: {err}")

    async def _close_locked(self, reason: str) -> None:
        if self._closed:
            return
        self._closed = True
        logger.debug(f"セッションを閉じます: {reason}")

        reaction = self._machine.connection_lost(reason)
        for event in reaction.events:
            self._dispatch(event)
        _fail_future(self._connect_future, SessionDisconnected(reason=reason))

        try:
            await self.channel.close()
        except ChannelError as err:
            logger.warning(f"チャンネルのクローズ中にエラー: {err}")
