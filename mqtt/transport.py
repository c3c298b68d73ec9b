"""Byte-stream channels.

セッションドライバーが使用するバイトストリームチャンネルを提供するモジュール。

以下のチャンネルを提供します:
- asyncioストリームによるTCP/TLS接続
- WebSocket経由のMQTT接続(サブプロトコル "mqtt"、バイナリフレーム)

チャンネルは接続確立済みの双方向バイトストリームとして扱い、
MQTTのプロトコル処理は行いません。
"""

import asyncio
import ssl
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedOK,
    InvalidHandshake,
    WebSocketException,
)
from websockets.typing import Subprotocol

from core import (
    DEFAULT_HOST,
    DEFAULT_PORT,
    DEFAULT_TLS_PORT,
    ERROR_MESSAGES,
    WS_SUBPROTOCOL,
    ChannelError,
    ConfigError,
    logger,
)
from core.constants import READ_SIZE


class Channel(Protocol):
    """双方向のバイトストリーム."""

    async def write(self, data: bytes) -> None:
        ...

    async def read(self) -> bytes:
        """受信データを返す. EOFの場合は空のバイト列."""
        ...

    async def close(self) -> None:
        ...


@dataclass
class TransportConfig:
    """接続先の設定.

    Attributes:
        host: ブローカーのホスト名
        port: ブローカーのポート番号。省略時は1883(TLSの場合は8883)
        use_tls: TLSを使用するかどうか
        websocket_url: 指定した場合はWebSocketで接続する(ws://またはwss://)
        subprotocol: WebSocketサブプロトコル
        read_size: 1回の読み込みサイズ
    """

    host: str = DEFAULT_HOST
    port: Optional[int] = None
    use_tls: bool = False
    websocket_url: Optional[str] = None
    subprotocol: str = WS_SUBPROTOCOL
    read_size: int = READ_SIZE

    @property
    def resolved_port(self) -> int:
        if self.port is not None:
            return self.port
        return DEFAULT_TLS_PORT if self.use_tls else DEFAULT_PORT

    def validate(self) -> None:
        """設定値を検証します.

        Raises:
            ConfigError: 設定値が不正な場合
        """
        if self.websocket_url is not None:
            if not self.websocket_url.startswith(("ws://", "wss://")):
                raise ConfigError(
                    ERROR_MESSAGES["INVALID_CONFIG"].format(
                        detail=f"WebSocket URL: {self.websocket_url}"
                    )
                )
        elif not self.host:
            raise ConfigError(
                ERROR_MESSAGES["INVALID_CONFIG"].format(detail="host is empty")
            )
        if not 1 <= self.resolved_port <= 65535:
            raise ConfigError(
                ERROR_MESSAGES["INVALID_CONFIG"].format(detail=f"port: {self.port}")
            )
        if self.read_size <= 0:
            raise ConfigError(
                ERROR_MESSAGES["INVALID_CONFIG"].format(
                    detail=f"read_size: {self.read_size}"
                )
            )


class StreamChannel:
    """asyncioストリームによるチャンネル."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        read_size: int = READ_SIZE,
    ) -> None:
        self.reader = reader
        self.writer = writer
        self.read_size = read_size

    async def write(self, data: bytes) -> None:
        try:
            self.writer.write(data)
            await self.writer.drain()
        except (ConnectionError, OSError) as err:
            raise ChannelError(
                ERROR_MESSAGES["CHANNEL_IO_FAILED"].format(reason=err)
            ) from err

    async def read(self) -> bytes:
        try:
            return await self.reader.read(self.read_size)
        except (ConnectionError, OSError) as err:
            raise ChannelError(
                ERROR_MESSAGES["CHANNEL_IO_FAILED"].format(reason=err)
            ) from err

    async def close(self) -> None:
        if self.writer.is_closing():
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as err:
            logger.debug(f"ソケットのクローズ中にエラー: {err}")


class WebSocketChannel:
    """WebSocket経由のチャンネル.

    MQTTのバイト列はバイナリフレームで送受信します。
    """

    def __init__(self, websocket: ClientConnection) -> None:
        self.ws = websocket

    async def write(self, data: bytes) -> None:
        try:
            await self.ws.send(data)
        except ConnectionClosed as err:
            raise ChannelError(
                ERROR_MESSAGES["CHANNEL_IO_FAILED"].format(reason=err)
            ) from err

    async def read(self) -> bytes:
        while True:
            try:
                message = await self.ws.recv()
            except ConnectionClosedOK:
                return b""
            except ConnectionClosed as err:
                raise ChannelError(
                    ERROR_MESSAGES["CHANNEL_IO_FAILED"].format(reason=err)
                ) from err

            if isinstance(message, bytes):
                return message
            logger.warning(f"バイナリ以外のメッセージを受信: {message}")

    async def close(self) -> None:
        await self.ws.close()


async def open_tcp_channel(config: TransportConfig) -> StreamChannel:
    """TCP(必要に応じてTLS)で接続します.

    Raises:
        ChannelError: 接続に失敗した場合
    """
    ssl_context = ssl.create_default_context() if config.use_tls else None
    logger.info(
        f"接続先: {config.host}:{config.resolved_port} (TLS: {config.use_tls})"
    )
    try:
        reader, writer = await asyncio.open_connection(
            config.host, config.resolved_port, ssl=ssl_context
        )
    except OSError as err:
        raise ChannelError(
            ERROR_MESSAGES["CHANNEL_OPEN_FAILED"].format(reason=err)
        ) from err
    return StreamChannel(reader, writer, config.read_size)


async def open_websocket_channel(config: TransportConfig) -> WebSocketChannel:
    """WebSocketで接続します.

    Raises:
        ChannelError: 接続またはハンドシェイクに失敗した場合
    """
    url = config.websocket_url
    if url is None:
        raise ConfigError(
            ERROR_MESSAGES["INVALID_CONFIG"].format(detail="websocket_url is not set")
        )

    kwargs: Dict[str, Any] = {
        "subprotocols": [Subprotocol(config.subprotocol)],
        "ping_interval": None,
    }
    if url.startswith("wss://"):
        kwargs["ssl"] = ssl.create_default_context()

    logger.info(f"接続先: {url}")
    logger.info(f"プロトコル: {config.subprotocol}")
    try:
        websocket = await websockets.connect(url, **kwargs)
    except InvalidHandshake as err:
        raise ChannelError(
            ERROR_MESSAGES["CHANNEL_OPEN_FAILED"].format(
                reason=f"ハンドシェイクエラー: {err}"
            )
        ) from err
    except (WebSocketException, OSError) as err:
        raise ChannelError(
            ERROR_MESSAGES["CHANNEL_OPEN_FAILED"].format(reason=err)
        ) from err
    return WebSocketChannel(websocket)


async def open_channel(config: TransportConfig) -> Channel:
    """設定に応じてTCPまたはWebSocketのチャンネルを開きます."""
    config.validate()
    if config.websocket_url is not None:
        return await open_websocket_channel(config)
    return await open_tcp_channel(config)
