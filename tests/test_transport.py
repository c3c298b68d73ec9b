"""チャンネルと接続設定のテスト."""

import asyncio

import pytest
from websockets.exceptions import (
    ConnectionClosedError,
    ConnectionClosedOK,
    InvalidHandshake,
)
from websockets.frames import Close

import mqtt.transport as transport
from core import ChannelError, ConfigError
from mqtt.transport import (
    StreamChannel,
    TransportConfig,
    WebSocketChannel,
    open_channel,
    open_websocket_channel,
)


def normal_close() -> ConnectionClosedOK:
    """クライアントとサーバーの双方がコード1000で閉じた状態."""
    return ConnectionClosedOK(
        Close(1000, ""), Close(1000, ""), rcvd_then_sent=True
    )


class FakeWriter:
    def __init__(self, error=None):
        self.data = bytearray()
        self.error = error
        self.closing = False

    def write(self, data):
        if self.error:
            raise self.error
        self.data.extend(data)

    async def drain(self):
        pass

    def is_closing(self):
        return self.closing

    def close(self):
        self.closing = True

    async def wait_closed(self):
        pass


class FakeWebSocket:
    def __init__(self, frames=()):
        self.frames = list(frames)
        self.sent = []
        self.closed = False

    async def send(self, data):
        if self.closed:
            raise normal_close()
        self.sent.append(data)

    async def recv(self):
        frame = self.frames.pop(0)
        if isinstance(frame, Exception):
            raise frame
        return frame

    async def close(self):
        self.closed = True


class TestTransportConfig:
    def test_defaults(self):
        config = TransportConfig()
        config.validate()
        assert config.host == "localhost"
        assert config.resolved_port == 1883
        assert TransportConfig(use_tls=True).resolved_port == 8883
        assert TransportConfig(port=1884, use_tls=True).resolved_port == 1884

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"host": ""},
            {"port": 0},
            {"port": 70000},
            {"read_size": 0},
            {"websocket_url": "http://broker/mqtt"},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ConfigError):
            TransportConfig(**kwargs).validate()

    def test_websocket_url_does_not_need_host(self):
        TransportConfig(host="", websocket_url="wss://broker/mqtt").validate()


class TestStreamChannel:
    def test_read_and_write(self):
        async def scenario():
            reader = asyncio.StreamReader()
            writer = FakeWriter()
            channel = StreamChannel(reader, writer, read_size=4)

            reader.feed_data(b"\x40\x02\x00\x01\xd0\x00")
            reader.feed_eof()
            assert await channel.read() == b"\x40\x02\x00\x01"
            assert await channel.read() == b"\xd0\x00"
            assert await channel.read() == b""

            await channel.write(b"\xc0\x00")
            assert bytes(writer.data) == b"\xc0\x00"

            await channel.close()
            await channel.close()
            assert writer.closing

        asyncio.run(scenario())

    def test_write_error(self):
        async def scenario():
            channel = StreamChannel(
                asyncio.StreamReader(), FakeWriter(ConnectionResetError("reset"))
            )
            with pytest.raises(ChannelError):
                await channel.write(b"\xc0\x00")

        asyncio.run(scenario())


class TestWebSocketChannel:
    def test_binary_frames(self):
        async def scenario():
            ws = FakeWebSocket(["text", b"\x20\x02\x00\x00"])
            channel = WebSocketChannel(ws)
            assert await channel.read() == b"\x20\x02\x00\x00"

            await channel.write(b"\xe0\x00")
            assert ws.sent == [b"\xe0\x00"]

        asyncio.run(scenario())

    def test_normal_close_is_eof(self):
        async def scenario():
            ws = FakeWebSocket([normal_close()])
            assert await WebSocketChannel(ws).read() == b""

        asyncio.run(scenario())

    def test_abnormal_close(self):
        async def scenario():
            ws = FakeWebSocket([ConnectionClosedError(None, None)])
            with pytest.raises(ChannelError):
                await WebSocketChannel(ws).read()

        asyncio.run(scenario())

    def test_write_after_close(self):
        async def scenario():
            channel = WebSocketChannel(FakeWebSocket())
            await channel.close()
            with pytest.raises(ChannelError):
                await channel.write(b"\xe0\x00")

        asyncio.run(scenario())


class TestOpenChannel:
    def test_websocket(self, monkeypatch):
        calls = []

        async def fake_connect(url, **kwargs):
            calls.append((url, kwargs))
            return FakeWebSocket()

        monkeypatch.setattr(transport.websockets, "connect", fake_connect)

        async def scenario():
            config = TransportConfig(websocket_url="ws://broker:8080/mqtt")
            channel = await open_channel(config)
            assert isinstance(channel, WebSocketChannel)

        asyncio.run(scenario())
        ((url, kwargs),) = calls
        assert url == "ws://broker:8080/mqtt"
        assert kwargs["subprotocols"] == ["mqtt"]
        assert kwargs["ping_interval"] is None
        assert "ssl" not in kwargs

    def test_secure_websocket_uses_tls(self, monkeypatch):
        calls = []

        async def fake_connect(url, **kwargs):
            calls.append(kwargs)
            return FakeWebSocket()

        monkeypatch.setattr(transport.websockets, "connect", fake_connect)
        asyncio.run(
            open_channel(TransportConfig(websocket_url="wss://broker/mqtt"))
        )
        assert calls[0]["ssl"] is not None

    def test_handshake_failure(self, monkeypatch):
        async def fake_connect(url, **kwargs):
            raise InvalidHandshake("rejected")

        monkeypatch.setattr(transport.websockets, "connect", fake_connect)
        with pytest.raises(ChannelError):
            asyncio.run(open_channel(TransportConfig(websocket_url="ws://broker")))

    def test_websocket_requires_url(self):
        with pytest.raises(ConfigError):
            asyncio.run(open_websocket_channel(TransportConfig()))

    def test_tcp(self, monkeypatch):
        calls = []

        async def fake_open_connection(host, port, ssl=None):
            calls.append((host, port, ssl))
            return asyncio.StreamReader(), FakeWriter()

        monkeypatch.setattr(transport.asyncio, "open_connection", fake_open_connection)

        async def scenario():
            channel = await open_channel(TransportConfig(host="broker"))
            assert isinstance(channel, StreamChannel)

        asyncio.run(scenario())
        assert calls == [("broker", 1883, None)]

    def test_tcp_failure(self, monkeypatch):
        async def fake_open_connection(host, port, ssl=None):
            raise ConnectionRefusedError("refused")

        monkeypatch.setattr(transport.asyncio, "open_connection", fake_open_connection)
        with pytest.raises(ChannelError):
            asyncio.run(open_channel(TransportConfig(host="broker")))

    def test_invalid_config(self):
        with pytest.raises(ConfigError):
            asyncio.run(open_channel(TransportConfig(port=0)))
