"""セッションドライバーのテスト."""

import asyncio
import gc

import pytest

import mqtt.session as session_module
from conftest import FakeChannel, decode_all
from core import (
    ChannelError,
    ConfigError,
    ConnectionRefused,
    ConnectionState,
    DecodeError,
    PacketError,
    ProtocolViolation,
    SessionDisconnected,
    SessionStateError,
)
from mqtt import (
    ConnectOptions,
    MQTTSession,
    PublishOutcome,
    PublishState,
    SessionConfig,
    TransportConfig,
)
from mqtt.packet import (
    ConnectPacket,
    DisconnectPacket,
    PingreqPacket,
    PubackPacket,
    PublishPacket,
    SubackPacket,
    SubscribePacket,
    encode_packet,
)

CONNACK_ACCEPTED = bytes.fromhex("20020000")


class Recorder:
    """コールバックで受け取ったものを記録する."""

    def __init__(self) -> None:
        self.messages = []
        self.errors = []

    def on_message(self, message):
        self.messages.append(message)

    def on_error(self, error):
        self.errors.append(error)


async def start_session(channel, recorder=None, **config):
    recorder = recorder or Recorder()
    session = MQTTSession(
        channel,
        SessionConfig(connect=ConnectOptions(client_id="test"), **config),
        on_message=recorder.on_message,
        on_error=recorder.on_error,
    )
    future = await session.connect()
    await session.on_inbound_bytes(CONNACK_ACCEPTED)
    assert await future is False
    channel.written.clear()
    return session


class TestConnect:
    def test_connect_and_connack(self, channel):
        async def scenario():
            session = MQTTSession(channel)
            future = await session.connect(ConnectOptions(client_id="test"))
            assert channel.written == [
                bytes.fromhex("101000044d5154540402003c000474657374")
            ]
            assert session.state == ConnectionState.CONNECT_SENT
            assert not future.done()

            packets = await session.on_inbound_bytes(CONNACK_ACCEPTED)
            assert len(packets) == 1
            assert session.state == ConnectionState.CONNECTED
            assert await future is False

        asyncio.run(scenario())

    def test_generated_client_id(self, channel):
        async def scenario():
            session = MQTTSession(channel)
            await session.connect()
            (packet,) = channel.sent_packets()
            assert isinstance(packet, ConnectPacket)
            assert packet.client_id.startswith("mqttflow-")

        asyncio.run(scenario())

    def test_refused(self, channel):
        async def scenario():
            session = MQTTSession(channel)
            future = await session.connect(ConnectOptions(client_id="test"))
            await session.on_inbound_bytes(bytes.fromhex("20020005"))

            with pytest.raises(ConnectionRefused) as excinfo:
                await future
            assert excinfo.value.code == 5
            assert session.closed
            assert channel.closed
            assert session.state == ConnectionState.DISCONNECTED

        asyncio.run(scenario())

    def test_invalid_options(self, channel):
        async def scenario():
            session = MQTTSession(channel)
            with pytest.raises(ConfigError):
                await session.connect(ConnectOptions(keep_alive=70000))
            with pytest.raises(ConfigError):
                await session.connect(ConnectOptions(password="secret"))
            assert channel.written == []

        asyncio.run(scenario())

    def test_publish_before_connack(self, channel):
        async def scenario():
            session = MQTTSession(channel)
            await session.connect()
            with pytest.raises(SessionStateError):
                await session.publish("t", b"x", qos=1)

        asyncio.run(scenario())

    def test_closed_before_connack(self, channel):
        async def scenario():
            session = MQTTSession(channel)
            future = await session.connect()
            await session.close()
            with pytest.raises(SessionDisconnected):
                await future

        asyncio.run(scenario())


class TestPublish:
    def test_qos0_is_sent(self, channel):
        async def scenario():
            session = await start_session(channel)
            handle = await session.publish("t", "hello")
            assert handle.outcome is PublishOutcome.SENT
            assert handle.packet_id is None
            assert channel.sent_packets() == [
                PublishPacket(topic="t", payload=b"hello")
            ]
            assert session.inflight == {}

        asyncio.run(scenario())

    def test_qos1_acknowledged(self, channel):
        async def scenario():
            session = await start_session(channel)
            handle = await session.publish("t", b"x", qos=1)
            assert handle.packet_id == 1
            assert not handle.done()
            assert session.inflight[1].state == PublishState.AWAITING_PUBACK

            await session.on_inbound_bytes(bytes.fromhex("40020001"))
            assert session.inflight == {}
            assert handle.acknowledged
            assert await handle is PublishOutcome.ACKNOWLEDGED

        asyncio.run(scenario())

    def test_qos2_flow(self, channel):
        async def scenario():
            session = await start_session(channel)
            handle = await session.publish("t", b"x", qos=2, packet_id=7)

            await session.on_inbound_bytes(bytes.fromhex("50020007"))
            assert channel.written[-1] == bytes.fromhex("62020007")
            assert session.inflight[7].state == PublishState.AWAITING_PUBCOMP
            assert not handle.done()

            await session.on_inbound_bytes(bytes.fromhex("70020007"))
            assert session.inflight == {}
            assert await handle.wait() is PublishOutcome.ACKNOWLEDGED

        asyncio.run(scenario())

    def test_acks_in_one_chunk(self, channel):
        async def scenario():
            session = await start_session(channel)
            handle = await session.publish("t", b"x", qos=2, packet_id=7)
            packets = await session.on_inbound_bytes(
                bytes.fromhex("50020007" "70020007")
            )
            assert len(packets) == 2
            assert handle.acknowledged

        asyncio.run(scenario())

    def test_split_chunks(self, channel):
        async def scenario():
            session = await start_session(channel)
            handle = await session.publish("t", b"x", qos=1)

            assert await session.on_inbound_bytes(b"\x40") == []
            assert await session.on_inbound_bytes(b"\x02\x00") == []
            assert session.buffered == 3
            assert not handle.done()

            packets = await session.on_inbound_bytes(b"\x01")
            assert packets == [PubackPacket(1)]
            assert session.buffered == 0
            assert handle.acknowledged

        asyncio.run(scenario())

    def test_unexpected_ack_is_reported(self, channel):
        async def scenario():
            recorder = Recorder()
            session = await start_session(channel, recorder)
            await session.on_inbound_bytes(bytes.fromhex("40020063"))

            (error,) = recorder.errors
            assert isinstance(error, ProtocolViolation)
            assert error.packet_id == 99
            assert not session.closed
            assert session.state == ConnectionState.CONNECTED

        asyncio.run(scenario())

    def test_violation_can_close(self, channel):
        async def scenario():
            session = await start_session(channel, close_on_violation=True)
            await session.on_inbound_bytes(bytes.fromhex("40020063"))
            assert session.closed
            assert channel.closed

        asyncio.run(scenario())

    def test_concurrent_publishes_get_distinct_ids(self, channel):
        async def scenario():
            session = await start_session(channel)
            handles = await asyncio.gather(
                *(session.publish("t", b"x", qos=1) for _ in range(5))
            )
            assert sorted(h.packet_id for h in handles) == [1, 2, 3, 4, 5]

        asyncio.run(scenario())

    def test_packet_id_in_use(self, channel):
        async def scenario():
            session = await start_session(channel)
            await session.publish("t", b"x", qos=1, packet_id=5)
            with pytest.raises(SessionStateError):
                await session.publish("t", b"y", qos=2, packet_id=5)

        asyncio.run(scenario())

    def test_invalid_topic(self, channel):
        async def scenario():
            session = await start_session(channel)
            with pytest.raises(PacketError):
                await session.publish("a/#", b"x", qos=1)
            assert session.inflight == {}
            assert channel.written == []

        asyncio.run(scenario())

    def test_write_failure_closes(self, channel):
        async def scenario():
            recorder = Recorder()
            session = await start_session(channel, recorder)
            channel.fail_writes = True
            with pytest.raises(ChannelError):
                await session.publish("t", b"x", qos=1)
            assert session.closed
            assert session.state == ConnectionState.DISCONNECTED
            assert any(isinstance(e, SessionDisconnected) for e in recorder.errors)

        asyncio.run(scenario())


class TestDisconnect:
    def test_close_leaves_publish_unresolved(self, channel):
        async def scenario():
            recorder = Recorder()
            session = await start_session(channel, recorder)
            handle = await session.publish("t", b"x", qos=2, packet_id=3)

            await session.close()
            assert await handle is PublishOutcome.UNRESOLVED
            assert handle.entry.packet_id == 3
            assert handle.entry.state == PublishState.AWAITING_PUBREC
            assert handle.entry.payload == b"x"
            assert session.inflight == {}
            assert channel.closed

            (error,) = recorder.errors
            assert isinstance(error, SessionDisconnected)
            assert [entry.packet_id for entry in error.unresolved] == [3]

        asyncio.run(scenario())

    def test_unresolved_publish_can_be_resent(self, channel):
        async def scenario():
            session = await start_session(channel)
            handle = await session.publish("t", b"x", qos=1)
            await session.close()
            entry = handle.entry

            retry_channel = FakeChannel()
            retry = await start_session(retry_channel)
            await retry.publish(
                entry.topic,
                entry.payload,
                qos=entry.qos,
                packet_id=entry.packet_id,
                dup=True,
            )
            (packet,) = retry_channel.sent_packets()
            assert packet == PublishPacket(
                topic="t", payload=b"x", qos=1, packet_id=entry.packet_id, dup=True
            )

        asyncio.run(scenario())

    def test_close_is_idempotent(self, channel):
        async def scenario():
            recorder = Recorder()
            session = await start_session(channel, recorder)
            await session.close()
            await session.close()
            assert session.closed
            assert recorder.errors == []

            with pytest.raises(SessionStateError):
                await session.publish("t", b"x")
            assert await session.on_inbound_bytes(b"\x40\x02\x00\x01") == []

        asyncio.run(scenario())

    def test_disconnect_sends_packet(self, channel):
        async def scenario():
            session = await start_session(channel)
            await session.disconnect()
            assert channel.sent_packets() == [DisconnectPacket()]
            assert session.closed
            assert channel.closed

        asyncio.run(scenario())

    def test_decode_error_closes(self, channel):
        async def scenario():
            recorder = Recorder()
            session = await start_session(channel, recorder)
            handle = await session.publish("t", b"x", qos=1)

            with pytest.raises(DecodeError):
                await session.on_inbound_bytes(bytes.fromhex("60020007"))
            assert session.closed
            assert isinstance(recorder.errors[0], DecodeError)
            assert handle.outcome is PublishOutcome.UNRESOLVED

        asyncio.run(scenario())

    def test_decode_error_can_keep_session(self, channel):
        async def scenario():
            session = await start_session(channel, close_on_decode_error=False)
            with pytest.raises(DecodeError):
                await session.on_inbound_bytes(bytes.fromhex("f000"))
            assert not session.closed

        asyncio.run(scenario())

    def test_session_recovers_after_decode_error(self, channel):
        async def scenario():
            session = await start_session(channel, close_on_decode_error=False)
            handle = await session.publish("t", b"x", qos=1)

            with pytest.raises(DecodeError):
                await session.on_inbound_bytes(bytes.fromhex("f000"))
            assert session.buffered == 0

            packets = await session.on_inbound_bytes(bytes.fromhex("40020001"))
            assert packets == [PubackPacket(1)]
            assert handle.outcome is PublishOutcome.ACKNOWLEDGED
            assert session.inflight == {}

        asyncio.run(scenario())

    def test_context_manager_closes(self, channel):
        async def scenario():
            async with MQTTSession(channel) as session:
                await session.connect()
            assert session.closed
            assert channel.closed

        asyncio.run(scenario())


class TestInbound:
    def test_qos1_message(self, channel):
        async def scenario():
            recorder = Recorder()
            session = await start_session(channel, recorder)
            message = PublishPacket(topic="t", payload=b"hi", qos=1, packet_id=4)
            await session.on_inbound_bytes(encode_packet(message))

            assert channel.written == [bytes.fromhex("40020004")]
            assert recorder.messages == [message]

        asyncio.run(scenario())

    def test_qos2_message_delivered_on_pubrel(self, channel):
        async def scenario():
            recorder = Recorder()
            session = await start_session(channel, recorder)
            message = PublishPacket(topic="t", payload=b"hi", qos=2, packet_id=8)

            await session.on_inbound_bytes(encode_packet(message))
            assert channel.written == [bytes.fromhex("50020008")]
            assert recorder.messages == []

            await session.on_inbound_bytes(bytes.fromhex("62020008"))
            assert channel.written[-1] == bytes.fromhex("70020008")
            assert recorder.messages == [message]

        asyncio.run(scenario())

    def test_unexpected_pubrel(self, channel):
        async def scenario():
            recorder = Recorder()
            session = await start_session(channel, recorder)
            await session.on_inbound_bytes(bytes.fromhex("62020001"))
            assert channel.written == [bytes.fromhex("70020001")]
            assert isinstance(recorder.errors[0], ProtocolViolation)

        asyncio.run(scenario())

    def test_callback_error_does_not_break_session(self, channel):
        async def scenario():
            def broken(message):
                raise RuntimeError("boom")

            session = await start_session(channel)
            session.on_message = broken
            message = PublishPacket(topic="t", payload=b"hi", qos=1, packet_id=2)
            await session.on_inbound_bytes(encode_packet(message))
            assert channel.written == [bytes.fromhex("40020002")]
            assert not session.closed

        asyncio.run(scenario())


class TestSubscribe:
    def test_suback(self, channel):
        async def scenario():
            session = await start_session(channel)
            future = await session.subscribe("a/+", qos=1)
            assert channel.sent_packets() == [
                SubscribePacket(packet_id=1, topics=(("a/+", 1),))
            ]
            await session.on_inbound_bytes(
                encode_packet(SubackPacket(packet_id=1, return_codes=(1,)))
            )
            assert await future == [1]

        asyncio.run(scenario())

    def test_abandoned_on_close(self, channel):
        async def scenario():
            session = await start_session(channel)
            future = await session.subscribe([("a", 0), ("b", 2)])
            await session.close()
            with pytest.raises(SessionDisconnected):
                await future

        asyncio.run(scenario())

    def test_unawaited_futures_are_not_reported(self, channel):
        async def scenario():
            reported = []
            asyncio.get_running_loop().set_exception_handler(
                lambda loop, context: reported.append(context)
            )
            session = await start_session(channel)
            await session.subscribe("a", qos=1)
            await session.close()
            del session

            # CONNACK前に閉じた場合の接続要求
            pending = MQTTSession(FakeChannel())
            await pending.connect()
            await pending.close()
            del pending
            gc.collect()
            assert reported == []

        asyncio.run(scenario())

    def test_ping(self, channel):
        async def scenario():
            session = await start_session(channel)
            await session.ping()
            assert channel.sent_packets() == [PingreqPacket()]
            await session.on_inbound_bytes(bytes.fromhex("d000"))
            assert not session.closed

        asyncio.run(scenario())


class TestRun:
    def test_reads_until_eof(self, channel):
        async def scenario():
            recorder = Recorder()
            session = MQTTSession(channel, on_message=recorder.on_message)
            future = await session.connect()
            channel.feed(CONNACK_ACCEPTED)
            channel.feed(encode_packet(PublishPacket(topic="t", payload=b"1")))
            channel.feed(b"")

            await session.run()
            assert await future is False
            assert [m.payload for m in recorder.messages] == [b"1"]
            assert session.closed

        asyncio.run(scenario())

    def test_read_error_closes(self, channel):
        async def scenario():
            async def failing_read():
                raise ChannelError("reset")

            session = await start_session(channel)
            handle = await session.publish("t", b"x", qos=1)
            channel.read = failing_read
            await session.run()
            assert session.closed
            assert handle.outcome is PublishOutcome.UNRESOLVED

        asyncio.run(scenario())

    def test_run_in_background(self, channel):
        async def scenario():
            session = await start_session(channel)
            task = asyncio.create_task(session.run())
            handle = await session.publish("t", b"x", qos=1)
            channel.feed(bytes.fromhex("40020001"))
            assert await asyncio.wait_for(handle.wait(), 1) is (
                PublishOutcome.ACKNOWLEDGED
            )
            await session.close()
            await asyncio.wait_for(task, 1)

        asyncio.run(scenario())


def test_open_uses_transport_config(monkeypatch, channel):
    opened = []

    async def fake_open_channel(config):
        opened.append(config)
        return channel

    monkeypatch.setattr(session_module, "open_channel", fake_open_channel)

    async def scenario():
        config = SessionConfig(transport=TransportConfig(host="broker", port=1884))
        session = await MQTTSession.open(config)
        assert session.channel is channel
        assert opened == [config.transport]

    asyncio.run(scenario())


def test_decode_all_helper():
    data = encode_packet(PubackPacket(1)) + encode_packet(DisconnectPacket())
    assert decode_all(data) == [PubackPacket(1), DisconnectPacket()]
