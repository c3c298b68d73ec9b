"""テスト用の共通フィクスチャ."""

import asyncio
from typing import List

import pytest

from core import ChannelError
from mqtt.packet import MQTTPacket, decode_packet


class FakeChannel:
    """メモリ上のチャンネル.

    書き込まれたバイト列を記録し、readはキューに積まれたデータを返します。
    """

    def __init__(self) -> None:
        self.written: List[bytes] = []
        self.closed = False
        self.fail_writes = False
        self.incoming: "asyncio.Queue[bytes]" = asyncio.Queue()

    async def write(self, data: bytes) -> None:
        if self.fail_writes:
            raise ChannelError("write failed")
        self.written.append(bytes(data))

    async def read(self) -> bytes:
        if self.closed:
            return b""
        return await self.incoming.get()

    async def close(self) -> None:
        self.closed = True
        self.incoming.put_nowait(b"")

    def feed(self, data: bytes) -> None:
        self.incoming.put_nowait(data)

    def sent_packets(self) -> List[MQTTPacket]:
        return decode_all(b"".join(self.written))


def decode_all(data: bytes) -> List[MQTTPacket]:
    packets = []
    while data:
        decoded = decode_packet(data)
        assert decoded is not None, f"incomplete data: {data.hex()}"
        packet, consumed = decoded
        packets.append(packet)
        data = data[consumed:]
    return packets


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()
