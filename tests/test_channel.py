"""Tests for loopback and TCP stream channels."""

import asyncio

import pytest

from chunkdrop.errors import ChannelClosed
from chunkdrop.transfer.channel import LoopbackChannel, TransferServer, connect_to_peer


class TestLoopbackChannel:
    """In-memory channel pairs."""

    @pytest.mark.asyncio
    async def test_delivers_in_send_order(self, channel_pair):
        left, right = channel_pair
        received = []

        async def collect(record):
            received.append(record)

        right.on_data(collect)

        for i in range(20):
            await left.send(f"message {i}")
        await left.send(b'\x00binary')
        await right.drain()

        assert received == [f"message {i}" for i in range(20)] + [b'\x00binary']

    @pytest.mark.asyncio
    async def test_close_notifies_both_ends_once(self, channel_pair):
        left, right = channel_pair
        closed = []

        async def on_left_close():
            closed.append('left')

        async def on_right_close():
            closed.append('right')

        left.on_close(on_left_close)
        right.on_close(on_right_close)

        await left.close()
        await left.close()

        assert sorted(closed) == ['left', 'right']
        assert left.is_closed and right.is_closed

    @pytest.mark.asyncio
    async def test_send_after_close(self, channel_pair):
        left, right = channel_pair
        await right.close()

        with pytest.raises(ChannelClosed):
            await left.send("too late")

    @pytest.mark.asyncio
    async def test_handler_error_does_not_stop_delivery(self, channel_pair):
        left, right = channel_pair
        received = []

        async def flaky(record):
            if record == "bad":
                raise ValueError("boom")
            received.append(record)

        right.on_data(flaky)

        await left.send("bad")
        await left.send("good")
        await right.drain()

        assert received == ["good"]


class TestStreamChannel:
    """Framed records over a real TCP connection."""

    @pytest.mark.asyncio
    async def test_records_keep_their_kind(self):
        inbound: asyncio.Queue = asyncio.Queue()
        server_closed = asyncio.Event()

        async def on_channel(channel):
            async def collect(record):
                await inbound.put(record)

            async def on_close():
                server_closed.set()

            channel.on_data(collect)
            channel.on_close(on_close)

        server = TransferServer(on_channel, host='127.0.0.1', port=0)
        await server.start()
        try:
            client = await connect_to_peer('127.0.0.1', server.bound_port, timeout=5)
            assert client is not None
            client.start()

            payload = bytes(range(256)) * 100
            await client.send(payload)
            await client.send('{"type": "chat", "message": "hi"}')
            await client.send(b'')

            assert await asyncio.wait_for(inbound.get(), timeout=5) == payload
            assert await asyncio.wait_for(inbound.get(), timeout=5) == '{"type": "chat", "message": "hi"}'
            assert await asyncio.wait_for(inbound.get(), timeout=5) == b''

            await client.close()
            await asyncio.wait_for(server_closed.wait(), timeout=5)
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_both_directions(self):
        server_side = []
        replies: asyncio.Queue = asyncio.Queue()

        async def on_channel(channel):
            server_side.append(channel)

            async def echo(record):
                await channel.send(record)

            channel.on_data(echo)

        server = TransferServer(on_channel, host='127.0.0.1', port=0)
        await server.start()
        try:
            client = await connect_to_peer('127.0.0.1', server.bound_port, timeout=5)

            async def collect(record):
                await replies.put(record)

            client.on_data(collect)
            client.start()

            await client.send("ping")

            assert await asyncio.wait_for(replies.get(), timeout=5) == "ping"
            await client.close()
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_connect_refused_returns_none(self):
        async def on_channel(channel):
            pass

        server = TransferServer(on_channel, host='127.0.0.1', port=0)
        await server.start()
        port = server.bound_port
        await server.stop()

        assert await connect_to_peer('127.0.0.1', port, timeout=2) is None
