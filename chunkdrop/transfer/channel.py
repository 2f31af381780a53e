"""
Peer Channels

A channel is a bidirectional, message-framed transport between two peers.
Each record is either structured binary (bytes) or UTF-8 text (str).
The transfer engine only needs three things from it:

- send(record)          deliver one record to the peer
- on_data(handler)      be told about every record the peer sends
- on_close(handler)     be told once when the channel goes away

Implementations:
- StreamChannel: over an asyncio TCP stream, with its own framing
- LoopbackChannel: two in-memory ends, for tests and local demos

Stream Framing:
```
+----------------+-----------------+----------------+
| Kind (1B)      | Length (4B)     | Body           |
+----------------+-----------------+----------------+
Kind: 0 = binary record, 1 = text record
```
"""

import asyncio
import logging
import struct
from typing import Awaitable, Callable, List, Optional, Tuple

from ..errors import ChannelClosed, ProtocolError
from .protocol import Record

logger = logging.getLogger(__name__)

FRAME_HEADER_FORMAT = '!BI'  # 1-byte kind + 4-byte length (big-endian)
FRAME_HEADER_SIZE = struct.calcsize(FRAME_HEADER_FORMAT)
FRAME_BINARY = 0
FRAME_TEXT = 1

# Sanity limit on a single frame
MAX_FRAME_SIZE = 64 * 1024 * 1024

DataHandler = Callable[[Record], Awaitable[None]]
CloseHandler = Callable[[], Awaitable[None]]


class Channel:
    """Base class for peer channels."""

    def __init__(self):
        self._data_handlers: List[DataHandler] = []
        self._close_handlers: List[CloseHandler] = []
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    def on_data(self, handler: DataHandler):
        """Register an async handler for incoming records."""
        self._data_handlers.append(handler)

    def on_close(self, handler: CloseHandler):
        """Register an async handler called once when the channel closes."""
        self._close_handlers.append(handler)

    async def send(self, record: Record):
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError

    async def _dispatch(self, record: Record):
        for handler in self._data_handlers:
            try:
                await handler(record)
            except Exception as e:
                logger.error(f"Channel data handler error: {e}", exc_info=True)

    async def _notify_closed(self):
        handlers, self._close_handlers = self._close_handlers, []
        for handler in handlers:
            try:
                await handler()
            except Exception as e:
                logger.error(f"Channel close handler error: {e}", exc_info=True)


class StreamChannel(Channel):
    """
    Channel over an asyncio TCP stream.

    Writes are serialized with a lock and wait on drain(), so a slow
    peer pushes back on the sender.
    """

    def __init__(self, reader: asyncio.StreamReader,
                 writer: asyncio.StreamWriter):
        super().__init__()
        self.reader = reader
        self.writer = writer
        self._write_lock = asyncio.Lock()
        self._reader_task: Optional[asyncio.Task] = None

    @property
    def remote_address(self) -> Tuple[str, int]:
        """Get remote peer address."""
        return self.writer.get_extra_info('peername')

    def start(self):
        """Start delivering incoming records to handlers."""
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._read_loop())

    async def send(self, record: Record):
        """Send a record."""
        if self._closed:
            raise ChannelClosed("Channel closed")

        if isinstance(record, str):
            kind, body = FRAME_TEXT, record.encode('utf-8')
        else:
            kind, body = FRAME_BINARY, bytes(record)

        frame = struct.pack(FRAME_HEADER_FORMAT, kind, len(body)) + body

        try:
            async with self._write_lock:
                self.writer.write(frame)
                await self.writer.drain()
        except (ConnectionError, OSError) as e:
            raise ChannelClosed(f"Send failed: {e}") from e

    async def _read_frame(self) -> Record:
        header = await self.reader.readexactly(FRAME_HEADER_SIZE)
        kind, length = struct.unpack(FRAME_HEADER_FORMAT, header)

        if length > MAX_FRAME_SIZE:
            raise ProtocolError(f"Frame too large: {length}")
        if kind not in (FRAME_BINARY, FRAME_TEXT):
            raise ProtocolError(f"Unknown frame kind {kind:#x}")

        body = await self.reader.readexactly(length) if length else b''
        if kind == FRAME_TEXT:
            try:
                return body.decode('utf-8')
            except UnicodeDecodeError as e:
                raise ProtocolError(f"Text frame is not UTF-8: {e}") from e
        return body

    async def _read_loop(self):
        try:
            while not self._closed:
                record = await self._read_frame()
                await self._dispatch(record)
        except asyncio.IncompleteReadError:
            logger.debug("Peer closed the stream")
        except ProtocolError as e:
            logger.error(f"Dropping connection after framing error: {e}")
        except (ConnectionError, OSError) as e:
            logger.warning(f"Connection lost: {e}")
        except asyncio.CancelledError:
            pass
        finally:
            await self.close()

    async def close(self):
        """Close the connection."""
        if self._closed:
            return
        self._closed = True

        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass

        if self._reader_task and self._reader_task is not asyncio.current_task():
            self._reader_task.cancel()

        await self._notify_closed()


class LoopbackChannel(Channel):
    """
    One end of an in-memory channel pair.

    Records are queued and handed to the peer's handlers in send order.
    """

    def __init__(self):
        super().__init__()
        self._peer: Optional['LoopbackChannel'] = None
        self._queue: Optional[asyncio.Queue] = None
        self._pump_task: Optional[asyncio.Task] = None

    @classmethod
    def pair(cls) -> Tuple['LoopbackChannel', 'LoopbackChannel']:
        """Create two connected channel ends."""
        left, right = cls(), cls()
        left._peer, right._peer = right, left
        return left, right

    async def send(self, record: Record):
        if self._closed or self._peer is None or self._peer.is_closed:
            raise ChannelClosed("Channel closed")
        self._peer._deliver(record)

    def _deliver(self, record: Record):
        if self._queue is None:
            self._queue = asyncio.Queue()
            self._pump_task = asyncio.get_running_loop().create_task(self._pump())
        self._queue.put_nowait(record)

    async def _pump(self):
        while True:
            record = await self._queue.get()
            try:
                await self._dispatch(record)
            finally:
                self._queue.task_done()

    async def drain(self):
        """Wait until every queued incoming record has been handled."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self):
        if self._closed:
            return
        self._closed = True

        if self._pump_task and self._pump_task is not asyncio.current_task():
            self._pump_task.cancel()

        await self._notify_closed()

        if self._peer is not None and not self._peer.is_closed:
            await self._peer.close()


# Called with each accepted channel
ChannelHandler = Callable[[StreamChannel], Awaitable[None]]


class TransferServer:
    """
    TCP listener that hands each accepted connection over as a channel.
    """

    def __init__(self, on_channel: ChannelHandler,
                 host: str = '0.0.0.0', port: int = 8470):
        self.host = host
        self.port = port
        self.server: Optional[asyncio.AbstractServer] = None
        self._on_channel = on_channel
        self._running = False

    @property
    def bound_port(self) -> int:
        """Actual port (useful when started with port 0)."""
        if self.server and self.server.sockets:
            return self.server.sockets[0].getsockname()[1]
        return self.port

    async def start(self):
        """Start the transfer server."""
        self.server = await asyncio.start_server(
            self._handle_connection,
            self.host,
            self.port
        )
        self._running = True

        addr = self.server.sockets[0].getsockname()
        logger.info(f"Transfer server listening on {addr}")

    async def stop(self):
        """Stop the transfer server."""
        self._running = False
        if self.server:
            self.server.close()
            await self.server.wait_closed()
            logger.info("Transfer server stopped")

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter):
        """Handle an incoming connection."""
        channel = StreamChannel(reader, writer)
        logger.info(f"New peer connection from {channel.remote_address}")

        try:
            await self._on_channel(channel)
        except Exception as e:
            logger.error(f"Error setting up channel from {channel.remote_address}: {e}")
            await channel.close()
            return

        channel.start()


async def connect_to_peer(ip: str, port: int,
                          timeout: float = 10.0) -> Optional[StreamChannel]:
    """
    Connect to a peer's transfer server.

    The returned channel is not started; register handlers, then call start().

    Returns:
        StreamChannel, or None if connection failed
    """
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(ip, port),
            timeout=timeout
        )
        return StreamChannel(reader, writer)
    except (asyncio.TimeoutError, OSError) as e:
        logger.error(f"Failed to connect to {ip}:{port}: {e}")
        return None
