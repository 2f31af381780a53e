"""
Peer Session

Everything that happens on one channel:
- inbound records are decoded and routed (metadata and chunks to the
  receiver, restart requests to the sender, text to chat/status)
- one outgoing transfer at a time through a FileSender
- one watchdog per direction while a transfer is running
- chat and debug history, both bounded
- events for a UI: progress, status, chat, stalled, file_received,
  transfer_record

When the channel closes, any running transfer is aborted and no ledger
record is written for it.
"""

import asyncio
import logging
import time
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from ..config import Config
from ..errors import (
    ChannelClosed, ChunkDropError, InvalidChunk,
    ProtocolError, Stalled, UnexpectedChunk,
)
from ..file.metadata import Chunk, FileMetadata
from ..file.storage import FileStore
from ..storage.database import TransferLedger, TransferRecord
from .channel import Channel
from .monitor import TransferMonitor
from .progress import TransferProgress
from .protocol import (
    ChatMessage, RestartRequest, TextMessage, decode_record, describe, encode_chat,
)
from .receiver import FileReceiver, ReceivedFile
from .sender import ChunkSource, FileSender

logger = logging.getLogger(__name__)

# Event listener: fn(event_type, data)
EventListener = Callable[[str, Dict[str, Any]], None]


class PeerSession:
    """
    Transfer engine bound to one open channel.
    """

    def __init__(self, channel: Channel, config: Optional[Config] = None,
                 ledger: Optional[TransferLedger] = None,
                 file_store: Optional[FileStore] = None,
                 peer_name: str = "peer"):
        self.channel = channel
        self.config = config or Config()
        self.ledger = ledger
        self.file_store = file_store
        self.peer_name = peer_name

        self.receiver = FileReceiver(ledger=ledger,
                                     progress_callback=self._on_progress)
        self.sender: Optional[FileSender] = None

        self.chat_history: Deque[Dict[str, str]] = deque(maxlen=self.config.chat_history_limit)
        self.debug_log: Deque[str] = deque(maxlen=self.config.debug_log_limit)
        self.last_status = ""

        self._listeners: List[EventListener] = []
        self._send_lock = asyncio.Lock()
        self._receive_monitor = self._make_monitor(self.receiver)
        self._send_monitor: Optional[TransferMonitor] = None
        self._resend_tasks: List[asyncio.Task] = []
        self._closed = False

        channel.on_data(self._handle_record)
        channel.on_close(self._handle_close)

    @property
    def is_open(self) -> bool:
        return not self._closed and not self.channel.is_closed

    # === Events ===

    def on_event(self, listener: EventListener):
        """Register listener: fn(event_type: str, data: dict)."""
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event_type: str, data: Dict[str, Any]):
        for listener in self._listeners:
            try:
                listener(event_type, data)
            except Exception as e:
                logger.error(f"Event listener error: {e}")

    def _debug(self, message: str):
        stamp = datetime.now(timezone.utc).isoformat()
        self.debug_log.append(f"{stamp}: {message}")

    def _status(self, message: str):
        self.last_status = message
        self._debug(message)
        self._emit("status", {"message": message})

    def _on_progress(self, progress: TransferProgress):
        self._emit("progress", progress.to_dict())

    def _on_stall(self, stalled: Stalled):
        self._status("Transfer stalled. Requesting restart...")
        self._emit("stalled", {"elapsed": stalled.elapsed})

    def _make_monitor(self, target) -> TransferMonitor:
        return TransferMonitor(
            target,
            channel=self.channel,
            interval=self.config.monitor_interval,
            stall_threshold=self.config.stall_threshold,
            on_stall=self._on_stall,
        )

    # === Outgoing ===

    async def send_file(self, file: Union[Path, str, ChunkSource],
                        mime_type: Optional[str] = None) -> TransferRecord:
        """
        Send one file to the peer.

        Outgoing transfers are serialized: a second call waits for the first.
        """
        if not self.is_open:
            raise ChannelClosed("No active connection")

        async with self._send_lock:
            sender = FileSender(
                self.channel,
                chunk_size=self.config.chunk_size,
                concurrency=self.config.max_concurrent_chunks,
                max_retries=self.config.max_chunk_retries,
                retry_backoff=self.config.retry_backoff,
                ledger=self.ledger,
                progress_callback=self._on_progress,
            )
            self.sender = sender
            self._send_monitor = self._make_monitor(sender)
            self._send_monitor.start()

            try:
                record = await sender.begin(file, mime_type=mime_type)
            except ChunkDropError as e:
                self._status(f"Sending failed: {e}")
                raise
            finally:
                await self._send_monitor.stop()

            self._status("File sent successfully")
            self._emit("transfer_record", record.to_dict())
            return record

    async def send_chat(self, message: str):
        """Send a chat line to the peer."""
        if not self.is_open:
            raise ChannelClosed("No active connection")
        await self.channel.send(encode_chat(message))
        self.chat_history.append({"sender": "You", "message": message})
        self._emit("chat", {"sender": "You", "message": message})

    # === Incoming ===

    async def _handle_record(self, raw):
        try:
            record = decode_record(raw)
        except ProtocolError as e:
            logger.warning(f"Dropping malformed record: {e}")
            self._debug(f"Dropped malformed record: {e}")
            return

        logger.debug(f"Received {describe(record)}")

        if isinstance(record, FileMetadata):
            await self._handle_metadata(record)
        elif isinstance(record, Chunk):
            await self._handle_chunk(record)
        elif isinstance(record, RestartRequest):
            await self._handle_restart(record)
        elif isinstance(record, ChatMessage):
            entry = {"sender": self.peer_name, "message": record.message}
            self.chat_history.append(entry)
            self._emit("chat", entry)
        elif isinstance(record, TextMessage):
            self._status(record.text)

    async def _handle_metadata(self, metadata: FileMetadata):
        complete = self.receiver.handle_metadata(metadata)
        self._status(f"Receiving file: {metadata.name}")
        self._receive_monitor.start()
        if complete:
            await self._finish_receive()

    async def _handle_chunk(self, chunk: Chunk):
        try:
            complete = self.receiver.handle_chunk(chunk)
        except (InvalidChunk, UnexpectedChunk) as e:
            logger.warning(f"Dropped chunk: {e}")
            self._debug(f"Dropped chunk: {e}")
            return

        if complete:
            await self._finish_receive()

    async def _finish_receive(self):
        await self._receive_monitor.stop()
        try:
            received = await self.receiver.assemble()
        except ChunkDropError as e:
            self._status(f"Receiving failed: {e}")
            return

        if self.file_store is not None:
            received.path = await self.file_store.save(received.metadata, received.data)

        self._status(f"File received: {received.metadata.name}")
        self._emit("file_received", _received_event(received))
        self._emit("transfer_record", received.record.to_dict())

    async def _handle_restart(self, request: RestartRequest):
        sender = self.sender
        if sender is None or not sender.matches(request.metadata):
            logger.warning(f"Restart request for {request.metadata.name} ignored: not sending it")
            return

        self._status(f"Peer requested restart of {request.metadata.name}")
        if sender.is_active:
            await sender.handle_restart(request)
        else:
            # Background task, under the send lock like any outgoing transfer
            task = asyncio.create_task(self._resend(sender, request))
            self._resend_tasks.append(task)
            task.add_done_callback(self._resend_tasks.remove)

    async def _resend(self, sender: FileSender, request: RestartRequest):
        async with self._send_lock:
            if self.sender is not sender:
                logger.warning(
                    f"Restart request for {request.metadata.name} dropped: another transfer started"
                )
                return
            try:
                await sender.handle_restart(request)
            except ChunkDropError as e:
                self._status(f"Resend failed: {e}")

    async def _handle_close(self):
        if self._closed:
            return
        self._closed = True

        if self.sender is not None and not self.sender.is_terminal:
            self.sender.abort()
        for task in list(self._resend_tasks):
            task.cancel()
        self.receiver.abort()

        await self._receive_monitor.stop()
        if self._send_monitor is not None:
            await self._send_monitor.stop()

        self._status("Connection closed")

    async def close(self):
        """Close the channel (and with it, this session)."""
        await self.channel.close()
        await self._handle_close()


def _received_event(received: ReceivedFile) -> Dict[str, Any]:
    return {
        "name": received.metadata.name,
        "mime_type": received.metadata.mime_type,
        "size": received.metadata.size,
        "path": str(received.path) if received.path else None,
        "received_at": time.time(),
    }
