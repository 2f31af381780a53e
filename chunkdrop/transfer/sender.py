"""
File Sender

Design Decision: Dispatch Strategy
==================================

Options Considered:
1. Strictly sequential: read, send, repeat
   - Simple, but file reads and channel writes never overlap

2. Fire every chunk at once
   - Unbounded memory, floods the channel buffer

3. Bounded window of concurrent read+send operations
   - Overlaps disk and network
   - Memory bounded by window * chunk size

Decision: Bounded window (default 5), strictly ascending dispatch
- Chunk indices are handed out in order, never skipped or reordered
- When one operation finishes the next index is dispatched immediately
- A failing index is retried in place with exponential backoff; once
  retries run out the whole transfer fails with ChunkSendFailed

Send Flow:
1. Announce metadata (ANNOUNCING)
2. Dispatch chunks under the window (TRANSMITTING)
3. All chunks sent, none in flight -> COMPLETED, ledger record written
4. Any index exhausting retries, channel loss or abort() -> FAILED
"""

import asyncio
import logging
import time
from collections import deque
from enum import Enum
from pathlib import Path
from typing import Callable, Deque, Dict, Iterable, Optional, Set, Union

from ..errors import ChannelClosed, ChunkSendFailed, InvalidInput, TransferAborted
from ..file.chunker import CHUNK_SIZE, FileChunker
from ..file.metadata import Chunk, FileMetadata, chunk_count_for
from ..storage.database import TransferDirection, TransferLedger, TransferRecord
from .channel import Channel
from .progress import ProgressCallback, TransferProgress
from .protocol import RestartRequest, encode_chunk, encode_metadata

logger = logging.getLogger(__name__)


class SenderState(str, Enum):
    IDLE = "idle"
    ANNOUNCING = "announcing"
    TRANSMITTING = "transmitting"
    COMPLETED = "completed"
    FAILED = "failed"


# === Chunk sources ===

class ChunkSource:
    """Where a sender reads chunk payloads from."""
    name: str
    size: int
    mime_type: Optional[str] = None

    async def read(self, index: int, chunk_size: int) -> Chunk:
        raise NotImplementedError


class FileSource(ChunkSource):
    """Chunks read from a file on disk, one async read per chunk."""

    def __init__(self, path: Path, mime_type: Optional[str] = None):
        self.path = Path(path)
        if not self.path.is_file():
            raise FileNotFoundError(f"File not found: {self.path}")
        self.name = self.path.name
        self.size = self.path.stat().st_size
        self.mime_type = mime_type
        self._chunkers: Dict[int, FileChunker] = {}

    async def read(self, index: int, chunk_size: int) -> Chunk:
        chunker = self._chunkers.get(chunk_size)
        if chunker is None:
            chunker = self._chunkers[chunk_size] = FileChunker(chunk_size)
        return await chunker.read_chunk(self.path, index, file_size=self.size)


class BytesSource(ChunkSource):
    """Chunks sliced from an in-memory buffer."""

    def __init__(self, name: str, data: bytes, mime_type: Optional[str] = None):
        self.name = name
        self.data = bytes(data)
        self.size = len(self.data)
        self.mime_type = mime_type

    async def read(self, index: int, chunk_size: int) -> Chunk:
        total_chunks = chunk_count_for(self.size, chunk_size)
        if index < 0 or index >= total_chunks:
            raise InvalidInput(f"Chunk index {index} out of range [0, {total_chunks})")
        start = index * chunk_size
        return Chunk(index=index, payload=self.data[start:start + chunk_size],
                     is_last=index == total_chunks - 1)


class FileSender:
    """
    Owns one outgoing transfer over a channel.

    Usage:
        sender = FileSender(channel, concurrency=5)
        record = await sender.begin(Path("photo.jpg"))
    """

    def __init__(self, channel: Channel, chunk_size: int = CHUNK_SIZE,
                 concurrency: int = 5, max_retries: int = 3,
                 retry_backoff: float = 0.5,
                 ledger: Optional[TransferLedger] = None,
                 progress_callback: Optional[ProgressCallback] = None,
                 clock: Callable[[], float] = time.monotonic):
        if chunk_size <= 0:
            raise InvalidInput(f"chunk_size must be positive, got {chunk_size}")
        if concurrency < 1:
            raise InvalidInput(f"concurrency must be at least 1, got {concurrency}")
        if max_retries < 0:
            raise InvalidInput(f"max_retries cannot be negative, got {max_retries}")

        self.channel = channel
        self.chunk_size = chunk_size
        self.concurrency = concurrency
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.ledger = ledger
        self.progress_callback = progress_callback
        self._clock = clock

        self.state = SenderState.IDLE
        self.source: Optional[ChunkSource] = None
        self.metadata: Optional[FileMetadata] = None
        self.record: Optional[TransferRecord] = None
        self.error: Optional[BaseException] = None
        self.last_activity = clock()

        # Dispatch bookkeeping
        self._queue: Deque[int] = deque()
        self._tasks: Dict[asyncio.Task, int] = {}
        self._sent: Set[int] = set()
        self._aborted = False
        self._progress: Optional[TransferProgress] = None

        # Instrumentation
        self.max_in_flight = 0

    # === State ===

    @property
    def sent_count(self) -> int:
        return len(self._sent)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    @property
    def progress(self) -> float:
        """Sent progress as a percentage."""
        if not self.metadata:
            return 0.0
        return self.sent_count / self.metadata.total_chunks * 100

    @property
    def is_active(self) -> bool:
        return self.state == SenderState.TRANSMITTING

    @property
    def is_terminal(self) -> bool:
        return self.state in (SenderState.COMPLETED, SenderState.FAILED)

    def restart_request(self) -> Optional[RestartRequest]:
        """Senders have nothing to ask the receiver for; stalls are only reported."""
        return None

    def matches(self, metadata: FileMetadata) -> bool:
        """True when `metadata` describes the file this sender is sending."""
        return self.metadata is not None and self.metadata == metadata

    # === Transfer ===

    async def begin(self, file: Union[Path, str, ChunkSource],
                    mime_type: Optional[str] = None) -> TransferRecord:
        """
        Send a file: announce metadata, then stream every chunk.

        Returns:
            The ledger record of the completed transfer

        Raises:
            ChunkSendFailed: an index failed after all retries
            ChannelClosed: the channel went away mid-transfer
            TransferAborted: abort() was called
        """
        if self.state != SenderState.IDLE:
            raise InvalidInput(f"Sender already used (state: {self.state.value})")

        source = file if isinstance(file, ChunkSource) else FileSource(Path(file), mime_type)
        self.source = source
        self.metadata = FileMetadata.for_file(
            source.name, source.size, self.chunk_size,
            mime_type=mime_type or source.mime_type,
        )
        self._progress = TransferProgress(
            direction=TransferDirection.SENT.value,
            file_name=self.metadata.name,
            file_size=self.metadata.size,
            total_chunks=self.metadata.total_chunks,
        )

        self._set_state(SenderState.ANNOUNCING)
        logger.info(
            f"Sending {self.metadata.name}: {self.metadata.size:,} bytes "
            f"in {self.metadata.total_chunks} chunks"
        )

        try:
            await self.channel.send(encode_metadata(self.metadata))
            self._touch()
            if self._aborted:
                raise TransferAborted(f"Transfer of {self.metadata.name} aborted")
            await self._transmit(range(self.metadata.total_chunks))
        except BaseException as e:
            self._fail(e)
            raise

        return await self._complete()

    async def resend(self, indices: Iterable[int]) -> None:
        """
        Re-dispatch specific chunk indices (answer to a restart request).

        While transmitting, the indices are queued behind the current ones;
        after completion (or a retry failure) a new dispatch round runs.
        """
        if self.metadata is None or self._aborted:
            logger.warning("Ignoring resend: no resendable transfer")
            return

        total = self.metadata.total_chunks
        wanted = sorted({i for i in indices if 0 <= i < total})
        if not wanted:
            return

        if self.state == SenderState.TRANSMITTING:
            busy = set(self._queue) | set(self._tasks.values())
            for index in wanted:
                if index not in busy:
                    self._sent.discard(index)
                    self._queue.append(index)
            logger.info(f"Queued {len(wanted)} chunk(s) of {self.metadata.name} for resend")
            return

        if not self.is_terminal:
            return

        logger.info(f"Resending {len(wanted)} chunk(s) of {self.metadata.name}")
        self._sent.difference_update(wanted)
        self.error = None
        try:
            await self._transmit(wanted)
        except BaseException as e:
            self._fail(e)
            raise
        await self._complete()

    async def handle_restart(self, request: RestartRequest) -> bool:
        """
        Act on a restart request from the receiver.

        Returns:
            True if the request was for this sender's file and was acted on
        """
        if not self.matches(request.metadata):
            logger.warning(f"Restart request for unknown file {request.metadata.name}")
            return False

        missing = request.missing
        if not missing:
            # Only a byte count: everything from the first incomplete chunk onward
            first = request.received_size // self.chunk_size
            missing = range(first, self.metadata.total_chunks)

        await self.resend(missing)
        return True

    def abort(self):
        """
        Stop the transfer now: FAILED, in-flight operations cancelled.

        Does not wait for the cancelled operations to unwind.
        """
        if self.state == SenderState.COMPLETED:
            return

        self._aborted = True
        self._queue.clear()
        for task in list(self._tasks):
            task.cancel()

        name = self.metadata.name if self.metadata else "transfer"
        logger.info(f"Aborted sending {name}")
        if self.state != SenderState.FAILED:
            self._fail(TransferAborted(f"Transfer of {name} aborted"))

    # === Internals ===

    async def _transmit(self, indices: Iterable[int]):
        """Dispatch `indices` in ascending order under the concurrency cap."""
        self._queue.extend(indices)
        self._set_state(SenderState.TRANSMITTING)

        try:
            while self._queue or self._tasks:
                while self._queue and len(self._tasks) < self.concurrency:
                    index = self._queue.popleft()
                    task = asyncio.create_task(self._send_chunk(index))
                    self._tasks[task] = index
                    self.max_in_flight = max(self.max_in_flight, len(self._tasks))

                done, _ = await asyncio.wait(
                    list(self._tasks), return_when=asyncio.FIRST_COMPLETED
                )

                for task in done:
                    index = self._tasks.pop(task)
                    if task.cancelled():
                        continue
                    error = task.exception()
                    if error is not None:
                        raise error
                    self._on_chunk_sent(index, task.result())

                if self._aborted:
                    raise TransferAborted(f"Transfer of {self.metadata.name} aborted")
        finally:
            for task in self._tasks:
                task.cancel()
            self._tasks.clear()
            self._queue.clear()

    async def _send_chunk(self, index: int) -> int:
        """Read and send one chunk, retrying the same index on failure."""
        attempt = 0
        while True:
            attempt += 1
            try:
                chunk = await self.source.read(index, self.chunk_size)
                await self.channel.send(encode_chunk(chunk))
                return chunk.size
            except ChannelClosed:
                raise
            except Exception as e:
                if attempt > self.max_retries:
                    logger.error(f"Chunk {index} failed after {attempt} attempt(s): {e}")
                    raise ChunkSendFailed(index, attempt, e) from e

                delay = self.retry_backoff * (2 ** (attempt - 1))
                logger.warning(
                    f"Chunk {index} attempt {attempt} failed ({e}), retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

    def _on_chunk_sent(self, index: int, size: int):
        first_time = index not in self._sent
        self._sent.add(index)
        self._touch()

        if first_time:
            self._progress.bytes_transferred += size
        self._progress.completed_chunks = self.sent_count
        logger.debug(
            f"Sent chunk {index}: {size} bytes, progress {self.progress:.2f}%"
        )
        self._report()

    async def _complete(self) -> TransferRecord:
        self._set_state(SenderState.COMPLETED)
        logger.info(f"File transfer complete: {self.metadata.name}")

        if self.record is None:
            self.record = TransferRecord.create(self.metadata, TransferDirection.SENT)
            if self.ledger is not None:
                await self.ledger.append(self.record)
        return self.record

    def _fail(self, error: BaseException):
        self.error = error
        if self.state != SenderState.FAILED:
            self._set_state(SenderState.FAILED)
            if not isinstance(error, TransferAborted):
                logger.error(f"Sending {self.metadata.name if self.metadata else '?'} failed: {error}")

    def _set_state(self, state: SenderState):
        self.state = state
        if self._progress is not None:
            self._progress.state = state.value
            self._report()

    def _touch(self):
        self.last_activity = self._clock()

    def _report(self):
        if self.progress_callback and self._progress is not None:
            try:
                self.progress_callback(self._progress)
            except Exception as e:
                logger.error(f"Progress callback error: {e}")


async def send_file(channel: Channel, file_path: Path, chunk_size: int = CHUNK_SIZE,
                    concurrency: int = 5, ledger: Optional[TransferLedger] = None,
                    progress_callback: Optional[ProgressCallback] = None) -> TransferRecord:
    """Send one file over `channel` with a fresh sender (convenience function)."""
    sender = FileSender(channel, chunk_size=chunk_size, concurrency=concurrency,
                        ledger=ledger, progress_callback=progress_callback)
    return await sender.begin(file_path)
