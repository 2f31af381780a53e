"""
File Receiver

Accumulates one inbound transfer at a time:

1. Metadata arrives -> a fresh TransferSession (ACCUMULATING); any earlier
   partial buffer is discarded without a ledger record
2. Chunks are stored by index (arrival order does not matter, a repeated
   index replaces the earlier payload)
3. Once every index is present -> ASSEMBLING -> COMPLETED, the buffer is
   released and a ledger record written
4. Assembly errors -> FAILED, the buffer is kept for inspection only

Chunks that show up before any metadata are held in a small pending
buffer and merged when the metadata arrives. This applies between
transfers too, except that a chunk identical to one of the last transfer's
(a late resend) is dropped rather than held for the next file.
"""

import hashlib
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..errors import ChunkDropError, InvalidChunk, UnexpectedChunk
from ..file.chunker import assemble
from ..file.metadata import Chunk, FileMetadata
from ..storage.database import TransferDirection, TransferLedger, TransferRecord
from .progress import ProgressCallback, TransferProgress
from .protocol import RestartRequest

logger = logging.getLogger(__name__)

# Chunks held while waiting for metadata
MAX_PENDING_CHUNKS = 1024


class ReceiverState(str, Enum):
    IDLE = "idle"
    AWAITING_METADATA = "awaiting_metadata"
    ACCUMULATING = "accumulating"
    ASSEMBLING = "assembling"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TransferSession:
    """Receiver-side state of one in-progress transfer."""
    metadata: FileMetadata
    received: Dict[int, bytes] = field(default_factory=dict)
    received_bytes: int = 0
    last_activity: float = 0.0
    # index -> sha256 of the stored payload; outlives the payloads
    digests: Dict[int, bytes] = field(default_factory=dict)

    def store(self, chunk: Chunk):
        """Insert or replace a chunk, keeping received_bytes exact."""
        previous = self.received.get(chunk.index)
        if previous is not None:
            self.received_bytes -= len(previous)
        self.received[chunk.index] = chunk.payload
        self.received_bytes += len(chunk.payload)
        self.digests[chunk.index] = hashlib.sha256(chunk.payload).digest()

    def already_had(self, chunk: Chunk) -> bool:
        """True if this exact chunk was part of this transfer."""
        digest = self.digests.get(chunk.index)
        return digest is not None and digest == hashlib.sha256(chunk.payload).digest()

    def missing_indices(self) -> List[int]:
        return [i for i in range(self.metadata.total_chunks) if i not in self.received]

    @property
    def is_complete(self) -> bool:
        return len(self.received) == self.metadata.total_chunks


@dataclass
class ReceivedFile:
    """A fully reassembled file, handed to the caller for saving."""
    metadata: FileMetadata
    data: bytes
    record: TransferRecord
    path: Optional[Path] = None


class FileReceiver:
    """
    Owns the inbound side of one channel.
    """

    def __init__(self, ledger: Optional[TransferLedger] = None,
                 progress_callback: Optional[ProgressCallback] = None,
                 max_pending_chunks: int = MAX_PENDING_CHUNKS,
                 clock: Callable[[], float] = time.monotonic):
        self.ledger = ledger
        self.progress_callback = progress_callback
        self.max_pending_chunks = max_pending_chunks
        self._clock = clock

        self.state = ReceiverState.IDLE
        self.session: Optional[TransferSession] = None
        self.pending: Dict[int, Chunk] = {}
        self.error: Optional[ChunkDropError] = None
        self._progress: Optional[TransferProgress] = None

    # === State ===

    @property
    def metadata(self) -> Optional[FileMetadata]:
        return self.session.metadata if self.session else None

    @property
    def last_activity(self) -> float:
        return self.session.last_activity if self.session else 0.0

    @property
    def received_bytes(self) -> int:
        return self.session.received_bytes if self.session else 0

    @property
    def progress(self) -> float:
        """Received progress as a percentage."""
        if not self.session:
            return 0.0
        return len(self.session.received) / self.session.metadata.total_chunks * 100

    @property
    def is_active(self) -> bool:
        return self.state == ReceiverState.ACCUMULATING

    def missing_indices(self) -> List[int]:
        return self.session.missing_indices() if self.session else []

    def restart_request(self) -> Optional[RestartRequest]:
        """What to ask the sender for when this transfer stalls."""
        if not self.is_active:
            return None
        return RestartRequest(
            metadata=self.session.metadata,
            received_size=self.session.received_bytes,
            missing=self.session.missing_indices(),
        )

    # === Records ===

    def handle_metadata(self, metadata: FileMetadata) -> bool:
        """
        Start a new inbound transfer, discarding any partial one.

        Returns:
            True if chunks held from before the metadata already complete the set
        """
        if self.state == ReceiverState.ACCUMULATING and self.session:
            logger.warning(
                f"New transfer announced; discarding partial {self.session.metadata.name} "
                f"({len(self.session.received)}/{self.session.metadata.total_chunks} chunks)"
            )

        self.session = TransferSession(metadata=metadata, last_activity=self._clock())
        self.error = None
        self._progress = TransferProgress(
            direction=TransferDirection.RECEIVED.value,
            file_name=metadata.name,
            file_size=metadata.size,
            total_chunks=metadata.total_chunks,
        )
        self._set_state(ReceiverState.ACCUMULATING)
        logger.info(
            f"Receiving {metadata.name}: {metadata.size:,} bytes in {metadata.total_chunks} chunks"
        )

        early, self.pending = self.pending, {}
        for chunk in sorted(early.values(), key=lambda c: c.index):
            try:
                self._accept(chunk)
            except InvalidChunk as e:
                logger.warning(f"Dropping early chunk: {e}")

        return self.session.is_complete

    def handle_chunk(self, chunk: Chunk) -> bool:
        """
        Store one chunk.

        Returns:
            True when this chunk completed the set and assemble() should run

        Raises:
            InvalidChunk: bad index or empty payload (chunk dropped)
            UnexpectedChunk: no transfer can take the chunk, or it repeats
                one of the finished transfer's chunks (chunk dropped)
        """
        if self.state == ReceiverState.ACCUMULATING:
            return self._accept(chunk)

        if self.state == ReceiverState.ASSEMBLING:
            raise UnexpectedChunk(chunk.index)

        if self.session is not None and self.session.already_had(chunk):
            logger.debug(f"Dropping late copy of chunk {chunk.index} of {self.session.metadata.name}")
            raise UnexpectedChunk(chunk.index)

        return self._hold(chunk)

    async def assemble(self) -> ReceivedFile:
        """
        Rebuild the file from the complete chunk set.

        Raises:
            IncompleteSet, SizeMismatch: the session moves to FAILED
        """
        session = self.session
        self._set_state(ReceiverState.ASSEMBLING)

        try:
            data = assemble(session.metadata.size, session.received,
                            session.metadata.total_chunks)
        except ChunkDropError as e:
            self.error = e
            self._set_state(ReceiverState.FAILED)
            logger.error(f"Assembly of {session.metadata.name} failed: {e}")
            raise

        record = TransferRecord.create(session.metadata, TransferDirection.RECEIVED)
        session.received.clear()
        session.received_bytes = len(data)
        self._set_state(ReceiverState.COMPLETED)
        logger.info(f"File transfer complete: {session.metadata.name}")

        if self.ledger is not None:
            await self.ledger.append(record)

        return ReceivedFile(metadata=session.metadata, data=data, record=record)

    def abort(self):
        """Drop the in-progress transfer (if any) without a ledger record."""
        self.pending.clear()
        if self.state in (ReceiverState.ACCUMULATING, ReceiverState.ASSEMBLING,
                          ReceiverState.AWAITING_METADATA):
            if self.session:
                logger.info(f"Aborted receiving {self.session.metadata.name}")
                self.session.received.clear()
            self._set_state(ReceiverState.FAILED)

    # === Internals ===

    def _hold(self, chunk: Chunk) -> bool:
        if len(self.pending) >= self.max_pending_chunks and chunk.index not in self.pending:
            raise UnexpectedChunk(chunk.index)

        self.pending[chunk.index] = chunk
        self._set_state(ReceiverState.AWAITING_METADATA)
        logger.debug(f"Holding chunk {chunk.index} until metadata arrives")
        return False

    def _accept(self, chunk: Chunk) -> bool:
        session = self.session
        metadata = session.metadata

        if chunk.index < 0 or chunk.index >= metadata.total_chunks:
            raise InvalidChunk(chunk.index, f"index outside [0, {metadata.total_chunks})")

        if not chunk.payload and not (metadata.size == 0 and chunk.index == metadata.total_chunks - 1):
            raise InvalidChunk(chunk.index)

        session.store(chunk)
        session.last_activity = self._clock()

        self._progress.completed_chunks = len(session.received)
        self._progress.bytes_transferred = session.received_bytes
        logger.debug(
            f"Received chunk {chunk.index}: {chunk.size} bytes, progress {self.progress:.2f}%"
        )
        self._report()

        return session.is_complete

    def _set_state(self, state: ReceiverState):
        self.state = state
        if self._progress is not None:
            self._progress.state = state.value
            self._report()

    def _report(self):
        if self.progress_callback and self._progress is not None:
            try:
                self.progress_callback(self._progress)
            except Exception as e:
                logger.error(f"Progress callback error: {e}")
