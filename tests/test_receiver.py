"""Tests for the receiver state machine."""

import random

import pytest

from chunkdrop.errors import InvalidChunk, SizeMismatch, UnexpectedChunk
from chunkdrop.file.chunker import split
from chunkdrop.file.metadata import Chunk, FileMetadata
from chunkdrop.storage.database import TransferDirection
from chunkdrop.transfer.receiver import FileReceiver, ReceiverState


def metadata_for(data: bytes, chunk_size: int, name: str = 'file.bin') -> FileMetadata:
    return FileMetadata.for_file(name, len(data), chunk_size)


class TestAccumulation:
    """Storing chunks and completing the set."""

    @pytest.mark.asyncio
    async def test_any_arrival_order_reassembles(self, sample_bytes):
        chunks = split(sample_bytes, 16_384)
        random.Random(42).shuffle(chunks)
        receiver = FileReceiver()
        receiver.handle_metadata(metadata_for(sample_bytes, 16_384))

        results = [receiver.handle_chunk(c) for c in chunks]
        received = await receiver.assemble()

        assert results == [False] * 6 + [True]
        assert received.data == sample_bytes
        assert receiver.state == ReceiverState.COMPLETED

    @pytest.mark.asyncio
    async def test_duplicate_chunk_is_idempotent(self):
        data = b'0123456789' * 30
        chunks = split(data, 100)
        receiver = FileReceiver()
        receiver.handle_metadata(metadata_for(data, 100))

        receiver.handle_chunk(chunks[0])
        receiver.handle_chunk(chunks[0])
        receiver.handle_chunk(chunks[1])

        assert receiver.received_bytes == 200
        assert receiver.missing_indices() == [2]

        assert receiver.handle_chunk(chunks[2])
        assert (await receiver.assemble()).data == data

    def test_progress_and_missing(self):
        data = b'a' * 500
        receiver = FileReceiver()
        receiver.handle_metadata(metadata_for(data, 100))

        for chunk in split(data, 100)[:2]:
            receiver.handle_chunk(chunk)

        assert receiver.progress == pytest.approx(40.0)
        assert receiver.missing_indices() == [2, 3, 4]

    def test_activity_clock_moves_with_chunks(self):
        now = [100.0]
        data = b'a' * 300
        receiver = FileReceiver(clock=lambda: now[0])
        receiver.handle_metadata(metadata_for(data, 100))

        now[0] = 105.0
        receiver.handle_chunk(split(data, 100)[0])

        assert receiver.last_activity == 105.0

    @pytest.mark.asyncio
    async def test_ledger_record_written_once_on_completion(self, ledger):
        data = b'hello world'
        receiver = FileReceiver(ledger=ledger)
        receiver.handle_metadata(metadata_for(data, 4, name='hello.txt'))

        for chunk in split(data, 4):
            receiver.handle_chunk(chunk)
        received = await receiver.assemble()

        records = await ledger.load_all()
        assert records == [received.record]
        assert records[0].direction == TransferDirection.RECEIVED
        assert records[0].file_type == 'text/plain'
        assert records[0].file_size == len(data)

    @pytest.mark.asyncio
    async def test_empty_file(self):
        receiver = FileReceiver()
        receiver.handle_metadata(metadata_for(b'', 1024, name='empty.txt'))

        assert receiver.handle_chunk(Chunk(index=0, payload=b'', is_last=True))
        assert (await receiver.assemble()).data == b''


class TestEarlyChunks:
    """Chunks that arrive before their metadata."""

    @pytest.mark.asyncio
    async def test_chunk_before_metadata_is_kept(self):
        data = b'x' * 250
        chunks = split(data, 100)
        receiver = FileReceiver()

        assert not receiver.handle_chunk(chunks[2])
        assert receiver.state == ReceiverState.AWAITING_METADATA

        receiver.handle_metadata(metadata_for(data, 100))

        assert receiver.missing_indices() == [0, 1]
        receiver.handle_chunk(chunks[0])
        assert receiver.handle_chunk(chunks[1])
        assert (await receiver.assemble()).data == data

    @pytest.mark.asyncio
    async def test_all_chunks_before_metadata(self):
        data = b'y' * 250
        receiver = FileReceiver()
        for chunk in split(data, 100):
            receiver.handle_chunk(chunk)

        assert receiver.handle_metadata(metadata_for(data, 100))
        assert (await receiver.assemble()).data == data

    @pytest.mark.asyncio
    async def test_chunk_before_metadata_of_second_transfer(self):
        first = b'1' * 200
        second = b'2' * 250
        receiver = FileReceiver()
        receiver.handle_metadata(metadata_for(first, 100, name='first.bin'))
        for chunk in split(first, 100):
            receiver.handle_chunk(chunk)
        await receiver.assemble()

        chunks = split(second, 100)
        assert not receiver.handle_chunk(chunks[2])
        receiver.handle_metadata(metadata_for(second, 100, name='second.bin'))

        assert receiver.missing_indices() == [0, 1]
        receiver.handle_chunk(chunks[0])
        assert receiver.handle_chunk(chunks[1])
        assert (await receiver.assemble()).data == second

    @pytest.mark.asyncio
    async def test_late_copy_of_finished_chunk_is_not_held(self):
        first = b'1' * 200
        receiver = FileReceiver()
        receiver.handle_metadata(metadata_for(first, 100, name='first.bin'))
        for chunk in split(first, 100):
            receiver.handle_chunk(chunk)
        await receiver.assemble()

        with pytest.raises(UnexpectedChunk):
            receiver.handle_chunk(split(first, 100)[1])

        assert receiver.pending == {}
        assert receiver.state == ReceiverState.COMPLETED

    def test_early_chunk_out_of_range_is_dropped(self):
        data = b'z' * 200
        receiver = FileReceiver()
        receiver.handle_chunk(Chunk(index=9, payload=b'stray'))

        receiver.handle_metadata(metadata_for(data, 100))

        assert receiver.missing_indices() == [0, 1]

    def test_pending_buffer_is_bounded(self):
        receiver = FileReceiver(max_pending_chunks=2)
        receiver.handle_chunk(Chunk(index=0, payload=b'a'))
        receiver.handle_chunk(Chunk(index=1, payload=b'b'))

        with pytest.raises(UnexpectedChunk):
            receiver.handle_chunk(Chunk(index=2, payload=b'c'))


class TestInvalidInput:
    """Chunks the receiver refuses."""

    def test_empty_payload(self):
        receiver = FileReceiver()
        receiver.handle_metadata(metadata_for(b'a' * 300, 100))

        with pytest.raises(InvalidChunk):
            receiver.handle_chunk(Chunk(index=1, payload=b''))
        assert receiver.missing_indices() == [0, 1, 2]

    def test_index_out_of_range(self):
        receiver = FileReceiver()
        receiver.handle_metadata(metadata_for(b'a' * 300, 100))

        with pytest.raises(InvalidChunk):
            receiver.handle_chunk(Chunk(index=3, payload=b'abc'))
        with pytest.raises(InvalidChunk):
            receiver.handle_chunk(Chunk(index=-1, payload=b'abc'))

    @pytest.mark.asyncio
    async def test_chunk_after_completion(self):
        data = b'done'
        receiver = FileReceiver()
        receiver.handle_metadata(metadata_for(data, 100))
        receiver.handle_chunk(Chunk(index=0, payload=data, is_last=True))
        await receiver.assemble()

        with pytest.raises(UnexpectedChunk):
            receiver.handle_chunk(Chunk(index=0, payload=data))

    @pytest.mark.asyncio
    async def test_size_mismatch_fails_the_session(self, ledger):
        metadata = FileMetadata(name='liar.bin', mime_type='application/octet-stream',
                                size=10, total_chunks=1)
        receiver = FileReceiver(ledger=ledger)
        receiver.handle_metadata(metadata)

        assert receiver.handle_chunk(Chunk(index=0, payload=b'short', is_last=True))
        with pytest.raises(SizeMismatch):
            await receiver.assemble()

        assert receiver.state == ReceiverState.FAILED
        assert await ledger.load_all() == []


class TestSessionLifecycle:
    """New metadata and aborts."""

    def test_new_metadata_discards_partial_transfer(self):
        first = b'1' * 300
        second = b'2' * 200
        receiver = FileReceiver()
        receiver.handle_metadata(metadata_for(first, 100, name='first.bin'))
        receiver.handle_chunk(split(first, 100)[0])

        receiver.handle_metadata(metadata_for(second, 100, name='second.bin'))

        assert receiver.metadata.name == 'second.bin'
        assert receiver.received_bytes == 0
        assert receiver.missing_indices() == [0, 1]

    def test_abort(self):
        receiver = FileReceiver()
        receiver.handle_metadata(metadata_for(b'a' * 300, 100))
        receiver.handle_chunk(Chunk(index=0, payload=b'a' * 100))

        receiver.abort()

        assert receiver.state == ReceiverState.FAILED
        assert not receiver.is_active
        assert receiver.restart_request() is None

    def test_restart_request_lists_missing(self):
        data = b'r' * 500
        receiver = FileReceiver()
        metadata = metadata_for(data, 100)
        receiver.handle_metadata(metadata)
        for chunk in split(data, 100)[:2]:
            receiver.handle_chunk(chunk)

        request = receiver.restart_request()

        assert request.metadata == metadata
        assert request.received_size == 200
        assert request.missing == [2, 3, 4]
