"""Tests for the chunk codec and file chunk reading."""

import random

import pytest

from chunkdrop.errors import IncompleteSet, InvalidInput, SizeMismatch
from chunkdrop.file.chunker import CHUNK_SIZE, FileChunker, assemble, index_map, split
from chunkdrop.file.metadata import FileMetadata, chunk_count_for


class TestSplit:
    """Splitting buffers into fixed-size chunks."""

    def test_hundred_thousand_bytes_at_default_size(self, sample_bytes):
        chunks = split(sample_bytes, CHUNK_SIZE)

        assert len(chunks) == 7
        assert [c.index for c in chunks] == list(range(7))
        assert all(c.size == CHUNK_SIZE for c in chunks[:-1])
        assert chunks[-1].size == 100_000 - 6 * 16_384
        assert chunks[-1].size == 1696

    def test_only_final_chunk_is_last(self, sample_bytes):
        chunks = split(sample_bytes, 4096)

        assert [c.is_last for c in chunks].count(True) == 1
        assert chunks[-1].is_last

    def test_deterministic(self, sample_bytes):
        assert split(sample_bytes, 3000) == split(sample_bytes, 3000)

    def test_exact_multiple_has_no_short_chunk(self):
        chunks = split(b'x' * 4096, 1024)

        assert len(chunks) == 4
        assert all(c.size == 1024 for c in chunks)

    def test_empty_buffer_is_one_empty_chunk(self):
        chunks = split(b'', 1024)

        assert len(chunks) == 1
        assert chunks[0].payload == b''
        assert chunks[0].is_last

    def test_rejects_non_positive_chunk_size(self):
        with pytest.raises(InvalidInput):
            split(b'data', 0)
        with pytest.raises(InvalidInput):
            split(b'data', -5)


class TestAssemble:
    """Rebuilding buffers from indexed payloads."""

    @pytest.mark.parametrize('size,chunk_size', [(100_000, 16_384), (1, 1), (5000, 7), (0, 64)])
    def test_round_trip(self, size, chunk_size):
        data = bytes(random.Random(size).getrandbits(8) for _ in range(size))

        chunks = split(data, chunk_size)

        assert assemble(len(data), index_map(chunks), len(chunks)) == data

    def test_order_independent(self, sample_bytes):
        chunks = split(sample_bytes, CHUNK_SIZE)
        shuffled = chunks[:]
        random.Random(7).shuffle(shuffled)

        received = {}
        for chunk in shuffled:
            received[chunk.index] = chunk.payload

        assert assemble(len(sample_bytes), received, len(chunks)) == sample_bytes

    def test_missing_index_raises_incomplete_set(self, sample_bytes):
        received = index_map(split(sample_bytes, CHUNK_SIZE))
        del received[2]
        del received[5]

        with pytest.raises(IncompleteSet) as exc_info:
            assemble(len(sample_bytes), received, 7)

        assert exc_info.value.missing == [2, 5]

    def test_missing_last_index_without_count_raises_incomplete_set(self):
        received = {0: b'a' * 1024, 1: b'a' * 1024}

        with pytest.raises(IncompleteSet) as exc_info:
            assemble(3072, received)

        assert exc_info.value.missing == [2]

    def test_wrong_total_raises_size_mismatch(self):
        received = index_map(split(b'abcdef', 4))

        with pytest.raises(SizeMismatch) as exc_info:
            assemble(10, received, 2)

        assert exc_info.value.expected == 10
        assert exc_info.value.actual == 6


class TestChunkCount:
    """Chunk count and metadata construction."""

    def test_ceiling_division(self):
        assert chunk_count_for(100_000, 16_384) == 7
        assert chunk_count_for(16_384, 16_384) == 1
        assert chunk_count_for(16_385, 16_384) == 2

    def test_empty_file_has_one_chunk(self):
        assert chunk_count_for(0, 16_384) == 1

    def test_metadata_for_file_guesses_mime_type(self):
        metadata = FileMetadata.for_file('photo.png', 100_000, CHUNK_SIZE)

        assert metadata.mime_type == 'image/png'
        assert metadata.total_chunks == 7

    def test_unknown_extension_falls_back_to_octet_stream(self):
        metadata = FileMetadata.for_file('blob.zzqq', 10, CHUNK_SIZE)

        assert metadata.mime_type == 'application/octet-stream'

    def test_metadata_round_trips_through_dict(self):
        metadata = FileMetadata.for_file('a.txt', 10, 4)

        assert FileMetadata.from_dict(metadata.to_dict()) == metadata

    def test_malformed_metadata_dict(self):
        with pytest.raises(InvalidInput):
            FileMetadata.from_dict({'name': 'a.txt'})


class TestFileChunker:
    """Reading chunks from disk."""

    @pytest.mark.asyncio
    async def test_read_chunk_matches_split(self, sample_file, sample_bytes):
        chunker = FileChunker(CHUNK_SIZE)
        expected = split(sample_bytes, CHUNK_SIZE)

        for index in (0, 3, 6):
            chunk = await chunker.read_chunk(sample_file, index)
            assert chunk == expected[index]

    @pytest.mark.asyncio
    async def test_read_chunk_out_of_range(self, sample_file):
        chunker = FileChunker(CHUNK_SIZE)

        with pytest.raises(InvalidInput):
            await chunker.read_chunk(sample_file, 7)

    @pytest.mark.asyncio
    async def test_chunk_file_yields_every_chunk_in_order(self, sample_file, sample_bytes):
        chunker = FileChunker(CHUNK_SIZE)

        chunks = [chunk async for chunk in chunker.chunk_file(sample_file)]

        assert chunks == split(sample_bytes, CHUNK_SIZE)

    def test_rejects_non_positive_chunk_size(self):
        with pytest.raises(InvalidInput):
            FileChunker(0)
