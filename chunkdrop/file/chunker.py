"""
File Chunker

Design Decision: Chunk Size
===========================

Options Considered:
| Size    | Pros                               | Cons                              |
|---------|------------------------------------|-----------------------------------|
| 16KB    | Fits every data channel's message  | More records per file             |
|         | limit, no fragmentation            |                                   |
| 64KB    | Fewer records                      | Above some channels' safe limit   |
| 256KB   | Low overhead on raw TCP            | Fragmented or rejected on message |
|         |                                    | channels                          |

Decision: 16KB (16,384 bytes) by default, configurable
- Safe for message-framed peer channels
- Small enough that a lost record is cheap to resend
- The codec itself accepts any positive size

Chunking Strategy: Fixed-Size
- Chunk i covers bytes [i * chunk_size, min((i + 1) * chunk_size, size))
- Only the final chunk may be short
- Reassembly is by numeric index, never by arrival order
"""

from pathlib import Path
from typing import AsyncIterator, Dict, List, Mapping, Optional, Tuple

import aiofiles

from ..errors import IncompleteSet, InvalidInput, SizeMismatch
from .metadata import Chunk, chunk_count_for

# Chunk size: 16KB
CHUNK_SIZE = 16 * 1024  # 16,384 bytes


# === Codec ===

def split(data: bytes, chunk_size: int) -> List[Chunk]:
    """
    Split a byte buffer into fixed-size chunks.

    Deterministic: the same (data, chunk_size) always yields the same
    chunks, indexed 0..n-1 in order, with is_last set only on the final one.
    """
    total_chunks = chunk_count_for(len(data), chunk_size)
    view = memoryview(data)

    chunks = []
    for index in range(total_chunks):
        start = index * chunk_size
        payload = bytes(view[start:start + chunk_size])
        chunks.append(Chunk(index=index, payload=payload,
                            is_last=index == total_chunks - 1))
    return chunks


def assemble(total_size: int, chunks: Mapping[int, bytes],
             total_chunks: Optional[int] = None) -> bytes:
    """
    Rebuild a byte buffer from an index -> payload mapping.

    Args:
        total_size: Announced size of the file
        chunks: Received payloads keyed by chunk index
        total_chunks: Expected chunk count (defaults to what total_size
            needs at the size of chunk 0)

    Raises:
        IncompleteSet: an index in [0, total_chunks) is missing
        SizeMismatch: the concatenation is not exactly total_size bytes
    """
    if total_chunks is None:
        total_chunks = max(chunks) + 1 if chunks else 1
        if chunks.get(0):
            total_chunks = max(total_chunks, chunk_count_for(total_size, len(chunks[0])))

    missing = [i for i in range(total_chunks) if i not in chunks]
    if missing:
        raise IncompleteSet(missing)

    data = b"".join(chunks[i] for i in range(total_chunks))
    if len(data) != total_size:
        raise SizeMismatch(total_size, len(data))
    return data


def index_map(chunks: List[Chunk]) -> Dict[int, bytes]:
    """Index -> payload mapping for a chunk sequence."""
    return {chunk.index: chunk.payload for chunk in chunks}


class FileChunker:
    """
    Reads fixed-size chunks from files on disk.

    Features:
    - Random access by chunk index (for concurrent dispatch and resends)
    - Async file reading
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE):
        if chunk_size <= 0:
            raise InvalidInput(f"chunk_size must be positive, got {chunk_size}")
        self.chunk_size = chunk_size

    def get_chunk_count(self, file_size: int) -> int:
        """Calculate number of chunks for a file of given size."""
        return chunk_count_for(file_size, self.chunk_size)

    def get_chunk_bounds(self, chunk_index: int, file_size: int) -> Tuple[int, int]:
        """
        Get byte range for a specific chunk.

        Returns:
            (start_offset, length) tuple
        """
        start = chunk_index * self.chunk_size
        length = max(0, min(self.chunk_size, file_size - start))
        return start, length

    async def read_chunk(self, file_path: Path, chunk_index: int,
                         file_size: Optional[int] = None) -> Chunk:
        """
        Read a specific chunk from a file.

        Raises:
            InvalidInput: index outside the file's chunk range
        """
        if file_size is None:
            file_size = Path(file_path).stat().st_size
        chunk_count = self.get_chunk_count(file_size)

        if chunk_index < 0 or chunk_index >= chunk_count:
            raise InvalidInput(f"Chunk index {chunk_index} out of range [0, {chunk_count})")

        start, length = self.get_chunk_bounds(chunk_index, file_size)

        async with aiofiles.open(file_path, 'rb') as f:
            await f.seek(start)
            payload = await f.read(length)

        if len(payload) != length:
            raise IOError(
                f"Short read on {file_path} chunk {chunk_index}: "
                f"got {len(payload)} of {length} bytes"
            )

        return Chunk(index=chunk_index, payload=payload,
                     is_last=chunk_index == chunk_count - 1)

    async def chunk_file(self, file_path: Path) -> AsyncIterator[Chunk]:
        """
        Split a file into chunks, in index order.

        Yields:
            Chunk records
        """
        file_size = Path(file_path).stat().st_size
        chunk_count = self.get_chunk_count(file_size)

        async with aiofiles.open(file_path, 'rb') as f:
            for chunk_index in range(chunk_count):
                payload = await f.read(self.chunk_size)
                yield Chunk(index=chunk_index, payload=payload,
                            is_last=chunk_index == chunk_count - 1)

