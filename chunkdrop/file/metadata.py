"""
Transfer Metadata

The metadata record is the first thing a sender puts on the channel.
It tells the receiver:
- What the file is called and how to label it (name, mime type)
- How many bytes to expect
- How many chunks make up the file

Chunks are immutable once created; the channel takes them over on send.
"""

import mimetypes
from dataclasses import dataclass, asdict
from typing import Dict, Optional

from ..errors import InvalidInput


def chunk_count_for(size: int, chunk_size: int) -> int:
    """
    Number of chunks needed for `size` bytes.

    An empty file still travels as one (empty) final chunk, so the
    count is always positive.
    """
    if chunk_size <= 0:
        raise InvalidInput(f"chunk_size must be positive, got {chunk_size}")
    if size < 0:
        raise InvalidInput(f"size cannot be negative, got {size}")
    return max(1, (size + chunk_size - 1) // chunk_size)


def guess_mime_type(name: str) -> str:
    mime_type, _ = mimetypes.guess_type(name)
    return mime_type or "application/octet-stream"


@dataclass(frozen=True)
class FileMetadata:
    """Announced description of one file transfer."""
    name: str
    mime_type: str
    size: int
    total_chunks: int

    def __post_init__(self):
        if self.size < 0:
            raise InvalidInput(f"size cannot be negative, got {self.size}")
        if self.total_chunks < 1:
            raise InvalidInput(f"total_chunks must be positive, got {self.total_chunks}")

    @classmethod
    def for_file(cls, name: str, size: int, chunk_size: int,
                 mime_type: Optional[str] = None) -> 'FileMetadata':
        """Build metadata for a file of `size` bytes split at `chunk_size`."""
        return cls(
            name=name,
            mime_type=mime_type or guess_mime_type(name),
            size=size,
            total_chunks=chunk_count_for(size, chunk_size),
        )

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'FileMetadata':
        try:
            return cls(
                name=str(data['name']),
                mime_type=str(data.get('mime_type', '')),
                size=int(data['size']),
                total_chunks=int(data['total_chunks']),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidInput(f"Malformed metadata: {e}") from e


@dataclass(frozen=True)
class Chunk:
    """One indexed slice of a file."""
    index: int
    payload: bytes
    is_last: bool = False

    @property
    def size(self) -> int:
        return len(self.payload)
