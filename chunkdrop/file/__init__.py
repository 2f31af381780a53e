"""
File Module - Chunking, Metadata, and Storage

This module handles file operations for chunked peer-to-peer transfer.
"""

from .chunker import FileChunker, CHUNK_SIZE, split, assemble, index_map
from .metadata import FileMetadata, Chunk, chunk_count_for, guess_mime_type
from .storage import FileStore

__all__ = [
    'FileChunker',
    'CHUNK_SIZE',
    'split',
    'assemble',
    'index_map',
    'FileMetadata',
    'Chunk',
    'chunk_count_for',
    'guess_mime_type',
    'FileStore',
]
