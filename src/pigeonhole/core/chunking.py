"""Content-Defined Chunking (CDC) for pigeonhole.

This module provides CDC using the FastCDC algorithm for:
- Deduplication across files and versions
- Stable chunk boundaries (an edit only changes the chunks next to it)
- Configurable chunk sizes (min 1MB, avg 4MB, max 8MB by default)
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterator
from dataclasses import dataclass

from fastcdc import fastcdc

from pigeonhole.core.config import ChunkingConfig

DEFAULT_CHUNKING = ChunkingConfig()

MIN_CHUNK_SIZE = DEFAULT_CHUNKING.min_size
AVG_CHUNK_SIZE = DEFAULT_CHUNKING.avg_size
MAX_CHUNK_SIZE = DEFAULT_CHUNKING.max_size


@dataclass(frozen=True)
class Chunk:
    """A plaintext chunk identified by its content hash."""

    index: int
    offset: int
    data: bytes
    hash: str

    @property
    def size(self) -> int:
        """Return the size of this chunk in bytes."""
        return len(self.data)


def get_chunk_hash(data: bytes) -> str:
    """Compute SHA-256 hash of data.

    Args:
        data: Raw bytes to hash.

    Returns:
        Hex-encoded SHA-256 hash string (64 characters).
    """
    return hashlib.sha256(data).hexdigest()


def chunk_bytes(data: bytes, config: ChunkingConfig = DEFAULT_CHUNKING) -> Iterator[Chunk]:
    """Split data into content-defined chunks.

    Boundaries are chosen by FastCDC's rolling hash around the target
    average size, so insertions only affect nearby chunks.

    Args:
        data: Raw bytes to chunk.
        config: Chunk size bounds.

    Yields:
        Chunk objects with index, offset, data, and hash.
    """
    if not data:
        return

    chunks = fastcdc(
        data,
        min_size=config.min_size,
        avg_size=config.avg_size,
        max_size=config.max_size,
    )

    for index, cdc_chunk in enumerate(chunks):
        chunk_data = bytes(data[cdc_chunk.offset : cdc_chunk.offset + cdc_chunk.length])
        yield Chunk(
            index=index,
            offset=cdc_chunk.offset,
            data=chunk_data,
            hash=get_chunk_hash(chunk_data),
        )
