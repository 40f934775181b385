"""Storage of encrypted chunks and manifest documents on blob backends.

Components:
- **BlobBackend**: put/get/list interface (local disk, memory, S3)
- **ChunkStore**: content-addressed, deduplicated, encrypted chunks
- **ManifestStore**: encrypted signed manifests, identity records and revocations
"""

from pigeonhole.storage.backend import (
    BlobBackend,
    BlobNotFoundError,
    LocalFSBackend,
    MemoryBackend,
    S3Backend,
    create_backend,
)
from pigeonhole.storage.chunks import ChunkMode, ChunkStore
from pigeonhole.storage.manifests import DocumentKind, ManifestStore
from pigeonhole.storage.retry import TRANSIENT_EXCEPTIONS, retry_with_backoff

__all__ = [
    # Backends
    "BlobBackend",
    "BlobNotFoundError",
    "LocalFSBackend",
    "MemoryBackend",
    "S3Backend",
    "create_backend",
    # Stores
    "ChunkMode",
    "ChunkStore",
    "DocumentKind",
    "ManifestStore",
    # Retry
    "TRANSIENT_EXCEPTIONS",
    "retry_with_backoff",
]
