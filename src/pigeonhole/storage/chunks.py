"""Content-addressed store of encrypted chunks.

This module provides:
- ChunkStore: split, put, get and garbage-collect encrypted chunks
- Chunk associated data binding the nonce mode and content hash to each envelope

Deduplicated chunks are stored under their plaintext SHA-256. Private
chunks (dedup disabled) are sealed with a random nonce under a separately
labelled key and stored under the SHA-256 of their envelope, so equal
plaintexts never share a blob id.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from collections.abc import Iterable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from enum import IntEnum

from pigeonhole.core.chunking import DEFAULT_CHUNKING, Chunk, chunk_bytes, get_chunk_hash
from pigeonhole.core.cipher import Envelope, EnvelopeCipher
from pigeonhole.core.config import ChunkingConfig, RetryConfig
from pigeonhole.core.errors import AuthenticationError
from pigeonhole.core.keys import KeyHierarchy, Label, chunk_key
from pigeonhole.storage.backend import BlobBackend
from pigeonhole.storage.retry import retry_with_backoff

logger = logging.getLogger(__name__)

HASH_SIZE = 32


class ChunkMode(IntEnum):
    """How a chunk was sealed."""

    DEDUP = 0  # deterministic nonce, stored under content hash
    PRIVATE = 1  # random nonce, stored under envelope hash


MODE_LABELS = {
    ChunkMode.DEDUP: Label.CHUNK_ENCRYPTION,
    ChunkMode.PRIVATE: Label.CHUNK_PRIVATE,
}


def chunk_associated_data(mode: ChunkMode, content_hash: str) -> bytes:
    """Associated data bound into a chunk envelope: [mode:1][content_hash:32]."""
    return bytes([mode]) + bytes.fromhex(content_hash)


def parse_chunk_associated_data(data: bytes) -> tuple[ChunkMode, str]:
    """Parse chunk associated data.

    Raises:
        AuthenticationError: If the associated data is malformed.
    """
    if len(data) != 1 + HASH_SIZE:
        raise AuthenticationError("Malformed chunk associated data")
    try:
        mode = ChunkMode(data[0])
    except ValueError as e:
        raise AuthenticationError(f"Unknown chunk mode {data[0]}") from e
    return mode, data[1:].hex()


class ChunkStore:
    """Encrypts, deduplicates and stores chunks on a blob backend.

    Concurrent puts of the same content are collapsed: one caller seals and
    uploads, the others wait on its in-flight marker and share the result.

    Usage:
        store = ChunkStore(LocalFSBackend(path), keys)
        hashes = store.put_file(data)
        assert store.get_file(hashes) == data
    """

    def __init__(
        self,
        backend: BlobBackend,
        keys: KeyHierarchy,
        cipher: EnvelopeCipher | None = None,
        chunking: ChunkingConfig = DEFAULT_CHUNKING,
        retry: RetryConfig | None = None,
        max_workers: int | None = None,
    ) -> None:
        self._backend = backend
        self._keys = keys
        self._cipher = cipher or EnvelopeCipher()
        self._chunking = chunking
        self._retry = retry or RetryConfig()
        self._max_workers = max_workers

        self._lock = threading.Lock()
        self._in_flight: dict[str, Future[str]] = {}

    @property
    def backend(self) -> BlobBackend:
        return self._backend

    def split(self, file_bytes: bytes) -> list[Chunk]:
        """Split file content into content-defined chunks."""
        return list(chunk_bytes(file_bytes, self._chunking))

    def put(self, plaintext_chunk: bytes, dedup: bool = True) -> str:
        """Encrypt and store a chunk.

        Idempotent for deduplicated chunks: if the backend already holds the
        content hash, nothing is encrypted or uploaded.

        Args:
            plaintext_chunk: Chunk bytes.
            dedup: Seal deterministically and store under the content hash.

        Returns:
            The blob id: the content hash (dedup) or the envelope hash (private).
        """
        content_hash = get_chunk_hash(plaintext_chunk)
        if not dedup:
            return self._put_private(content_hash, plaintext_chunk)

        with self._lock:
            future = self._in_flight.get(content_hash)
            owner = future is None
            if future is None:
                future = Future()
                self._in_flight[content_hash] = future

        if not owner:
            logger.debug(f"Waiting for in-flight put of chunk {content_hash[:12]}")
            return future.result()

        try:
            self._put_dedup(content_hash, plaintext_chunk)
            future.set_result(content_hash)
        except BaseException as e:
            future.set_exception(e)
            raise
        finally:
            with self._lock:
                del self._in_flight[content_hash]
        return content_hash

    def _put_dedup(self, content_hash: str, plaintext: bytes) -> None:
        if retry_with_backoff(
            lambda: self._backend.exists(content_hash),
            self._retry,
            description=f"exists {content_hash[:12]}",
        ):
            logger.debug(f"Chunk {content_hash[:12]} already stored, skipping")
            return

        master = self._keys.master(Label.CHUNK_ENCRYPTION)
        with chunk_key(master, content_hash) as key:
            envelope = self._cipher.seal(
                key,
                plaintext,
                chunk_associated_data(ChunkMode.DEDUP, content_hash),
                deterministic=True,
            )
        data = envelope.to_bytes()
        retry_with_backoff(
            lambda: self._backend.put(content_hash, data),
            self._retry,
            description=f"put {content_hash[:12]}",
        )
        logger.debug(f"Stored chunk {content_hash[:12]} ({len(plaintext)} bytes)")

    def _put_private(self, content_hash: str, plaintext: bytes) -> str:
        master = self._keys.master(Label.CHUNK_PRIVATE)
        with chunk_key(master, content_hash) as key:
            envelope = self._cipher.seal(
                key,
                plaintext,
                chunk_associated_data(ChunkMode.PRIVATE, content_hash),
                deterministic=False,
            )
        data = envelope.to_bytes()
        blob_id = hashlib.sha256(data).hexdigest()
        retry_with_backoff(
            lambda: self._backend.put(blob_id, data),
            self._retry,
            description=f"put {blob_id[:12]}",
        )
        logger.debug(f"Stored private chunk {blob_id[:12]} ({len(plaintext)} bytes)")
        return blob_id

    def has(self, blob_id: str) -> bool:
        """Check whether a chunk blob is stored."""
        return retry_with_backoff(
            lambda: self._backend.exists(blob_id),
            self._retry,
            description=f"exists {blob_id[:12]}",
        )

    def get(self, content_hash: str) -> bytes:
        """Fetch, verify and decrypt a chunk.

        Args:
            content_hash: Blob id returned by put().

        Returns:
            The exact plaintext that was stored.

        Raises:
            ChunkNotFoundError: If the backend has no such blob.
            AuthenticationError: If the envelope fails verification or does
                not belong to this blob id.
        """
        data = retry_with_backoff(
            lambda: self._backend.get(content_hash),
            self._retry,
            description=f"get {content_hash[:12]}",
        )
        try:
            envelope = Envelope.from_bytes(data)
            mode, bound_hash = parse_chunk_associated_data(envelope.associated_data)
            if mode is ChunkMode.DEDUP and bound_hash != content_hash:
                raise AuthenticationError("Envelope is bound to a different content hash")
            if mode is ChunkMode.PRIVATE and hashlib.sha256(data).hexdigest() != content_hash:
                raise AuthenticationError("Envelope does not match its blob id")

            master = self._keys.master(MODE_LABELS[mode])
            with chunk_key(master, bound_hash) as key:
                plaintext = self._cipher.open(key, envelope)
            if get_chunk_hash(plaintext) != bound_hash:
                raise AuthenticationError("Decrypted content does not match its hash")
        except AuthenticationError as e:
            logger.warning(f"Chunk {content_hash[:12]} failed verification: {e}")
            raise AuthenticationError(f"Chunk {content_hash} failed verification: {e}") from e
        return plaintext

    def _pool(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="pigeonhole-chunk"
        )

    def put_file(self, data: bytes, dedup: bool = True) -> list[str]:
        """Split file content and store every chunk in parallel.

        Returns:
            Ordered blob ids of the file's chunks.
        """
        chunks = self.split(data)
        if len(chunks) <= 1:
            return [self.put(c.data, dedup) for c in chunks]
        with self._pool() as pool:
            return list(pool.map(lambda c: self.put(c.data, dedup), chunks))

    def get_file(self, hashes: Sequence[str]) -> bytes:
        """Fetch and reassemble a file from its ordered chunk ids."""
        if len(hashes) <= 1:
            return b"".join(self.get(h) for h in hashes)
        with self._pool() as pool:
            return b"".join(pool.map(self.get, hashes))

    def gc(self, reachable_hashes: Iterable[str]) -> list[str]:
        """Delete every stored chunk not in reachable_hashes.

        The reachable set must cover all retained manifests, not just the
        latest version.

        Returns:
            Blob ids that were removed.
        """
        reachable = set(reachable_hashes)
        stored = retry_with_backoff(self._backend.list, self._retry, description="list")
        removed = []
        for blob_id in stored:
            if blob_id in reachable:
                continue
            with self._lock:
                if blob_id in self._in_flight:
                    continue
            if retry_with_backoff(
                lambda b=blob_id: self._backend.delete(b),  # type: ignore[misc]
                self._retry,
                description=f"delete {blob_id[:12]}",
            ):
                removed.append(blob_id)
        logger.info(f"Garbage collection removed {len(removed)} of {len(stored)} chunks")
        return removed
