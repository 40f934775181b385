"""Exception hierarchy for pigeonhole.

Every error raised by the library derives from PigeonholeError. Messages
name the offending path, chunk hash or signer, never plaintext or key bytes.
"""

from __future__ import annotations


class PigeonholeError(Exception):
    """Base exception for pigeonhole operations."""


class ConfigError(PigeonholeError):
    """Raised when a configuration value is outside its valid range."""


class KeyDerivationError(PigeonholeError):
    """Raised for a weak work factor, malformed salt or wrong passphrase.

    Fatal and never retried automatically.
    """


class KeyWipedError(PigeonholeError):
    """Raised when a key handle is used after it was wiped."""

    def __init__(self, label: str = "") -> None:
        message = f"Key '{label}' has been wiped" if label else "Key has been wiped"
        super().__init__(message)


class AuthenticationError(PigeonholeError):
    """Raised when a tag or signature does not verify.

    Fatal for the affected chunk or manifest. Retrying cannot change the
    outcome of a deterministic verification, so it is never retried.
    """


class IntegrityError(AuthenticationError):
    """Raised when a manifest signature does not match its content."""


class UnsupportedFormatError(AuthenticationError):
    """Raised for an envelope or manifest with an unknown format version."""


class NotFound(PigeonholeError):  # noqa: N818
    """Raised when a chunk or backend object is missing.

    Recoverable by the sync layer via a refetch from another peer.
    """


class ChunkNotFoundError(NotFound):
    """Raised when a chunk is not found in storage."""

    def __init__(self, chunk_hash: str) -> None:
        super().__init__(f"Chunk not found: {chunk_hash}")
        self.chunk_hash = chunk_hash


class TrustError(PigeonholeError):
    """Raised for an unknown, unendorsed or revoked signer.

    Fatal for that manifest version only.
    """


class BackendError(PigeonholeError):
    """Raised when a blob backend operation fails."""


class TransientBackendError(BackendError):
    """Raised for backend failures that are safe to retry."""
