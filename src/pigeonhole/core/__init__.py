"""Core module - Keys, envelope encryption, chunking and identities."""

from pigeonhole.core.chunking import (
    AVG_CHUNK_SIZE,
    MAX_CHUNK_SIZE,
    MIN_CHUNK_SIZE,
    Chunk,
    chunk_bytes,
    get_chunk_hash,
)
from pigeonhole.core.cipher import CipherSuite, Envelope, EnvelopeCipher
from pigeonhole.core.config import (
    ChunkingConfig,
    RetryConfig,
    SyncConfig,
    WorkFactor,
    load_config,
    save_config,
)
from pigeonhole.core.errors import (
    AuthenticationError,
    BackendError,
    ChunkNotFoundError,
    ConfigError,
    IntegrityError,
    KeyDerivationError,
    KeyWipedError,
    NotFound,
    PigeonholeError,
    TransientBackendError,
    TrustError,
    UnsupportedFormatError,
)
from pigeonhole.core.identity import (
    Identity,
    IdentityManager,
    IdentityRecord,
    IdentityStatus,
    RevocationRecord,
    TrustStore,
)
from pigeonhole.core.keys import (
    KeyHierarchy,
    Label,
    SecretKey,
    derive,
    derive_root,
    derive_root_in_background,
    generate_salt,
    wipe,
)

__all__ = [
    # Chunking
    "AVG_CHUNK_SIZE",
    "Chunk",
    "MAX_CHUNK_SIZE",
    "MIN_CHUNK_SIZE",
    "chunk_bytes",
    "get_chunk_hash",
    # Cipher
    "CipherSuite",
    "Envelope",
    "EnvelopeCipher",
    # Config
    "ChunkingConfig",
    "RetryConfig",
    "SyncConfig",
    "WorkFactor",
    "load_config",
    "save_config",
    # Errors
    "AuthenticationError",
    "BackendError",
    "ChunkNotFoundError",
    "ConfigError",
    "IntegrityError",
    "KeyDerivationError",
    "KeyWipedError",
    "NotFound",
    "PigeonholeError",
    "TransientBackendError",
    "TrustError",
    "UnsupportedFormatError",
    # Identity
    "Identity",
    "IdentityManager",
    "IdentityRecord",
    "IdentityStatus",
    "RevocationRecord",
    "TrustStore",
    # Keys
    "KeyHierarchy",
    "Label",
    "SecretKey",
    "derive",
    "derive_root",
    "derive_root_in_background",
    "generate_salt",
    "wipe",
]
