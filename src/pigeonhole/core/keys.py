"""Key hierarchy for pigeonhole.

This module provides:
- Root secret derivation from a passphrase using Argon2id
- Label-separated key derivation using HKDF-SHA512
- Wipeable key handles (SecretKey) with guaranteed wipe on scope exit
- Keyfile persistence of the salt and work factor (never of key material)

Key tree:
    RootSecret (Argon2id)
    ├── chunk-encryption master ── ChunkKey(content hash) ── chunk-nonce
    ├── chunk-private master    ── ChunkKey(content hash)
    ├── manifest-signing-seed   (identity root seed)
    ├── manifest-encryption
    ├── storage-id
    └── key-check               (passphrase verifier in the keyfile)
"""

from __future__ import annotations

import base64
import json
import logging
import os
import threading
import uuid
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from argon2.exceptions import HashingError
from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from pigeonhole.core.config import WorkFactor
from pigeonhole.core.errors import KeyDerivationError, KeyWipedError

logger = logging.getLogger(__name__)

KEYFILE_NAME = "keyfile.json"
KEYFILE_VERSION = 1

SALT_SIZE = 16  # 128 bits
MAX_SALT_SIZE = 64
KEY_SIZE = 32  # 256 bits


class Label(str, Enum):
    """Versioned key-derivation labels.

    A new use case gets a new member; existing values are never reused or
    changed, so derived keys stay reproducible across releases.
    """

    ROOT = "pigeonhole/v1/root"
    CHUNK_ENCRYPTION = "pigeonhole/v1/chunk-encryption"
    CHUNK_PRIVATE = "pigeonhole/v1/chunk-private"
    CHUNK_NONCE = "pigeonhole/v1/chunk-nonce"
    MANIFEST_SIGNING_SEED = "pigeonhole/v1/manifest-signing-seed"
    MANIFEST_ENCRYPTION = "pigeonhole/v1/manifest-encryption"
    STORAGE_ID = "pigeonhole/v1/storage-id"
    KEY_CHECK = "pigeonhole/v1/key-check"


class SecretKey:
    """Opaque, wipeable handle to key material.

    The material lives in a bytearray that is zeroed in place by wipe().
    Use the handle as a context manager to wipe it on every exit path.
    """

    __slots__ = ("_material", "_wiped", "label", "context")

    def __init__(self, material: bytes | bytearray, label: Label, context: bytes = b"") -> None:
        self._material = bytearray(material)
        self._wiped = False
        self.label = label
        self.context = context

    @property
    def material(self) -> bytes:
        """Return a copy of the key bytes for a single operation.

        Raises:
            KeyWipedError: If the key was already wiped.
        """
        if self._wiped:
            raise KeyWipedError(self.label.value)
        return bytes(self._material)

    @property
    def wiped(self) -> bool:
        return self._wiped

    def __len__(self) -> int:
        return len(self._material)

    def wipe(self) -> None:
        """Zero the backing memory. Safe to call more than once."""
        self._material[:] = bytes(len(self._material))
        self._wiped = True

    def __enter__(self) -> SecretKey:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.wipe()

    def __del__(self) -> None:
        if getattr(self, "_material", None) is not None:
            self.wipe()

    def __repr__(self) -> str:
        state = "wiped" if self._wiped else "live"
        return f"SecretKey(label={self.label.value!r}, {state})"


def generate_salt() -> bytes:
    """Generate a cryptographically secure random salt.

    Returns:
        16 bytes of random data, unique per user account.
    """
    return os.urandom(SALT_SIZE)


def derive_root(passphrase: str, salt: bytes, work_factor: WorkFactor) -> SecretKey:
    """Derive the RootSecret from a passphrase using Argon2id.

    Args:
        passphrase: The user's passphrase.
        salt: Per-account random salt (16 to 64 bytes).
        work_factor: Argon2id cost parameters.

    Returns:
        Wipeable handle to the root secret.

    Raises:
        KeyDerivationError: If the work factor is below the safety floor
            or the salt is malformed.
    """
    if not work_factor.meets_floor():
        raise KeyDerivationError(
            f"Work factor below safety floor: time_cost={work_factor.time_cost}, "
            f"memory_cost={work_factor.memory_cost}, parallelism={work_factor.parallelism}"
        )
    if not isinstance(salt, bytes | bytearray) or not SALT_SIZE <= len(salt) <= MAX_SALT_SIZE:
        raise KeyDerivationError(
            f"Salt must be {SALT_SIZE} to {MAX_SALT_SIZE} bytes"
        )

    try:
        raw = hash_secret_raw(
            secret=passphrase.encode("utf-8"),
            salt=bytes(salt),
            time_cost=work_factor.time_cost,
            memory_cost=work_factor.memory_cost,
            parallelism=work_factor.parallelism,
            hash_len=work_factor.hash_len,
            type=Type.ID,
        )
    except HashingError as e:
        raise KeyDerivationError(f"Argon2id derivation failed: {e}") from e
    return SecretKey(raw, Label.ROOT)


def derive(parent: SecretKey, label: Label, context: bytes | str = b"") -> SecretKey:
    """Derive a child key from a parent key, a label and a context.

    Deterministic and side-effect free. Keys derived under different labels
    are independent even when derived from the same parent.

    Args:
        parent: Parent key handle (RootSecret or an intermediate key).
        label: Versioned label from the Label namespace.
        context: Per-use context (e.g. a chunk content hash).

    Returns:
        New 32-byte key handle.
    """
    if not isinstance(label, Label) or label is Label.ROOT:
        raise ValueError(f"Not a derivable key label: {label!r}")
    if isinstance(context, str):
        context = context.encode("utf-8")

    hkdf = HKDF(
        algorithm=hashes.SHA512(),
        length=KEY_SIZE,
        salt=label.value.encode("ascii"),
        info=context,
    )
    return SecretKey(hkdf.derive(parent.material), label, context)


def wipe(key: SecretKey) -> None:
    """Zero a key handle's backing memory."""
    key.wipe()


def chunk_key(master: SecretKey, content_hash: str) -> SecretKey:
    """Derive the per-chunk key from a chunk master key and a content hash.

    Identical content under the same master key always yields the same key.
    """
    return derive(master, master.label, bytes.fromhex(content_hash))


class KeyHierarchy:
    """Exclusive owner of a RootSecret for the duration of a session.

    Intermediate master keys are cached on first use and wiped together
    with the root on close().

    Usage:
        with KeyHierarchy(derive_root(passphrase, salt, wf)) as keys:
            master = keys.master(Label.CHUNK_ENCRYPTION)
    """

    def __init__(self, root: SecretKey) -> None:
        self._root = root
        self._masters: dict[Label, SecretKey] = {}
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._root.wiped

    def master(self, label: Label) -> SecretKey:
        """Return the master key for a label, derived from the root."""
        with self._lock:
            key = self._masters.get(label)
            if key is None:
                key = derive(self._root, label, b"")
                self._masters[label] = key
            return key

    def derive(self, label: Label, context: bytes | str = b"") -> SecretKey:
        """Derive a key directly from the root. Caller owns the result."""
        return derive(self._root, label, context)

    def close(self) -> None:
        """Wipe the root and every cached master key."""
        with self._lock:
            for key in self._masters.values():
                key.wipe()
            self._masters.clear()
            self._root.wipe()
        logger.debug("Key hierarchy wiped")

    def __enter__(self) -> KeyHierarchy:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class RootDerivation:
    """A root derivation running off the caller's thread.

    cancel() discards the in-flight computation: if a result arrives after
    cancellation it is wiped immediately and never handed out.
    """

    _executor: ThreadPoolExecutor | None = None
    _executor_lock = threading.Lock()

    def __init__(self, passphrase: str, salt: bytes, work_factor: WorkFactor) -> None:
        self._cancelled = threading.Event()
        self._future: Future[SecretKey] = self._get_executor().submit(
            derive_root, passphrase, salt, work_factor
        )
        self._future.add_done_callback(self._discard_if_cancelled)

    @classmethod
    def _get_executor(cls) -> ThreadPoolExecutor:
        with cls._executor_lock:
            if cls._executor is None:
                cls._executor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="pigeonhole-kdf"
                )
            return cls._executor

    def _discard_if_cancelled(self, future: Future[SecretKey]) -> None:
        if self._cancelled.is_set() and not future.cancelled() and future.exception() is None:
            future.result().wipe()

    def cancel(self) -> None:
        """Discard the derivation."""
        self._cancelled.set()
        if not self._future.cancel() and self._future.done():
            self._discard_if_cancelled(self._future)

    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: float | None = None) -> SecretKey:
        """Wait for the root secret.

        Raises:
            CancelledError: If the derivation was cancelled.
            KeyDerivationError: If derivation failed.
        """
        if self._cancelled.is_set():
            raise CancelledError("Root derivation was cancelled")
        key = self._future.result(timeout)
        if self._cancelled.is_set():
            key.wipe()
            raise CancelledError("Root derivation was cancelled")
        return key


def derive_root_in_background(
    passphrase: str, salt: bytes, work_factor: WorkFactor
) -> RootDerivation:
    """Start the memory-hard root derivation on a worker thread."""
    return RootDerivation(passphrase, salt, work_factor)


@dataclass(frozen=True)
class KeyFile:
    """Public parameters persisted alongside the encrypted data.

    Holds everything needed to re-derive the RootSecret from the same
    passphrase, and a verifier for the passphrase. Holds no key material.
    """

    salt: bytes
    work_factor: WorkFactor
    key_id: str
    created_at: str
    check: bytes
    version: int = KEYFILE_VERSION

    def to_dict(self) -> dict[str, object]:
        return {
            "version": self.version,
            "salt": base64.b64encode(self.salt).decode(),
            "work_factor": self.work_factor.to_dict(),
            "key_id": self.key_id,
            "created_at": self.created_at,
            "check": base64.b64encode(self.check).decode(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> KeyFile:
        try:
            return cls(
                salt=base64.b64decode(str(data["salt"])),
                work_factor=WorkFactor.from_dict(data["work_factor"]),  # type: ignore[arg-type]
                key_id=str(data["key_id"]),
                created_at=str(data["created_at"]),
                check=base64.b64decode(str(data["check"])),
                version=int(data.get("version", KEYFILE_VERSION)),  # type: ignore[call-overload]
            )
        except (KeyError, ValueError, TypeError) as e:
            raise KeyDerivationError(f"Invalid keyfile format: {e}") from e


def _key_check(root: SecretKey, key_id: str) -> bytes:
    with derive(root, Label.KEY_CHECK) as check_key:
        mac = hmac.HMAC(check_key.material, hashes.SHA256())
        mac.update(key_id.encode("utf-8"))
        return mac.finalize()


def create_keyfile(
    passphrase: str, config_dir: Path, work_factor: WorkFactor | None = None
) -> tuple[KeyFile, SecretKey]:
    """Create a new keyfile for a fresh account.

    Args:
        passphrase: The user's passphrase.
        config_dir: Directory to store the keyfile.
        work_factor: Argon2id parameters (defaults to WorkFactor()).

    Returns:
        The persisted KeyFile and the derived root secret.

    Raises:
        KeyDerivationError: If a keyfile already exists or the work factor is weak.
    """
    config_dir = Path(config_dir)
    config_dir.mkdir(parents=True, exist_ok=True)

    path = config_dir / KEYFILE_NAME
    if path.exists():
        raise KeyDerivationError(f"Keyfile already exists at {path}")

    work_factor = work_factor or WorkFactor()
    salt = generate_salt()
    root = derive_root(passphrase, salt, work_factor)
    key_id = str(uuid.uuid4())

    keyfile = KeyFile(
        salt=salt,
        work_factor=work_factor,
        key_id=key_id,
        created_at=datetime.now(UTC).isoformat(),
        check=_key_check(root, key_id),
    )
    save_keyfile(keyfile, config_dir)
    logger.info(f"Created keyfile {keyfile.key_id} at {path}")
    return keyfile, root


def save_keyfile(keyfile: KeyFile, config_dir: Path) -> Path:
    """Write keyfile to config_dir, e.g. after fetching it from another device."""
    config_dir = Path(config_dir)
    config_dir.mkdir(parents=True, exist_ok=True)
    path = config_dir / KEYFILE_NAME
    path.write_text(json.dumps(keyfile.to_dict(), indent=2))
    return path


def load_keyfile(config_dir: Path) -> KeyFile:
    """Load an existing keyfile.

    Raises:
        KeyDerivationError: If the keyfile is missing or corrupted.
    """
    path = Path(config_dir) / KEYFILE_NAME
    if not path.exists():
        raise KeyDerivationError(f"Keyfile not found at {path}")
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise KeyDerivationError(f"Corrupted keyfile: {e}") from e
    return KeyFile.from_dict(data)


def unlock(passphrase: str, keyfile: KeyFile) -> SecretKey:
    """Re-derive the RootSecret and check it against the keyfile verifier.

    Raises:
        KeyDerivationError: If the passphrase is wrong.
    """
    root = derive_root(passphrase, keyfile.salt, keyfile.work_factor)
    try:
        with derive(root, Label.KEY_CHECK) as check_key:
            mac = hmac.HMAC(check_key.material, hashes.SHA256())
            mac.update(keyfile.key_id.encode("utf-8"))
            mac.verify(keyfile.check)
    except InvalidSignature as e:
        root.wipe()
        raise KeyDerivationError("Invalid passphrase or corrupted keyfile") from e
    return root
