"""Hierarchical deterministic signing identities.

This module provides:
- SLIP-0010 ed25519 derivation: root m, user m/u', device m/u'/d'
- Endorsements: each child's public key and path signed by its parent
- TrustStore: bounded ancestor-chain walks for trust and revocation
- Revocation records, valid only when signed by a strict ancestor

Identity relationships are an explicit tree of (public key, parent
reference, endorsement). A lost device key is re-derived from the user
identity and the device index.
"""

from __future__ import annotations

import logging
import struct
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from pigeonhole.core.config import MAX_INDEX
from pigeonhole.core.errors import TrustError
from pigeonhole.core.keys import Label, SecretKey, derive

logger = logging.getLogger(__name__)

HARDENED = 0x80000000
ED25519_SEED_KEY = b"ed25519 seed"
ENDORSEMENT_DOMAIN = b"pigeonhole/v1/endorsement"
REVOCATION_DOMAIN = b"pigeonhole/v1/revocation"
PUBLIC_KEY_SIZE = 32


def _hmac_sha512(key: bytes, data: bytes) -> bytes:
    mac = hmac.HMAC(key, hashes.SHA512())
    mac.update(data)
    return mac.finalize()


def _encode_path(path: tuple[int, ...]) -> bytes:
    return struct.pack(">B", len(path)) + b"".join(struct.pack(">I", i) for i in path)


def format_path(path: tuple[int, ...]) -> str:
    """Render a derivation path, e.g. m/0'/3'."""
    return "/".join(["m", *(f"{i}'" for i in path)])


def public_key_bytes(private_key: Ed25519PrivateKey) -> bytes:
    return private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)


def endorsement_message(public_key: bytes, path: tuple[int, ...]) -> bytes:
    """Message a parent signs to endorse a child identity."""
    return ENDORSEMENT_DOMAIN + public_key + _encode_path(path)


class IdentityStatus(Enum):
    """Identity state. REVOKED is terminal."""

    ACTIVE = "active"
    REVOKED = "revoked"


@dataclass(frozen=True)
class IdentityRecord:
    """Public registry entry for one identity.

    Attributes:
        public_key: Raw ed25519 public key, the identity's durable name.
        path: Unhardened derivation indices from the root.
        parent_public_key: Parent identity, None for a root.
        endorsement: Parent's signature over (public_key, path).
    """

    public_key: bytes
    path: tuple[int, ...]
    parent_public_key: bytes | None = None
    endorsement: bytes | None = None

    @property
    def name(self) -> str:
        return self.public_key.hex()

    def to_dict(self) -> dict[str, object]:
        return {
            "public_key": self.public_key.hex(),
            "path": list(self.path),
            "parent_public_key": self.parent_public_key.hex() if self.parent_public_key else None,
            "endorsement": self.endorsement.hex() if self.endorsement else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> IdentityRecord:
        parent = data.get("parent_public_key")
        endorsement = data.get("endorsement")
        return cls(
            public_key=bytes.fromhex(str(data["public_key"])),
            path=tuple(int(i) for i in data["path"]),  # type: ignore[attr-defined]
            parent_public_key=bytes.fromhex(str(parent)) if parent else None,
            endorsement=bytes.fromhex(str(endorsement)) if endorsement else None,
        )


@dataclass(frozen=True)
class RevocationRecord:
    """Signed statement that an identity is no longer trusted."""

    target_public_key: bytes
    revoker_public_key: bytes
    revoked_at: float
    signature: bytes

    @staticmethod
    def message_for(target: bytes, revoker: bytes, revoked_at: float) -> bytes:
        return REVOCATION_DOMAIN + target + revoker + struct.pack(">d", revoked_at)

    @property
    def message(self) -> bytes:
        return self.message_for(self.target_public_key, self.revoker_public_key, self.revoked_at)

    def to_dict(self) -> dict[str, object]:
        return {
            "target_public_key": self.target_public_key.hex(),
            "revoker_public_key": self.revoker_public_key.hex(),
            "revoked_at": self.revoked_at,
            "signature": self.signature.hex(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> RevocationRecord:
        return cls(
            target_public_key=bytes.fromhex(str(data["target_public_key"])),
            revoker_public_key=bytes.fromhex(str(data["revoker_public_key"])),
            revoked_at=float(data["revoked_at"]),  # type: ignore[arg-type]
            signature=bytes.fromhex(str(data["signature"])),
        )


class Identity:
    """A signing identity with its private material.

    The signing key and chain code are wipeable handles. Use as a context
    manager, or call wipe(), once the identity is no longer needed.
    """

    def __init__(
        self,
        path: tuple[int, ...],
        signing_key: SecretKey,
        chain_code: SecretKey,
        parent_public_key: bytes | None = None,
    ) -> None:
        self.path = path
        self._signing_key = signing_key
        self._chain_code = chain_code
        self.parent_public_key = parent_public_key
        self.public_key = public_key_bytes(self._private_key())

    @property
    def name(self) -> str:
        return self.public_key.hex()

    def _private_key(self) -> Ed25519PrivateKey:
        return Ed25519PrivateKey.from_private_bytes(self._signing_key.material)

    def sign(self, message: bytes) -> bytes:
        return self._private_key().sign(message)

    def child(self, index: int) -> Identity:
        """Derive the hardened child at index (SLIP-0010, ed25519)."""
        if not 0 <= index <= MAX_INDEX:
            raise ValueError(f"Derivation index must be in [0, {MAX_INDEX}], got {index}")
        data = b"\x00" + self._signing_key.material + struct.pack(">I", index | HARDENED)
        digest = _hmac_sha512(self._chain_code.material, data)
        path = (*self.path, index)
        context = _encode_path(path)
        return Identity(
            path=path,
            signing_key=SecretKey(digest[:32], Label.MANIFEST_SIGNING_SEED, context),
            chain_code=SecretKey(digest[32:], Label.MANIFEST_SIGNING_SEED, context),
            parent_public_key=self.public_key,
        )

    def wipe(self) -> None:
        self._signing_key.wipe()
        self._chain_code.wipe()

    def __enter__(self) -> Identity:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.wipe()

    def __repr__(self) -> str:
        return f"Identity({format_path(self.path)}, {self.name[:16]})"


def verify(public_key: bytes, message: bytes, signature: bytes) -> bool:
    """Verify an ed25519 signature. Pure and side-effect free."""
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
    except (InvalidSignature, ValueError):
        return False
    return True


def is_strict_prefix(ancestor: tuple[int, ...], path: tuple[int, ...]) -> bool:
    return len(ancestor) < len(path) and path[: len(ancestor)] == ancestor


class TrustStore:
    """Trusted roots plus the public identity tree.

    Every query walks the ancestor chain from scratch; nothing about a
    previously trusted key is cached.
    """

    def __init__(
        self,
        trusted_roots: Iterable[bytes],
        records: Iterable[IdentityRecord] = (),
    ) -> None:
        self._roots = frozenset(trusted_roots)
        self._records: dict[bytes, IdentityRecord] = {}
        for record in records:
            self.add(record)

    @property
    def trusted_roots(self) -> frozenset[bytes]:
        return self._roots

    def add(self, record: IdentityRecord) -> None:
        self._records[record.public_key] = record

    def get(self, public_key: bytes) -> IdentityRecord | None:
        return self._records.get(public_key)

    def chain(self, public_key: bytes) -> list[IdentityRecord]:
        """Return the endorsed chain from public_key up to a trusted root.

        Raises:
            TrustError: If the key is unknown or the chain is broken.
        """
        record = self._records.get(public_key)
        if record is None:
            raise TrustError(f"Unknown identity {public_key.hex()[:16]}")

        chain = [record]
        # A path of depth n has at most n ancestors
        for _ in range(len(record.path) + 1):
            if record.public_key in self._roots:
                return chain
            if record.parent_public_key is None or record.endorsement is None:
                break
            parent = self._records.get(record.parent_public_key)
            if parent is None or parent.path != record.path[:-1]:
                break
            message = endorsement_message(record.public_key, record.path)
            if not verify(parent.public_key, message, record.endorsement):
                raise TrustError(f"Invalid endorsement for identity {record.name[:16]}")
            chain.append(parent)
            record = parent

        raise TrustError(f"Identity {public_key.hex()[:16]} does not chain to a trusted root")

    def is_trusted(self, public_key: bytes) -> bool:
        try:
            self.chain(public_key)
        except TrustError:
            return False
        return True

    def lineage(self, public_key: bytes) -> list[IdentityRecord]:
        """Endorsed ancestors of public_key, nearest first.

        Unlike chain(), the walk continues past trusted roots up to the top
        of the identity tree, and stops at the first missing or invalid
        endorsement.
        """
        record = self._records.get(public_key)
        if record is None:
            return []
        ancestors = []
        for _ in range(len(record.path)):
            if record.parent_public_key is None or record.endorsement is None:
                break
            parent = self._records.get(record.parent_public_key)
            if parent is None or parent.path != record.path[:-1]:
                break
            message = endorsement_message(record.public_key, record.path)
            if not verify(parent.public_key, message, record.endorsement):
                break
            ancestors.append(parent)
            record = parent
        return ancestors

    def is_ancestor(self, ancestor: bytes, target: bytes) -> bool:
        """Check that ancestor is a strict ancestor of a trusted target.

        The ancestor may sit above the trusted roots: the root identity can
        revoke a trusted user identity.
        """
        ancestor_record = self._records.get(ancestor)
        if ancestor_record is None or not self.is_trusted(target):
            return False
        target_record = self._records[target]
        return is_strict_prefix(ancestor_record.path, target_record.path) and any(
            r.public_key == ancestor for r in self.lineage(target)
        )

    def is_valid_revocation(self, revocation: RevocationRecord) -> bool:
        return verify(
            revocation.revoker_public_key, revocation.message, revocation.signature
        ) and self.is_ancestor(revocation.revoker_public_key, revocation.target_public_key)

    def revocation_time(
        self, public_key: bytes, revocations: Iterable[RevocationRecord]
    ) -> float | None:
        """Earliest valid revocation of public_key or any of its ancestors."""
        chain_keys = {r.public_key for r in self.chain(public_key)}
        earliest: float | None = None
        for revocation in revocations:
            if revocation.target_public_key not in chain_keys:
                continue
            if not self.is_valid_revocation(revocation):
                logger.warning(
                    f"Ignoring invalid revocation of {revocation.target_public_key.hex()[:16]} "
                    f"by {revocation.revoker_public_key.hex()[:16]}"
                )
                continue
            if earliest is None or revocation.revoked_at < earliest:
                earliest = revocation.revoked_at
        return earliest

    def status(
        self,
        public_key: bytes,
        revocations: Iterable[RevocationRecord],
        at: float | None = None,
    ) -> IdentityStatus:
        """Status of an identity at a point in time (default: now)."""
        revoked_at = self.revocation_time(public_key, revocations)
        at = time.time() if at is None else at
        if revoked_at is not None and at >= revoked_at:
            return IdentityStatus.REVOKED
        return IdentityStatus.ACTIVE


class IdentityManager:
    """Derives identities and keeps the public identity tree.

    Usage:
        manager = IdentityManager()
        root = manager.root_identity(root_secret)
        user = manager.derive_user_identity(root, 0)
        device = manager.derive_device_identity(user, 1)
        trust = manager.trust_store([user.public_key])
    """

    def __init__(self, records: Iterable[IdentityRecord] = ()) -> None:
        self._records: dict[bytes, IdentityRecord] = {r.public_key: r for r in records}
        self._lock = threading.Lock()

    def _register(self, record: IdentityRecord) -> None:
        with self._lock:
            self._records[record.public_key] = record

    def add_records(self, records: Iterable[IdentityRecord]) -> None:
        """Learn public records published by other devices."""
        for record in records:
            self._register(record)

    def records(self) -> list[IdentityRecord]:
        with self._lock:
            return list(self._records.values())

    def record(self, public_key: bytes) -> IdentityRecord | None:
        with self._lock:
            return self._records.get(public_key)

    def root_identity(self, root_secret: SecretKey) -> Identity:
        """Derive the SLIP-0010 master identity from the root secret."""
        with derive(root_secret, Label.MANIFEST_SIGNING_SEED) as seed:
            digest = _hmac_sha512(ED25519_SEED_KEY, seed.material)
        identity = Identity(
            path=(),
            signing_key=SecretKey(digest[:32], Label.MANIFEST_SIGNING_SEED),
            chain_code=SecretKey(digest[32:], Label.MANIFEST_SIGNING_SEED),
        )
        self._register(IdentityRecord(public_key=identity.public_key, path=()))
        return identity

    def _derive_child(self, parent: Identity, index: int) -> Identity:
        child = parent.child(index)
        endorsement = parent.sign(endorsement_message(child.public_key, child.path))
        self._register(
            IdentityRecord(
                public_key=child.public_key,
                path=child.path,
                parent_public_key=parent.public_key,
                endorsement=endorsement,
            )
        )
        logger.debug(f"Derived identity {format_path(child.path)} {child.name[:16]}")
        return child

    def derive_user_identity(self, root: Identity, user_index: int) -> Identity:
        """Derive the user identity m/user_index'."""
        if root.path:
            raise ValueError("User identities derive from the root identity")
        return self._derive_child(root, user_index)

    def derive_device_identity(self, user_root_identity: Identity, device_index: int) -> Identity:
        """Derive the device identity under a user identity.

        Deterministic: the same user identity and index always give the
        same device key.
        """
        if device_index < 0:
            raise ValueError(f"Device index must be non-negative, got {device_index}")
        return self._derive_child(user_root_identity, device_index)

    def sign(self, identity: Identity, message: bytes) -> bytes:
        return identity.sign(message)

    @staticmethod
    def verify(public_key: bytes, message: bytes, signature: bytes) -> bool:
        return verify(public_key, message, signature)

    def revoke(
        self,
        ancestor: Identity,
        target_public_key: bytes,
        revoked_at: float | None = None,
    ) -> RevocationRecord:
        """Revoke a descendant identity.

        Raises:
            TrustError: If the target is unknown or ancestor is not a strict
                ancestor of the target in the identity tree.
        """
        target = self.record(target_public_key)
        if target is None:
            raise TrustError(f"Unknown identity {target_public_key.hex()[:16]}")
        if not is_strict_prefix(ancestor.path, target.path):
            raise TrustError(
                f"{format_path(ancestor.path)} is not an ancestor of {format_path(target.path)}"
            )

        trust = TrustStore([ancestor.public_key], self.records())
        if not trust.is_ancestor(ancestor.public_key, target_public_key):
            raise TrustError(
                f"Identity {ancestor.name[:16]} is not an ancestor of {target.name[:16]}"
            )

        revoked_at = time.time() if revoked_at is None else revoked_at
        message = RevocationRecord.message_for(target_public_key, ancestor.public_key, revoked_at)
        record = RevocationRecord(
            target_public_key=target_public_key,
            revoker_public_key=ancestor.public_key,
            revoked_at=revoked_at,
            signature=ancestor.sign(message),
        )
        logger.info(f"Revoked identity {format_path(target.path)} {target.name[:16]}")
        return record

    def trust_store(self, trusted_roots: Iterable[bytes]) -> TrustStore:
        return TrustStore(trusted_roots, self.records())
