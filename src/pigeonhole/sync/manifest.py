"""Manifest data model and canonical serialization.

A manifest maps each synchronized path to a FileEntry: the ordered chunk
hashes of the file, its size and mtime, a per-path version counter, and a
tombstone flag. Paths whose latest version has several divergent
variants keep all of them in `conflicts`.

Canonical form (what gets signed): UTF-8 JSON with sorted keys and
compact separators.
"""

from __future__ import annotations

import hashlib
import json
import posixpath
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from pigeonhole.core.errors import IntegrityError, UnsupportedFormatError

MANIFEST_FORMAT_VERSION = 1
CONFLICT_MARKER = ".conflict-"


def canonical_json(obj: Any) -> bytes:
    """Serialize to canonical JSON bytes."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode(
        "utf-8"
    )


def conflict_path(path: str, digest: str) -> str:
    """Synthetic path for a conflict variant: name.conflict-<digest12>.ext"""
    parent, name = posixpath.split(path)
    stem, suffix = posixpath.splitext(name)
    return posixpath.join(parent, f"{stem}{CONFLICT_MARKER}{digest[:12]}{suffix}")


@dataclass(frozen=True)
class FileState:
    """Point-in-time state of one local file, already chunked.

    content_hash is the SHA-256 of the whole plaintext. Private chunks are
    stored under random blob ids, so equal content is recognized by it
    rather than by the chunk ids.
    """

    chunks: tuple[str, ...]
    size: int
    mtime: float
    content_hash: str = ""


@dataclass(frozen=True)
class FileEntry:
    """One path's entry in a manifest.

    Attributes:
        path: Path relative to the sync root.
        chunks: Ordered chunk blob ids.
        size: File size in bytes.
        mtime: Modification time (unix seconds).
        version: Per-path version counter (starts at 1).
        deleted: True for a tombstone.
        content_hash: SHA-256 of the plaintext ("" when unknown).
    """

    path: str
    chunks: tuple[str, ...] = ()
    size: int = 0
    mtime: float = 0.0
    version: int = 1
    deleted: bool = False
    content_hash: str = ""

    def __post_init__(self) -> None:
        if self.version < 1:
            raise ValueError(f"Version must be >= 1 for {self.path}")
        if self.size < 0:
            raise ValueError(f"Size must be >= 0 for {self.path}")

    @property
    def content_id(self) -> str | tuple[str, ...]:
        return self.content_hash or self.chunks

    @property
    def content_key(self) -> tuple[bool, str | tuple[str, ...]]:
        """What makes two variants the same content (mtime excluded)."""
        return (self.deleted, self.content_id)

    def matches(self, state: FileState) -> bool:
        """True if a live entry already holds the content of state."""
        if self.deleted:
            return False
        if self.content_hash and state.content_hash:
            return self.content_hash == state.content_hash
        return self.chunks == tuple(state.chunks)

    @property
    def digest(self) -> str:
        """Stable digest of the entry's content."""
        return hashlib.sha256(
            canonical_json(
                {
                    "path": self.path,
                    "chunks": list(self.chunks),
                    "content_hash": self.content_hash,
                    "size": self.size,
                    "deleted": self.deleted,
                }
            )
        ).hexdigest()

    def tombstone(self, mtime: float) -> FileEntry:
        """Tombstone superseding this entry."""
        return FileEntry(
            path=self.path, mtime=mtime, version=self.version + 1, deleted=True
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "chunks": list(self.chunks),
            "size": self.size,
            "mtime": self.mtime,
            "version": self.version,
            "deleted": self.deleted,
            "content_hash": self.content_hash,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FileEntry:
        return cls(
            path=str(data["path"]),
            chunks=tuple(str(c) for c in data["chunks"]),
            size=int(data["size"]),
            mtime=float(data["mtime"]),
            version=int(data["version"]),
            deleted=bool(data["deleted"]),
            content_hash=str(data.get("content_hash", "")),
        )


@dataclass(frozen=True)
class Manifest:
    """Snapshot of a synchronized tree.

    entries[path] is the entry to materialize at path. When the latest
    version of a path has divergent variants, conflicts[path] holds all of
    them (entries[path] is one of them, chosen deterministically).
    """

    entries: dict[str, FileEntry] = field(default_factory=dict)
    conflicts: dict[str, tuple[FileEntry, ...]] = field(default_factory=dict)
    created_at: float = 0.0
    format_version: int = MANIFEST_FORMAT_VERSION

    def get(self, path: str) -> FileEntry | None:
        return self.entries.get(path)

    def variants(self, path: str) -> tuple[FileEntry, ...]:
        """All retained variants of a path (one unless in conflict)."""
        if path in self.conflicts:
            return self.conflicts[path]
        entry = self.entries.get(path)
        return (entry,) if entry is not None else ()

    def live_paths(self) -> list[str]:
        """Paths that are not tombstoned."""
        return sorted(p for p, e in self.entries.items() if not e.deleted)

    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    def conflict_copies(self) -> dict[str, FileEntry]:
        """Every conflict variant under its own synthetic path."""
        copies = {}
        for path, variants in self.conflicts.items():
            for variant in variants:
                synthetic = conflict_path(path, variant.digest)
                copies[synthetic] = replace(variant, path=synthetic)
        return copies

    def chunk_hashes(self) -> set[str]:
        """Every chunk referenced by this manifest, conflict variants included."""
        hashes = {h for e in self.entries.values() for h in e.chunks}
        for variants in self.conflicts.values():
            hashes.update(h for e in variants for h in e.chunks)
        return hashes

    def to_dict(self) -> dict[str, Any]:
        return {
            "format_version": self.format_version,
            "created_at": self.created_at,
            "entries": [self.entries[p].to_dict() for p in sorted(self.entries)],
            "conflicts": {
                p: [e.to_dict() for e in self.conflicts[p]] for p in sorted(self.conflicts)
            },
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Manifest:
        """Parse a manifest document.

        Raises:
            UnsupportedFormatError: If the format version is unknown.
            IntegrityError: If the document is malformed.
        """
        version = data.get("format_version")
        if version != MANIFEST_FORMAT_VERSION:
            raise UnsupportedFormatError(f"Unknown manifest format version {version}")
        try:
            entries = {}
            for item in data["entries"]:
                entry = FileEntry.from_dict(item)
                entries[entry.path] = entry
            conflicts = {
                str(path): tuple(FileEntry.from_dict(item) for item in items)
                for path, items in data.get("conflicts", {}).items()
            }
            return cls(
                entries=entries,
                conflicts=conflicts,
                created_at=float(data["created_at"]),
                format_version=int(version),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise IntegrityError(f"Malformed manifest: {e}") from e


def signing_payload(manifest: Manifest, signer: bytes) -> bytes:
    """Bytes covered by a manifest signature."""
    return canonical_json({"manifest": manifest.to_dict(), "signer": signer.hex()})


@dataclass(frozen=True)
class SignedManifest:
    """A manifest with its signer's public key and signature."""

    manifest: Manifest
    signer: bytes
    signature: bytes

    @property
    def payload(self) -> bytes:
        return signing_payload(self.manifest, self.signer)

    def to_dict(self) -> dict[str, Any]:
        return {
            "manifest": self.manifest.to_dict(),
            "signer": self.signer.hex(),
            "signature": self.signature.hex(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SignedManifest:
        try:
            signer = bytes.fromhex(str(data["signer"]))
            signature = bytes.fromhex(str(data["signature"]))
            manifest_data = data["manifest"]
        except (KeyError, ValueError) as e:
            raise IntegrityError(f"Malformed signed manifest: {e}") from e
        return cls(Manifest.from_dict(manifest_data), signer, signature)

    def to_json(self) -> bytes:
        return canonical_json(self.to_dict())

    @classmethod
    def from_json(cls, data: bytes | str) -> SignedManifest:
        try:
            return cls.from_dict(json.loads(data))
        except json.JSONDecodeError as e:
            raise IntegrityError(f"Malformed signed manifest: {e}") from e
