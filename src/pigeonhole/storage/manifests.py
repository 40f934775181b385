"""Encrypted persistence of manifests, identity records and revocations.

Documents are sealed with random nonces under the manifest-encryption key,
so equal documents never produce equal envelopes. Blob ids are an HMAC of
the document under the storage-id key: storing the same document twice is
a no-op, and ids reveal nothing about content to the backend.

Document layout (inside the envelope):
    {"kind": "manifest" | "revocation" | "identity", "format_version": 1, "body": {...}}

The account keyfile is the one plaintext document: it holds only public
parameters and must be readable before any key can be derived. It lives
under the fixed id KEYFILE_BLOB_ID.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections import defaultdict
from enum import Enum
from typing import Any

from cryptography.hazmat.primitives import hashes, hmac

from pigeonhole.core.cipher import EnvelopeCipher
from pigeonhole.core.config import RetryConfig
from pigeonhole.core.errors import (
    AuthenticationError,
    IntegrityError,
    KeyDerivationError,
    NotFound,
)
from pigeonhole.core.identity import IdentityRecord, RevocationRecord
from pigeonhole.core.keys import KeyFile, KeyHierarchy, Label
from pigeonhole.storage.backend import BlobBackend
from pigeonhole.storage.retry import retry_with_backoff
from pigeonhole.sync.manifest import SignedManifest, canonical_json

logger = logging.getLogger(__name__)

DOCUMENT_FORMAT_VERSION = 1
KEYFILE_BLOB_ID = hashlib.sha256(b"pigeonhole-keyfile").hexdigest()


class DocumentKind(str, Enum):
    """Kinds of documents kept alongside the chunks."""

    MANIFEST = "manifest"
    REVOCATION = "revocation"
    IDENTITY = "identity"


class ManifestStore:
    """Stores signed manifests and trust records on a blob backend."""

    def __init__(
        self,
        backend: BlobBackend,
        keys: KeyHierarchy,
        cipher: EnvelopeCipher | None = None,
        retry: RetryConfig | None = None,
    ) -> None:
        self._backend = backend
        self._keys = keys
        self._cipher = cipher or EnvelopeCipher()
        self._retry = retry or RetryConfig()

    @property
    def backend(self) -> BlobBackend:
        return self._backend

    def _blob_id(self, document: bytes) -> str:
        mac = hmac.HMAC(self._keys.master(Label.STORAGE_ID).material, hashes.SHA256())
        mac.update(document)
        return mac.finalize().hex()

    def _put(self, kind: DocumentKind, body: dict[str, Any]) -> str:
        document = canonical_json(
            {"kind": kind.value, "format_version": DOCUMENT_FORMAT_VERSION, "body": body}
        )
        blob_id = self._blob_id(document)
        if retry_with_backoff(
            lambda: self._backend.exists(blob_id), self._retry, description=f"exists {kind.value}"
        ):
            return blob_id

        envelope = self._cipher.seal(
            self._keys.master(Label.MANIFEST_ENCRYPTION),
            document,
            associated_data=kind.value.encode("ascii"),
            deterministic=False,
        )
        data = envelope.to_bytes()
        retry_with_backoff(
            lambda: self._backend.put(blob_id, data), self._retry, description=f"put {kind.value}"
        )
        logger.debug(f"Stored {kind.value} document {blob_id[:12]}")
        return blob_id

    def _load(self, blob_id: str) -> tuple[DocumentKind, dict[str, Any]]:
        data = retry_with_backoff(
            lambda: self._backend.get(blob_id), self._retry, description=f"get {blob_id[:12]}"
        )
        document = self._cipher.open(self._keys.master(Label.MANIFEST_ENCRYPTION), data)
        if self._blob_id(document) != blob_id:
            raise IntegrityError(f"Document {blob_id[:12]} does not match its blob id")
        try:
            parsed = json.loads(document)
            kind = DocumentKind(parsed["kind"])
            if parsed["format_version"] != DOCUMENT_FORMAT_VERSION:
                raise IntegrityError(f"Unknown document format {parsed['format_version']}")
            return kind, parsed["body"]
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            raise IntegrityError(f"Malformed document {blob_id[:12]}: {e}") from e

    def _documents(self, kind: DocumentKind) -> list[tuple[str, dict[str, Any]]]:
        """Load every readable document of a kind, skipping unreadable ones."""
        blob_ids = retry_with_backoff(self._backend.list, self._retry, description="list")
        documents = []
        for blob_id in blob_ids:
            if blob_id == KEYFILE_BLOB_ID:
                continue
            try:
                doc_kind, body = self._load(blob_id)
            except NotFound:
                continue
            except AuthenticationError as e:
                logger.warning(f"Skipping document {blob_id[:12]}: {e}")
                continue
            if doc_kind is kind:
                documents.append((blob_id, body))
        return documents

    def put_manifest(self, signed: SignedManifest) -> str:
        return self._put(DocumentKind.MANIFEST, signed.to_dict())

    def put_revocation(self, record: RevocationRecord) -> str:
        return self._put(DocumentKind.REVOCATION, record.to_dict())

    def put_identity_record(self, record: IdentityRecord) -> str:
        return self._put(DocumentKind.IDENTITY, record.to_dict())

    def history(self) -> list[SignedManifest]:
        """Every retained signed manifest, oldest first.

        Manifests are not verified here; pass them through
        ManifestSync.verify before trusting them.
        """
        manifests = []
        for blob_id, body in self._documents(DocumentKind.MANIFEST):
            try:
                manifests.append(SignedManifest.from_dict(body))
            except AuthenticationError as e:
                logger.warning(f"Skipping manifest {blob_id[:12]}: {e}")
        return sorted(manifests, key=lambda m: (m.manifest.created_at, m.signer))

    def revocations(self) -> list[RevocationRecord]:
        documents = self._documents(DocumentKind.REVOCATION)
        return [RevocationRecord.from_dict(body) for _, body in documents]

    def identity_records(self) -> list[IdentityRecord]:
        documents = self._documents(DocumentKind.IDENTITY)
        return [IdentityRecord.from_dict(body) for _, body in documents]

    def reachable_chunks(self) -> set[str]:
        """Chunk ids referenced by any retained manifest."""
        reachable: set[str] = set()
        for signed in self.history():
            reachable |= signed.manifest.chunk_hashes()
        return reachable

    def prune(self, keep_last: int) -> list[str]:
        """Retention policy: keep the newest keep_last manifests per signer.

        Returns:
            Blob ids of the deleted manifests.
        """
        if keep_last < 1:
            raise ValueError("keep_last must be >= 1")

        by_signer: dict[bytes, list[tuple[float, str]]] = defaultdict(list)
        for blob_id, body in self._documents(DocumentKind.MANIFEST):
            try:
                signed = SignedManifest.from_dict(body)
            except AuthenticationError:
                continue
            by_signer[signed.signer].append((signed.manifest.created_at, blob_id))

        removed = []
        for signer, items in by_signer.items():
            items.sort(reverse=True)
            for _, blob_id in items[keep_last:]:
                if self._backend.delete(blob_id):
                    removed.append(blob_id)
            logger.debug(f"Pruned {len(items[keep_last:])} manifest(s) of {signer.hex()[:16]}")
        logger.info(f"Retention pruned {len(removed)} manifest(s)")
        return removed


def publish_keyfile(
    backend: BlobBackend, keyfile: KeyFile, retry: RetryConfig | None = None
) -> None:
    """Share the account keyfile so other devices can unlock the same account."""
    data = canonical_json(keyfile.to_dict())
    retry_with_backoff(
        lambda: backend.put(KEYFILE_BLOB_ID, data), retry, description="put keyfile"
    )
    logger.info(f"Published keyfile {keyfile.key_id}")


def fetch_keyfile(backend: BlobBackend, retry: RetryConfig | None = None) -> KeyFile | None:
    """The account keyfile shared on backend, or None for a fresh account.

    Raises:
        KeyDerivationError: If the shared keyfile is malformed.
    """
    try:
        data = retry_with_backoff(
            lambda: backend.get(KEYFILE_BLOB_ID), retry, description="get keyfile"
        )
    except NotFound:
        return None
    try:
        parsed = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise KeyDerivationError(f"Corrupted shared keyfile: {e}") from e
    if not isinstance(parsed, dict):
        raise KeyDerivationError("Corrupted shared keyfile: not an object")
    return KeyFile.from_dict(parsed)
