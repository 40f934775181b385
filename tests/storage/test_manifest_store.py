"""Tests for encrypted manifest and trust document storage."""

from __future__ import annotations

import json
from pathlib import Path
from collections.abc import Generator

import pytest

from pigeonhole.core.cipher import EnvelopeCipher
from pigeonhole.core.config import WorkFactor
from pigeonhole.core.errors import KeyDerivationError
from pigeonhole.core.identity import Identity, IdentityManager
from pigeonhole.core.keys import KeyHierarchy, Label, SecretKey, create_keyfile
from pigeonhole.storage.backend import MemoryBackend
from pigeonhole.storage.manifests import (
    KEYFILE_BLOB_ID,
    ManifestStore,
    fetch_keyfile,
    publish_keyfile,
)
from pigeonhole.sync.engine import ManifestSync
from pigeonhole.sync.manifest import FileState, SignedManifest


@pytest.fixture
def store(backend: MemoryBackend, keys: KeyHierarchy) -> ManifestStore:
    return ManifestStore(backend, keys)


@pytest.fixture
def manager() -> IdentityManager:
    return IdentityManager()


@pytest.fixture
def device(root_material: bytes, manager: IdentityManager) -> Generator[Identity, None, None]:
    with manager.root_identity(SecretKey(root_material, Label.ROOT)) as root_identity:
        user = manager.derive_user_identity(root_identity, 0)
    with user, manager.derive_device_identity(user, 1) as device:
        yield device


def signed(device: Identity, created_at: float, chunk: str = "aa") -> SignedManifest:
    sync = ManifestSync()
    manifest = sync.build(
        {"/notes.txt": FileState(chunks=(chunk * 32,), size=10, mtime=created_at)},
        created_at=created_at,
    )
    return sync.sign(manifest, device)


class TestDocuments:
    """Tests for storing and listing documents."""

    def test_manifest_history(self, store: ManifestStore, device: Identity) -> None:
        """Stored manifests come back oldest first."""
        later = signed(device, 200.0, "bb")
        earlier = signed(device, 100.0, "aa")
        store.put_manifest(later)
        store.put_manifest(earlier)
        assert store.history() == [earlier, later]

    def test_encrypted_at_rest(
        self, store: ManifestStore, backend: MemoryBackend, device: Identity
    ) -> None:
        """Neither paths nor signer keys appear in stored bytes."""
        blob_id = store.put_manifest(signed(device, 100.0))
        data = backend.get(blob_id)
        assert b"notes.txt" not in data
        assert device.public_key.hex().encode() not in data

    def test_put_is_idempotent(
        self, store: ManifestStore, backend: MemoryBackend, device: Identity
    ) -> None:
        """The same document stored twice keeps one blob."""
        doc = signed(device, 100.0)
        assert store.put_manifest(doc) == store.put_manifest(doc)
        assert backend.put_count == 1

    def test_identity_records(
        self, store: ManifestStore, manager: IdentityManager, device: Identity
    ) -> None:
        for record in manager.records():
            store.put_identity_record(record)
        stored = {r.public_key: r for r in store.identity_records()}
        assert stored == {r.public_key: r for r in manager.records()}

    def test_revocations(self, store: ManifestStore, root_material: bytes) -> None:
        manager = IdentityManager()
        with manager.root_identity(SecretKey(root_material, Label.ROOT)) as root_identity:
            user = manager.derive_user_identity(root_identity, 0)
        device = manager.derive_device_identity(user, 5)
        revocation = manager.revoke(user, device.public_key, revoked_at=42.0)
        store.put_revocation(revocation)
        assert store.revocations() == [revocation]
        assert store.history() == []

    def test_reachable_chunks(self, store: ManifestStore, device: Identity) -> None:
        store.put_manifest(signed(device, 100.0, "aa"))
        store.put_manifest(signed(device, 200.0, "bb"))
        assert store.reachable_chunks() == {"aa" * 32, "bb" * 32}


class TestIntegrity:
    """Tests that foreign or modified documents are skipped."""

    def test_tampered_document_skipped(
        self, store: ManifestStore, backend: MemoryBackend, device: Identity
    ) -> None:
        blob_id = store.put_manifest(signed(device, 100.0))
        data = bytearray(backend.get(blob_id))
        data[15] ^= 0x01
        backend.put(blob_id, bytes(data))
        assert store.history() == []

    def test_moved_document_skipped(
        self, store: ManifestStore, backend: MemoryBackend, device: Identity
    ) -> None:
        """A valid envelope under the wrong blob id is rejected."""
        blob_id = store.put_manifest(signed(device, 100.0))
        backend.put("ab" * 32, backend.get(blob_id))
        backend.delete(blob_id)
        assert store.history() == []

    def test_other_account_sees_nothing(
        self, backend: MemoryBackend, store: ManifestStore, device: Identity
    ) -> None:
        store.put_manifest(signed(device, 100.0))
        with KeyHierarchy(SecretKey(b"\x09" * 32, Label.ROOT)) as other_keys:
            assert ManifestStore(backend, other_keys).history() == []

    def test_document_layout(
        self, store: ManifestStore, backend: MemoryBackend, keys: KeyHierarchy, device: Identity
    ) -> None:
        """Decrypted documents carry kind, format version and body."""
        blob_id = store.put_manifest(signed(device, 100.0))
        plaintext = EnvelopeCipher().open(
            keys.master(Label.MANIFEST_ENCRYPTION), backend.get(blob_id)
        )
        document = json.loads(plaintext)
        assert document["kind"] == "manifest"
        assert document["format_version"] == 1
        assert SignedManifest.from_dict(document["body"]) == signed(device, 100.0)


class TestPrune:
    """Tests for the per-signer retention policy."""

    def test_keeps_newest(
        self, store: ManifestStore, backend: MemoryBackend, device: Identity
    ) -> None:
        docs = [signed(device, float(t), c) for t, c in ((100, "aa"), (200, "bb"), (300, "cc"))]
        for doc in docs:
            store.put_manifest(doc)
        removed = store.prune(keep_last=2)
        assert len(removed) == 1
        assert store.history() == docs[1:]
        assert store.reachable_chunks() == {"bb" * 32, "cc" * 32}

    def test_keep_last_must_be_positive(self, store: ManifestStore) -> None:
        with pytest.raises(ValueError, match="keep_last"):
            store.prune(keep_last=0)


class TestSharedKeyfile:
    """Tests for the account keyfile kept next to the documents."""

    def test_fresh_backend_has_none(self, backend: MemoryBackend) -> None:
        assert fetch_keyfile(backend) is None

    def test_publish_then_fetch(
        self, backend: MemoryBackend, tmp_path: Path, fast_work_factor: WorkFactor
    ) -> None:
        keyfile, root = create_keyfile("passphrase", tmp_path, fast_work_factor)
        root.wipe()
        publish_keyfile(backend, keyfile)
        assert backend.list() == [KEYFILE_BLOB_ID]
        assert fetch_keyfile(backend) == keyfile

    def test_keyfile_is_not_a_document(
        self,
        store: ManifestStore,
        backend: MemoryBackend,
        device: Identity,
        tmp_path: Path,
        fast_work_factor: WorkFactor,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Listing documents passes over the plaintext keyfile without warnings."""
        keyfile, root = create_keyfile("passphrase", tmp_path, fast_work_factor)
        root.wipe()
        publish_keyfile(backend, keyfile)
        store.put_manifest(signed(device, 100.0))
        with caplog.at_level("WARNING"):
            assert len(store.history()) == 1
        assert "Skipping" not in caplog.text

    def test_corrupted(self, backend: MemoryBackend) -> None:
        backend.put(KEYFILE_BLOB_ID, b"not json")
        with pytest.raises(KeyDerivationError, match="Corrupted"):
            fetch_keyfile(backend)
