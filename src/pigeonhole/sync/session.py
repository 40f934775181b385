"""Unlocked sync session.

A SyncSession exclusively owns the RootSecret for its lifetime and wipes it,
together with every derived key and identity, when closed. Use it as a
context manager so the wipe runs on every exit path.

The session remembers the manifest it last committed or pulled and builds
the next commit on top of it.

Usage:
    with SyncSession.open(config, passphrase) as session:
        session.commit({"notes.txt": (data, mtime)})
        merged = session.pull()
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from pigeonhole.core.chunking import get_chunk_hash
from pigeonhole.core.cipher import EnvelopeCipher
from pigeonhole.core.config import SyncConfig
from pigeonhole.core.errors import KeyDerivationError, NotFound, TrustError
from pigeonhole.core.identity import Identity, IdentityManager, RevocationRecord, TrustStore
from pigeonhole.core.keys import (
    KEYFILE_NAME,
    KeyHierarchy,
    SecretKey,
    create_keyfile,
    load_keyfile,
    save_keyfile,
    unlock,
)
from pigeonhole.storage.backend import BlobBackend, create_backend
from pigeonhole.storage.chunks import ChunkStore
from pigeonhole.storage.manifests import ManifestStore, fetch_keyfile, publish_keyfile
from pigeonhole.sync.engine import ManifestSync
from pigeonhole.sync.manifest import FileEntry, FileState, Manifest, SignedManifest
from pigeonhole.sync.reconcile import reconcile_all

logger = logging.getLogger(__name__)


class SyncSession:
    """Wires the key hierarchy, stores, identities and manifest sync together."""

    def __init__(
        self,
        config: SyncConfig,
        root: SecretKey,
        chunk_backend: BlobBackend | None = None,
        manifest_backend: BlobBackend | None = None,
    ) -> None:
        self.config = config
        self.keys = KeyHierarchy(root)
        self._local: Manifest | None = None
        try:
            cipher = EnvelopeCipher(config.cipher_suite)
            self.chunks = ChunkStore(
                chunk_backend or create_backend(config.backend),
                self.keys,
                cipher=cipher,
                chunking=config.chunking,
                retry=config.retry,
                max_workers=config.max_workers,
            )
            self.manifests = ManifestStore(
                manifest_backend or create_backend(config.manifest_backend),
                self.keys,
                cipher=cipher,
                retry=config.retry,
            )
            self.sync = ManifestSync()

            self.identities = IdentityManager(self.manifests.identity_records())
            with self.identities.root_identity(root) as root_identity:
                root_public_key = root_identity.public_key
                self.user = self.identities.derive_user_identity(root_identity, config.user_index)
            self.device = self.identities.derive_device_identity(self.user, config.device_index)
            # The root record lets peers check revocations signed by the root.
            for public_key in (root_public_key, self.user.public_key, self.device.public_key):
                record = self.identities.record(public_key)
                if record is not None:
                    self.manifests.put_identity_record(record)
        except BaseException:
            self.close()
            raise
        logger.info(
            f"Opened session for device {config.device_index} ({self.device.name[:16]})"
        )

    @classmethod
    def open(
        cls,
        config: SyncConfig,
        passphrase: str,
        chunk_backend: BlobBackend | None = None,
        manifest_backend: BlobBackend | None = None,
    ) -> SyncSession:
        """Unlock the account keyfile and open a session.

        The keyfile is looked up in config_dir first, then on the manifest
        backend, where the first device of an account publishes it. A device
        joining an existing account saves the shared keyfile locally; only
        when neither exists is a new account created.

        Raises:
            KeyDerivationError: If the passphrase is wrong, or the local
                keyfile belongs to another account than the shared one.
        """
        manifest_backend = manifest_backend or create_backend(config.manifest_backend)
        shared = fetch_keyfile(manifest_backend, config.retry)
        if (config.config_dir / KEYFILE_NAME).exists():
            keyfile = load_keyfile(config.config_dir)
            if shared is not None and shared.key_id != keyfile.key_id:
                raise KeyDerivationError(
                    f"Local keyfile {keyfile.key_id} does not match shared keyfile "
                    f"{shared.key_id}"
                )
            root = unlock(passphrase, keyfile)
        elif shared is not None:
            keyfile = shared
            root = unlock(passphrase, keyfile)
        else:
            keyfile, root = create_keyfile(passphrase, config.config_dir, config.work_factor)

        try:
            if not (config.config_dir / KEYFILE_NAME).exists():
                path = save_keyfile(keyfile, config.config_dir)
                logger.info(f"Joined account {keyfile.key_id}, saved keyfile to {path}")
            if shared is None:
                publish_keyfile(manifest_backend, keyfile, config.retry)
        except BaseException:
            root.wipe()
            raise
        return cls(config, root, chunk_backend, manifest_backend)

    @property
    def closed(self) -> bool:
        return self.keys.closed

    def _check_open(self) -> None:
        if self.closed:
            raise KeyDerivationError("Session is closed")

    def trust_store(self) -> TrustStore:
        """Trust rooted at this user's identity, with all known records."""
        records = {r.public_key: r for r in self.manifests.identity_records()}
        records.update({r.public_key: r for r in self.identities.records()})
        return TrustStore([self.user.public_key], records.values())

    def local_manifest(self) -> Manifest:
        """The manifest this device last committed or pulled.

        A fresh session rebuilds it from this device's own published
        manifests, so versions continue across restarts.
        """
        self._check_open()
        if self._local is None:
            own = [s for s in self.manifests.history() if s.signer == self.device.public_key]
            accepted, _ = self.sync.verify_all(
                own, self.trust_store(), self.manifests.revocations()
            )
            self._local = reconcile_all(accepted)
        return self._local

    def snapshot(
        self,
        files: Mapping[str, tuple[bytes, float]],
        previous: Manifest | None = None,
    ) -> dict[str, FileState]:
        """Chunk and store file contents, returning a tree snapshot.

        Files whose content is unchanged since previous keep their stored
        chunks instead of being uploaded again.
        """
        self._check_open()
        snapshot = {}
        for path, (data, mtime) in files.items():
            content_hash = get_chunk_hash(data)
            old = previous.get(path) if previous is not None else None
            if (
                old is not None
                and not old.deleted
                and old.content_hash == content_hash
                and all(self.chunks.has(c) for c in old.chunks)
            ):
                chunks = old.chunks
            else:
                chunks = tuple(self.chunks.put_file(data, dedup=self.config.dedup))
            snapshot[path] = FileState(
                chunks=chunks, size=len(data), mtime=mtime, content_hash=content_hash
            )
        return snapshot

    def commit(
        self,
        files: Mapping[str, tuple[bytes, float]],
        previous: Manifest | None = None,
    ) -> SignedManifest:
        """Snapshot files, build and sign a manifest, and publish it.

        Args:
            files: The whole local tree, path -> (contents, mtime).
            previous: Base manifest; defaults to local_manifest().
        """
        base = previous if previous is not None else self.local_manifest()
        manifest = self.sync.build(self.snapshot(files, base), base)
        signed = self.sync.sign(manifest, self.device)
        self.manifests.put_manifest(signed)
        self._local = manifest
        logger.info(f"Published manifest with {len(manifest.entries)} entries")
        return signed

    def pull(self, local: Manifest | None = None) -> Manifest:
        """Verify every published manifest and merge the trusted ones into local.

        local defaults to local_manifest(); the merge becomes the new base.
        """
        self._check_open()
        base = local if local is not None else self.local_manifest()
        trust = self.trust_store()
        accepted, rejected = self.sync.verify_all(
            self.manifests.history(), trust, self.manifests.revocations()
        )
        if rejected:
            logger.warning(f"Ignored {len(rejected)} untrusted or invalid manifest(s)")
        self._local = reconcile_all([base, *accepted])
        return self._local

    def read_file(self, entry: FileEntry) -> bytes:
        """Reassemble the plaintext of a manifest entry.

        Raises:
            NotFound: If the entry is a tombstone or a chunk is missing.
        """
        if entry.deleted:
            raise NotFound(f"{entry.path} is deleted at version {entry.version}")
        return self.chunks.get_file(entry.chunks)

    def revoke_device(self, device_public_key: bytes) -> RevocationRecord:
        """Revoke one of this user's devices and publish the revocation."""
        self._check_open()
        if device_public_key == self.device.public_key:
            raise TrustError("A session cannot revoke its own device")
        self.identities.add_records(self.manifests.identity_records())
        revocation = self.identities.revoke(self.user, device_public_key)
        self.manifests.put_revocation(revocation)
        return revocation

    def gc(self, keep_last: int | None = None) -> list[str]:
        """Apply the retention policy, then delete unreachable chunks."""
        self._check_open()
        if keep_last is not None:
            self.manifests.prune(keep_last)
        return self.chunks.gc(self.manifests.reachable_chunks())

    def close(self) -> None:
        """Wipe identities and every key held by the session."""
        for identity in (getattr(self, "device", None), getattr(self, "user", None)):
            if isinstance(identity, Identity):
                identity.wipe()
        self.keys.close()
        logger.info("Session closed")

    def __enter__(self) -> SyncSession:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
