"""ManifestSync: build, sign, verify and reconcile manifests.

Verification order for a signed manifest:
1. The signer must chain to a trusted root through valid endorsements
2. The signature must match the manifest content
3. Neither the signer nor any ancestor may be revoked at or before the
   manifest's created_at

Revocations are consulted on every call; there is no cache of previously
trusted signatures.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import replace

from pigeonhole.core.errors import AuthenticationError, IntegrityError, TrustError
from pigeonhole.core.identity import Identity, RevocationRecord, TrustStore, verify
from pigeonhole.sync.manifest import FileEntry, FileState, Manifest, SignedManifest
from pigeonhole.sync.reconcile import ReconcileReport, reconcile, reconcile_with_report

logger = logging.getLogger(__name__)


class ManifestSync:
    """Manifest lifecycle for one device.

    Usage:
        sync = ManifestSync()
        manifest = sync.build(snapshot, previous=last_manifest)
        signed = sync.sign(manifest, device_identity)
        remote = sync.verify(remote_signed, trust_store, revocations)
        merged = sync.reconcile(manifest, remote)
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._build_lock = threading.Lock()

    def build(
        self,
        local_tree_snapshot: Mapping[str, FileState],
        previous: Manifest | None = None,
        created_at: float | None = None,
    ) -> Manifest:
        """Build a manifest from a point-in-time view of the local tree.

        Every path whose content changed relative to previous gets its
        version counter incremented. Paths that disappeared become
        tombstones. Unchanged paths keep their entry and any pending
        conflict variants.
        """
        with self._build_lock:
            snapshot = dict(local_tree_snapshot)
            previous = previous or Manifest()
            now = self._clock() if created_at is None else created_at

            entries: dict[str, FileEntry] = {}
            conflicts: dict[str, tuple[FileEntry, ...]] = {}
            changed = 0

            for path, state in snapshot.items():
                old = previous.get(path)
                if old is not None and old.matches(state):
                    conflicted = previous.conflicts.get(path)
                    if old.chunks != tuple(state.chunks):
                        # Same content re-stored under new chunk ids keeps its version
                        fresh = replace(old, chunks=tuple(state.chunks), mtime=state.mtime)
                        if conflicted is not None:
                            conflicted = tuple(
                                sorted(
                                    (fresh if v == old else v for v in conflicted),
                                    key=lambda v: v.digest,
                                )
                            )
                        old = fresh
                    entries[path] = old
                    if conflicted is not None:
                        conflicts[path] = conflicted
                    continue
                entries[path] = FileEntry(
                    path=path,
                    chunks=tuple(state.chunks),
                    size=state.size,
                    mtime=state.mtime,
                    version=old.version + 1 if old is not None else 1,
                    content_hash=state.content_hash,
                )
                changed += 1

            for path, old in previous.entries.items():
                if path in snapshot:
                    continue
                if old.deleted:
                    entries[path] = old
                    if path in previous.conflicts:
                        conflicts[path] = previous.conflicts[path]
                else:
                    entries[path] = old.tombstone(now)
                    changed += 1

        logger.debug(f"Built manifest with {len(entries)} entries, {changed} changed")
        return Manifest(entries=entries, conflicts=conflicts, created_at=now)

    def sign(self, manifest: Manifest, identity: Identity) -> SignedManifest:
        """Sign a manifest with a device identity."""
        signed = SignedManifest(manifest=manifest, signer=identity.public_key, signature=b"")
        return SignedManifest(
            manifest=manifest,
            signer=identity.public_key,
            signature=identity.sign(signed.payload),
        )

    def verify(
        self,
        signed_manifest: SignedManifest,
        trusted_identities: TrustStore,
        revocations: Iterable[RevocationRecord],
    ) -> Manifest:
        """Verify a signed manifest.

        Returns:
            The manifest, if it may be trusted.

        Raises:
            TrustError: If the signer is unknown, not endorsed by a trusted
                root, or revoked at or before the manifest's created_at.
            IntegrityError: If the signature does not match.
        """
        signer = signed_manifest.signer
        trusted_identities.chain(signer)

        if not verify(signer, signed_manifest.payload, signed_manifest.signature):
            raise IntegrityError(f"Manifest signature mismatch for signer {signer.hex()[:16]}")

        created_at = signed_manifest.manifest.created_at
        revoked_at = trusted_identities.revocation_time(signer, revocations)
        if revoked_at is not None and created_at >= revoked_at:
            raise TrustError(
                f"Signer {signer.hex()[:16]} was revoked at {revoked_at}, "
                f"manifest created at {created_at}"
            )
        return signed_manifest.manifest

    def verify_all(
        self,
        signed_manifests: Iterable[SignedManifest],
        trusted_identities: TrustStore,
        revocations: Iterable[RevocationRecord],
    ) -> tuple[list[Manifest], list[tuple[SignedManifest, Exception]]]:
        """Verify manifests independently; a rejected one does not stop the rest.

        Returns:
            (accepted manifests, rejected manifests with their errors)
        """
        revocations = list(revocations)
        accepted: list[Manifest] = []
        rejected: list[tuple[SignedManifest, Exception]] = []
        for signed in signed_manifests:
            try:
                accepted.append(self.verify(signed, trusted_identities, revocations))
            except (TrustError, AuthenticationError) as e:
                logger.warning(f"Rejected manifest from {signed.signer.hex()[:16]}: {e}")
                rejected.append((signed, e))
        return accepted, rejected

    def reconcile(self, local: Manifest, remote: Manifest) -> Manifest:
        """Merge a remote manifest into the local one (order-independent)."""
        return reconcile(local, remote)

    def reconcile_with_report(
        self, local: Manifest, remote: Manifest
    ) -> tuple[Manifest, ReconcileReport]:
        return reconcile_with_report(local, remote)
