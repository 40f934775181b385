"""Manifest synchronization.

Components:
- **Manifest / FileEntry**: versioned, tombstoned snapshot of a tree
- **ManifestSync**: build, sign, verify and reconcile manifests
- **reconcile**: order-independent merge with conflict retention

SyncSession lives in pigeonhole.sync.session (it depends on pigeonhole.storage).
"""

from pigeonhole.sync.engine import ManifestSync
from pigeonhole.sync.manifest import (
    FileEntry,
    FileState,
    Manifest,
    SignedManifest,
    conflict_path,
)
from pigeonhole.sync.reconcile import (
    ReconcileOutcome,
    ReconcileReport,
    reconcile,
    reconcile_all,
    resolve_conflict,
)

__all__ = [
    "FileEntry",
    "FileState",
    "Manifest",
    "ManifestSync",
    "ReconcileOutcome",
    "ReconcileReport",
    "SignedManifest",
    "conflict_path",
    "reconcile",
    "reconcile_all",
    "resolve_conflict",
]
