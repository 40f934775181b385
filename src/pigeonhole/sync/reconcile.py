"""Manifest reconciliation.

Reconciliation is a join over per-path variant sets:
1. Only variants carrying the highest version counter survive
2. Variants with the same content collapse into one (latest mtime kept)
3. More than one surviving variant is a conflict: all are retained

Because this is a max followed by a set union, merging is commutative,
associative and idempotent. Devices can merge manifests in any order, any
number of times, and converge on the same result.

Tombstones are ordinary versioned variants: a deletion beats any older
version and loses to any newer re-creation.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from enum import Enum

from pigeonhole.sync.manifest import FileEntry, Manifest

logger = logging.getLogger(__name__)


class ReconcileOutcome(Enum):
    """What reconciliation did to a path, seen from the local manifest."""

    KEPT_LOCAL = "kept_local"
    TOOK_REMOTE = "took_remote"
    DELETED = "deleted"
    CONFLICT_DETECTED = "conflict_detected"


@dataclass
class ReconcileReport:
    """Per-path outcomes of one reconciliation."""

    outcomes: dict[str, ReconcileOutcome] = field(default_factory=dict)

    def paths(self, outcome: ReconcileOutcome) -> list[str]:
        return sorted(p for p, o in self.outcomes.items() if o is outcome)

    @property
    def conflicts(self) -> list[str]:
        return self.paths(ReconcileOutcome.CONFLICT_DETECTED)


def _winner_key(entry: FileEntry) -> tuple[bool, float, str]:
    # Live content outranks a tombstone at the main path
    return (not entry.deleted, entry.mtime, entry.digest)


def merge_variants(variants: Iterable[FileEntry]) -> tuple[FileEntry, ...]:
    """Reduce variants of one path to the surviving set, sorted by digest."""
    variants = list(variants)
    if not variants:
        return ()

    top = max(v.version for v in variants)
    by_content: dict[tuple[bool, str | tuple[str, ...]], FileEntry] = {}
    for variant in variants:
        if variant.version != top:
            continue
        current = by_content.get(variant.content_key)
        if current is None or (variant.mtime, variant.digest) > (current.mtime, current.digest):
            by_content[variant.content_key] = variant
    return tuple(sorted(by_content.values(), key=lambda v: v.digest))


def pick_winner(variants: tuple[FileEntry, ...]) -> FileEntry:
    """Deterministic entry to materialize at the original path."""
    return max(variants, key=_winner_key)


def reconcile(local: Manifest, remote: Manifest) -> Manifest:
    """Merge two manifests.

    Higher version wins per path. Equal versions with different content
    are kept side by side as conflict variants; no side is dropped.
    """
    entries: dict[str, FileEntry] = {}
    conflicts: dict[str, tuple[FileEntry, ...]] = {}

    for path in sorted(set(local.entries) | set(remote.entries)):
        merged = merge_variants((*local.variants(path), *remote.variants(path)))
        entries[path] = pick_winner(merged)
        if len(merged) > 1:
            conflicts[path] = merged

    return Manifest(
        entries=entries,
        conflicts=conflicts,
        created_at=max(local.created_at, remote.created_at),
        format_version=max(local.format_version, remote.format_version),
    )


def reconcile_all(manifests: Iterable[Manifest]) -> Manifest:
    """Merge any number of manifests (order does not matter)."""
    result = Manifest()
    for manifest in manifests:
        result = reconcile(result, manifest)
    return result


def reconcile_with_report(local: Manifest, remote: Manifest) -> tuple[Manifest, ReconcileReport]:
    """Merge two manifests and report what happened to each local path."""
    merged = reconcile(local, remote)
    report = ReconcileReport()

    for path, entry in merged.entries.items():
        if path in merged.conflicts:
            outcome = ReconcileOutcome.CONFLICT_DETECTED
        elif local.get(path) == entry:
            outcome = ReconcileOutcome.KEPT_LOCAL
        elif entry.deleted:
            outcome = ReconcileOutcome.DELETED
        else:
            outcome = ReconcileOutcome.TOOK_REMOTE
        report.outcomes[path] = outcome

    if report.conflicts:
        logger.warning(f"Reconciliation found {len(report.conflicts)} conflicting path(s)")
    return merged, report


def resolve_conflict(
    manifest: Manifest, path: str, chosen: FileEntry, mtime: float | None = None
) -> Manifest:
    """Supersede every variant of path with chosen at the next version.

    This is a primitive; deciding which variant to keep is up to the caller.
    """
    current = manifest.get(path)
    if current is None:
        raise KeyError(path)

    resolved = replace(
        chosen,
        path=path,
        version=current.version + 1,
        mtime=chosen.mtime if mtime is None else mtime,
    )
    entries = dict(manifest.entries)
    entries[path] = resolved
    conflicts = {p: v for p, v in manifest.conflicts.items() if p != path}
    return replace(manifest, entries=entries, conflicts=conflicts)
