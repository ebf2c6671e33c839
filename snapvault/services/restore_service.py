"""Restore files from the vault as they were at a given scan."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from snapvault.services.snapshot_service import changed_files, snapshot_for_scan

if TYPE_CHECKING:
    import threading
    from collections.abc import Iterable

    from snapvault.database import Database
    from snapvault.services.blob_store import BlobStore
    from snapvault.services.snapshot_service import SnapshotEntry

logger = logging.getLogger(__name__)


@dataclass
class RestoreResult:
    scan_id: int
    destination: Path
    files_restored: int = 0
    bytes_restored: int = 0
    skipped: list[str] = field(default_factory=list)
    cancelled: bool = False


def safe_target(destination: Path, path_rel: str) -> Path:
    """Resolve ``path_rel`` under ``destination``; reject anything escaping it."""
    pure = PurePosixPath(path_rel)
    if pure.is_absolute() or not path_rel or ".." in pure.parts or "\\" in path_rel:
        raise ValueError(f"Unsafe path in restore plan: {path_rel!r}")
    base = destination.resolve()
    target = (base / pure).resolve()
    if not target.is_relative_to(base) or target == base:
        raise ValueError(f"Unsafe path in restore plan: {path_rel!r}")
    return target


def _normalize(path: str) -> str:
    return path.replace("\\", "/").strip("/")


def _selected(
    entries: Iterable[SnapshotEntry], files: Iterable[str], prefixes: Iterable[str]
) -> list[SnapshotEntry]:
    wanted_files = {_normalize(f) for f in files}
    wanted_prefixes = [_normalize(p) for p in prefixes]
    if not wanted_files and not wanted_prefixes:
        return list(entries)
    selected = []
    for entry in entries:
        if entry.path_rel in wanted_files or any(
            entry.path_rel == p or entry.path_rel.startswith(p + "/") for p in wanted_prefixes
        ):
            selected.append(entry)
    return selected


def _restore_entries(
    store: BlobStore,
    scan_id: int,
    entries: list[SnapshotEntry],
    destination: Path,
    cancel: threading.Event | None,
) -> RestoreResult:
    result = RestoreResult(scan_id=scan_id, destination=destination)
    # Validate the whole plan before writing anything.
    targets = [(entry, safe_target(destination, entry.path_rel)) for entry in entries]
    for entry, target in targets:
        if cancel is not None and cancel.is_set():
            result.cancelled = True
            logger.info(
                "Restore of scan %d cancelled after %d files", scan_id, result.files_restored
            )
            break
        if entry.content_hash is None:
            logger.warning("No content captured for %s in scan %d", entry.path_rel, scan_id)
            result.skipped.append(entry.path_rel)
            continue
        store.get(entry.content_hash, target)
        mtime = entry.modified_millis / 1000
        os.utime(target, (mtime, mtime))
        result.files_restored += 1
        result.bytes_restored += entry.size_bytes
    logger.info(
        "Restored %d files (%d bytes) from scan %d into %s",
        result.files_restored,
        result.bytes_restored,
        scan_id,
        destination,
    )
    return result


def restore_snapshot(
    database: Database,
    store: BlobStore,
    scan_id: int,
    destination: Path,
    files: Iterable[str] = (),
    prefixes: Iterable[str] = (),
    cancel: threading.Event | None = None,
) -> RestoreResult:
    """Restore the tree as of ``scan_id``, optionally limited to files and directory prefixes.

    A blob missing from the vault aborts the restore with BlobMissingError.
    """
    with database.session() as session:
        entries = snapshot_for_scan(session, scan_id)
    return _restore_entries(
        store, scan_id, _selected(entries, files, prefixes), destination, cancel
    )


def restore_changed(
    database: Database,
    store: BlobStore,
    scan_id: int,
    destination: Path,
    cancel: threading.Event | None = None,
) -> RestoreResult:
    """Restore only the files a scan recorded as NEW or MODIFIED."""
    with database.session() as session:
        entries = changed_files(session, scan_id)
    return _restore_entries(store, scan_id, entries, destination, cancel)
