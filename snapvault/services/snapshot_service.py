"""Point-in-time reconstruction over the append-only history log.

The state of a path as of scan S is its history row with the highest
``scan_id <= S`` (the highest ``id`` among rows of that scan). Ranking is
done first and DELETED states are dropped afterwards, so a deletion that
is the latest known event hides the path while an older deletion followed
by re-creation does not.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import func, select

from snapvault.models import FileHistory, FileStatus, Scan

if TYPE_CHECKING:
    from sqlalchemy import Select
    from sqlalchemy.orm import Session


@dataclass(frozen=True)
class SnapshotEntry:
    """Reconstructed state of one path."""

    path_rel: str
    scan_id: int
    status_event: str
    size_bytes: int
    modified_millis: int
    created_millis: int
    content_hash: str | None


@dataclass(frozen=True)
class PathHistoryEntry:
    scan_id: int
    root_path: str
    started_at: str | None
    finished_at: str | None
    size_bytes: int
    status_event: str
    created_at: str
    content_hash: str | None


def _latest_states(root_path: str, scan_id: int, *, strict: bool) -> Select:
    bound = FileHistory.scan_id < scan_id if strict else FileHistory.scan_id <= scan_id
    rn = (
        func.row_number()
        .over(
            partition_by=(FileHistory.root_path, FileHistory.path_rel),
            order_by=(FileHistory.scan_id.desc(), FileHistory.id.desc()),
        )
        .label("rn")
    )
    ranked = (
        select(
            FileHistory.path_rel,
            FileHistory.scan_id,
            FileHistory.status_event,
            FileHistory.size_bytes,
            FileHistory.modified_millis,
            FileHistory.created_millis,
            FileHistory.content_hash,
            rn,
        )
        .where(FileHistory.root_path == root_path, bound)
        .subquery()
    )
    return (
        select(
            ranked.c.path_rel,
            ranked.c.scan_id,
            ranked.c.status_event,
            ranked.c.size_bytes,
            ranked.c.modified_millis,
            ranked.c.created_millis,
            ranked.c.content_hash,
        )
        .where(ranked.c.rn == 1, ranked.c.status_event != FileStatus.DELETED.value)
        .order_by(ranked.c.path_rel)
    )


def _entries(session: Session, stmt: Select) -> list[SnapshotEntry]:
    return [SnapshotEntry(*row) for row in session.execute(stmt).all()]


def snapshot_as_of(session: Session, root_path: str, scan_id: int) -> list[SnapshotEntry]:
    """Return every path present under ``root_path`` as of ``scan_id``, sorted by path."""
    return _entries(session, _latest_states(root_path, scan_id, strict=False))


def snapshot_for_scan(session: Session, scan_id: int) -> list[SnapshotEntry]:
    """Like ``snapshot_as_of`` with the root taken from the scan record.

    Raises LookupError if the scan does not exist.
    """
    scan = session.get(Scan, scan_id)
    if scan is None:
        raise LookupError(f"Scan {scan_id} not found")
    return snapshot_as_of(session, scan.root_path, scan_id)


def previous_state(
    session: Session, root_path: str, before_scan_id: int
) -> dict[str, SnapshotEntry]:
    """Known state of each path strictly before a scan, keyed by relative path.

    Used by the scan engine to classify files as NEW, MODIFIED or STABLE.
    """
    entries = _entries(session, _latest_states(root_path, before_scan_id, strict=True))
    return {entry.path_rel: entry for entry in entries}


def snapshot_blobs(session: Session, root_path: str, scan_id: int) -> list[tuple[str, str]]:
    """Restore plan as of a scan: ``(path_rel, content_hash)`` for every hashed path."""
    return [
        (entry.path_rel, entry.content_hash)
        for entry in snapshot_as_of(session, root_path, scan_id)
        if entry.content_hash is not None
    ]


def changed_files(session: Session, scan_id: int) -> list[SnapshotEntry]:
    """History rows a scan wrote for NEW or MODIFIED paths."""
    stmt = (
        select(
            FileHistory.path_rel,
            FileHistory.scan_id,
            FileHistory.status_event,
            FileHistory.size_bytes,
            FileHistory.modified_millis,
            FileHistory.created_millis,
            FileHistory.content_hash,
        )
        .where(
            FileHistory.scan_id == scan_id,
            FileHistory.status_event.in_((FileStatus.NEW.value, FileStatus.MODIFIED.value)),
        )
        .order_by(FileHistory.path_rel)
    )
    return _entries(session, stmt)


def path_history(
    session: Session, path_rel: str, root_path: str | None = None
) -> list[PathHistoryEntry]:
    """Every recorded event for one path, newest scan first."""
    stmt = (
        select(
            FileHistory.scan_id,
            FileHistory.root_path,
            Scan.started_at,
            Scan.finished_at,
            FileHistory.size_bytes,
            FileHistory.status_event,
            FileHistory.created_at,
            FileHistory.content_hash,
        )
        .join(Scan, Scan.scan_id == FileHistory.scan_id, isouter=True)
        .where(FileHistory.path_rel == path_rel)
        .order_by(FileHistory.scan_id.desc(), FileHistory.id.desc())
    )
    if root_path is not None:
        stmt = stmt.where(FileHistory.root_path == root_path)
    return [PathHistoryEntry(*row) for row in session.execute(stmt).all()]
