"""Metadata store operations: scan log, inventory, history, journal rows.

Every public write runs in exactly one transaction: it commits on success
and rolls back on any exception before re-raising.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import bindparam, delete, func, insert, literal, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from snapvault.exceptions import ScanStateError
from snapvault.models import (
    BackupSetting,
    BackupType,
    FileHistory,
    FileInventory,
    FileStatus,
    FsEvent,
    JournalCursor,
    Scan,
    ScanIssue,
    ScanStatus,
)
from snapvault.services.datetime_service import now_iso

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, Sequence

    from sqlalchemy import ColumnElement, Insert
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

CHANGED_STATUSES = (FileStatus.NEW.value, FileStatus.MODIFIED.value)

_inventory = FileInventory.__table__
_history = FileHistory.__table__


@dataclass(frozen=True)
class InventoryEntry:
    """One walked file, ready to be upserted into current inventory."""

    root_path: str
    path_rel: str
    name: str
    size_bytes: int
    modified_millis: int
    created_millis: int
    status: FileStatus


@dataclass(frozen=True)
class FsEventRecord:
    """A change observation produced by the journal ingester."""

    root_path: str
    kind: str
    path_rel: str | None
    old_path_rel: str | None
    event_time: str


@dataclass(frozen=True)
class UsagePoint:
    scan_id: int
    started_at: str
    total_bytes: int
    growth_bytes: int


@contextmanager
def _transaction(session: Session) -> Iterator[None]:
    try:
        yield
        session.commit()
    except BaseException:
        session.rollback()
        raise


# ── Scan log ─────────────────────────────────────────────


def first_scan_id(session: Session, root_path: str) -> int | None:
    """Return the oldest scan id for a root, or None if it was never scanned."""
    stmt = select(func.min(Scan.scan_id)).where(Scan.root_path == root_path)
    return session.execute(stmt).scalar()


def start_scan(session: Session, root_path: str, dest_path: str | None = None) -> int:
    """Create a RUNNING scan record and return its id.

    The first scan of a root is a FULL backup, later ones are INCREMENTAL.
    """
    with _transaction(session):
        first = first_scan_id(session, root_path)
        backup_type = BackupType.FULL if first is None else BackupType.INCREMENTAL
        scan = Scan(
            root_path=root_path,
            dest_path=dest_path,
            started_at=now_iso(),
            status=ScanStatus.RUNNING,
            backup_type=backup_type,
        )
        session.add(scan)
        session.flush()
        scan_id = scan.scan_id
    logger.info("Started %s scan %d of %s", backup_type, scan_id, root_path)
    return scan_id


def finish_scan(session: Session, scan_id: int) -> None:
    """Finalize a RUNNING scan as DONE with the root's total inventory size.

    Raises ScanStateError if the scan is not RUNNING.
    """
    root_of_scan = select(Scan.root_path).where(Scan.scan_id == scan_id).scalar_subquery()
    usage = (
        select(func.coalesce(func.sum(FileInventory.size_bytes), 0))
        .where(FileInventory.root_path == root_of_scan)
        .scalar_subquery()
    )
    stmt = (
        update(Scan)
        .where(Scan.scan_id == scan_id, Scan.status == ScanStatus.RUNNING)
        .values(status=ScanStatus.DONE, finished_at=now_iso(), total_usage=usage)
        .execution_options(synchronize_session=False)
    )
    with _transaction(session):
        result = session.execute(stmt)
        if result.rowcount == 0:
            raise ScanStateError(f"Scan {scan_id} is not running; cannot mark it DONE")
    logger.info("Scan %d finished", scan_id)


def _finalize(session: Session, scan_id: int, status: ScanStatus, message: str | None) -> bool:
    stmt = (
        update(Scan)
        .where(Scan.scan_id == scan_id, Scan.status == ScanStatus.RUNNING)
        .values(status=status, finished_at=now_iso(), total_usage=None, message=message)
        .execution_options(synchronize_session=False)
    )
    with _transaction(session):
        result = session.execute(stmt)
    return result.rowcount > 0


def cancel_scan(session: Session, scan_id: int) -> bool:
    """RUNNING -> CANCELED. Returns False if the scan was already finalized."""
    changed = _finalize(session, scan_id, ScanStatus.CANCELED, "canceled")
    if changed:
        logger.info("Scan %d canceled", scan_id)
    return changed


def fail_scan(session: Session, scan_id: int, message: str) -> bool:
    """RUNNING -> ERROR. Returns False if the scan was already finalized."""
    changed = _finalize(session, scan_id, ScanStatus.ERROR, message[:2000])
    if changed:
        logger.error("Scan %d marked ERROR: %s", scan_id, message)
    return changed


def recover_abandoned_scans(session: Session, root_path: str) -> list[int]:
    """Mark RUNNING scans of a root left behind by a crashed process as ERROR.

    Only one writer runs per root, so any RUNNING record found before a new
    scan starts can no longer make progress.
    """
    stmt = select(Scan.scan_id).where(
        Scan.root_path == root_path, Scan.status == ScanStatus.RUNNING
    )
    abandoned = list(session.execute(stmt).scalars().all())
    recovered = []
    for scan_id in abandoned:
        if _finalize(session, scan_id, ScanStatus.ERROR, "abandoned: process exited mid-scan"):
            logger.warning("Recovered abandoned scan %d for %s as ERROR", scan_id, root_path)
            recovered.append(scan_id)
    return recovered


def get_scan(session: Session, scan_id: int) -> Scan | None:
    return session.get(Scan, scan_id, populate_existing=True)


def list_scans(session: Session, limit: int = 50, root_path: str | None = None) -> list[Scan]:
    """Return scans newest first."""
    stmt = (
        select(Scan)
        .order_by(Scan.scan_id.desc())
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    if root_path is not None:
        stmt = stmt.where(Scan.root_path == root_path)
    return list(session.execute(stmt).scalars().all())


def record_issue(session: Session, scan_id: int, path: str, message: str) -> None:
    with _transaction(session):
        session.add(ScanIssue(scan_id=scan_id, path=path, message=message, created_at=now_iso()))


def record_issues(session: Session, scan_id: int, issues: Sequence[tuple[str, str]]) -> None:
    if not issues:
        return
    created_at = now_iso()
    with _transaction(session):
        session.execute(
            insert(ScanIssue),
            [
                {"scan_id": scan_id, "path": path, "message": message, "created_at": created_at}
                for path, message in issues
            ],
        )


def list_scan_issues(session: Session, scan_id: int) -> list[ScanIssue]:
    stmt = select(ScanIssue).where(ScanIssue.scan_id == scan_id).order_by(ScanIssue.id)
    return list(session.execute(stmt).scalars().all())


# ── Inventory and history ────────────────────────────────


def upsert_inventory(
    session: Session,
    scan_id: int,
    entries: Sequence[InventoryEntry],
    batch_size: int = 5000,
) -> int:
    """Insert or update current-state rows, one transaction per batch.

    Returns the number of batches committed.
    """
    stmt = sqlite_insert(_inventory)
    stmt = stmt.on_conflict_do_update(
        index_elements=[_inventory.c.root_path, _inventory.c.path_rel],
        set_={
            "name": stmt.excluded.name,
            "size_bytes": stmt.excluded.size_bytes,
            "modified_millis": stmt.excluded.modified_millis,
            "created_millis": stmt.excluded.created_millis,
            "last_scan_id": stmt.excluded.last_scan_id,
            "status": stmt.excluded.status,
        },
    )
    batches = 0
    for start in range(0, len(entries), batch_size):
        rows = [
            {
                "root_path": e.root_path,
                "path_rel": e.path_rel,
                "name": e.name,
                "size_bytes": e.size_bytes,
                "modified_millis": e.modified_millis,
                "created_millis": e.created_millis,
                "last_scan_id": scan_id,
                "status": e.status.value,
            }
            for e in entries[start : start + batch_size]
        ]
        with _transaction(session):
            session.connection().execute(stmt, rows)
        batches += 1
    return batches


_HISTORY_COLUMNS = [
    "scan_id",
    "root_path",
    "path_rel",
    "size_bytes",
    "status_event",
    "created_at",
    "created_millis",
    "modified_millis",
]


def _history_from_inventory(
    scan_id: int, status_event: ColumnElement[str], *criteria: ColumnElement[bool]
) -> Insert:
    select_rows = select(
        literal(scan_id),
        _inventory.c.root_path,
        _inventory.c.path_rel,
        _inventory.c.size_bytes,
        status_event,
        literal(now_iso()),
        _inventory.c.created_millis,
        _inventory.c.modified_millis,
    ).where(*criteria)
    return insert(_history).from_select(_HISTORY_COLUMNS, select_rows)


def snapshot_to_history(session: Session, scan_id: int) -> int:
    """Copy this scan's NEW/MODIFIED inventory rows into history, then mark them STABLE.

    Both steps share one transaction. Returns the number of history rows written.
    """
    touched = (_inventory.c.last_scan_id == scan_id, _inventory.c.status.in_(CHANGED_STATUSES))
    with _transaction(session):
        conn = session.connection()
        written = conn.execute(
            _history_from_inventory(scan_id, _inventory.c.status, *touched)
        ).rowcount
        conn.execute(update(_inventory).where(*touched).values(status=FileStatus.STABLE.value))
    logger.debug("Scan %d: %d history events snapshotted", scan_id, written)
    return written


def retire_stale(session: Session, scan_id: int, root_path: str) -> int:
    """Archive rows this scan did not touch as DELETED, then drop them from inventory.

    Archival precedes removal in the same transaction. Returns rows retired.
    """
    stale = (_inventory.c.root_path == root_path, _inventory.c.last_scan_id < scan_id)
    with _transaction(session):
        conn = session.connection()
        archived = conn.execute(
            _history_from_inventory(scan_id, literal(FileStatus.DELETED.value), *stale)
        ).rowcount
        removed = conn.execute(delete(_inventory).where(*stale)).rowcount
        if archived != removed:
            raise RuntimeError(
                f"Stale retirement mismatch for scan {scan_id}: "
                f"archived {archived}, removed {removed}"
            )
    if removed:
        logger.info("Scan %d: retired %d deleted paths under %s", scan_id, removed, root_path)
    return removed


def backfill_content_hash(
    session: Session, scan_id: int, path_rel: str, content_hash: str
) -> bool:
    """Attach a content hash to a history row written without one."""
    stmt = (
        update(_history)
        .where(
            _history.c.scan_id == scan_id,
            _history.c.path_rel == path_rel,
            _history.c.content_hash.is_(None),
        )
        .values(content_hash=content_hash)
    )
    with _transaction(session):
        result = session.connection().execute(stmt)
    return result.rowcount > 0


def backfill_content_hashes(
    session: Session,
    scan_id: int,
    hashes: Mapping[str, str],
    batch_size: int = 5000,
) -> None:
    """Batched ``backfill_content_hash``. Rows that already carry a hash are left alone."""
    stmt = (
        update(_history)
        .where(
            _history.c.scan_id == bindparam("b_scan_id"),
            _history.c.path_rel == bindparam("b_path_rel"),
            _history.c.content_hash.is_(None),
        )
        .values(content_hash=bindparam("b_hash"))
    )
    items = list(hashes.items())
    for start in range(0, len(items), batch_size):
        params = [
            {"b_scan_id": scan_id, "b_path_rel": path_rel, "b_hash": content_hash}
            for path_rel, content_hash in items[start : start + batch_size]
        ]
        with _transaction(session):
            session.connection().execute(stmt, params)


def inventory_for_root(session: Session, root_path: str) -> list[FileInventory]:
    stmt = (
        select(FileInventory)
        .where(FileInventory.root_path == root_path)
        .order_by(FileInventory.path_rel)
        .execution_options(populate_existing=True)
    )
    return list(session.execute(stmt).scalars().all())


def scan_usage_report(session: Session, root_path: str | None = None) -> list[UsagePoint]:
    """Total usage per finished scan and growth relative to the previous one."""
    stmt = (
        select(Scan.scan_id, Scan.started_at, Scan.total_usage)
        .where(Scan.status == ScanStatus.DONE)
        .order_by(Scan.scan_id)
    )
    if root_path is not None:
        stmt = stmt.where(Scan.root_path == root_path)
    points: list[UsagePoint] = []
    previous = 0
    for scan_id, started_at, total in session.execute(stmt).all():
        total = total or 0
        points.append(UsagePoint(scan_id, started_at, total, total - previous))
        previous = total
    return points


# ── Settings ─────────────────────────────────────────────


def get_setting(session: Session, key: str) -> str | None:
    row = session.get(BackupSetting, key, populate_existing=True)
    return None if row is None else row.value


def put_setting(session: Session, key: str, value: str | None) -> None:
    stmt = sqlite_insert(BackupSetting).values(key=key, value=value, updated_at=now_iso())
    stmt = stmt.on_conflict_do_update(
        index_elements=[BackupSetting.key],
        set_={"value": stmt.excluded.value, "updated_at": stmt.excluded.updated_at},
    )
    with _transaction(session):
        session.execute(stmt)


# ── Journal ──────────────────────────────────────────────


def append_fs_events(session: Session, events: Sequence[FsEventRecord]) -> int:
    """Append journal events in order. Returns the number written."""
    if not events:
        return 0
    with _transaction(session):
        session.execute(
            insert(FsEvent),
            [
                {
                    "root_path": e.root_path,
                    "path_rel": e.path_rel,
                    "kind": e.kind,
                    "old_path_rel": e.old_path_rel,
                    "event_time": e.event_time,
                }
                for e in events
            ],
        )
    return len(events)


def list_fs_events(
    session: Session,
    root_path: str,
    after_id: int = 0,
    limit: int | None = None,
) -> list[FsEvent]:
    stmt = (
        select(FsEvent)
        .where(FsEvent.root_path == root_path, FsEvent.id > after_id)
        .order_by(FsEvent.id)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(session.execute(stmt).scalars().all())


def last_fs_event_id(session: Session, root_path: str) -> int:
    stmt = select(func.coalesce(func.max(FsEvent.id), 0)).where(FsEvent.root_path == root_path)
    return session.execute(stmt).scalar_one()


def upsert_journal_cursor(
    session: Session,
    root_path: str,
    backend: str,
    cursor_a: str | None = None,
    cursor_b: str | None = None,
) -> None:
    stmt = sqlite_insert(JournalCursor).values(
        root_path=root_path,
        backend=backend,
        cursor_a=cursor_a,
        cursor_b=cursor_b,
        updated_at=now_iso(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[JournalCursor.root_path],
        set_={
            "backend": stmt.excluded.backend,
            "cursor_a": stmt.excluded.cursor_a,
            "cursor_b": stmt.excluded.cursor_b,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    with _transaction(session):
        session.execute(stmt)


def get_journal_cursor(session: Session, root_path: str) -> JournalCursor | None:
    return session.get(JournalCursor, root_path, populate_existing=True)
