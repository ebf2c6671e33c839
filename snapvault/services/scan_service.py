"""Scan engine: walk a root, store changed content, record inventory and history."""

from __future__ import annotations

import logging
import os
import queue
import stat
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from snapvault.database import Database
from snapvault.exceptions import ScanConfigError, ScanFailedError
from snapvault.models import FileStatus, FsEventKind, ScanStatus
from snapvault.services import metadata_service as meta
from snapvault.services.blob_store import VAULT_DIRNAME, BlobStore
from snapvault.services.crypto_service import check_verifier, make_verifier
from snapvault.services.datetime_service import millis_from_timestamp
from snapvault.services.exclude_service import ExcludeMatcher
from snapvault.services.snapshot_service import previous_state

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from sqlalchemy.orm import Session

    from snapvault.config import Settings
    from snapvault.services.snapshot_service import SnapshotEntry

logger = logging.getLogger(__name__)

# Progress is published every this many files in addition to phase changes.
PROGRESS_EVERY = 500
VERIFIER_KEY = "backup_password_verifier"
JOURNAL_WATERMARK_KEY = "journal_reconciled"


class ScanPhase(StrEnum):
    WALKING = "walking"
    HISTORY = "history"
    FINISHED = "finished"


@dataclass
class ScanConfig:
    """Parameters of one scan run."""

    root: Path
    dest: Path
    worker_count: int = 4
    batch_size: int = 5000
    exclude_globs: list[str] = field(default_factory=list)
    use_default_excludes: bool = True
    passphrase: str | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        root: Path,
        dest: Path,
        passphrase: str | None = None,
        exclude_globs: Iterable[str] = (),
    ) -> ScanConfig:
        return cls(
            root=root,
            dest=dest,
            worker_count=settings.worker_count,
            batch_size=settings.db_batch_size,
            exclude_globs=[*settings.exclude_globs, *exclude_globs],
            use_default_excludes=settings.use_default_excludes,
            passphrase=passphrase or None,
        )

    def validate(self) -> None:
        """Raise ScanConfigError for a configuration no scan could run with."""
        if not self.root.exists():
            raise ScanConfigError(f"Scan root does not exist: {self.root}")
        if not self.root.is_dir():
            raise ScanConfigError(f"Scan root is not a directory: {self.root}")
        if self.worker_count < 1:
            raise ScanConfigError("worker_count must be at least 1")
        if self.batch_size < 1:
            raise ScanConfigError("batch_size must be at least 1")
        if self.dest.exists() and not self.dest.is_dir():
            raise ScanConfigError(f"Backup destination is not a directory: {self.dest}")


@dataclass(frozen=True)
class ProgressSnapshot:
    files_seen: int = 0
    files_hashed: int = 0
    bytes_hashed: int = 0
    errors: int = 0
    dirs_skipped: int = 0
    batches_committed: int = 0


@dataclass(frozen=True)
class ProgressEvent:
    """Progress record published to whichever consumer is attached."""

    scan_id: int
    phase: ScanPhase
    counters: ProgressSnapshot
    status: ScanStatus | None = None


class ScanProgress:
    """Thread-safe scan counters, optionally published onto a queue."""

    def __init__(self, events: queue.Queue[ProgressEvent] | None = None) -> None:
        self._events = events
        self._lock = threading.Lock()
        self._counters = ProgressSnapshot()
        self.scan_id = 0
        self.phase = ScanPhase.WALKING
        self.status: ScanStatus | None = None

    def add(self, **deltas: int) -> ProgressSnapshot:
        with self._lock:
            values = {
                name: getattr(self._counters, name) + deltas.get(name, 0)
                for name in ProgressSnapshot.__dataclass_fields__
            }
            self._counters = ProgressSnapshot(**values)
            return self._counters

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return self._counters

    def publish(self, phase: ScanPhase | None = None, status: ScanStatus | None = None) -> None:
        if phase is not None:
            self.phase = phase
        if status is not None:
            self.status = status
        if self._events is None:
            return
        event = ProgressEvent(self.scan_id, self.phase, self.snapshot(), self.status)
        try:
            self._events.put_nowait(event)
        except queue.Full:
            logger.debug("Progress queue full, dropping event for scan %d", self.scan_id)


@dataclass
class ScanResult:
    scan_id: int
    status: ScanStatus
    backup_type: str | None
    counters: ProgressSnapshot
    new_files: int = 0
    modified_files: int = 0
    stable_files: int = 0
    deleted_files: int = 0
    history_events: int = 0


@dataclass(frozen=True)
class _WalkedFile:
    path: Path
    path_rel: str
    name: str
    size_bytes: int
    modified_millis: int
    created_millis: int


def _created_millis(st: os.stat_result) -> int:
    birth = getattr(st, "st_birthtime", None)
    return millis_from_timestamp(birth if birth is not None else st.st_ctime)


def _relative_dir(path: Path, root: Path) -> str | None:
    """Return ``path`` relative to ``root`` in ``/`` form, or None if outside it."""
    try:
        return path.resolve().relative_to(root).as_posix()
    except ValueError:
        return None


def classify(
    walked_size: int,
    walked_mtime: int,
    previous: SnapshotEntry | None,
    store: BlobStore,
) -> FileStatus:
    """Classify a walked file against its last known history state.

    Unchanged size and mtime mean STABLE unless the previous state never
    got its content captured in this vault.
    """
    if previous is None:
        return FileStatus.NEW
    if previous.size_bytes != walked_size or previous.modified_millis != walked_mtime:
        return FileStatus.MODIFIED
    if previous.content_hash is None or not store.exists(previous.content_hash):
        return FileStatus.MODIFIED
    return FileStatus.STABLE


class ScanEngine:
    """Runs one scan of ``config.root`` against an open database and vault.

    Cancellation is cooperative: ``cancel()`` sets a flag that is checked
    between files and between batches. Files already handed to a hashing
    worker are allowed to finish.
    """

    def __init__(
        self,
        database: Database,
        store: BlobStore,
        config: ScanConfig,
        progress: ScanProgress | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.database = database
        self.store = store
        self.config = config
        self.progress = progress or ScanProgress()
        self.cancel_event = cancel_event or threading.Event()
        self.scan_id: int | None = None
        self._root = config.root
        self._matcher: ExcludeMatcher | None = None
        self._watermark = 0

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def _build_matcher(self, root: Path) -> ExcludeMatcher:
        always: list[str] = []
        for candidate in (
            self.config.dest / VAULT_DIRNAME,
            self.store.root,
            self.database.settings.data_dir,
        ):
            rel = _relative_dir(candidate, root)
            if rel and rel != ".":
                always.append(rel)
        return ExcludeMatcher.from_settings(
            self.config.exclude_globs, self.config.use_default_excludes, always
        )

    def begin(self) -> int:
        """Validate the configuration and create the RUNNING scan record.

        Raises ScanConfigError before any record is written. Idempotent.
        """
        if self.scan_id is not None:
            return self.scan_id
        self.config.validate()
        self._root = self.config.root.resolve()
        self._matcher = self._build_matcher(self._root)
        root_key = str(self._root)

        with self.database.session() as session:
            meta.recover_abandoned_scans(session, root_key)
            self._watermark = meta.last_fs_event_id(session, root_key)
            scan_id = meta.start_scan(session, root_key, str(self.config.dest.resolve()))
        self.scan_id = scan_id
        self.progress.scan_id = scan_id
        self.progress.publish(ScanPhase.WALKING, ScanStatus.RUNNING)
        return scan_id

    def run(self) -> ScanResult:
        """Execute the scan and return its result.

        Raises ScanConfigError before any record is written, and
        ScanFailedError after the scan has been finalized as ERROR.
        """
        scan_id = self.begin()
        root_key = str(self._root)
        with self.database.session() as session:
            try:
                result = self._run(session, scan_id, root_key)
            except Exception as exc:
                logger.error("Scan %d of %s failed", scan_id, root_key, exc_info=True)
                session.rollback()
                meta.fail_scan(session, scan_id, f"{type(exc).__name__}: {exc}")
                self.progress.publish(ScanPhase.FINISHED, ScanStatus.ERROR)
                raise ScanFailedError(scan_id, str(exc)) from exc

        self.progress.publish(ScanPhase.FINISHED, result.status)
        self.database.persist()
        return result

    def _run(self, session: Session, scan_id: int, root_key: str) -> ScanResult:
        previous = previous_state(session, root_key, scan_id)
        counts = {status: 0 for status in FileStatus}
        pending: list[meta.InventoryEntry] = []
        in_flight: dict[Future[str], str] = {}
        hashes: dict[str, str] = {}
        issues: list[tuple[str, str]] = []
        max_in_flight = self.config.worker_count * 4

        pool = ThreadPoolExecutor(
            max_workers=self.config.worker_count, thread_name_prefix=f"snapvault-scan-{scan_id}"
        )
        try:
            for walked in self._walk(self._root, self._matcher, issues):
                if self.cancelled:
                    break
                status = classify(
                    walked.size_bytes,
                    walked.modified_millis,
                    previous.get(walked.path_rel),
                    self.store,
                )
                counts[status] += 1
                seen = self.progress.add(files_seen=1)
                if status is not FileStatus.STABLE:
                    in_flight[pool.submit(self._store_file, walked)] = walked.path_rel
                    if len(in_flight) >= max_in_flight:
                        self._harvest(in_flight, hashes, issues, block=True)
                pending.append(
                    meta.InventoryEntry(
                        root_path=root_key,
                        path_rel=walked.path_rel,
                        name=walked.name,
                        size_bytes=walked.size_bytes,
                        modified_millis=walked.modified_millis,
                        created_millis=walked.created_millis,
                        status=status,
                    )
                )
                if len(pending) >= self.config.batch_size:
                    self._flush(session, scan_id, pending, issues)
                    if self.cancelled:
                        break
                if seen.files_seen % PROGRESS_EVERY == 0:
                    self.progress.publish()

            if self.cancelled:
                pool.shutdown(wait=True, cancel_futures=True)
            while in_flight:
                self._harvest(in_flight, hashes, issues, block=True)
        finally:
            pool.shutdown(wait=True, cancel_futures=True)

        self._flush(session, scan_id, pending, issues)

        if self.cancelled:
            meta.cancel_scan(session, scan_id)
            logger.info(
                "Scan %d canceled after %d files", scan_id, self.progress.snapshot().files_seen
            )
            return self._result(session, scan_id, ScanStatus.CANCELED, counts)

        self.progress.publish(ScanPhase.HISTORY)
        history_events = meta.snapshot_to_history(session, scan_id)
        meta.backfill_content_hashes(session, scan_id, hashes, self.config.batch_size)
        counts[FileStatus.DELETED] = meta.retire_stale(session, scan_id, root_key)
        self._reconcile_journal(session, root_key, self._watermark)
        meta.finish_scan(session, scan_id)

        snap = self.progress.snapshot()
        logger.info(
            "Scan %d done: %d files, %d new, %d modified, %d deleted, "
            "%d hashed (%d bytes), %d errors",
            scan_id,
            snap.files_seen,
            counts[FileStatus.NEW],
            counts[FileStatus.MODIFIED],
            counts[FileStatus.DELETED],
            snap.files_hashed,
            snap.bytes_hashed,
            snap.errors,
        )
        result = self._result(session, scan_id, ScanStatus.DONE, counts)
        result.history_events = history_events + counts[FileStatus.DELETED]
        return result

    def _result(
        self, session: Session, scan_id: int, status: ScanStatus, counts: dict[FileStatus, int]
    ) -> ScanResult:
        scan = meta.get_scan(session, scan_id)
        return ScanResult(
            scan_id=scan_id,
            status=status,
            backup_type=scan.backup_type if scan else None,
            counters=self.progress.snapshot(),
            new_files=counts[FileStatus.NEW],
            modified_files=counts[FileStatus.MODIFIED],
            stable_files=counts[FileStatus.STABLE],
            deleted_files=counts[FileStatus.DELETED],
        )

    def _walk(
        self, root: Path, matcher: ExcludeMatcher, issues: list[tuple[str, str]]
    ) -> Iterator[_WalkedFile]:
        def on_error(exc: OSError) -> None:
            path = exc.filename or str(root)
            logger.warning("Cannot read directory %s: %s", path, exc.strerror or exc)
            issues.append((str(path), f"unreadable directory: {exc.strerror or exc}"))
            self.progress.add(errors=1)

        for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
            if self.cancelled:
                return
            current = Path(dirpath)
            rel_dir = current.relative_to(root).as_posix()
            prefix = "" if rel_dir == "." else rel_dir + "/"

            kept = []
            for d in sorted(dirnames):
                if matcher.matches(prefix + d, is_dir=True) or (current / d).is_symlink():
                    self.progress.add(dirs_skipped=1)
                    continue
                kept.append(d)
            dirnames[:] = kept

            for filename in sorted(filenames):
                path_rel = prefix + filename
                if matcher.matches(path_rel):
                    continue
                full = current / filename
                try:
                    st = full.stat(follow_symlinks=False)
                except OSError as exc:
                    logger.warning("Cannot stat %s: %s", path_rel, exc)
                    issues.append((path_rel, f"stat failed: {exc}"))
                    self.progress.add(errors=1)
                    continue
                if not stat.S_ISREG(st.st_mode):
                    continue
                yield _WalkedFile(
                    path=full,
                    path_rel=path_rel,
                    name=filename,
                    size_bytes=st.st_size,
                    modified_millis=millis_from_timestamp(st.st_mtime),
                    created_millis=_created_millis(st),
                )

    def _store_file(self, walked: _WalkedFile) -> str:
        content_hash = self.store.put(walked.path)
        self.progress.add(files_hashed=1, bytes_hashed=walked.size_bytes)
        return content_hash

    def _harvest(
        self,
        in_flight: dict[Future[str], str],
        hashes: dict[str, str],
        issues: list[tuple[str, str]],
        *,
        block: bool,
    ) -> None:
        done, _ = wait(list(in_flight), timeout=None if block else 0, return_when=FIRST_COMPLETED)
        for future in done:
            path_rel = in_flight.pop(future)
            if future.cancelled():
                continue
            try:
                hashes[path_rel] = future.result()
            except OSError as exc:
                # Source-side failure: the vault wraps its own errors in BlobWriteError.
                logger.warning("Cannot read %s: %s", path_rel, exc)
                issues.append((path_rel, f"read failed: {exc}"))
                self.progress.add(errors=1)

    def _flush(
        self,
        session: Session,
        scan_id: int,
        pending: list[meta.InventoryEntry],
        issues: list[tuple[str, str]],
    ) -> None:
        if pending:
            batches = meta.upsert_inventory(session, scan_id, pending, self.config.batch_size)
            pending.clear()
            self.progress.add(batches_committed=batches)
            self.progress.publish()
        if issues:
            meta.record_issues(session, scan_id, issues)
            issues.clear()

    def _reconcile_journal(self, session: Session, root_key: str, watermark: int) -> None:
        key = f"{JOURNAL_WATERMARK_KEY}:{root_key}"
        reconciled = int(meta.get_setting(session, key) or 0)
        if watermark <= reconciled:
            return
        events = meta.list_fs_events(session, root_key, after_id=reconciled)
        events = [e for e in events if e.id <= watermark]
        overflowed = sum(1 for e in events if e.kind == FsEventKind.OVERFLOW)
        if overflowed:
            logger.warning(
                "Journal for %s overflowed %d time(s) since the last scan; rescanned in full",
                root_key,
                overflowed,
            )
        logger.debug("Reconciled %d journal events for %s", len(events), root_key)
        meta.put_setting(session, key, str(watermark))


def check_backup_password(session: Session, dest: Path, passphrase: str | None) -> None:
    """Remember the first password used for a vault and reject mismatches later.

    Raises ScanConfigError when the password does not match.
    """
    if not passphrase:
        return
    key = f"{VERIFIER_KEY}:{dest.resolve()}"
    verifier = meta.get_setting(session, key)
    if verifier is None:
        meta.put_setting(session, key, make_verifier(passphrase))
        logger.info("Recorded backup password verifier for %s", dest)
        return
    if not check_verifier(verifier, passphrase):
        raise ScanConfigError(f"Backup password does not match the one used for {dest}")


def run_scan(
    settings: Settings,
    root: Path,
    dest: Path,
    passphrase: str | None = None,
    exclude_globs: Iterable[str] = (),
    progress: ScanProgress | None = None,
    cancel_event: threading.Event | None = None,
) -> ScanResult:
    """Open the metadata store and vault, run one scan, and close everything.

    The database pool is sized to the worker count and closed exactly once.
    """
    config = ScanConfig.from_settings(settings, root, dest, passphrase, exclude_globs)
    config.validate()
    with Database(settings, pool_size=config.worker_count + 1) as database:
        with database.session() as session:
            check_backup_password(session, dest, config.passphrase)
        store = BlobStore.for_destination(dest, config.passphrase)
        engine = ScanEngine(database, store, config, progress, cancel_event)
        return engine.run()
