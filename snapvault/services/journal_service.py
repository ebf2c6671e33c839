"""Real-time change journal: watchdog notifications to ``fs_events`` rows.

One watchdog observer thread delivers notifications for the whole root.
Translated events go through a bounded queue to a single writer thread
that inserts them in batches, so the order of rows matches the order of
notifications. When the queue is full the oldest pending event is dropped
and the service remembers the overflow outside the queue; the writer turns
it into an OVERFLOW row ahead of its next batch. The journal is then
incomplete and the next full scan is what restores consistency.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from snapvault.models import FsEventKind
from snapvault.services import metadata_service as meta
from snapvault.services.datetime_service import now_iso

if TYPE_CHECKING:
    from snapvault.config import Settings
    from snapvault.database import Database
    from snapvault.services.exclude_service import ExcludeMatcher

logger = logging.getLogger(__name__)

WATCHDOG_BACKEND = "WATCHDOG"
STOP_TIMEOUT_SECONDS = 5.0

_STOP = object()


class JournalEventHandler(FileSystemEventHandler):
    """Translate watchdog callbacks into journal records."""

    def __init__(self, service: JournalIngestService) -> None:
        super().__init__()
        self.service = service

    def on_created(self, event: FileSystemEvent) -> None:
        path = Path(os.fsdecode(event.src_path))
        self.service.emit(FsEventKind.CREATE, path, is_dir=event.is_directory)
        if isinstance(event, DirCreatedEvent):
            self.service.register_directory(path, catch_up=True)

    def on_modified(self, event: FileSystemEvent) -> None:
        # Directory mtime changes duplicate the child events.
        if not event.is_directory:
            self.service.emit(FsEventKind.MODIFY, Path(os.fsdecode(event.src_path)))

    def on_deleted(self, event: FileSystemEvent) -> None:
        path = Path(os.fsdecode(event.src_path))
        self.service.emit(FsEventKind.DELETE, path, is_dir=event.is_directory)
        if isinstance(event, DirDeletedEvent):
            self.service.unregister_directory(path)

    def on_moved(self, event: FileSystemEvent) -> None:
        src = Path(os.fsdecode(event.src_path))
        dest = Path(os.fsdecode(event.dest_path))
        self.service.emit(FsEventKind.MOVE, dest, old_path=src, is_dir=event.is_directory)
        if isinstance(event, DirMovedEvent):
            self.service.unregister_directory(src)
            self.service.register_directory(dest, catch_up=False)


class JournalIngestService:
    """Watches one root and appends its changes to the metadata store.

    ``directories`` maps each registered directory (relative, ``""`` for the
    root) to its absolute path. A directory created while running is
    registered, and its existing entries reported, before the handler
    returns to the observer, so nothing inside it goes unreported.
    """

    def __init__(
        self,
        database: Database,
        root: Path,
        *,
        queue_size: int = 200_000,
        batch_size: int = 800,
        flush_seconds: float = 0.25,
        matcher: ExcludeMatcher | None = None,
    ) -> None:
        self.database = database
        self.root = root.resolve()
        self.root_key = str(self.root)
        self.batch_size = batch_size
        self.flush_seconds = flush_seconds
        self.matcher = matcher
        self.directories: dict[str, Path] = {}
        self.handler = JournalEventHandler(self)
        self.events_written = 0
        self.events_dropped = 0

        self._queue: queue.Queue[object] = queue.Queue(maxsize=queue_size)
        self._enqueue_lock = threading.Lock()
        self._overflow_at: str | None = None
        self._observer: Observer | None = None
        self._writer: threading.Thread | None = None
        self._running = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        database: Database,
        root: Path,
        matcher: ExcludeMatcher | None = None,
    ) -> JournalIngestService:
        return cls(
            database,
            root,
            queue_size=settings.journal_queue_size,
            batch_size=settings.journal_batch_size,
            flush_seconds=settings.journal_flush_seconds,
            matcher=matcher,
        )

    @property
    def running(self) -> bool:
        return self._running

    # ── Lifecycle ────────────────────────────────────────

    def start(self) -> None:
        if self._running:
            return
        if not self.root.is_dir():
            raise FileNotFoundError(f"Watch root is not a directory: {self.root}")
        self.register_directory(self.root, catch_up=False)
        with self.database.session() as session:
            meta.upsert_journal_cursor(session, self.root_key, WATCHDOG_BACKEND)

        self._writer = threading.Thread(
            target=self._write_loop, name="snapvault-journal-writer", daemon=True
        )
        self._writer.start()

        observer = Observer()
        observer.schedule(self.handler, self.root_key, recursive=True)
        observer.daemon = True
        observer.start()
        self._observer = observer
        self._running = True
        logger.info(
            "Journal watching %s (%d directories registered)", self.root_key, len(self.directories)
        )

    def stop(self) -> None:
        """Stop observing, flush queued events and release every watch."""
        if not self._running:
            return
        self._running = False
        observer = self._observer
        self._observer = None
        if observer is not None:
            observer.unschedule_all()
            observer.stop()
            observer.join(timeout=STOP_TIMEOUT_SECONDS)
            if observer.is_alive():
                logger.warning("Journal observer for %s did not stop in time", self.root_key)

        with self._enqueue_lock:
            self._force_put(_STOP)
        if self._writer is not None:
            self._writer.join(timeout=STOP_TIMEOUT_SECONDS)
            if self._writer.is_alive():
                logger.warning("Journal writer for %s did not stop in time", self.root_key)
            self._writer = None
        self.directories.clear()
        logger.info(
            "Journal stopped for %s: %d events written, %d dropped",
            self.root_key,
            self.events_written,
            self.events_dropped,
        )

    def __enter__(self) -> JournalIngestService:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    # ── Registration ─────────────────────────────────────

    def _relative(self, path: Path) -> str | None:
        try:
            rel = path.relative_to(self.root).as_posix()
        except ValueError:
            return None
        return "" if rel == "." else rel

    def _excluded(self, rel: str, *, is_dir: bool = False) -> bool:
        return self.matcher is not None and bool(rel) and self.matcher.matches(rel, is_dir=is_dir)

    def register_directory(self, directory: Path, *, catch_up: bool) -> int:
        """Register ``directory`` and every subdirectory below it.

        With ``catch_up``, a CREATE is emitted for each entry already present
        below the directory (entries created before registration completed).
        Returns the number of directories registered.
        """
        rel = self._relative(directory)
        if rel is None or self._excluded(rel, is_dir=True):
            return 0
        registered = 0
        for dirpath, dirnames, filenames in os.walk(directory):
            current = Path(dirpath)
            current_rel = self._relative(current)
            if current_rel is None:
                continue
            dirnames[:] = [
                d
                for d in dirnames
                if not self._excluded(f"{current_rel}/{d}".lstrip("/"), is_dir=True)
            ]
            self.directories[current_rel] = current
            registered += 1
            if catch_up:
                for name in sorted(dirnames):
                    self.emit(FsEventKind.CREATE, current / name, is_dir=True)
                for name in sorted(filenames):
                    self.emit(FsEventKind.CREATE, current / name)
        logger.debug("Registered %d directories under %s", registered, directory)
        return registered

    def unregister_directory(self, directory: Path) -> None:
        rel = self._relative(directory)
        if rel is None:
            return
        prefix = rel + "/"
        for key in [k for k in self.directories if k == rel or k.startswith(prefix)]:
            del self.directories[key]

    # ── Queue ────────────────────────────────────────────

    def emit(
        self,
        kind: FsEventKind,
        path: Path | None,
        old_path: Path | None = None,
        *,
        is_dir: bool = False,
    ) -> None:
        """Queue one event. Paths outside the root or excluded are ignored."""
        rel = self._relative(path) if path is not None else None
        if path is not None and (not rel or self._excluded(rel, is_dir=is_dir)):
            return
        old_rel = self._relative(old_path) if old_path is not None else None
        record = meta.FsEventRecord(
            root_path=self.root_key,
            kind=kind.value,
            path_rel=rel,
            old_path_rel=old_rel or None,
            event_time=now_iso(),
        )
        with self._enqueue_lock:
            try:
                self._queue.put_nowait(record)
                return
            except queue.Full:
                pass
            self._force_put(record)

    def _force_put(self, item: object) -> None:
        """Put ``item``, dropping the oldest queued events until it fits.

        Called with ``_enqueue_lock`` held or after the observer has stopped.
        """
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    continue
                self.events_dropped += 1
                self._mark_overflow()

    def _mark_overflow(self) -> None:
        if self._overflow_at is None:
            self._overflow_at = now_iso()
            logger.warning("Journal queue for %s full, dropping oldest events", self.root_key)

    def _take_overflow(self) -> meta.FsEventRecord | None:
        with self._enqueue_lock:
            overflow_at, self._overflow_at = self._overflow_at, None
        if overflow_at is None:
            return None
        return meta.FsEventRecord(
            self.root_key, FsEventKind.OVERFLOW.value, None, None, overflow_at
        )

    # ── Writer ───────────────────────────────────────────

    def _write(self, batch: list[meta.FsEventRecord]) -> None:
        overflow = self._take_overflow()
        if overflow is not None:
            batch.insert(0, overflow)
        if not batch:
            return
        try:
            with self.database.session() as session:
                self.events_written += meta.append_fs_events(session, batch)
        except Exception:
            logger.exception(
                "Failed to write %d journal events for %s", len(batch), self.root_key
            )
        batch.clear()

    def drain(self) -> int:
        """Write everything queued right now from the calling thread."""
        batch: list[meta.FsEventRecord] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is _STOP:
                continue
            batch.append(item)  # type: ignore[arg-type]
        count = len(batch)
        chunks = [batch[i : i + self.batch_size] for i in range(0, count, self.batch_size)]
        for chunk in chunks or [[]]:
            self._write(chunk)
        return count

    def _write_loop(self) -> None:
        batch: list[meta.FsEventRecord] = []
        deadline = time.monotonic() + self.flush_seconds
        while True:
            timeout = max(deadline - time.monotonic(), 0.0)
            try:
                item = self._queue.get(timeout=timeout)
            except queue.Empty:
                item = None
            if item is _STOP:
                self._write(batch)
                return
            if item is not None:
                batch.append(item)  # type: ignore[arg-type]
            if len(batch) >= self.batch_size or time.monotonic() >= deadline:
                self._write(batch)
                deadline = time.monotonic() + self.flush_seconds
