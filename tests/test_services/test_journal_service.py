"""Tests for the real-time change journal."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

import pytest
from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirModifiedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from snapvault.models import FsEventKind
from snapvault.services import metadata_service as meta
from snapvault.services.exclude_service import ExcludeMatcher
from snapvault.services.journal_service import WATCHDOG_BACKEND, JournalIngestService
from tests.conftest import write_tree

if TYPE_CHECKING:
    from pathlib import Path

    from snapvault.config import Settings
    from snapvault.database import Database


def _events(
    database: Database, service: JournalIngestService
) -> list[tuple[str, str | None, str | None]]:
    with database.session() as session:
        rows = meta.list_fs_events(session, service.root_key)
        return [(e.kind, e.path_rel, e.old_path_rel) for e in rows]


@pytest.fixture
def service(database: Database, source_root: Path) -> JournalIngestService:
    return JournalIngestService(
        database,
        source_root,
        matcher=ExcludeMatcher(["**/*.swp"], ignore_case=False),
    )


class TestEventTranslation:
    def test_file_events_recorded_in_order(
        self, database: Database, service: JournalIngestService, source_root: Path
    ) -> None:
        handler = service.handler
        a = str(source_root / "a.txt")
        b = str(source_root / "b.txt")
        handler.on_created(FileCreatedEvent(a))
        handler.on_modified(FileModifiedEvent(a))
        handler.on_moved(FileMovedEvent(a, b))
        handler.on_deleted(FileDeletedEvent(b))

        assert service.drain() == 4
        assert _events(database, service) == [
            ("CREATE", "a.txt", None),
            ("MODIFY", "a.txt", None),
            ("MOVE", "b.txt", "a.txt"),
            ("DELETE", "b.txt", None),
        ]
        assert service.events_written == 4

    def test_directory_modifications_ignored(
        self, database: Database, service: JournalIngestService, source_root: Path
    ) -> None:
        service.handler.on_modified(DirModifiedEvent(str(source_root / "sub")))
        assert service.drain() == 0

    def test_outside_root_and_excluded_paths_ignored(
        self,
        database: Database,
        service: JournalIngestService,
        source_root: Path,
        tmp_path: Path,
    ) -> None:
        handler = service.handler
        handler.on_created(FileCreatedEvent(str(tmp_path / "elsewhere.txt")))
        handler.on_created(FileCreatedEvent(str(source_root)))
        handler.on_created(FileCreatedEvent(str(source_root / ".notes.txt.swp")))
        handler.on_created(FileCreatedEvent(str(source_root / "kept.txt")))
        service.drain()
        assert _events(database, service) == [("CREATE", "kept.txt", None)]

    def test_new_directory_registered_with_catch_up(
        self, database: Database, service: JournalIngestService, source_root: Path
    ) -> None:
        write_tree(source_root, {"new/inner/deep.txt": "d", "new/top.txt": "t"})
        service.handler.on_created(DirCreatedEvent(str(source_root / "new")))
        service.drain()

        assert {"new", "new/inner"} <= set(service.directories)
        recorded = _events(database, service)
        assert recorded[0] == ("CREATE", "new", None)
        assert set(recorded[1:]) == {
            ("CREATE", "new/inner", None),
            ("CREATE", "new/top.txt", None),
            ("CREATE", "new/inner/deep.txt", None),
        }

    def test_directory_delete_and_move_update_registry(
        self, service: JournalIngestService, source_root: Path
    ) -> None:
        write_tree(source_root, {"old/a/x.txt": "x", "gone/y.txt": "y"})
        service.register_directory(source_root, catch_up=False)
        assert {"old", "old/a", "gone"} <= set(service.directories)

        (source_root / "old").rename(source_root / "renamed")
        service.handler.on_moved(
            DirMovedEvent(str(source_root / "old"), str(source_root / "renamed"))
        )
        service.handler.on_deleted(DirDeletedEvent(str(source_root / "gone")))

        assert "old" not in service.directories
        assert "old/a" not in service.directories
        assert "gone" not in service.directories
        assert {"renamed", "renamed/a"} <= set(service.directories)


class TestBackpressure:
    def test_full_queue_drops_oldest_and_marks_overflow(
        self, database: Database, source_root: Path
    ) -> None:
        service = JournalIngestService(database, source_root, queue_size=3)
        for i in range(5):
            service.emit(FsEventKind.CREATE, source_root / f"f{i}")

        assert service.events_dropped == 2
        assert service.drain() == 3
        assert _events(database, service) == [
            ("OVERFLOW", None, None),
            ("CREATE", "f2", None),
            ("CREATE", "f3", None),
            ("CREATE", "f4", None),
        ]

    def test_burst_far_beyond_queue_size_still_records_overflow(
        self, database: Database, source_root: Path
    ) -> None:
        service = JournalIngestService(database, source_root, queue_size=3)
        for i in range(50):
            service.emit(FsEventKind.CREATE, source_root / f"f{i}")

        assert service.events_dropped == 47
        service.drain()
        service.drain()
        assert _events(database, service) == [
            ("OVERFLOW", None, None),
            ("CREATE", "f47", None),
            ("CREATE", "f48", None),
            ("CREATE", "f49", None),
        ]

    def test_overflow_written_even_when_queue_is_empty(
        self, database: Database, source_root: Path
    ) -> None:
        service = JournalIngestService(database, source_root, queue_size=1)
        service.emit(FsEventKind.CREATE, source_root / "a")
        service.emit(FsEventKind.CREATE, source_root / "b")
        service.drain()
        service.emit(FsEventKind.CREATE, source_root / "c")
        service.emit(FsEventKind.CREATE, source_root / "d")
        service._queue.get_nowait()

        assert service.drain() == 0
        kinds = [kind for kind, _, _ in _events(database, service)]
        assert kinds == ["OVERFLOW", "CREATE", "OVERFLOW"]

    def test_overflow_marked_again_after_recovery(
        self, database: Database, source_root: Path
    ) -> None:
        service = JournalIngestService(database, source_root, queue_size=2)
        for i in range(3):
            service.emit(FsEventKind.CREATE, source_root / f"a{i}")
        service.drain()
        for i in range(3):
            service.emit(FsEventKind.CREATE, source_root / f"b{i}")
        service.drain()
        kinds = [kind for kind, _, _ in _events(database, service)]
        assert kinds.count("OVERFLOW") == 2


class TestLifecycle:
    def test_start_records_cursor_and_stop_releases_watches(
        self, database: Database, service: JournalIngestService, source_root: Path
    ) -> None:
        write_tree(source_root, {"sub/a.txt": "a"})
        service.start()
        try:
            assert service.running
            assert {"", "sub"} <= set(service.directories)
            with database.session() as session:
                cursor = meta.get_journal_cursor(session, service.root_key)
                assert cursor is not None
                assert cursor.backend == WATCHDOG_BACKEND
        finally:
            service.stop()
        assert not service.running
        assert service.directories == {}
        service.stop()

    def test_live_changes_reach_the_journal(
        self, database: Database, test_settings: Settings, source_root: Path
    ) -> None:
        with JournalIngestService.from_settings(test_settings, database, source_root) as svc:
            (source_root / "live.txt").write_text("hello")
            deadline = time.monotonic() + 10
            while time.monotonic() < deadline:
                if ("CREATE", "live.txt", None) in _events(database, svc):
                    break
                time.sleep(0.1)
        assert ("CREATE", "live.txt", None) in _events(database, svc)

    def test_missing_root_rejected(self, database: Database, tmp_path: Path) -> None:
        service = JournalIngestService(database, tmp_path / "nope")
        with pytest.raises(FileNotFoundError):
            service.start()
