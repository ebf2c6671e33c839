"""Tests for the scan engine."""

from __future__ import annotations

import hashlib
import queue
import threading
from typing import TYPE_CHECKING

import pytest
from sqlalchemy import select

from snapvault.exceptions import BlobWriteError, ScanConfigError, ScanFailedError
from snapvault.models import FileHistory, FileStatus, ScanStatus
from snapvault.services import metadata_service as meta
from snapvault.services.blob_store import BlobStore
from snapvault.services.scan_service import (
    ProgressEvent,
    ScanConfig,
    ScanEngine,
    ScanPhase,
    ScanProgress,
    ScanResult,
    classify,
    run_scan,
)
from snapvault.services.snapshot_service import SnapshotEntry, snapshot_for_scan
from tests.conftest import write_tree

if TYPE_CHECKING:
    from pathlib import Path

    from sqlalchemy.orm import Session

    from snapvault.config import Settings
    from snapvault.database import Database

MTIME = 1_700_000_000.0


def _sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _engine(
    database: Database,
    root: Path,
    dest: Path,
    engine_cls: type[ScanEngine] = ScanEngine,
    **kwargs: object,
) -> ScanEngine:
    config = ScanConfig.from_settings(database.settings, root, dest)
    store = BlobStore.for_destination(dest)
    return engine_cls(database, store, config, **kwargs)  # type: ignore[arg-type]


def _scan(database: Database, root: Path, dest: Path) -> ScanResult:
    return _engine(database, root, dest).run()


def _history(session: Session, scan_id: int) -> dict[str, tuple[str, str | None]]:
    stmt = select(FileHistory.path_rel, FileHistory.status_event, FileHistory.content_hash).where(
        FileHistory.scan_id == scan_id
    )
    return {path: (status, digest) for path, status, digest in session.execute(stmt).all()}


class TestClassify:
    def _previous(self, size: int, mtime: int, digest: str | None) -> SnapshotEntry:
        return SnapshotEntry("a", 1, "NEW", size, mtime, 0, digest)

    def test_new_when_unknown(self, blob_store: BlobStore) -> None:
        assert classify(1, 1, None, blob_store) is FileStatus.NEW

    def test_modified_on_size_or_mtime_change(self, blob_store: BlobStore) -> None:
        digest = blob_store.put_bytes(b"x")
        assert classify(2, 1, self._previous(1, 1, digest), blob_store) is FileStatus.MODIFIED
        assert classify(1, 2, self._previous(1, 1, digest), blob_store) is FileStatus.MODIFIED

    def test_stable_when_unchanged_and_stored(self, blob_store: BlobStore) -> None:
        digest = blob_store.put_bytes(b"x")
        assert classify(1, 1, self._previous(1, 1, digest), blob_store) is FileStatus.STABLE

    def test_modified_when_content_never_captured(self, blob_store: BlobStore) -> None:
        assert classify(1, 1, self._previous(1, 1, None), blob_store) is FileStatus.MODIFIED
        missing = _sha(b"not in vault")
        assert classify(1, 1, self._previous(1, 1, missing), blob_store) is FileStatus.MODIFIED


class TestScanEngine:
    def test_identical_files_share_one_blob(
        self, database: Database, source_root: Path, backup_dest: Path
    ) -> None:
        write_tree(source_root, {"a.txt": "same", "sub/b.txt": "same"}, MTIME)
        result = _scan(database, source_root, backup_dest)

        assert result.status is ScanStatus.DONE
        assert result.backup_type == "FULL"
        assert result.new_files == 2
        store = BlobStore.for_destination(backup_dest)
        assert list(store.iter_hashes()) == [_sha(b"same")]
        with database.session() as session:
            assert _history(session, result.scan_id) == {
                "a.txt": ("NEW", _sha(b"same")),
                "sub/b.txt": ("NEW", _sha(b"same")),
            }
            scan = meta.get_scan(session, result.scan_id)
            assert scan.status == ScanStatus.DONE
            assert scan.total_usage == 8

    def test_rescan_without_changes_writes_no_history(
        self, database: Database, source_root: Path, backup_dest: Path
    ) -> None:
        write_tree(source_root, {f"f{i}.txt": f"content {i}" for i in range(7)}, MTIME)
        _scan(database, source_root, backup_dest)
        second = _scan(database, source_root, backup_dest)

        assert second.backup_type == "INCREMENTAL"
        assert second.stable_files == 7
        assert second.history_events == 0
        with database.session() as session:
            assert _history(session, second.scan_id) == {}
            statuses = {r.status for r in meta.inventory_for_root(session, str(source_root))}
            assert statuses == {FileStatus.STABLE.value}
            assert len(snapshot_for_scan(session, second.scan_id)) == 7

    def test_modified_and_deleted_files(
        self, database: Database, source_root: Path, backup_dest: Path
    ) -> None:
        write_tree(source_root, {"keep.txt": "k", "edit.txt": "v1", "drop.txt": "d"}, MTIME)
        first = _scan(database, source_root, backup_dest)
        write_tree(source_root, {"edit.txt": "version 2"}, MTIME + 60)
        (source_root / "drop.txt").unlink()
        second = _scan(database, source_root, backup_dest)

        assert (second.modified_files, second.deleted_files, second.stable_files) == (1, 1, 1)
        with database.session() as session:
            assert _history(session, second.scan_id) == {
                "edit.txt": ("MODIFIED", _sha(b"version 2")),
                "drop.txt": ("DELETED", None),
            }
            now = {e.path_rel for e in snapshot_for_scan(session, second.scan_id)}
            before = {e.path_rel for e in snapshot_for_scan(session, first.scan_id)}
            assert now == {"keep.txt", "edit.txt"}
            assert before == {"keep.txt", "edit.txt", "drop.txt"}
            assert [r.path_rel for r in meta.inventory_for_root(session, str(source_root))] == [
                "edit.txt",
                "keep.txt",
            ]

    def test_missing_blob_is_recaptured(
        self, database: Database, source_root: Path, backup_dest: Path
    ) -> None:
        write_tree(source_root, {"a.txt": "payload"}, MTIME)
        _scan(database, source_root, backup_dest)
        store = BlobStore.for_destination(backup_dest)
        store.blob_path(_sha(b"payload")).unlink()

        second = _scan(database, source_root, backup_dest)
        assert second.modified_files == 1
        assert store.exists(_sha(b"payload"))

    def test_excludes_and_nested_vault(self, database: Database, source_root: Path) -> None:
        write_tree(
            source_root,
            {"src/app.py": "x", ".git/HEAD": "ref", "build/out.o": "o", "notes.tmp": "t"},
            MTIME,
        )
        dest = source_root / "backup"
        config = ScanConfig.from_settings(
            database.settings, source_root, dest, exclude_globs=["build/**", "*.tmp"]
        )
        result = ScanEngine(database, BlobStore.for_destination(dest), config).run()

        with database.session() as session:
            paths = set(_history(session, result.scan_id))
        assert paths == {"src/app.py"}
        assert result.counters.dirs_skipped >= 2

    def test_symlinks_are_not_followed(
        self, database: Database, source_root: Path, backup_dest: Path, tmp_path: Path
    ) -> None:
        outside = tmp_path / "outside"
        write_tree(outside, {"secret.txt": "s"}, MTIME)
        write_tree(source_root, {"real.txt": "r"}, MTIME)
        (source_root / "link_dir").symlink_to(outside, target_is_directory=True)
        (source_root / "link_file").symlink_to(outside / "secret.txt")

        result = _scan(database, source_root, backup_dest)
        with database.session() as session:
            assert set(_history(session, result.scan_id)) == {"real.txt"}

    def test_progress_events_published(
        self, database: Database, source_root: Path, backup_dest: Path
    ) -> None:
        write_tree(source_root, {"a": "1", "b": "2"}, MTIME)
        events: queue.Queue[ProgressEvent] = queue.Queue()
        result = _engine(database, source_root, backup_dest, progress=ScanProgress(events)).run()

        published = []
        while not events.empty():
            published.append(events.get_nowait())
        assert published[0].status is ScanStatus.RUNNING
        assert published[-1].phase is ScanPhase.FINISHED
        assert published[-1].status is ScanStatus.DONE
        assert published[-1].counters.files_seen == 2
        assert published[-1].counters.files_hashed == 2
        assert {e.scan_id for e in published} == {result.scan_id}

    def test_abandoned_scan_recovered(
        self, database: Database, source_root: Path, backup_dest: Path
    ) -> None:
        write_tree(source_root, {"a": "1"}, MTIME)
        with database.session() as session:
            stuck = meta.start_scan(session, str(source_root.resolve()))
        _scan(database, source_root, backup_dest)
        with database.session() as session:
            assert meta.get_scan(session, stuck).status == ScanStatus.ERROR


class _CancelAfterFirstFile(ScanEngine):
    def _store_file(self, walked):  # type: ignore[no-untyped-def]
        digest = super()._store_file(walked)
        self.cancel()
        return digest


class _ExplodingVault(ScanEngine):
    def _store_file(self, walked):  # type: ignore[no-untyped-def]
        raise BlobWriteError("No space left on device")


class _UnreadableFile(ScanEngine):
    def _store_file(self, walked):  # type: ignore[no-untyped-def]
        if walked.path_rel == "locked.bin":
            raise PermissionError(13, "Permission denied", str(walked.path))
        return super()._store_file(walked)


class TestScanOutcomes:
    def test_cancel_before_start(
        self, database: Database, source_root: Path, backup_dest: Path
    ) -> None:
        write_tree(source_root, {"a": "1"}, MTIME)
        cancel = threading.Event()
        cancel.set()
        result = _engine(database, source_root, backup_dest, cancel_event=cancel).run()

        assert result.status is ScanStatus.CANCELED
        with database.session() as session:
            scan = meta.get_scan(session, result.scan_id)
            assert scan.status == ScanStatus.CANCELED
            assert scan.finished_at is not None
            assert _history(session, result.scan_id) == {}

    def test_cancel_mid_scan(
        self, database: Database, source_root: Path, backup_dest: Path
    ) -> None:
        write_tree(source_root, {f"f{i:02d}": f"body {i}" for i in range(20)}, MTIME)
        engine = _engine(database, source_root, backup_dest, _CancelAfterFirstFile)
        result = engine.run()

        assert result.status is ScanStatus.CANCELED
        store = BlobStore.for_destination(backup_dest)
        assert list((store.root / "tmp").iterdir()) == []
        for digest in store.iter_hashes():
            assert store.verify(digest)
        with database.session() as session:
            assert _history(session, result.scan_id) == {}

        follow_up = _scan(database, source_root, backup_dest)
        assert follow_up.status is ScanStatus.DONE
        assert follow_up.new_files == 20

    def test_vault_write_failure_finalizes_as_error(
        self, database: Database, source_root: Path, backup_dest: Path
    ) -> None:
        write_tree(source_root, {"a": "1"}, MTIME)
        engine = _engine(database, source_root, backup_dest, _ExplodingVault)
        with pytest.raises(ScanFailedError) as excinfo:
            engine.run()

        with database.session() as session:
            scan = meta.get_scan(session, excinfo.value.scan_id)
            assert scan.status == ScanStatus.ERROR
            assert "No space left" in scan.message

    def test_unreadable_file_is_an_issue_not_a_failure(
        self, database: Database, source_root: Path, backup_dest: Path
    ) -> None:
        write_tree(source_root, {"ok.txt": "fine", "locked.bin": "nope"}, MTIME)
        result = _engine(database, source_root, backup_dest, _UnreadableFile).run()

        assert result.status is ScanStatus.DONE
        assert result.counters.errors == 1
        with database.session() as session:
            issues = meta.list_scan_issues(session, result.scan_id)
            assert [i.path for i in issues] == ["locked.bin"]
            assert _history(session, result.scan_id)["locked.bin"] == ("NEW", None)

        # The next scan retries content capture for the file.
        second = _scan(database, source_root, backup_dest)
        assert second.modified_files == 1
        with database.session() as session:
            assert _history(session, second.scan_id) == {
                "locked.bin": ("MODIFIED", _sha(b"nope"))
            }

    def test_missing_root_creates_no_scan(
        self, database: Database, tmp_path: Path, backup_dest: Path
    ) -> None:
        with pytest.raises(ScanConfigError):
            _scan(database, tmp_path / "does-not-exist", backup_dest)
        with database.session() as session:
            assert meta.list_scans(session) == []

    def test_invalid_exclude_creates_no_scan(
        self, database: Database, source_root: Path, backup_dest: Path
    ) -> None:
        config = ScanConfig.from_settings(
            database.settings, source_root, backup_dest, exclude_globs=["oops\\"]
        )
        engine = ScanEngine(database, BlobStore.for_destination(backup_dest), config)
        with pytest.raises(ScanConfigError):
            engine.run()
        with database.session() as session:
            assert meta.list_scans(session) == []


class TestRunScan:
    def test_run_scan_end_to_end(
        self, test_settings: Settings, source_root: Path, backup_dest: Path
    ) -> None:
        write_tree(source_root, {"a.txt": "hello"}, MTIME)
        result = run_scan(test_settings, source_root, backup_dest)
        assert result.status is ScanStatus.DONE
        assert test_settings.runtime_db_path.exists()

    def test_encrypted_blobs_with_password(
        self, test_settings: Settings, source_root: Path, backup_dest: Path, tmp_path: Path
    ) -> None:
        write_tree(source_root, {"a.txt": "classified"}, MTIME)
        run_scan(test_settings, source_root, backup_dest, passphrase="correct horse")
        store = BlobStore.for_destination(backup_dest, "correct horse")
        out = tmp_path / "out.txt"
        store.get(_sha(b"classified"), out)
        assert out.read_bytes() == b"classified"
        assert b"classified" not in store.blob_path(_sha(b"classified")).read_bytes()

    def test_password_mismatch_rejected(
        self, test_settings: Settings, source_root: Path, backup_dest: Path
    ) -> None:
        write_tree(source_root, {"a.txt": "x"}, MTIME)
        run_scan(test_settings, source_root, backup_dest, passphrase="first-password")
        with pytest.raises(ScanConfigError, match="password"):
            run_scan(test_settings, source_root, backup_dest, passphrase="second-password")

    def test_worker_count_validated(
        self, test_settings: Settings, source_root: Path, backup_dest: Path
    ) -> None:
        config = ScanConfig(root=source_root, dest=backup_dest, worker_count=0)
        with pytest.raises(ScanConfigError):
            config.validate()
