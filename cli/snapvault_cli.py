"""SnapVault command line: run scans, inspect history, restore and watch."""

from __future__ import annotations

import argparse
import logging
import queue
import sys
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import ValidationError

from snapvault.config import Settings
from snapvault.database import Database
from snapvault.exceptions import (
    ScanConfigError,
    ScanFailedError,
    SnapVaultError,
    StoreLayoutError,
)
from snapvault.models import ScanStatus
from snapvault.services import metadata_service as meta
from snapvault.services.blob_store import BlobStore
from snapvault.services.exclude_service import ExcludeMatcher
from snapvault.services.journal_service import JournalIngestService
from snapvault.services.restore_service import restore_changed, restore_snapshot
from snapvault.services.scan_service import ProgressEvent, ScanProgress, ScanResult, run_scan
from snapvault.services.snapshot_service import path_history, snapshot_for_scan

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130

POLL_SECONDS = 0.5


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        stream=sys.stderr,
        force=True,
    )
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("watchdog").setLevel(logging.WARNING)


def _load_settings(args: argparse.Namespace) -> Settings:
    overrides: dict[str, object] = {}
    if args.data_dir:
        overrides["data_dir"] = Path(args.data_dir)
    if getattr(args, "workers", None) is not None:
        overrides["worker_count"] = args.workers
    if getattr(args, "batch_size", None) is not None:
        overrides["db_batch_size"] = args.batch_size
    settings = Settings(**overrides)  # type: ignore[arg-type]
    settings.validate_runtime_security()
    return settings


def _print_event(event: ProgressEvent) -> None:
    c = event.counters
    print(
        f"  [{event.phase}] {c.files_seen} files seen, {c.files_hashed} stored "
        f"({c.bytes_hashed} bytes), {c.errors} errors"
    )


def _drain_progress(events: queue.Queue[ProgressEvent], timeout: float) -> None:
    try:
        _print_event(events.get(timeout=timeout))
    except queue.Empty:
        return
    while True:
        try:
            _print_event(events.get_nowait())
        except queue.Empty:
            return


# ── Commands ─────────────────────────────────────────


def cmd_scan(args: argparse.Namespace, settings: Settings) -> int:
    """Run one scan on a worker thread; Ctrl+C requests cancellation."""
    events: queue.Queue[ProgressEvent] = queue.Queue(maxsize=1000)
    cancel = threading.Event()
    outcome: dict[str, object] = {}

    def target() -> None:
        try:
            outcome["result"] = run_scan(
                settings,
                Path(args.root),
                Path(args.dest),
                args.password,
                args.exclude,
                ScanProgress(events),
                cancel,
            )
        except Exception as exc:
            outcome["error"] = exc

    thread = threading.Thread(target=target, name="snapvault-cli-scan")
    thread.start()
    while thread.is_alive():
        try:
            _drain_progress(events, POLL_SECONDS)
        except KeyboardInterrupt:
            if not cancel.is_set():
                print("Cancelling scan, waiting for in-flight files...")
                cancel.set()
    thread.join()
    _drain_progress(events, 0)

    error = outcome.get("error")
    if isinstance(error, Exception):
        raise error
    result = outcome["result"]
    assert isinstance(result, ScanResult)

    print(f"Scan {result.scan_id} {result.status} ({result.backup_type})")
    print(f"  New:      {result.new_files}")
    print(f"  Modified: {result.modified_files}")
    print(f"  Stable:   {result.stable_files}")
    print(f"  Deleted:  {result.deleted_files}")
    print(f"  Errors:   {result.counters.errors}")
    return EXIT_CANCELLED if result.status == ScanStatus.CANCELED else EXIT_OK


def cmd_history(args: argparse.Namespace, settings: Settings) -> int:
    with Database(settings) as database, database.session() as session:
        scans = meta.list_scans(session, args.limit, args.root)
        if not scans:
            print("No scans recorded.")
            return EXIT_OK
        print(f"{'ID':>6}  {'STATUS':<9} {'TYPE':<11} {'STARTED':<26} {'USAGE':>14}  ROOT")
        for scan in scans:
            usage = "" if scan.total_usage is None else str(scan.total_usage)
            print(
                f"{scan.scan_id:>6}  {scan.status:<9} {scan.backup_type or '':<11} "
                f"{scan.started_at:<26} {usage:>14}  {scan.root_path}"
            )
            if scan.message:
                print(f"        {scan.message}")
    return EXIT_OK


def cmd_snapshot(args: argparse.Namespace, settings: Settings) -> int:
    with Database(settings) as database, database.session() as session:
        try:
            entries = snapshot_for_scan(session, args.scan_id)
        except LookupError as exc:
            print(f"Error: {exc}")
            return EXIT_USAGE
    for entry in entries:
        digest = entry.content_hash[:12] if entry.content_hash else "-"
        print(f"{entry.status_event:<9} {entry.size_bytes:>12}  {digest:<12}  {entry.path_rel}")
    print(f"{len(entries)} file(s) as of scan {args.scan_id}")
    return EXIT_OK


def cmd_file_history(args: argparse.Namespace, settings: Settings) -> int:
    root = str(Path(args.root).resolve()) if args.root else None
    with Database(settings) as database, database.session() as session:
        rows = path_history(session, args.path, root)
    if not rows:
        print(f"No history for {args.path}")
        return EXIT_OK
    for row in rows:
        digest = row.content_hash[:12] if row.content_hash else "-"
        print(
            f"scan {row.scan_id:>5}  {row.status_event:<9} {row.size_bytes:>12}  "
            f"{digest:<12}  {row.started_at or ''}"
        )
    return EXIT_OK


def cmd_restore(args: argparse.Namespace, settings: Settings) -> int:
    dest = Path(args.dest)
    try:
        store = BlobStore.for_destination(dest, args.password, create=False)
    except StoreLayoutError:
        print(f"Error: no vault under {dest}")
        return EXIT_USAGE
    target = Path(args.to)
    with Database(settings) as database:
        if args.changed_only:
            result = restore_changed(database, store, args.scan_id, target)
        else:
            result = restore_snapshot(
                database, store, args.scan_id, target, args.path, args.prefix
            )
    print(
        f"Restored {result.files_restored} file(s), {result.bytes_restored} bytes "
        f"from scan {result.scan_id} into {result.destination}"
    )
    for skipped in result.skipped:
        print(f"  Skipped (no content captured): {skipped}")
    return EXIT_OK


def cmd_watch(args: argparse.Namespace, settings: Settings) -> int:
    root = Path(args.root)
    if not root.is_dir():
        raise ScanConfigError(f"Watch root is not a directory: {root}")
    matcher = ExcludeMatcher.from_settings(settings.exclude_globs, settings.use_default_excludes)
    with Database(settings) as database:
        service = JournalIngestService.from_settings(settings, database, root, matcher)
        with service:
            print(f"Watching {service.root_key} (Ctrl+C to stop)")
            try:
                while True:
                    time.sleep(POLL_SECONDS)
            except KeyboardInterrupt:
                print("Stopping...")
        print(f"{service.events_written} event(s) recorded, {service.events_dropped} dropped")
    return EXIT_OK


def cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    import uvicorn

    from snapvault.main import create_app

    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="snapvault",
        description="Incremental deduplicating file backup",
    )
    parser.add_argument("--data-dir", help="Metadata directory (default: SNAPVAULT_DATA_DIR)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command")

    scan = subparsers.add_parser("scan", help="Back up a directory tree")
    scan.add_argument("--root", required=True, help="Directory to back up")
    scan.add_argument("--dest", required=True, help="Backup destination (holds the vault)")
    scan.add_argument("--password", help="Encrypt new blobs with this password")
    scan.add_argument(
        "--exclude", action="append", default=[], metavar="GLOB", help="Extra exclude glob"
    )
    scan.add_argument("--workers", type=int, help="Hashing worker threads")
    scan.add_argument("--batch-size", type=int, help="Inventory rows per transaction")

    history = subparsers.add_parser("history", help="List prior scans")
    history.add_argument("--limit", type=int, default=20)
    history.add_argument("--root", help="Only scans of this root")

    snapshot = subparsers.add_parser("snapshot", help="Show the tree as of a scan")
    snapshot.add_argument("--scan-id", type=int, required=True)

    file_history = subparsers.add_parser("file-history", help="Show one path's history")
    file_history.add_argument("path", help="Path relative to the scan root")
    file_history.add_argument("--root", help="Scan root the path belongs to")

    restore = subparsers.add_parser("restore", help="Restore files from a scan")
    restore.add_argument("--scan-id", type=int, required=True)
    restore.add_argument("--dest", required=True, help="Backup destination holding the vault")
    restore.add_argument("--to", required=True, help="Directory to restore into")
    restore.add_argument("--password", help="Password the blobs were encrypted with")
    restore.add_argument("--path", action="append", default=[], help="Restore only this file")
    restore.add_argument(
        "--prefix", action="append", default=[], help="Restore only this directory"
    )
    restore.add_argument(
        "--changed-only", action="store_true", help="Only files the scan found new or modified"
    )

    watch = subparsers.add_parser("watch", help="Journal live changes under a root")
    watch.add_argument("--root", required=True)

    subparsers.add_parser("serve", help="Run the local agent API")
    return parser


COMMANDS = {
    "scan": cmd_scan,
    "history": cmd_history,
    "snapshot": cmd_snapshot,
    "file-history": cmd_file_history,
    "restore": cmd_restore,
    "watch": cmd_watch,
    "serve": cmd_serve,
}


def run(argv: Sequence[str] | None = None) -> int:
    """Parse ``argv`` and run one command. Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return EXIT_USAGE
    if getattr(args, "limit", 1) < 1:
        print("Error: --limit must be at least 1")
        return EXIT_USAGE

    _configure_logging(args.verbose)
    try:
        settings = _load_settings(args)
        return COMMANDS[args.command](args, settings)
    except (ScanConfigError, ValidationError, ValueError) as exc:
        print(f"Error: {exc}")
        return EXIT_USAGE
    except ScanFailedError as exc:
        print(f"Error: {exc}")
        return EXIT_FAILURE
    except (SnapVaultError, OSError) as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"Error: {exc}")
        return EXIT_FAILURE


def main() -> None:
    """CLI entry point."""
    sys.exit(run())


if __name__ == "__main__":
    main()
