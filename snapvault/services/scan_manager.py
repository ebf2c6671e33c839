"""Background scan runs for the local agent API."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from snapvault.exceptions import ScanFailedError, ScanStateError
from snapvault.services.blob_store import BlobStore
from snapvault.services.scan_service import (
    ScanConfig,
    ScanEngine,
    ScanProgress,
    ScanResult,
    check_backup_password,
)

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from snapvault.config import Settings
    from snapvault.database import Database

logger = logging.getLogger(__name__)

JOIN_TIMEOUT_SECONDS = 30.0
MAX_FINISHED_RUNS = 100


@dataclass
class ScanRun:
    engine: ScanEngine
    thread: threading.Thread
    result: ScanResult | None = None
    error: str | None = None
    done: threading.Event = field(default_factory=threading.Event)

    @property
    def progress(self) -> ScanProgress:
        return self.engine.progress


class ScanManager:
    """Starts scans on worker threads and tracks their progress and cancellation.

    All runs share the application's ``Database``; one scan per root may be
    active at a time.
    """

    def __init__(
        self,
        database: Database,
        settings: Settings,
        max_finished_runs: int = MAX_FINISHED_RUNS,
    ) -> None:
        self.database = database
        self.settings = settings
        self.max_finished_runs = max_finished_runs
        self._runs: dict[int, ScanRun] = {}
        self._lock = threading.Lock()

    def start(
        self,
        root: Path,
        dest: Path,
        passphrase: str | None = None,
        exclude_globs: Iterable[str] = (),
    ) -> int:
        """Create the scan record and run the scan in the background. Returns its id."""
        config = ScanConfig.from_settings(self.settings, root, dest, passphrase, exclude_globs)
        config.validate()
        root_key = str(root.resolve())
        with self._lock:
            for run in self._runs.values():
                if not run.done.is_set() and str(run.engine.config.root.resolve()) == root_key:
                    raise ScanStateError(f"A scan of {root_key} is already running")

            with self.database.session() as session:
                check_backup_password(session, dest, config.passphrase)
            store = BlobStore.for_destination(dest, config.passphrase)
            engine = ScanEngine(self.database, store, config, ScanProgress())
            scan_id = engine.begin()
            thread = threading.Thread(
                target=self._execute,
                args=(scan_id,),
                name=f"snapvault-scan-{scan_id}",
                daemon=True,
            )
            self._runs[scan_id] = ScanRun(engine=engine, thread=thread)
            self._prune_finished()
        thread.start()
        return scan_id

    def _execute(self, scan_id: int) -> None:
        run = self._runs[scan_id]
        try:
            run.result = run.engine.run()
        except ScanFailedError as exc:
            run.error = str(exc)
        except Exception as exc:
            logger.error("Background scan %d crashed", scan_id, exc_info=True)
            run.error = f"{type(exc).__name__}: {exc}"
        finally:
            run.done.set()

    def _prune_finished(self) -> None:
        # Caller holds _lock. Runs are kept in start order, oldest evicted first.
        finished = [scan_id for scan_id, run in self._runs.items() if run.done.is_set()]
        for scan_id in finished[: max(len(finished) - self.max_finished_runs, 0)]:
            del self._runs[scan_id]

    def get(self, scan_id: int) -> ScanRun | None:
        with self._lock:
            return self._runs.get(scan_id)

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for run in self._runs.values() if not run.done.is_set())

    def cancel(self, scan_id: int) -> bool:
        """Request cancellation. Returns False if the scan is not running here."""
        run = self.get(scan_id)
        if run is None or run.done.is_set():
            return False
        run.engine.cancel()
        logger.info("Cancellation requested for scan %d", scan_id)
        return True

    def shutdown(self) -> None:
        """Cancel every active scan and wait for the threads to exit."""
        with self._lock:
            runs = list(self._runs.values())
        for run in runs:
            if not run.done.is_set():
                run.engine.cancel()
        for run in runs:
            run.thread.join(timeout=JOIN_TIMEOUT_SECONDS)
            if run.thread.is_alive():
                logger.warning("Scan thread %s did not exit in time", run.thread.name)
