"""Database engine, session management and metadata encryption at rest."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from sqlalchemy import create_engine as sa_create_engine
from sqlalchemy import event, text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from snapvault.exceptions import CryptoError, CryptoFailure
from snapvault.models import Base, BackupSetting
from snapvault.services.crypto_service import decrypt_file, encrypt_file
from snapvault.services.datetime_service import now_iso

if TYPE_CHECKING:
    from pathlib import Path

    from sqlalchemy.engine import Engine

    from snapvault.config import Settings

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 5
SQLITE_HEADER = b"SQLite format 3\x00"
BUSY_TIMEOUT_MS = 10_000


def looks_like_plain_sqlite(path: Path) -> bool:
    try:
        with open(path, "rb") as f:
            return f.read(len(SQLITE_HEADER)) == SQLITE_HEADER
    except OSError:
        return False


def _side_files(runtime: Path) -> list[Path]:
    return [runtime] + [runtime.with_name(runtime.name + suffix) for suffix in ("-wal", "-shm")]


def create_engine(
    settings: Settings,
    pool_size: int | None = None,
) -> tuple[Engine, sessionmaker[Session]]:
    """Create engine and session factory.

    Returns (engine, session_factory) tuple. The pool is bounded to
    ``pool_size`` connections (default: one per scan worker plus one).
    """
    size = pool_size or settings.worker_count + 1
    engine = sa_create_engine(
        settings.database_url,
        echo=settings.debug,
        poolclass=QueuePool,
        pool_size=size,
        max_overflow=0,
        pool_timeout=30,
        connect_args={"check_same_thread": False, "timeout": BUSY_TIMEOUT_MS / 1000},
    )
    journal_mode = "DELETE" if settings.db_encryption else "WAL"
    synchronous = "FULL" if settings.db_encryption else "NORMAL"

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA journal_mode={journal_mode}")
        cursor.execute(f"PRAGMA synchronous={synchronous}")
        cursor.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    session_factory = sessionmaker(engine, class_=Session, expire_on_commit=False)
    return engine, session_factory


def ensure_schema(engine: Engine) -> None:
    """Create missing tables and indexes and record the schema version."""
    Base.metadata.create_all(engine)
    with Session(engine) as session, session.begin():
        row = session.get(BackupSetting, "schema_version")
        if row is None:
            session.add(
                BackupSetting(
                    key="schema_version", value=str(SCHEMA_VERSION), updated_at=now_iso()
                )
            )
        elif row.value != str(SCHEMA_VERSION):
            logger.warning(
                "Metadata schema version %s differs from %d; tables were created idempotently",
                row.value,
                SCHEMA_VERSION,
            )
            row.value = str(SCHEMA_VERSION)
            row.updated_at = now_iso()


class Database:
    """Explicit handle on one metadata store.

    Owns the engine and session factory; nothing about the connection is
    kept in module state. When ``settings.db_encryption`` is on, the
    encrypted file is decrypted into the runtime file on ``open()`` and the
    runtime file is encrypted back on ``persist()`` and ``close()``.
    """

    def __init__(self, settings: Settings, pool_size: int | None = None) -> None:
        self.settings = settings
        self.pool_size = pool_size
        self.engine: Engine | None = None
        self._session_factory: sessionmaker[Session] | None = None
        self._lock = threading.Lock()
        self._closed = False

    @property
    def encrypted(self) -> bool:
        return self.settings.db_encryption

    def open(self) -> Database:
        if self.engine is not None:
            return self
        self.settings.validate_runtime_security()
        self._closed = False
        self.settings.data_dir.mkdir(parents=True, exist_ok=True)
        if self.encrypted:
            self._prepare_runtime_file()
        self.engine, self._session_factory = create_engine(self.settings, self.pool_size)
        ensure_schema(self.engine)
        logger.info(
            "Opened metadata store %s%s",
            self.settings.runtime_db_path,
            " (encrypted at rest)" if self.encrypted else "",
        )
        return self

    def _prepare_runtime_file(self) -> None:
        runtime = self.settings.runtime_db_path
        encrypted = self.settings.encrypted_db_path
        for path in _side_files(runtime):
            if path.exists():
                logger.warning("Removing leftover runtime file %s", path)
                path.unlink()
        if not encrypted.exists():
            return
        if looks_like_plain_sqlite(encrypted):
            raise CryptoError(
                CryptoFailure.BAD_MAGIC,
                f"{encrypted} is a plaintext SQLite file; refusing to treat it as encrypted",
            )
        decrypt_file(encrypted, runtime, self.settings.secret_key)

    def session(self) -> Session:
        if self._session_factory is None:
            raise RuntimeError("Database is not open")
        return self._session_factory()

    def _checkpoint(self) -> None:
        if self.engine is None:
            return
        with self.engine.connect() as conn:
            conn.execute(text("PRAGMA wal_checkpoint(TRUNCATE)"))

    def persist(self) -> None:
        """Write the encrypted at-rest copy from the runtime file."""
        if not self.encrypted or self.engine is None:
            return
        with self._lock:
            self._checkpoint()
            encrypt_file(
                self.settings.runtime_db_path,
                self.settings.encrypted_db_path,
                self.settings.secret_key,
            )
        logger.debug("Persisted encrypted metadata to %s", self.settings.encrypted_db_path)

    def close(self) -> None:
        """Release the pool. Safe to call more than once; only the first call acts."""
        with self._lock:
            if self._closed or self.engine is None:
                self._closed = True
                return
            self._closed = True
            engine = self.engine

        if self.encrypted:
            self._checkpoint()
        engine.dispose()
        self.engine = None
        self._session_factory = None

        if self.encrypted:
            runtime = self.settings.runtime_db_path
            encrypt_file(runtime, self.settings.encrypted_db_path, self.settings.secret_key)
            for path in _side_files(runtime):
                path.unlink(missing_ok=True)
        logger.info("Closed metadata store %s", self.settings.runtime_db_path)

    def __enter__(self) -> Database:
        return self.open()

    def __exit__(self, *exc_info: object) -> None:
        self.close()
