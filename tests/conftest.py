"""Shared test fixtures for SnapVault."""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient

from snapvault.config import Settings
from snapvault.database import Database
from snapvault.main import create_app
from snapvault.services.blob_store import BlobStore
from snapvault.services.scan_manager import ScanManager

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Generator, Mapping
    from pathlib import Path

    from sqlalchemy.orm import Session

TEST_SECRET_KEY = "test-secret-key-with-at-least-32-characters"


def write_tree(root: Path, files: Mapping[str, bytes | str], mtime: float | None = None) -> None:
    """Create ``files`` (relative path to content) under ``root``."""
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, str):
            content = content.encode("utf-8")
        path.write_bytes(content)
        if mtime is not None:
            os.utime(path, (mtime, mtime))


@asynccontextmanager
async def create_test_client(settings: Settings) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with a fully initialized app.

    Manually performs the work of the application lifespan (metadata store,
    scan manager) because ASGITransport does not trigger it.
    """
    app = create_app(settings)
    settings.validate_runtime_security()

    database = Database(settings).open()
    app.state.database = database
    app.state.scan_manager = ScanManager(database, settings)
    app.state.settings = settings

    try:
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
        ) as ac:
            yield ac
    finally:
        app.state.scan_manager.shutdown()
        database.close()


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with temporary paths."""
    return Settings(
        data_dir=tmp_path / "data",
        worker_count=2,
        db_batch_size=3,
        debug=False,
    )


@pytest.fixture
def encrypted_settings(tmp_path: Path) -> Settings:
    return Settings(
        data_dir=tmp_path / "data",
        db_encryption=True,
        secret_key=TEST_SECRET_KEY,
        worker_count=2,
    )


@pytest.fixture
def database(test_settings: Settings) -> Generator[Database]:
    """An open metadata store, closed after the test."""
    db = Database(test_settings).open()
    yield db
    db.close()


@pytest.fixture
def db_session(database: Database) -> Generator[Session]:
    with database.session() as session:
        yield session


@pytest.fixture
def source_root(tmp_path: Path) -> Path:
    root = tmp_path / "source"
    root.mkdir()
    return root.resolve()


@pytest.fixture
def backup_dest(tmp_path: Path) -> Path:
    dest = tmp_path / "backup"
    dest.mkdir()
    return dest


@pytest.fixture
def blob_store(backup_dest: Path) -> BlobStore:
    return BlobStore.for_destination(backup_dest)
