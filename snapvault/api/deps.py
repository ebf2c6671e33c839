"""Shared API dependencies: settings, database session, scan manager."""

from __future__ import annotations

from collections.abc import Generator

from fastapi import Request
from sqlalchemy.orm import Session

from snapvault.config import Settings
from snapvault.database import Database
from snapvault.services.scan_manager import ScanManager


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


def get_database(request: Request) -> Database:
    database: Database = request.app.state.database
    return database


def get_session(request: Request) -> Generator[Session]:
    """Get a database session."""
    database: Database = request.app.state.database
    with database.session() as session:
        yield session


def get_scan_manager(request: Request) -> ScanManager:
    manager: ScanManager = request.app.state.scan_manager
    return manager
