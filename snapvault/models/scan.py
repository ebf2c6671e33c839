"""Scan log models."""

from __future__ import annotations

from enum import StrEnum

from sqlalchemy import Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from snapvault.models.base import Base


class ScanStatus(StrEnum):
    """Lifecycle of a scan record. Only RUNNING may transition."""

    RUNNING = "RUNNING"
    DONE = "DONE"
    CANCELED = "CANCELED"
    ERROR = "ERROR"


class BackupType(StrEnum):
    FULL = "FULL"
    INCREMENTAL = "INCREMENTAL"


class Scan(Base):
    """One backup run over a root path."""

    __tablename__ = "scans"

    scan_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    root_path: Mapped[str] = mapped_column(Text, nullable=False)
    dest_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[str] = mapped_column(Text, nullable=False)
    finished_at: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_usage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=ScanStatus.RUNNING)
    backup_type: Mapped[str | None] = mapped_column(String, nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("idx_scans_root_scanid", "root_path", "scan_id"),)


class ScanIssue(Base):
    """Per-file problem recorded during a scan (unreadable, vanished, hash failure)."""

    __tablename__ = "scan_issues"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scan_id: Mapped[int] = mapped_column(Integer, nullable=False)
    path: Mapped[str] = mapped_column(Text, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (Index("idx_scan_issues_scan", "scan_id"),)
