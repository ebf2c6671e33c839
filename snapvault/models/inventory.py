"""Current-state inventory and append-only history models."""

from __future__ import annotations

from enum import StrEnum

from sqlalchemy import Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from snapvault.models.base import Base


class FileStatus(StrEnum):
    """Status of a path in the inventory, and the event kind in history."""

    NEW = "NEW"
    MODIFIED = "MODIFIED"
    STABLE = "STABLE"
    DELETED = "DELETED"


class FileInventory(Base):
    """Best-known current state of a tracked path."""

    __tablename__ = "file_inventory"

    root_path: Mapped[str] = mapped_column(Text, primary_key=True)
    path_rel: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    modified_millis: Mapped[int] = mapped_column(Integer, nullable=False)
    created_millis: Mapped[int] = mapped_column(Integer, nullable=False)
    last_scan_id: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (Index("idx_file_inventory_root_lastscan", "root_path", "last_scan_id"),)


class FileHistory(Base):
    """Append-only event log; the source of truth for point-in-time snapshots.

    Rows are never deleted. The only in-place update allowed is backfilling
    ``content_hash`` once hashing of that path completes.
    """

    __tablename__ = "file_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scan_id: Mapped[int] = mapped_column(Integer, nullable=False)
    root_path: Mapped[str] = mapped_column(Text, nullable=False)
    path_rel: Mapped[str] = mapped_column(Text, nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    status_event: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)
    created_millis: Mapped[int] = mapped_column(Integer, nullable=False)
    modified_millis: Mapped[int] = mapped_column(Integer, nullable=False)
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        Index("idx_file_history_root_path_scan", "root_path", "path_rel", "scan_id"),
        Index("idx_file_history_scan_status_path", "scan_id", "status_event", "path_rel"),
        Index("idx_file_history_scan_path_hash", "scan_id", "path_rel", "content_hash"),
    )
