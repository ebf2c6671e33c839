"""Real-time change journal models."""

from __future__ import annotations

from enum import StrEnum

from sqlalchemy import Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from snapvault.models.base import Base


class FsEventKind(StrEnum):
    CREATE = "CREATE"
    MODIFY = "MODIFY"
    DELETE = "DELETE"
    MOVE = "MOVE"
    OVERFLOW = "OVERFLOW"


class FsEvent(Base):
    """A change observed by the journal ingester, reconciled by the next scan."""

    __tablename__ = "fs_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    root_path: Mapped[str] = mapped_column(Text, nullable=False)
    path_rel: Mapped[str | None] = mapped_column(Text, nullable=True)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    old_path_rel: Mapped[str | None] = mapped_column(Text, nullable=True)
    event_time: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (Index("idx_fs_events_root_id", "root_path", "id"),)


class JournalCursor(Base):
    """Per-root journal backend and resume position."""

    __tablename__ = "journal_cursors"

    root_path: Mapped[str] = mapped_column(Text, primary_key=True)
    backend: Mapped[str] = mapped_column(String, nullable=False)
    cursor_a: Mapped[str | None] = mapped_column(Text, nullable=True)
    cursor_b: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False)
