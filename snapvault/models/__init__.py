"""SQLAlchemy ORM models for SnapVault."""

from snapvault.models.base import Base
from snapvault.models.inventory import FileHistory, FileInventory, FileStatus
from snapvault.models.journal import FsEvent, FsEventKind, JournalCursor
from snapvault.models.scan import BackupType, Scan, ScanIssue, ScanStatus
from snapvault.models.setting import BackupSetting

__all__ = [
    "BackupSetting",
    "BackupType",
    "Base",
    "FileHistory",
    "FileInventory",
    "FileStatus",
    "FsEvent",
    "FsEventKind",
    "JournalCursor",
    "Scan",
    "ScanIssue",
    "ScanStatus",
]
