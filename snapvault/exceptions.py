"""Engine-level exception types.

Convention:
- Per-item problems (unreadable or vanished files) are not exceptions at the
  orchestration level; the scan engine counts and logs them.
- ``BlobMissingError`` is an integrity failure and is never swallowed: a
  backup that references content the vault no longer holds is corrupt.
- ``CryptoError`` carries a ``CryptoFailure`` reason so callers can tell a
  wrong passphrase from a damaged or unsupported container.
- ``ScanConfigError`` is raised before any scan record is created.
- ``ScanFailedError`` is raised after the scan has been finalized as ERROR.
"""

from __future__ import annotations

from enum import StrEnum


class SnapVaultError(Exception):
    """Base class for all SnapVault errors."""


class BlobMissingError(SnapVaultError):
    """Raised when metadata references a blob that is absent from the vault."""

    def __init__(self, content_hash: str) -> None:
        super().__init__(f"Blob missing from vault: {content_hash}")
        self.content_hash = content_hash


class BlobWriteError(SnapVaultError):
    """Raised when the vault itself cannot be written (disk full, permissions)."""


class StoreLayoutError(SnapVaultError):
    """Raised when a vault was created with an incompatible bucket layout."""


class CryptoFailure(StrEnum):
    """Reason a decrypt operation was rejected."""

    BAD_MAGIC = "bad_magic"
    TRUNCATED = "truncated"
    UNSUPPORTED_VERSION = "unsupported_version"
    AUTHENTICATION_FAILED = "authentication_failed"
    PASSPHRASE_REQUIRED = "passphrase_required"


class CryptoError(SnapVaultError):
    """Raised when an encrypted container cannot be opened."""

    def __init__(self, reason: CryptoFailure, detail: str = "") -> None:
        message = f"Decryption failed ({reason})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.reason = reason


class ScanConfigError(SnapVaultError, ValueError):
    """Raised for invalid scan configuration (missing root, bad exclude pattern)."""


class ScanStateError(SnapVaultError):
    """Raised when a scan transition is requested from the wrong state."""


class ScanFailedError(SnapVaultError):
    """Raised when a scan aborts; the scan record is already finalized as ERROR."""

    def __init__(self, scan_id: int, message: str) -> None:
        super().__init__(f"Scan {scan_id} failed: {message}")
        self.scan_id = scan_id
