"""Scan-related schemas."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ScanResponse(BaseModel):
    """One scan record."""

    model_config = ConfigDict(from_attributes=True)

    scan_id: int
    root_path: str
    dest_path: str | None = None
    started_at: str
    finished_at: str | None = None
    total_usage: int | None = None
    status: str
    backup_type: str | None = None
    message: str | None = None


class ScanRequest(BaseModel):
    """Request to start a scan in the background."""

    root: str = Field(min_length=1)
    dest: str = Field(min_length=1)
    password: str | None = Field(default=None, min_length=1)
    exclude: list[str] = Field(default_factory=list)


class ScanStartedResponse(BaseModel):
    scan_id: int
    status: str


class ProgressCounters(BaseModel):
    files_seen: int = Field(default=0, ge=0)
    files_hashed: int = Field(default=0, ge=0)
    bytes_hashed: int = Field(default=0, ge=0)
    errors: int = Field(default=0, ge=0)
    dirs_skipped: int = Field(default=0, ge=0)
    batches_committed: int = Field(default=0, ge=0)


class ScanProgressResponse(BaseModel):
    """Live progress of a scan started by this agent, or the final status otherwise."""

    scan_id: int
    status: str
    phase: str | None = None
    active: bool = False
    counters: ProgressCounters | None = None
    error: str | None = None


class CancelResponse(BaseModel):
    scan_id: int
    cancel_requested: bool


class InventoryEntryResponse(BaseModel):
    """A path as reconstructed for a given scan."""

    model_config = ConfigDict(from_attributes=True)

    path_rel: str
    scan_id: int
    status_event: str
    size_bytes: int
    modified_millis: int
    created_millis: int
    content_hash: str | None = None


class ScanIssueResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    scan_id: int
    path: str
    message: str
    created_at: str
