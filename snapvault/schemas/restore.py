"""Restore schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field


class RestoreRequest(BaseModel):
    """Restore the state of a scan (or only what it changed) into a directory."""

    scan_id: int = Field(ge=1)
    target: str = Field(min_length=1)
    password: str | None = Field(default=None, min_length=1)
    files: list[str] = Field(default_factory=list)
    prefixes: list[str] = Field(default_factory=list)
    changed_only: bool = False


class RestoreResponse(BaseModel):
    scan_id: int
    target: str
    files_restored: int
    bytes_restored: int
    skipped: list[str] = Field(default_factory=list)
    cancelled: bool = False
