"""History and usage schemas."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class PathHistoryResponse(BaseModel):
    """One recorded event for a path."""

    model_config = ConfigDict(from_attributes=True)

    scan_id: int
    root_path: str
    started_at: str | None = None
    finished_at: str | None = None
    size_bytes: int
    status_event: str
    created_at: str
    content_hash: str | None = None


class UsagePointResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    scan_id: int
    started_at: str
    total_bytes: int
    growth_bytes: int
