"""Path history and usage endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from snapvault.api.deps import get_session
from snapvault.schemas.history import PathHistoryResponse, UsagePointResponse
from snapvault.services.metadata_service import scan_usage_report
from snapvault.services.snapshot_service import path_history

router = APIRouter(tags=["history"])


@router.get("/api/history", response_model=list[PathHistoryResponse])
def file_history(
    session: Annotated[Session, Depends(get_session)],
    path: str = Query(..., min_length=1),
    root: str | None = Query(None),
) -> list[PathHistoryResponse]:
    """Every recorded event for one relative path, newest first."""
    return [PathHistoryResponse.model_validate(h) for h in path_history(session, path, root)]


@router.get("/api/usage", response_model=list[UsagePointResponse])
def usage_report(
    session: Annotated[Session, Depends(get_session)],
    root: str | None = Query(None),
) -> list[UsagePointResponse]:
    """Total backed-up size per finished scan and growth between scans."""
    return [UsagePointResponse.model_validate(p) for p in scan_usage_report(session, root)]
