"""Scan API endpoints: start, cancel, progress, and per-scan queries."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from snapvault.api.deps import get_scan_manager, get_session
from snapvault.schemas.scan import (
    CancelResponse,
    InventoryEntryResponse,
    ProgressCounters,
    ScanIssueResponse,
    ScanProgressResponse,
    ScanRequest,
    ScanResponse,
    ScanStartedResponse,
)
from snapvault.services import metadata_service as meta
from snapvault.services.scan_manager import ScanManager
from snapvault.services.snapshot_service import changed_files, snapshot_for_scan

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/scans", tags=["scans"])


def _require_scan(session: Session, scan_id: int) -> ScanResponse:
    scan = meta.get_scan(session, scan_id)
    if scan is None:
        raise HTTPException(status_code=404, detail="Scan not found")
    return ScanResponse.model_validate(scan)


@router.get("", response_model=list[ScanResponse])
def list_scans(
    session: Annotated[Session, Depends(get_session)],
    limit: int = Query(50, ge=1, le=1000),
    root: str | None = Query(None),
) -> list[ScanResponse]:
    """List scans, newest first."""
    return [ScanResponse.model_validate(s) for s in meta.list_scans(session, limit, root)]


@router.post("", response_model=ScanStartedResponse, status_code=status.HTTP_202_ACCEPTED)
def start_scan(
    body: ScanRequest,
    manager: Annotated[ScanManager, Depends(get_scan_manager)],
) -> ScanStartedResponse:
    """Start a scan in the background and return its id."""
    scan_id = manager.start(Path(body.root), Path(body.dest), body.password, body.exclude)
    logger.info("Scan %d started via API for %s", scan_id, body.root)
    return ScanStartedResponse(scan_id=scan_id, status="RUNNING")


@router.get("/{scan_id}", response_model=ScanResponse)
def get_scan(
    scan_id: int,
    session: Annotated[Session, Depends(get_session)],
) -> ScanResponse:
    return _require_scan(session, scan_id)


@router.get("/{scan_id}/progress", response_model=ScanProgressResponse)
def scan_progress(
    scan_id: int,
    session: Annotated[Session, Depends(get_session)],
    manager: Annotated[ScanManager, Depends(get_scan_manager)],
) -> ScanProgressResponse:
    """Live counters for scans started by this agent; stored status for the rest."""
    run = manager.get(scan_id)
    if run is None:
        scan = _require_scan(session, scan_id)
        return ScanProgressResponse(scan_id=scan_id, status=scan.status)
    counters = run.progress.snapshot()
    scan = meta.get_scan(session, scan_id)
    return ScanProgressResponse(
        scan_id=scan_id,
        status=scan.status if scan is not None else "RUNNING",
        phase=run.progress.phase.value,
        active=not run.done.is_set(),
        counters=ProgressCounters(**vars(counters)),
        error=run.error,
    )


@router.post("/{scan_id}/cancel", response_model=CancelResponse)
def cancel_scan(
    scan_id: int,
    session: Annotated[Session, Depends(get_session)],
    manager: Annotated[ScanManager, Depends(get_scan_manager)],
) -> CancelResponse:
    """Request cooperative cancellation of a running scan."""
    _require_scan(session, scan_id)
    if not manager.cancel(scan_id):
        raise HTTPException(status_code=409, detail="Scan is not running")
    return CancelResponse(scan_id=scan_id, cancel_requested=True)


@router.get("/{scan_id}/inventory", response_model=list[InventoryEntryResponse])
def scan_inventory(
    scan_id: int,
    session: Annotated[Session, Depends(get_session)],
) -> list[InventoryEntryResponse]:
    """The tree as reconstructed for this scan."""
    _require_scan(session, scan_id)
    return [InventoryEntryResponse.model_validate(e) for e in snapshot_for_scan(session, scan_id)]


@router.get("/{scan_id}/changes", response_model=list[InventoryEntryResponse])
def scan_changes(
    scan_id: int,
    session: Annotated[Session, Depends(get_session)],
) -> list[InventoryEntryResponse]:
    """Paths this scan recorded as NEW or MODIFIED."""
    _require_scan(session, scan_id)
    return [InventoryEntryResponse.model_validate(e) for e in changed_files(session, scan_id)]


@router.get("/{scan_id}/issues", response_model=list[ScanIssueResponse])
def scan_issues(
    scan_id: int,
    session: Annotated[Session, Depends(get_session)],
) -> list[ScanIssueResponse]:
    _require_scan(session, scan_id)
    return [ScanIssueResponse.model_validate(i) for i in meta.list_scan_issues(session, scan_id)]
