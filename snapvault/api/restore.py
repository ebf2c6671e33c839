"""Restore endpoint."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from snapvault.api.deps import get_database, get_session
from snapvault.database import Database
from snapvault.exceptions import BlobMissingError
from snapvault.schemas.restore import RestoreRequest, RestoreResponse
from snapvault.services import metadata_service as meta
from snapvault.services.blob_store import BlobStore
from snapvault.services.restore_service import restore_changed, restore_snapshot

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/restore", tags=["restore"])


@router.post("", response_model=RestoreResponse)
def restore(
    body: RestoreRequest,
    session: Annotated[Session, Depends(get_session)],
    database: Annotated[Database, Depends(get_database)],
) -> RestoreResponse:
    """Restore files from the vault the scan was written to."""
    scan = meta.get_scan(session, body.scan_id)
    if scan is None:
        raise HTTPException(status_code=404, detail="Scan not found")
    if not scan.dest_path:
        raise HTTPException(status_code=409, detail="Scan has no backup destination")

    store = BlobStore.for_destination(Path(scan.dest_path), body.password, create=False)
    target = Path(body.target)
    try:
        if body.changed_only:
            result = restore_changed(database, store, body.scan_id, target)
        else:
            result = restore_snapshot(
                database, store, body.scan_id, target, body.files, body.prefixes
            )
    except BlobMissingError:
        logger.error("Restore of scan %d hit a missing blob", body.scan_id)
        raise

    return RestoreResponse(
        scan_id=result.scan_id,
        target=str(result.destination),
        files_restored=result.files_restored,
        bytes_restored=result.bytes_restored,
        skipped=result.skipped,
        cancelled=result.cancelled,
    )
