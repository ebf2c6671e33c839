"""Health check endpoint."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.orm import Session

from snapvault.api.deps import get_scan_manager, get_session, get_settings
from snapvault.config import Settings
from snapvault.services.scan_manager import ScanManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

VERSION = "0.1.0"


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    encrypted_at_rest: bool
    active_scans: int


@router.get("/api/health", response_model=HealthResponse)
def health_check(
    session: Annotated[Session, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    manager: Annotated[ScanManager, Depends(get_scan_manager)],
) -> HealthResponse:
    """Health check endpoint for the desktop shell and monitoring."""
    db_status = "ok"
    try:
        session.execute(text("SELECT 1"))
    except Exception:
        logger.warning("Health check database query failed", exc_info=True)
        db_status = "error"

    return HealthResponse(
        status="ok" if db_status == "ok" else "degraded",
        version=VERSION,
        database=db_status,
        encrypted_at_rest=settings.db_encryption,
        active_scans=manager.active_count(),
    )
