"""FastAPI application entry point for the local agent."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from snapvault.api.blobs import router as blobs_router
from snapvault.api.health import VERSION
from snapvault.api.health import router as health_router
from snapvault.api.history import router as history_router
from snapvault.api.restore import router as restore_router
from snapvault.api.scans import router as scans_router
from snapvault.config import Settings
from snapvault.database import Database
from snapvault.exceptions import (
    BlobMissingError,
    BlobWriteError,
    CryptoError,
    ScanConfigError,
    ScanStateError,
    StoreLayoutError,
)
from snapvault.services.scan_manager import ScanManager

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = logging.getLogger(__name__)


def configure_logging(debug: bool) -> None:
    """Configure application logging."""
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stdout,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)
    logging.getLogger("watchdog").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings
    settings.validate_runtime_security()
    configure_logging(settings.debug)
    logger.info("Starting SnapVault agent (debug=%s)", settings.debug)

    database = Database(settings)
    try:
        database.open()
    except Exception as exc:
        logger.critical(
            "Failed to open metadata store at %s: %s. Check data_dir and secret key.",
            settings.data_dir,
            exc,
        )
        raise
    app.state.database = database
    app.state.scan_manager = ScanManager(database, settings)

    yield

    try:
        app.state.scan_manager.shutdown()
    except Exception as exc:
        logger.error("Error during scan shutdown: %s", exc, exc_info=True)

    try:
        database.close()
    except Exception as exc:
        logger.error("Error during metadata store shutdown: %s", exc, exc_info=True)

    logger.info("SnapVault agent stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = Settings()

    app = FastAPI(
        title="SnapVault",
        description="Local agent for the SnapVault backup engine",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
        openapi_url="/openapi.json" if settings.debug else None,
    )
    app.state.settings = settings

    app.include_router(health_router)
    app.include_router(scans_router)
    app.include_router(history_router)
    app.include_router(restore_router)
    app.include_router(blobs_router)

    # Global exception handlers: safety net for errors the routers let through

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = []
        for err in exc.errors():
            loc = err.get("loc", ())
            field = str(loc[-1]) if loc else "unknown"
            errors.append({"field": field, "message": err.get("msg", "Invalid value")})
        logger.warning(
            "RequestValidationError in %s %s: %s",
            request.method,
            request.url.path,
            errors,
        )
        return JSONResponse(status_code=422, content={"detail": errors})

    @app.exception_handler(ScanConfigError)
    async def scan_config_error_handler(request: Request, exc: ScanConfigError) -> JSONResponse:
        logger.warning("ScanConfigError in %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(ScanStateError)
    async def scan_state_error_handler(request: Request, exc: ScanStateError) -> JSONResponse:
        logger.warning("ScanStateError in %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(StoreLayoutError)
    async def store_layout_error_handler(request: Request, exc: StoreLayoutError) -> JSONResponse:
        logger.error("StoreLayoutError in %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(BlobMissingError)
    async def blob_missing_handler(request: Request, exc: BlobMissingError) -> JSONResponse:
        logger.error(
            "BlobMissingError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Data integrity error", "content_hash": exc.content_hash},
        )

    @app.exception_handler(BlobWriteError)
    async def blob_write_error_handler(request: Request, exc: BlobWriteError) -> JSONResponse:
        logger.error(
            "BlobWriteError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(
            status_code=507,
            content={"detail": "Backup destination cannot be written"},
        )

    @app.exception_handler(CryptoError)
    async def crypto_error_handler(request: Request, exc: CryptoError) -> JSONResponse:
        logger.warning("CryptoError in %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=400,
            content={"detail": "Decryption failed", "reason": exc.reason.value},
        )

    @app.exception_handler(LookupError)
    async def lookup_error_handler(request: Request, exc: LookupError) -> JSONResponse:
        logger.warning("LookupError in %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=404, content={"detail": str(exc) or "Not found"})

    @app.exception_handler(OSError)
    async def os_error_handler(request: Request, exc: OSError) -> JSONResponse:
        if isinstance(exc, (ConnectionError, TimeoutError)):
            raise exc
        logger.error("OSError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"detail": "Storage operation failed"},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.error("ValueError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        message = str(exc) or "Invalid value"
        return JSONResponse(
            status_code=422,
            content={"detail": message},
        )

    @app.exception_handler(OperationalError)
    async def operational_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
        logger.error(
            "OperationalError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(
            status_code=503,
            content={"detail": "Database temporarily unavailable"},
        )

    return app


app = create_app()


def cli_entry() -> None:
    """CLI entry point for running the agent."""
    import uvicorn

    settings: Settings = app.state.settings
    uvicorn.run(
        "snapvault.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
