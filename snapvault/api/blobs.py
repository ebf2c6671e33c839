"""Blob download endpoint."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

from fastapi import APIRouter, Header, HTTPException, Query
from fastapi.responses import Response

from snapvault.exceptions import BlobMissingError, StoreLayoutError
from snapvault.services.blob_store import BlobStore, validate_hash

router = APIRouter(prefix="/api/blobs", tags=["blobs"])


@router.get("/{content_hash}")
def download_blob(
    content_hash: str,
    dest: str = Query(..., min_length=1),
    password: Annotated[str | None, Header(alias="X-Vault-Password")] = None,
) -> Response:
    """Return a blob's plaintext bytes from the vault under ``dest``."""
    validate_hash(content_hash)
    try:
        store = BlobStore.for_destination(Path(dest), password, create=False)
    except StoreLayoutError as exc:
        raise HTTPException(status_code=404, detail="No vault at this destination") from exc
    try:
        data = store.read_bytes(content_hash)
    except BlobMissingError as exc:
        raise HTTPException(status_code=404, detail="Blob not found") from exc
    return Response(
        content=data,
        media_type="application/octet-stream",
        headers={"X-Content-Hash": content_hash},
    )
