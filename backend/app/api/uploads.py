"""Media upload endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, HTTPException, Response, UploadFile, status
from fastapi.responses import FileResponse

from app.api.deps import get_current_user
from app.core.storage import (
    LocalUploadGateway,
    UploadError,
    UploadGateway,
    get_upload_gateway,
    is_allowed_mime,
    record_upload,
)
from app.models import User
from app.schemas import UploadRead

logger = logging.getLogger(__name__)

router = APIRouter(tags=["uploads"])
media_router = APIRouter(tags=["uploads"])


def _owns_key(key: str, user_id: int) -> bool:
    return str(user_id) in key.split("/")[:-1]


@router.post("/upload", response_model=UploadRead, status_code=status.HTTP_201_CREATED)
async def upload_file(
    file: UploadFile = File(...),
    gateway: UploadGateway = Depends(get_upload_gateway),
    current_user: User = Depends(get_current_user),
) -> UploadRead:
    """Store one attachment and return the metadata a message refers to."""

    if not is_allowed_mime(file.content_type):
        record_upload(gateway, "rejected")
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail="Unsupported file type",
        )
    try:
        stored = await gateway.upload(file, owner_id=current_user.id)
    except UploadError:
        record_upload(gateway, "error")
        logger.exception("Upload failed", extra={"backend": gateway.name, "user_id": current_user.id})
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Upload failed") from None
    except HTTPException:
        record_upload(gateway, "rejected")
        raise
    record_upload(gateway, "stored")
    return UploadRead(url=stored.url, key=stored.key, **stored.metadata())


@router.delete("/upload/{key:path}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_upload(
    key: str,
    gateway: UploadGateway = Depends(get_upload_gateway),
    current_user: User = Depends(get_current_user),
) -> Response:
    if not _owns_key(key, current_user.id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot delete this file")
    try:
        removed = await gateway.delete(key)
    except UploadError:
        logger.exception("Upload removal failed", extra={"backend": gateway.name, "key": key})
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Upload failed") from None
    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@media_router.get("/media/{key:path}")
def serve_media(key: str, gateway: UploadGateway = Depends(get_upload_gateway)) -> FileResponse:
    """Serve files written by the local gateway."""

    if not isinstance(gateway, LocalUploadGateway):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    return FileResponse(gateway.resolve_path(key))
