"""Upload gateways persisting message attachments.

Two backends implement the same small contract: ``upload`` stores a file and
returns its public URL plus metadata, ``delete`` removes it by key. Callers
only ever see :class:`UploadError` for provider or configuration problems.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Final, Protocol
from uuid import uuid4

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from fastapi import HTTPException, UploadFile, status
from starlette.concurrency import run_in_threadpool

from app.config import Settings, get_settings
from app.monitoring.metrics import uploads_total
from parley.sync.models import MediaType, media_type_for_mime

logger = logging.getLogger(__name__)

_CHUNK_SIZE: Final[int] = 1024 * 1024  # 1 MiB

ALLOWED_MIME_PREFIXES: Final[tuple[str, ...]] = ("image/", "video/", "audio/")
ALLOWED_MIME_TYPES: Final[frozenset[str]] = frozenset(
    {
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    }
)

_UNSAFE_NAME = re.compile(r"[^a-zA-Z0-9_-]+")


class UploadError(Exception):
    """Raised when the storage provider cannot store or delete a file."""


@dataclass(slots=True)
class StoredUpload:
    """Result of a successful upload."""

    url: str
    key: str
    file_name: str
    mime_type: str | None
    size: int
    media_type: MediaType

    def metadata(self) -> dict[str, Any]:
        return {
            "filename": self.file_name,
            "size": self.size,
            "mime_type": self.mime_type,
            "type": self.media_type.value,
        }


class UploadGateway(Protocol):
    name: str

    async def upload(self, upload: UploadFile, *, owner_id: int) -> StoredUpload:
        """Persist ``upload`` and describe where it landed."""

    async def delete(self, key: str) -> bool:
        """Remove a stored object, returning ``False`` when it did not exist."""


def is_allowed_mime(mime_type: str | None) -> bool:
    if not mime_type:
        return False
    return mime_type.startswith(ALLOWED_MIME_PREFIXES) or mime_type in ALLOWED_MIME_TYPES


def build_object_key(prefix: str, owner_id: int, file_name: str) -> str:
    """Return a collision-free object key like ``uploads/7/3f2a_photo.png``."""

    original = Path(file_name or "upload.bin")
    base = _UNSAFE_NAME.sub("_", original.stem).strip("_") or "file"
    key = f"{owner_id}/{uuid4().hex[:12]}_{base}{original.suffix.lower()}"
    prefix = prefix.strip("/")
    return f"{prefix}/{key}" if prefix else key


async def _read_limited(upload: UploadFile, max_size: int) -> bytes:
    chunks: list[bytes] = []
    total = 0
    while True:
        chunk = await upload.read(_CHUNK_SIZE)
        if not chunk:
            break
        total += len(chunk)
        if total > max_size:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail="Attachment exceeds allowed size",
            )
        chunks.append(chunk)
    return b"".join(chunks)


class LocalUploadGateway:
    """Stores uploads below ``media_root`` and serves them from ``media_base_url``."""

    name = "local"

    def __init__(self, root: Path, base_url: str, max_size: int) -> None:
        self._root = root
        self._base_url = base_url.rstrip("/")
        self._max_size = max_size

    def _media_root(self) -> Path:
        self._root.mkdir(parents=True, exist_ok=True)
        return self._root

    def resolve_path(self, key: str) -> Path:
        """Return the absolute path of a stored key, refusing traversal."""

        root = self._media_root().resolve()
        candidate = (root / key).resolve()
        if not candidate.is_relative_to(root):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid file path")
        if not candidate.is_file():
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
        return candidate

    async def upload(self, upload: UploadFile, *, owner_id: int) -> StoredUpload:
        key = build_object_key("", owner_id, upload.filename or "upload.bin")
        absolute_path = self._media_root() / key
        total_size = 0
        try:
            absolute_path.parent.mkdir(parents=True, exist_ok=True)
            with absolute_path.open("wb") as buffer:
                while True:
                    chunk = await upload.read(_CHUNK_SIZE)
                    if not chunk:
                        break
                    total_size += len(chunk)
                    if total_size > self._max_size:
                        raise HTTPException(
                            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                            detail="Attachment exceeds allowed size",
                        )
                    buffer.write(chunk)
        except HTTPException:
            absolute_path.unlink(missing_ok=True)
            raise
        except OSError as exc:
            absolute_path.unlink(missing_ok=True)
            raise UploadError("Failed to write upload") from exc
        finally:
            await upload.close()

        return StoredUpload(
            url=f"{self._base_url}/{key}",
            key=key,
            file_name=upload.filename or "upload.bin",
            mime_type=upload.content_type,
            size=total_size,
            media_type=media_type_for_mime(upload.content_type),
        )

    async def delete(self, key: str) -> bool:
        try:
            path = self.resolve_path(key)
        except HTTPException as exc:
            if exc.status_code == status.HTTP_404_NOT_FOUND:
                return False
            raise
        try:
            path.unlink()
        except OSError as exc:
            raise UploadError("Failed to delete upload") from exc
        return True


class S3UploadGateway:
    """Stores uploads in an S3 bucket with public-read objects."""

    name = "s3"

    def __init__(
        self,
        bucket: str | None,
        *,
        region: str,
        max_size: int,
        key_prefix: str = "uploads",
        endpoint_url: str | None = None,
        public_base_url: str | None = None,
        client: Any | None = None,
    ) -> None:
        self._bucket = bucket
        self._region = region
        self._max_size = max_size
        self._key_prefix = key_prefix
        self._public_base_url = public_base_url
        self._client = client or boto3.client(
            "s3", region_name=region, endpoint_url=endpoint_url
        )

    def _object_url(self, key: str) -> str:
        if self._public_base_url:
            return f"{self._public_base_url.rstrip('/')}/{key}"
        return f"https://{self._bucket}.s3.{self._region}.amazonaws.com/{key}"

    async def upload(self, upload: UploadFile, *, owner_id: int) -> StoredUpload:
        if not self._bucket:
            logger.error("S3 upload attempted without a configured bucket")
            raise UploadError("Upload storage is not configured")
        try:
            body = await _read_limited(upload, self._max_size)
        finally:
            await upload.close()

        key = build_object_key(self._key_prefix, owner_id, upload.filename or "upload.bin")
        extra: dict[str, Any] = {"ACL": "public-read"}
        if upload.content_type:
            extra["ContentType"] = upload.content_type
        try:
            await run_in_threadpool(
                self._client.put_object, Bucket=self._bucket, Key=key, Body=body, **extra
            )
        except (BotoCoreError, ClientError) as exc:
            logger.warning("S3 upload failed", exc_info=True, extra={"key": key})
            raise UploadError("Upload failed") from exc

        return StoredUpload(
            url=self._object_url(key),
            key=key,
            file_name=upload.filename or "upload.bin",
            mime_type=upload.content_type,
            size=len(body),
            media_type=media_type_for_mime(upload.content_type),
        )

    async def delete(self, key: str) -> bool:
        if not self._bucket:
            raise UploadError("Upload storage is not configured")
        try:
            await run_in_threadpool(self._client.delete_object, Bucket=self._bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            logger.warning("S3 delete failed", exc_info=True, extra={"key": key})
            raise UploadError("Delete failed") from exc
        return True


def build_upload_gateway(settings: Settings) -> UploadGateway:
    if settings.upload_backend == "s3":
        return S3UploadGateway(
            settings.s3_bucket,
            region=settings.s3_region,
            max_size=settings.max_upload_size,
            key_prefix=settings.s3_key_prefix,
            endpoint_url=settings.s3_endpoint_url,
            public_base_url=settings.s3_public_base_url,
        )
    return LocalUploadGateway(settings.media_root, settings.media_base_url, settings.max_upload_size)


@lru_cache
def get_upload_gateway() -> UploadGateway:
    return build_upload_gateway(get_settings())


def record_upload(gateway: UploadGateway, outcome: str) -> None:
    uploads_total.labels(gateway.name, outcome).inc()
