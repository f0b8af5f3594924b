"""Core utilities for the Parley backend."""

from .storage import (
    LocalUploadGateway,
    S3UploadGateway,
    StoredUpload,
    UploadError,
    UploadGateway,
    get_upload_gateway,
)

__all__ = [
    "LocalUploadGateway",
    "S3UploadGateway",
    "StoredUpload",
    "UploadError",
    "UploadGateway",
    "get_upload_gateway",
]
