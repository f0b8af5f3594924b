from pydantic import BaseModel

from parley.sync.models import MediaType


class UploadRead(BaseModel):
    """Where an uploaded file landed."""

    url: str
    key: str
    filename: str
    size: int
    mime_type: str | None = None
    type: MediaType
