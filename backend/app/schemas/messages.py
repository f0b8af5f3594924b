"""Schemas related to chat messages."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, constr

from parley.sync.models import MediaItem, Reaction


class MessageCreate(BaseModel):
    """Payload for sending a message.

    The message type is always inferred from the attachments.
    """

    conversation_id: int
    content: str | None = None
    media: list[MediaItem] = Field(default_factory=list, max_length=10)
    reply_to: int | None = None


class MessageUpdate(BaseModel):
    content: str


class ReactionRequest(BaseModel):
    emoji: constr(strip_whitespace=True, min_length=1, max_length=32)


class ReactionSnapshotRead(BaseModel):
    """Full reaction set of a message after a change."""

    message_id: int
    reactions: list[Reaction]
    seq: int


class ReceiptRead(BaseModel):
    message_id: int
    user_id: int
    delivered_at: datetime | None = None
    read_at: datetime | None = None
