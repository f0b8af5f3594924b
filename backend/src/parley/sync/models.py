"""Wire models shared by the chat backend and the synchronization client."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Sequence

from pydantic import BaseModel, ConfigDict, Field


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"
    MEDIA_GROUP = "media_group"


class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"


def media_type_for_mime(mime_type: str | None) -> MediaType:
    """Map a MIME type onto the attachment kind shown by clients."""

    if mime_type:
        major = mime_type.split("/", 1)[0].lower()
        if major == "image":
            return MediaType.IMAGE
        if major == "video":
            return MediaType.VIDEO
        if major == "audio":
            return MediaType.AUDIO
    return MediaType.FILE


def infer_message_type(media: Sequence["MediaItem | MediaType"]) -> MessageType:
    """Infer a message type from its attachments.

    No attachments make a text message, a single attachment lends the message
    its own media type and anything more is a media group.
    """

    if not media:
        return MessageType.TEXT
    if len(media) > 1:
        return MessageType.MEDIA_GROUP
    only = media[0]
    media_type = only.type if isinstance(only, MediaItem) else MediaType(only)
    return MessageType(media_type.value)


class WireModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class MediaItem(WireModel):
    type: MediaType
    url: str
    filename: str | None = None
    size: int | None = None
    mime_type: str | None = None


class Reaction(WireModel):
    emoji: str
    user_id: int


class Receipt(WireModel):
    user_id: int
    at: datetime


class Participant(WireModel):
    user_id: int
    display_name: str | None = None
    role: str = "member"
    is_active: bool = True


class ConversationInfo(WireModel):
    id: int
    is_group: bool = False
    title: str | None = None
    description: str | None = None
    created_by: int | None = None
    participants: list[Participant] = Field(default_factory=list)
    created_at: datetime | None = None
    last_message_at: datetime | None = None

    def active_member_ids(self) -> list[int]:
        return [p.user_id for p in self.participants if p.is_active]

    def other_member_ids(self, user_id: int) -> list[int]:
        return [member for member in self.active_member_ids() if member != user_id]

    def is_admin(self, user_id: int) -> bool:
        return any(
            p.user_id == user_id and p.is_active and p.role == "admin" for p in self.participants
        )


class ChatMessage(WireModel):
    id: int
    conversation_id: int
    sender_id: int | None = None
    content: str | None = None
    type: MessageType = MessageType.TEXT
    media: list[MediaItem] = Field(default_factory=list)
    reply_to: int | None = None
    reactions: list[Reaction] = Field(default_factory=list)
    reaction_seq: int = 0
    delivered_to: list[Receipt] = Field(default_factory=list)
    read_by: list[Receipt] = Field(default_factory=list)
    created_at: datetime
    edited_at: datetime | None = None


class MessageDraft(BaseModel):
    """Outgoing message composed by the local user."""

    content: str | None = None
    media: list[MediaItem] = Field(default_factory=list)
    reply_to: int | None = None

    @property
    def type(self) -> MessageType:
        return infer_message_type(self.media)

    def is_empty(self) -> bool:
        return not (self.content and self.content.strip()) and not self.media

    def to_payload(self, conversation_id: int) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "conversation_id": conversation_id,
            "type": self.type.value,
            "media": [item.model_dump(mode="json") for item in self.media],
        }
        if self.content:
            payload["content"] = self.content
        if self.reply_to is not None:
            payload["reply_to"] = self.reply_to
        return payload
