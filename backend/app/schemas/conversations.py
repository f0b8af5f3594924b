"""Schemas for conversation management."""

from __future__ import annotations

from pydantic import BaseModel, Field, constr, model_validator

from app.models.enums import ParticipantRole
from parley.sync.models import ChatMessage, ConversationInfo


class ConversationCreate(BaseModel):
    """Open a one-to-one chat or create a group."""

    participant_ids: list[int] = Field(..., min_length=1)
    is_group: bool = False
    title: constr(strip_whitespace=True, min_length=1, max_length=100) | None = None
    description: constr(strip_whitespace=True, max_length=500) | None = None

    @model_validator(mode="after")
    def check_shape(self) -> "ConversationCreate":
        if not self.is_group and len(set(self.participant_ids)) != 1:
            raise ValueError("A direct conversation needs exactly one other participant")
        if self.is_group and not self.title:
            raise ValueError("Group conversations require a title")
        return self


class ConversationUpdate(BaseModel):
    title: constr(strip_whitespace=True, min_length=1, max_length=100) | None = None
    description: constr(strip_whitespace=True, max_length=500) | None = None


class MembersAdd(BaseModel):
    user_ids: list[int] = Field(..., min_length=1)


class MemberRoleUpdate(BaseModel):
    role: ParticipantRole


class ConversationListItem(ConversationInfo):
    """Conversation with a preview of its latest message."""

    last_message: ChatMessage | None = None
    unread_count: int = 0
