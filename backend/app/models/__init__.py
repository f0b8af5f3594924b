"""Database models package."""

from .base import Base
from .chat import (
    Conversation,
    ConversationParticipant,
    Message,
    MessageAttachment,
    MessageReaction,
    MessageReceipt,
    User,
)
from .enums import MediaType, MessageType, ParticipantRole

__all__ = [
    "Base",
    "User",
    "Conversation",
    "ConversationParticipant",
    "Message",
    "MessageAttachment",
    "MessageReaction",
    "MessageReceipt",
    "MediaType",
    "MessageType",
    "ParticipantRole",
]
