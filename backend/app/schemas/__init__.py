"""Pydantic schemas for API payloads."""

from .auth import LoginRequest, Token, UserCreate, UserRead
from .conversations import (
    ConversationCreate,
    ConversationListItem,
    ConversationUpdate,
    MemberRoleUpdate,
    MembersAdd,
)
from .messages import (
    MessageCreate,
    MessageUpdate,
    ReactionRequest,
    ReactionSnapshotRead,
    ReceiptRead,
)
from .uploads import UploadRead

__all__ = [
    "LoginRequest",
    "Token",
    "UserCreate",
    "UserRead",
    "ConversationCreate",
    "ConversationListItem",
    "ConversationUpdate",
    "MemberRoleUpdate",
    "MembersAdd",
    "MessageCreate",
    "MessageUpdate",
    "ReactionRequest",
    "ReactionSnapshotRead",
    "ReceiptRead",
    "UploadRead",
]
