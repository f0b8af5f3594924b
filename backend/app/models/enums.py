from __future__ import annotations

from enum import Enum

from parley.sync.models import MediaType, MessageType


class ParticipantRole(str, Enum):
    """Roles a user can have inside a conversation."""

    ADMIN = "admin"
    MEMBER = "member"


__all__ = ["MediaType", "MessageType", "ParticipantRole"]
