"""Application service helpers."""

from . import chat_events, conversations, messaging

__all__ = ["chat_events", "conversations", "messaging"]
