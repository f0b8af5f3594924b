"""Realtime helpers for distributed websocket coordination."""

from .managers import (  # noqa: F401
    ConversationConnectionManager,
    PresenceManager,
    RoomEventRelay,
    TypingManager,
    get_connection_manager,
    get_presence_manager,
    get_room_relay,
    get_typing_manager,
    realtime_status,
    safe_send_json,
    shutdown_realtime,
    startup_realtime,
)

__all__ = [
    "startup_realtime",
    "shutdown_realtime",
    "get_connection_manager",
    "get_presence_manager",
    "get_room_relay",
    "get_typing_manager",
    "realtime_status",
    "safe_send_json",
    "ConversationConnectionManager",
    "PresenceManager",
    "RoomEventRelay",
    "TypingManager",
]
