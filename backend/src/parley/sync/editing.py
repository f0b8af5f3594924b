from __future__ import annotations

from datetime import datetime, timedelta, timezone

from .models import ChatMessage, MessageType

EDIT_WINDOW = timedelta(minutes=10)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def within_edit_window(
    created_at: datetime, now: datetime | None = None, window: timedelta = EDIT_WINDOW
) -> bool:
    current = ensure_aware(now) if now is not None else datetime.now(timezone.utc)
    return current - ensure_aware(created_at) < window


def can_edit(
    message: ChatMessage,
    user_id: int,
    now: datetime | None = None,
    window: timedelta = EDIT_WINDOW,
) -> bool:
    """Whether ``user_id`` may still edit ``message``.

    Only the author's own text messages are editable, and only until the edit
    window closes. Evaluated on demand; nothing is persisted.
    """

    if message.sender_id != user_id or message.type != MessageType.TEXT:
        return False
    return within_edit_window(message.created_at, now, window)
