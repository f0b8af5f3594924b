"""Room events emitted after chat state changes."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy.orm import Session

from app.database import get_db_session
from app.models import Conversation, Message
from app.services import messaging
from app.services.conversations import get_conversation, serialize_conversation
from parley.realtime import get_room_relay

logger = logging.getLogger(__name__)


def receipt_event(
    event_type: str, conversation_id: int, message_id: int, user_id: int, at: datetime
) -> dict[str, Any]:
    return {
        "type": event_type,
        "conversation_id": conversation_id,
        "message_id": message_id,
        "user_id": user_id,
        "at": at.isoformat(),
    }


async def _emit_deliveries(message: Message, user_ids: Iterable[int], db: Session) -> None:
    relay = get_room_relay()
    for user_id, at in messaging.record_deliveries(message, user_ids, db):
        await relay.emit(
            message.conversation_id,
            receipt_event("message_delivered", message.conversation_id, message.id, user_id, at),
        )


async def announce_message(message: Message, conversation: Conversation, db: Session) -> None:
    """Send ``message_received`` to the room and record delivery for connected members."""

    members = set(conversation.active_user_ids())
    payload = {
        "type": "message_received",
        "conversation_id": conversation.id,
        "message": messaging.serialize_message(message).model_dump(mode="json"),
    }
    reached = await get_room_relay().emit(conversation.id, payload, notify_user_ids=members)
    await _emit_deliveries(message, (reached & members) - {message.sender_id}, db)


async def announce_receipt(
    conversation_id: int, message_id: int, user_id: int, at: datetime, *, read: bool
) -> None:
    event_type = "message_read" if read else "message_delivered"
    await get_room_relay().emit(
        conversation_id, receipt_event(event_type, conversation_id, message_id, user_id, at)
    )


async def announce_reactions(message: Message) -> None:
    snapshot = messaging.serialize_message(message)
    await get_room_relay().emit(
        message.conversation_id,
        {
            "type": "reaction_changed",
            "conversation_id": message.conversation_id,
            "message_id": message.id,
            "reactions": [reaction.model_dump(mode="json") for reaction in snapshot.reactions],
            "seq": snapshot.reaction_seq,
        },
    )


async def announce_edit(message: Message) -> None:
    await get_room_relay().emit(
        message.conversation_id,
        {
            "type": "message_edited",
            "conversation_id": message.conversation_id,
            "message": messaging.serialize_message(message).model_dump(mode="json"),
        },
    )


async def announce_deletion(conversation_id: int, message_id: int) -> None:
    await get_room_relay().emit(
        conversation_id,
        {"type": "message_deleted", "conversation_id": conversation_id, "message_id": message_id},
    )


async def announce_conversation(
    conversation: Conversation, *, extra_user_ids: Iterable[int] = ()
) -> None:
    """Broadcast ``conversation_updated`` to the room and to every member's sockets.

    ``extra_user_ids`` reach users who were just removed or left.
    """

    notify = set(conversation.active_user_ids()) | set(extra_user_ids)
    await get_room_relay().emit(
        conversation.id,
        {
            "type": "conversation_updated",
            "conversation": serialize_conversation(conversation).model_dump(mode="json"),
        },
        notify_user_ids=notify,
    )


async def announce_conversation_deleted(conversation_id: int, member_ids: Iterable[int]) -> None:
    await get_room_relay().emit(
        conversation_id,
        {"type": "conversation_deleted", "conversation_id": conversation_id},
        notify_user_ids=member_ids,
    )


async def deliver_relayed_message(
    conversation_id: int, payload: dict[str, Any], local_user_ids: set[int]
) -> None:
    """Record delivery for local recipients of a message sent through another node."""

    if payload.get("type") != "message_received" or not local_user_ids:
        return
    message_id = (payload.get("message") or {}).get("id")
    if message_id is None:
        return
    with get_db_session() as db:
        message = db.get(Message, int(message_id))
        if message is None:
            logger.debug("Relayed message no longer exists", extra={"message_id": message_id})
            return
        conversation = get_conversation(conversation_id, db)
        members = set(conversation.active_user_ids())
        await _emit_deliveries(message, (local_user_ids & members) - {message.sender_id}, db)
