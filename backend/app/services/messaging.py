"""Message persistence: history, sending, edits, reactions and receipts."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable

from fastapi import HTTPException, status
from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session, selectinload

from app.config import get_settings
from app.models import (
    Conversation,
    Message,
    MessageAttachment,
    MessageReaction,
    MessageReceipt,
    MessageType,
    ParticipantRole,
    User,
)
from app.monitoring.metrics import messages_sent_total
from parley.sync.editing import ensure_aware, within_edit_window
from parley.sync.models import ChatMessage, MediaItem, Reaction, Receipt, infer_message_type

logger = logging.getLogger(__name__)

settings = get_settings()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _message_query():
    return select(Message).options(
        selectinload(Message.attachments),
        selectinload(Message.reactions),
        selectinload(Message.receipts),
    )


def load_message(message_id: int, db: Session) -> Message:
    message = db.execute(_message_query().where(Message.id == message_id)).scalar_one_or_none()
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    return message


def serialize_message(message: Message) -> ChatMessage:
    return ChatMessage(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        content=message.content,
        type=message.type,
        media=[
            MediaItem(
                type=attachment.media_type,
                url=attachment.url,
                filename=attachment.file_name,
                size=attachment.file_size,
                mime_type=attachment.mime_type,
            )
            for attachment in message.attachments
        ],
        reply_to=message.reply_to_id,
        reactions=[
            Reaction(emoji=reaction.emoji, user_id=reaction.user_id)
            for reaction in message.reactions
        ],
        reaction_seq=message.reaction_seq or 0,
        delivered_to=[
            Receipt(user_id=receipt.user_id, at=ensure_aware(receipt.delivered_at))
            for receipt in message.receipts
            if receipt.delivered_at is not None
        ],
        read_by=[
            Receipt(user_id=receipt.user_id, at=ensure_aware(receipt.read_at))
            for receipt in message.receipts
            if receipt.read_at is not None
        ],
        created_at=ensure_aware(message.created_at),
        edited_at=ensure_aware(message.edited_at) if message.edited_at else None,
    )


def fetch_history(
    conversation_id: int,
    db: Session,
    *,
    limit: int | None = None,
    before: int | None = None,
) -> list[Message]:
    """Return up to ``limit`` messages older than ``before``, oldest first."""

    limit = max(1, min(limit or settings.chat_history_default_limit, settings.chat_history_max_limit))
    stmt = _message_query().where(Message.conversation_id == conversation_id)
    if before is not None:
        anchor = db.get(Message, before)
        if anchor is None or anchor.conversation_id != conversation_id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
        stmt = stmt.where(
            or_(
                Message.created_at < anchor.created_at,
                and_(Message.created_at == anchor.created_at, Message.id < anchor.id),
            )
        )
    stmt = stmt.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit)
    messages = list(db.execute(stmt).scalars())
    messages.reverse()
    return messages


def _check_length(content: str | None) -> None:
    if content and len(content) > settings.chat_message_max_length:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Message exceeds {settings.chat_message_max_length} characters",
        )


def create_message(
    conversation: Conversation,
    sender: User,
    db: Session,
    *,
    content: str | None = None,
    media: Iterable[MediaItem] = (),
    reply_to: int | None = None,
) -> Message:
    media = list(media)
    text = content.strip() if content else None
    if not text and not media:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message is empty")
    _check_length(text)

    if reply_to is not None:
        parent = db.get(Message, reply_to)
        if parent is None or parent.conversation_id != conversation.id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Replied message is not part of this conversation",
            )

    now = _utcnow()
    message_type = infer_message_type(media)
    message = Message(
        conversation_id=conversation.id,
        sender_id=sender.id,
        type=message_type,
        content=text,
        reply_to_id=reply_to,
        reaction_seq=0,
        created_at=now,
    )
    message.attachments = [
        MessageAttachment(
            position=index,
            media_type=item.type,
            url=item.url,
            file_name=item.filename,
            file_size=item.size,
            mime_type=item.mime_type,
        )
        for index, item in enumerate(media)
    ]
    db.add(message)
    conversation.last_message_at = now
    db.commit()
    messages_sent_total.labels(message_type.value).inc()
    logger.debug(
        "Stored message",
        extra={"conversation_id": conversation.id, "message_id": message.id, "type": message_type.value},
    )
    return load_message(message.id, db)


def edit_message(message: Message, editor: User, content: str, db: Session) -> Message:
    if message.sender_id != editor.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Only the author can edit this message"
        )
    if message.type != MessageType.TEXT:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Only text messages can be edited"
        )
    window = timedelta(minutes=settings.message_edit_window_minutes)
    if not within_edit_window(message.created_at, _utcnow(), window):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Edit window has closed")
    text = content.strip()
    if not text:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message is empty")
    _check_length(text)
    message.content = text
    message.edited_at = _utcnow()
    db.commit()
    return load_message(message.id, db)


def delete_message(message: Message, conversation: Conversation, actor: User, db: Session) -> None:
    if message.sender_id != actor.id:
        participant = conversation.participant(actor.id)
        is_admin = (
            conversation.is_group
            and participant is not None
            and participant.is_active
            and participant.role == ParticipantRole.ADMIN
        )
        if not is_admin:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN, detail="Cannot delete this message"
            )
    db.delete(message)
    db.commit()


def toggle_reaction(message: Message, user_id: int, emoji: str, db: Session) -> Message:
    """Add the user's ``emoji`` reaction, or remove it if already present."""

    existing = next(
        (
            reaction
            for reaction in message.reactions
            if reaction.user_id == user_id and reaction.emoji == emoji
        ),
        None,
    )
    if existing is not None:
        message.reactions.remove(existing)
    else:
        message.reactions.append(MessageReaction(user_id=user_id, emoji=emoji))
    message.reaction_seq = (message.reaction_seq or 0) + 1
    db.commit()
    return load_message(message.id, db)


def _receipt_for(message: Message, user_id: int) -> MessageReceipt:
    for receipt in message.receipts:
        if receipt.user_id == user_id:
            return receipt
    receipt = MessageReceipt(user_id=user_id)
    message.receipts.append(receipt)
    return receipt


def record_receipt(
    message: Message, user_id: int, db: Session, *, read: bool
) -> datetime | None:
    """Record delivery, or a read which implies delivery.

    Returns the receipt timestamp when something new was recorded, ``None``
    when the receipt already existed or the user is the sender.
    """

    if message.sender_id == user_id:
        return None
    receipt = _receipt_for(message, user_id)
    now = _utcnow()
    changed = False
    if receipt.delivered_at is None:
        receipt.delivered_at = now
        changed = not read
    if read and receipt.read_at is None:
        receipt.read_at = now
        changed = True
    if not changed:
        return None
    db.commit()
    return now


def record_deliveries(
    message: Message, user_ids: Iterable[int], db: Session
) -> list[tuple[int, datetime]]:
    """Mark ``message`` delivered to each of ``user_ids`` that had no receipt yet."""

    now = _utcnow()
    recorded: list[tuple[int, datetime]] = []
    for user_id in sorted(set(user_ids)):
        if user_id == message.sender_id:
            continue
        receipt = _receipt_for(message, user_id)
        if receipt.delivered_at is None:
            receipt.delivered_at = now
            recorded.append((user_id, now))
    if recorded:
        db.commit()
    return recorded
