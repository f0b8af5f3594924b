"""HTTP endpoints for managing chat messages."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from app.api.deps import get_current_user
from app.database import get_db
from app.models import Message, User
from app.schemas import (
    MessageCreate,
    MessageUpdate,
    ReactionRequest,
    ReactionSnapshotRead,
    ReceiptRead,
)
from app.services import chat_events, conversations, messaging
from parley.sync.models import ChatMessage

router = APIRouter(prefix="/messages", tags=["messages"])


def _load_visible(message_id: int, user: User, db: Session) -> Message:
    message = messaging.load_message(message_id, db)
    conversations.load_for_participant(message.conversation_id, user.id, db)
    return message


@router.post("", response_model=ChatMessage, status_code=status.HTTP_201_CREATED)
async def create_message(
    payload: MessageCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ChatMessage:
    """Store a message and fan it out to the conversation room."""

    conversation = conversations.load_for_participant(payload.conversation_id, current_user.id, db)
    message = messaging.create_message(
        conversation,
        current_user,
        db,
        content=payload.content,
        media=payload.media,
        reply_to=payload.reply_to,
    )
    await chat_events.announce_message(message, conversation, db)
    return messaging.serialize_message(messaging.load_message(message.id, db))


@router.patch("/{message_id}", response_model=ChatMessage)
async def update_message(
    message_id: int,
    payload: MessageUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ChatMessage:
    message = _load_visible(message_id, current_user, db)
    message = messaging.edit_message(message, current_user, payload.content, db)
    await chat_events.announce_edit(message)
    return messaging.serialize_message(message)


@router.delete("/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_message(
    message_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Response:
    message = messaging.load_message(message_id, db)
    conversation = conversations.load_for_participant(message.conversation_id, current_user.id, db)
    conversation_id = message.conversation_id
    messaging.delete_message(message, conversation, current_user, db)
    await chat_events.announce_deletion(conversation_id, message_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{message_id}/reactions", response_model=ReactionSnapshotRead)
async def toggle_reaction(
    message_id: int,
    payload: ReactionRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ReactionSnapshotRead:
    """Add the caller's reaction, or remove it when it is already there."""

    message = _load_visible(message_id, current_user, db)
    message = messaging.toggle_reaction(message, current_user.id, payload.emoji, db)
    await chat_events.announce_reactions(message)
    snapshot = messaging.serialize_message(message)
    return ReactionSnapshotRead(
        message_id=message.id, reactions=snapshot.reactions, seq=snapshot.reaction_seq
    )


async def _receipt(message_id: int, user: User, db: Session, *, read: bool) -> ReceiptRead:
    message = _load_visible(message_id, user, db)
    at = messaging.record_receipt(message, user.id, db, read=read)
    if at is not None:
        await chat_events.announce_receipt(message.conversation_id, message.id, user.id, at, read=read)
    receipt = next((item for item in message.receipts if item.user_id == user.id), None)
    return ReceiptRead(
        message_id=message.id,
        user_id=user.id,
        delivered_at=receipt.delivered_at if receipt else None,
        read_at=receipt.read_at if receipt else None,
    )


@router.post("/{message_id}/read", response_model=ReceiptRead)
async def mark_read(
    message_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ReceiptRead:
    return await _receipt(message_id, current_user, db, read=True)


@router.post("/{message_id}/delivered", response_model=ReceiptRead)
async def mark_delivered(
    message_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ReceiptRead:
    return await _receipt(message_id, current_user, db, read=False)
