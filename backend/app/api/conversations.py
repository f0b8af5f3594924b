"""Conversation endpoints: listing, direct chats, groups and membership."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from app.api.deps import get_current_user, get_member_conversation
from app.database import get_db
from app.models import Conversation, User
from app.schemas import (
    ConversationCreate,
    ConversationListItem,
    ConversationUpdate,
    MemberRoleUpdate,
    MembersAdd,
)
from app.services import chat_events, conversations, messaging
from parley.sync.models import ChatMessage, ConversationInfo

router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.get("", response_model=list[ConversationListItem])
def list_conversations(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[ConversationListItem]:
    """Return the caller's conversations, most recent activity first."""

    items: list[ConversationListItem] = []
    for conversation in conversations.list_user_conversations(current_user.id, db):
        info = conversations.serialize_conversation(conversation)
        latest = conversations.latest_message(conversation.id, db)
        items.append(
            ConversationListItem(
                **info.model_dump(),
                last_message=messaging.serialize_message(latest) if latest else None,
                unread_count=conversations.unread_count(conversation.id, current_user.id, db),
            )
        )
    return items


@router.post("", response_model=ConversationInfo)
async def create_conversation(
    payload: ConversationCreate,
    response: Response,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ConversationInfo:
    if payload.is_group:
        conversation = conversations.create_group(
            current_user, payload.participant_ids, payload.title or "", payload.description, db
        )
        created = True
    else:
        conversation, created = conversations.get_or_create_direct(
            current_user, payload.participant_ids[0], db
        )
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    if created:
        await chat_events.announce_conversation(conversation)
    return conversations.serialize_conversation(conversation)


@router.get("/{conversation_id}", response_model=ConversationInfo)
def read_conversation(
    conversation: Conversation = Depends(get_member_conversation),
) -> ConversationInfo:
    return conversations.serialize_conversation(conversation)


@router.patch("/{conversation_id}", response_model=ConversationInfo)
async def update_conversation(
    conversation_id: int,
    payload: ConversationUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ConversationInfo:
    conversation = conversations.get_conversation(conversation_id, db)
    conversation = conversations.update_group(
        conversation,
        current_user,
        db,
        title=payload.title,
        description=payload.description,
    )
    await chat_events.announce_conversation(conversation)
    return conversations.serialize_conversation(conversation)


@router.delete("/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_conversation(
    conversation_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Response:
    conversation = conversations.get_conversation(conversation_id, db)
    members = conversations.delete_group(conversation, current_user, db)
    await chat_events.announce_conversation_deleted(conversation_id, members)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{conversation_id}/members", response_model=ConversationInfo)
async def add_conversation_members(
    conversation_id: int,
    payload: MembersAdd,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ConversationInfo:
    conversation = conversations.get_conversation(conversation_id, db)
    conversation, added = conversations.add_members(conversation, current_user, payload.user_ids, db)
    if added:
        await chat_events.announce_conversation(conversation)
    return conversations.serialize_conversation(conversation)


@router.patch("/{conversation_id}/members/{user_id}", response_model=ConversationInfo)
async def change_member_role(
    conversation_id: int,
    user_id: int,
    payload: MemberRoleUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ConversationInfo:
    conversation = conversations.get_conversation(conversation_id, db)
    conversation = conversations.set_member_role(conversation, current_user, user_id, payload.role, db)
    await chat_events.announce_conversation(conversation)
    return conversations.serialize_conversation(conversation)


@router.delete("/{conversation_id}/members/{user_id}", response_model=ConversationInfo)
async def remove_conversation_member(
    conversation_id: int,
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ConversationInfo:
    """Remove a member (admins) or leave the group (``user_id`` is the caller)."""

    conversation = conversations.get_conversation(conversation_id, db)
    conversation = conversations.remove_member(conversation, current_user, user_id, db)
    await chat_events.announce_conversation(conversation, extra_user_ids=[user_id])
    return conversations.serialize_conversation(conversation)


@router.get("/{conversation_id}/messages", response_model=list[ChatMessage])
def read_messages(
    limit: int | None = Query(default=None, ge=1),
    before: int | None = Query(default=None, description="Return messages older than this id"),
    conversation: Conversation = Depends(get_member_conversation),
    db: Session = Depends(get_db),
) -> list[ChatMessage]:
    """Return a page of history in ascending order."""

    history = messaging.fetch_history(conversation.id, db, limit=limit, before=before)
    return [messaging.serialize_message(message) for message in history]
