"""Conversation lookup, membership rules and serialization."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from app.models import (
    Conversation,
    ConversationParticipant,
    Message,
    MessageReceipt,
    ParticipantRole,
    User,
)
from parley.sync.editing import ensure_aware
from parley.sync.models import ConversationInfo, Participant


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def direct_key(user_id: int, other_id: int) -> str:
    low, high = sorted((user_id, other_id))
    return f"{low}:{high}"


def _conversation_query():
    return select(Conversation).options(
        selectinload(Conversation.participants).selectinload(ConversationParticipant.user)
    )


def get_conversation(conversation_id: int, db: Session) -> Conversation:
    conversation = db.execute(
        _conversation_query().where(Conversation.id == conversation_id)
    ).scalar_one_or_none()
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return conversation


def require_participant(conversation: Conversation, user_id: int) -> ConversationParticipant:
    participant = conversation.participant(user_id)
    if participant is None or not participant.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Not a conversation participant"
        )
    return participant


def require_admin(conversation: Conversation, user_id: int) -> ConversationParticipant:
    participant = require_participant(conversation, user_id)
    if not conversation.is_group:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Direct conversations have no admins"
        )
    if participant.role != ParticipantRole.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin privileges required")
    return participant


def load_for_participant(conversation_id: int, user_id: int, db: Session) -> Conversation:
    """Return the conversation, 404 when missing and 403 for outsiders."""

    conversation = get_conversation(conversation_id, db)
    require_participant(conversation, user_id)
    return conversation


def serialize_conversation(conversation: Conversation) -> ConversationInfo:
    return ConversationInfo(
        id=conversation.id,
        is_group=conversation.is_group,
        title=conversation.title,
        description=conversation.description,
        created_by=conversation.created_by_id,
        participants=[
            Participant(
                user_id=participant.user_id,
                display_name=participant.user.name if participant.user else None,
                role=participant.role.value,
                is_active=participant.is_active,
            )
            for participant in conversation.participants
        ],
        created_at=ensure_aware(conversation.created_at) if conversation.created_at else None,
        last_message_at=(
            ensure_aware(conversation.last_message_at) if conversation.last_message_at else None
        ),
    )


def list_user_conversations(user_id: int, db: Session) -> list[Conversation]:
    stmt = (
        _conversation_query()
        .join(ConversationParticipant, ConversationParticipant.conversation_id == Conversation.id)
        .where(
            ConversationParticipant.user_id == user_id,
            ConversationParticipant.is_active.is_(True),
        )
    )
    conversations = list(db.execute(stmt).scalars().unique())
    conversations.sort(
        key=lambda item: (ensure_aware(item.last_message_at or item.created_at), item.id),
        reverse=True,
    )
    return conversations


def latest_message(conversation_id: int, db: Session) -> Message | None:
    stmt = (
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(1)
    )
    return db.execute(stmt).scalar_one_or_none()


def unread_count(conversation_id: int, user_id: int, db: Session) -> int:
    read_ids = select(MessageReceipt.message_id).where(
        MessageReceipt.user_id == user_id, MessageReceipt.read_at.is_not(None)
    )
    stmt = select(func.count(Message.id)).where(
        Message.conversation_id == conversation_id,
        Message.sender_id != user_id,
        Message.id.not_in(read_ids),
    )
    return int(db.execute(stmt).scalar_one())


def _require_users(user_ids: Iterable[int], db: Session) -> list[User]:
    wanted = sorted(set(user_ids))
    users = list(db.execute(select(User).where(User.id.in_(wanted))).scalars())
    if len(users) != len(wanted):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return users


def get_or_create_direct(user: User, other_id: int, db: Session) -> tuple[Conversation, bool]:
    """Return the one-to-one conversation for the pair, creating it if needed."""

    if other_id == user.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot start a conversation with yourself"
        )
    _require_users([other_id], db)
    key = direct_key(user.id, other_id)
    conversation = db.execute(
        _conversation_query().where(Conversation.direct_key == key)
    ).scalar_one_or_none()
    if conversation is not None:
        for participant in conversation.participants:
            participant.is_active = True
        db.commit()
        return get_conversation(conversation.id, db), False

    conversation = Conversation(
        is_group=False, direct_key=key, created_by_id=user.id, created_at=_utcnow()
    )
    conversation.participants = [
        ConversationParticipant(user_id=user.id, role=ParticipantRole.MEMBER),
        ConversationParticipant(user_id=other_id, role=ParticipantRole.MEMBER, added_by_id=user.id),
    ]
    db.add(conversation)
    db.commit()
    return get_conversation(conversation.id, db), True


def create_group(
    creator: User,
    member_ids: Iterable[int],
    title: str,
    description: str | None,
    db: Session,
) -> Conversation:
    members = [member for member in dict.fromkeys(member_ids) if member != creator.id]
    _require_users(members, db)
    conversation = Conversation(
        is_group=True,
        title=title,
        description=description,
        created_by_id=creator.id,
        created_at=_utcnow(),
    )
    conversation.participants = [ConversationParticipant(user_id=creator.id, role=ParticipantRole.ADMIN)]
    conversation.participants.extend(
        ConversationParticipant(user_id=member, role=ParticipantRole.MEMBER, added_by_id=creator.id)
        for member in members
    )
    db.add(conversation)
    db.commit()
    return get_conversation(conversation.id, db)


def update_group(
    conversation: Conversation,
    actor: User,
    db: Session,
    *,
    title: str | None = None,
    description: str | None = None,
) -> Conversation:
    require_admin(conversation, actor.id)
    if title is not None:
        conversation.title = title
    if description is not None:
        conversation.description = description
    conversation.updated_at = _utcnow()
    db.commit()
    return get_conversation(conversation.id, db)


def add_members(
    conversation: Conversation, actor: User, user_ids: Iterable[int], db: Session
) -> tuple[Conversation, list[int]]:
    require_admin(conversation, actor.id)
    users = _require_users(user_ids, db)
    added: list[int] = []
    for user in users:
        participant = conversation.participant(user.id)
        if participant is None:
            conversation.participants.append(
                ConversationParticipant(
                    user_id=user.id, role=ParticipantRole.MEMBER, added_by_id=actor.id
                )
            )
            added.append(user.id)
        elif not participant.is_active:
            participant.is_active = True
            participant.role = ParticipantRole.MEMBER
            participant.added_by_id = actor.id
            added.append(user.id)
    db.commit()
    return get_conversation(conversation.id, db), added


def set_member_role(
    conversation: Conversation,
    actor: User,
    user_id: int,
    role: ParticipantRole,
    db: Session,
) -> Conversation:
    require_admin(conversation, actor.id)
    target = require_participant(conversation, user_id)
    if user_id == conversation.created_by_id and role != ParticipantRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="The group creator is always an admin"
        )
    target.role = role
    db.commit()
    return get_conversation(conversation.id, db)


def remove_member(
    conversation: Conversation, actor: User, user_id: int, db: Session
) -> Conversation:
    """Remove ``user_id`` from a group, or let the actor leave it."""

    if not conversation.is_group:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot change members of a direct conversation",
        )
    if user_id == conversation.created_by_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="The group creator cannot leave; delete the group instead",
        )
    if user_id == actor.id:
        target = require_participant(conversation, actor.id)
    else:
        require_admin(conversation, actor.id)
        target = require_participant(conversation, user_id)
    target.is_active = False
    target.role = ParticipantRole.MEMBER
    db.commit()
    return get_conversation(conversation.id, db)


def delete_group(conversation: Conversation, actor: User, db: Session) -> list[int]:
    """Delete a group and return the ids of its former active members."""

    require_participant(conversation, actor.id)
    if not conversation.is_group:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Only group conversations can be deleted"
        )
    if conversation.created_by_id != actor.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Only the group creator can delete it"
        )
    members = conversation.active_user_ids()
    db.delete(conversation)
    db.commit()
    return members
