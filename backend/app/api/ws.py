"""WebSocket endpoint carrying the realtime chat channel."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Dict, TypeVar

from fastapi import APIRouter, WebSocket, status
from fastapi.exceptions import HTTPException
from fastapi.websockets import WebSocketDisconnect, WebSocketState
from pydantic import ValidationError

from app.api.deps import bearer_token, get_user_from_token
from app.config import get_settings
from app.database import get_db_session
from app.models import User
from app.schemas import MessageCreate, ReactionRequest
from app.services import chat_events, conversations, messaging
from parley.realtime import (
    get_connection_manager,
    get_presence_manager,
    get_typing_manager,
)
from parley.realtime.managers import safe_send_json

router = APIRouter(prefix="/ws", tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

manager = get_connection_manager()
presence_manager = get_presence_manager()
typing_manager = get_typing_manager()

T = TypeVar("T")

EventHandler = Callable[[WebSocket, User, Dict[str, Any]], Awaitable[None]]


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    ping_payload: Dict[str, Any] | None = None,
) -> AsyncIterator[T]:
    """Yield messages from *receiver* while sending keepalive pings when idle."""

    ping_payload = ping_payload or {"type": "ping"}
    timeout = float(timeout_seconds) if timeout_seconds else 0.0
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    last_activity = time.monotonic()
    last_ping_sent: float | None = None

    while True:
        try:
            if timeout > 0:
                message = await asyncio.wait_for(receiver(), timeout=timeout)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break
            now = time.monotonic()
            idle_enough = interval <= 0 or (
                now - last_activity >= interval
                and (last_ping_sent is None or now - last_ping_sent >= interval)
            )
            if idle_enough:
                if not await safe_send_json(websocket, ping_payload):
                    break
                last_ping_sent = now
            continue
        except (RuntimeError, WebSocketDisconnect):
            break
        else:
            last_activity = time.monotonic()
            last_ping_sent = None
            yield message


async def _resolve_user(websocket: WebSocket) -> User | None:
    token = bearer_token(websocket)
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Missing token")
        return None

    try:
        with get_db_session() as db:
            return get_user_from_token(token, db)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
        return None


async def _send_error(websocket: WebSocket, detail: str) -> None:
    await safe_send_json(websocket, {"type": "error", "detail": detail})


def _int_field(payload: Dict[str, Any], name: str) -> int:
    try:
        return int(payload[name])
    except (KeyError, TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=f"Field '{name}' is required"
        ) from None


def _require_joined(websocket: WebSocket, conversation_id: int) -> None:
    if conversation_id not in manager.rooms_for(websocket):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Join the conversation first"
        )


async def _handle_join(websocket: WebSocket, user: User, payload: Dict[str, Any]) -> None:
    conversation_id = _int_field(payload, "conversation_id")
    with get_db_session() as db:
        conversations.load_for_participant(conversation_id, user.id, db)
    await manager.join(conversation_id, websocket)
    await safe_send_json(websocket, {"type": "joined", "conversation_id": conversation_id})
    await presence_manager.join(conversation_id, user.id, user.name, websocket)
    await typing_manager.send_snapshot(conversation_id, websocket)


async def _handle_leave(websocket: WebSocket, user: User, payload: Dict[str, Any]) -> None:
    conversation_id = _int_field(payload, "conversation_id")
    if await manager.leave(conversation_id, websocket):
        await typing_manager.stop_typing(conversation_id, user.id, source=websocket)
        await presence_manager.leave(conversation_id, user.id)


async def _handle_send(websocket: WebSocket, user: User, payload: Dict[str, Any]) -> None:
    try:
        data = MessageCreate.model_validate(payload)
    except ValidationError:
        await _send_error(websocket, "Invalid message payload")
        return
    with get_db_session() as db:
        conversation = conversations.load_for_participant(data.conversation_id, user.id, db)
        sender = db.get(User, user.id)
        message = messaging.create_message(
            conversation,
            sender,
            db,
            content=data.content,
            media=data.media,
            reply_to=data.reply_to,
        )
        await typing_manager.stop_typing(data.conversation_id, user.id, source=websocket)
        await chat_events.announce_message(message, conversation, db)


async def _handle_mark_read(websocket: WebSocket, user: User, payload: Dict[str, Any]) -> None:
    message_id = _int_field(payload, "message_id")
    with get_db_session() as db:
        message = messaging.load_message(message_id, db)
        conversations.load_for_participant(message.conversation_id, user.id, db)
        at = messaging.record_receipt(message, user.id, db, read=True)
        conversation_id = message.conversation_id
    if at is not None:
        await chat_events.announce_receipt(conversation_id, message_id, user.id, at, read=True)


async def _handle_typing_start(websocket: WebSocket, user: User, payload: Dict[str, Any]) -> None:
    conversation_id = _int_field(payload, "conversation_id")
    _require_joined(websocket, conversation_id)
    await typing_manager.start_typing(conversation_id, user.id, user.name, source=websocket)


async def _handle_typing_stop(websocket: WebSocket, user: User, payload: Dict[str, Any]) -> None:
    conversation_id = _int_field(payload, "conversation_id")
    _require_joined(websocket, conversation_id)
    await typing_manager.stop_typing(conversation_id, user.id, source=websocket)


async def _handle_reaction(websocket: WebSocket, user: User, payload: Dict[str, Any]) -> None:
    message_id = _int_field(payload, "message_id")
    try:
        emoji = ReactionRequest.model_validate(payload).emoji
    except ValidationError:
        await _send_error(websocket, "Invalid reaction")
        return
    with get_db_session() as db:
        message = messaging.load_message(message_id, db)
        conversations.load_for_participant(message.conversation_id, user.id, db)
        message = messaging.toggle_reaction(message, user.id, emoji, db)
        await chat_events.announce_reactions(message)


async def _handle_delete(websocket: WebSocket, user: User, payload: Dict[str, Any]) -> None:
    message_id = _int_field(payload, "message_id")
    with get_db_session() as db:
        message = messaging.load_message(message_id, db)
        conversation = conversations.load_for_participant(message.conversation_id, user.id, db)
        messaging.delete_message(message, conversation, db.get(User, user.id), db)
        conversation_id = conversation.id
    await chat_events.announce_deletion(conversation_id, message_id)


async def _handle_ping(websocket: WebSocket, user: User, payload: Dict[str, Any]) -> None:
    await safe_send_json(websocket, {"type": "pong"})


async def _handle_pong(websocket: WebSocket, user: User, payload: Dict[str, Any]) -> None:
    return None


HANDLERS: Dict[str, EventHandler] = {
    "join_room": _handle_join,
    "leave_room": _handle_leave,
    "send_message": _handle_send,
    "mark_read": _handle_mark_read,
    "typing_start": _handle_typing_start,
    "typing_stop": _handle_typing_stop,
    "add_reaction": _handle_reaction,
    "delete_message": _handle_delete,
    "ping": _handle_ping,
    "pong": _handle_pong,
}


async def _disconnect(websocket: WebSocket, user: User) -> None:
    rooms = await manager.unregister(websocket)
    await typing_manager.clear_user(user.id, rooms)
    for conversation_id in rooms:
        await presence_manager.leave(conversation_id, user.id)


@router.websocket("/chat")
async def websocket_chat(websocket: WebSocket) -> None:
    """Single multiplexed socket for every conversation the user has open."""

    user = await _resolve_user(websocket)
    if user is None:
        return

    await websocket.accept()
    await manager.register(websocket, user.id)
    logger.debug("Chat socket connected", extra={"user_id": user.id})

    try:
        async for raw_message in iter_keepalive_messages(
            websocket,
            websocket.receive_text,
            timeout_seconds=settings.websocket_keepalive_timeout_seconds,
            ping_interval_seconds=settings.websocket_keepalive_ping_interval_seconds,
        ):
            try:
                payload = json.loads(raw_message)
            except json.JSONDecodeError:
                await _send_error(websocket, "Invalid message format")
                continue
            if not isinstance(payload, dict):
                await _send_error(websocket, "Message payload must be a JSON object")
                continue

            handler = HANDLERS.get(str(payload.get("type")))
            if handler is None:
                await _send_error(websocket, "Unsupported event type")
                continue
            try:
                await handler(websocket, user, payload)
            except HTTPException as exc:
                await _send_error(websocket, str(exc.detail))
            except Exception:
                logger.exception(
                    "Chat socket handler failed",
                    extra={"user_id": user.id, "event": payload.get("type")},
                )
                await _send_error(websocket, "Internal error")
    finally:
        await _disconnect(websocket, user)
        logger.debug("Chat socket disconnected", extra={"user_id": user.id})
