"""Websocket client for the ``/ws/chat`` event channel."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .models import MessageDraft
from .session import SessionContext

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict[str, Any]], Awaitable[None]]

_RECONNECT_BASE_DELAY = 0.5
_RECONNECT_MAX_DELAY = 30.0
_POLICY_VIOLATION = 1008


class RealtimeChannel:
    """Bidirectional event channel with automatic reconnection.

    Outbound helpers are fire-and-forget: while disconnected they are dropped
    and the caller is told via the ``False`` return value. Rooms joined through
    :meth:`join_room` are re-joined after every reconnect, and replayed events
    are left to the idempotent store to absorb.
    """

    def __init__(
        self,
        session: SessionContext,
        *,
        connect: Callable[..., Any] = websockets.connect,
        base_delay: float = _RECONNECT_BASE_DELAY,
        max_delay: float = _RECONNECT_MAX_DELAY,
    ) -> None:
        self.session = session
        self._connect = connect
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._handlers: list[EventHandler] = []
        self._rooms: set[int] = set()
        self._websocket: Any | None = None
        self._closing = False
        self.connected = asyncio.Event()
        self.connections = 0

    @property
    def rooms(self) -> frozenset[int]:
        return frozenset(self._rooms)

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    async def send(self, event_type: str, **fields: Any) -> bool:
        websocket = self._websocket
        if websocket is None:
            logger.debug("Dropping %s while disconnected", event_type)
            return False
        try:
            await websocket.send(json.dumps({"type": event_type, **fields}))
        except (ConnectionClosed, OSError):
            logger.debug("Failed to send %s", event_type, exc_info=True)
            return False
        return True

    async def join_room(self, conversation_id: int) -> bool:
        self._rooms.add(conversation_id)
        return await self.send("join_room", conversation_id=conversation_id)

    async def leave_room(self, conversation_id: int) -> bool:
        self._rooms.discard(conversation_id)
        return await self.send("leave_room", conversation_id=conversation_id)

    async def send_message(self, conversation_id: int, draft: MessageDraft) -> bool:
        return await self.send("send_message", **draft.to_payload(conversation_id))

    async def mark_read(self, message_id: int, conversation_id: int) -> bool:
        return await self.send("mark_read", message_id=message_id, conversation_id=conversation_id)

    async def start_typing(self, conversation_id: int) -> bool:
        return await self.send(
            "typing_start", conversation_id=conversation_id, user_id=self.session.user_id
        )

    async def stop_typing(self, conversation_id: int) -> bool:
        return await self.send(
            "typing_stop", conversation_id=conversation_id, user_id=self.session.user_id
        )

    async def add_reaction(self, message_id: int, emoji: str) -> bool:
        return await self.send("add_reaction", message_id=message_id, emoji=emoji)

    async def delete_message(self, message_id: int) -> bool:
        return await self.send("delete_message", message_id=message_id)

    async def close(self) -> None:
        self._closing = True
        websocket, self._websocket = self._websocket, None
        self.connected.clear()
        if websocket is not None:
            await websocket.close()

    async def run(self) -> None:
        """Keep the channel connected until :meth:`close` is called."""

        attempt = 0
        url = self.session.websocket_url()
        while not self._closing:
            try:
                async with self._connect(url) as websocket:
                    attempt = 0
                    await self._on_connected(websocket)
                    async for raw in websocket:
                        await self._dispatch(raw)
            except ConnectionClosed as exc:
                code = exc.rcvd.code if exc.rcvd is not None else None
                if code == _POLICY_VIOLATION:
                    logger.warning("Realtime channel rejected the session token")
                    self._closing = True
                    break
                logger.info("Realtime channel closed", extra={"code": code})
            except (WebSocketException, OSError, asyncio.TimeoutError):
                logger.warning("Realtime channel connection failed", exc_info=True)
            finally:
                self._websocket = None
                self.connected.clear()

            if self._closing:
                break
            delay = min(self._base_delay * (2**attempt), self._max_delay)
            attempt += 1
            logger.info("Reconnecting realtime channel", extra={"delay": delay, "attempt": attempt})
            await asyncio.sleep(delay)

    async def _on_connected(self, websocket: Any) -> None:
        self._websocket = websocket
        self.connections += 1
        for conversation_id in sorted(self._rooms):
            await self.send("join_room", conversation_id=conversation_id)
        self.connected.set()

    async def _dispatch(self, raw: str | bytes) -> None:
        try:
            event = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarded malformed realtime frame")
            return
        if not isinstance(event, dict):
            return
        if event.get("type") == "ping":
            await self.send("pong")
            return
        for handler in list(self._handlers):
            try:
                await handler(event)
            except Exception:
                logger.exception("Realtime event handler failed", extra={"type": event.get("type")})
