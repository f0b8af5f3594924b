"""Conversation rooms, typing, presence and cross-node fan-out."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, Iterable, Sequence, Set

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from app.config import get_settings
from app.monitoring.metrics import (
    realtime_connections,
    realtime_events_total,
    realtime_publish_errors_total,
    realtime_subscriptions,
    typing_expired_total,
)

from .transport import (
    CONNECT_ERRORS,
    PRESENCE_TOPIC,
    ROOM_TOPIC,
    TYPING_TOPIC,
    BrokerConfig,
    RealtimeTransport,
    Subscription,
    TransportUnavailableError,
)

logger = logging.getLogger(__name__)


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Send ``data`` unless the socket is already gone; returns success."""

    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Failed to send websocket message: %s", e)
        return False


class _BrokerClient:
    """Shared publish/subscribe plumbing for the cluster-aware managers."""

    topic: str = ""

    def __init__(self, transport: RealtimeTransport, *, node_id: str, backend: str | None) -> None:
        self._transport = transport
        self._node_id = node_id
        self._backend = backend
        self._subscription: Subscription | None = None
        self._publish_warning_logged = False

    @property
    def _backend_label(self) -> str:
        return self._backend or "auto"

    async def _handle_remote(self, message: dict[str, Any]) -> None:
        raise NotImplementedError

    async def subscribe(self) -> None:
        async def handle(message: dict[str, Any]) -> None:
            if message.get("origin") == self._node_id:
                return
            realtime_events_total.labels(self.topic, "in", message.get("action", "event")).inc()
            await self._handle_remote(message)

        try:
            self._subscription = await self._transport.subscribe(
                self.topic, handle, backend=self._backend
            )
        except TransportUnavailableError:
            logger.warning(
                "Realtime backend unavailable; %s events stay on this instance",
                self.topic,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            self._subscription = None
            return
        realtime_subscriptions.labels(self.topic, self._backend_label).inc()

    async def unsubscribe(self) -> None:
        if self._subscription is not None:
            await self._subscription.close()
            realtime_subscriptions.labels(self.topic, self._backend_label).dec()
            self._subscription = None

    async def _publish(self, action: str, payload: dict[str, Any]) -> None:
        if not self._transport.is_running:
            return
        message = {"action": action, "origin": self._node_id, **payload}
        try:
            await self._transport.publish(self.topic, message, backend=self._backend)
        except TransportUnavailableError:
            if not self._publish_warning_logged:
                logger.warning(
                    "Realtime backend unavailable while broadcasting %s %s update; operating in local-only mode",
                    action,
                    self.topic,
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                self._publish_warning_logged = True
            realtime_publish_errors_total.labels(self.topic, self._backend_label, "unavailable").inc()
        except Exception:
            realtime_publish_errors_total.labels(self.topic, self._backend_label, "error").inc()
            logger.exception("Unexpected error while broadcasting %s %s update", action, self.topic)
        else:
            self._publish_warning_logged = False
            realtime_events_total.labels(self.topic, "out", action).inc()


# ---------------------------------------------------------------------------
# Connection manager
# ---------------------------------------------------------------------------


class ConversationConnectionManager:
    """Tracks sockets per user and per conversation room."""

    def __init__(self) -> None:
        self._rooms: Dict[int, Set[WebSocket]] = defaultdict(set)
        self._socket_rooms: Dict[WebSocket, Set[int]] = {}
        self._socket_users: Dict[WebSocket, int] = {}
        self._user_sockets: Dict[int, Set[WebSocket]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def register(self, websocket: WebSocket, user_id: int) -> None:
        async with self._lock:
            self._socket_users[websocket] = user_id
            self._socket_rooms.setdefault(websocket, set())
            self._user_sockets[user_id].add(websocket)
        realtime_connections.labels("sockets").inc()

    async def unregister(self, websocket: WebSocket) -> list[int]:
        """Forget ``websocket`` and return the rooms it was still in."""

        async with self._lock:
            user_id = self._socket_users.pop(websocket, None)
            if user_id is None:
                return []
            sockets = self._user_sockets.get(user_id)
            if sockets is not None:
                sockets.discard(websocket)
                if not sockets:
                    self._user_sockets.pop(user_id, None)
            rooms = sorted(self._socket_rooms.pop(websocket, set()))
            for conversation_id in rooms:
                self._discard(conversation_id, websocket)
        realtime_connections.labels("sockets").dec()
        return rooms

    def _discard(self, conversation_id: int, websocket: WebSocket) -> None:
        bucket = self._rooms.get(conversation_id)
        if bucket and websocket in bucket:
            bucket.remove(websocket)
            realtime_connections.labels("rooms").dec()
            if not bucket:
                self._rooms.pop(conversation_id, None)

    async def join(self, conversation_id: int, websocket: WebSocket) -> bool:
        async with self._lock:
            bucket = self._rooms.setdefault(conversation_id, set())
            if websocket in bucket:
                return False
            bucket.add(websocket)
            self._socket_rooms.setdefault(websocket, set()).add(conversation_id)
        realtime_connections.labels("rooms").inc()
        return True

    async def leave(self, conversation_id: int, websocket: WebSocket) -> bool:
        async with self._lock:
            rooms = self._socket_rooms.get(websocket)
            if not rooms or conversation_id not in rooms:
                return False
            rooms.discard(conversation_id)
            self._discard(conversation_id, websocket)
        return True

    def rooms_for(self, websocket: WebSocket) -> frozenset[int]:
        return frozenset(self._socket_rooms.get(websocket, ()))

    def user_ids_in(self, conversation_id: int) -> set[int]:
        users: set[int] = set()
        for websocket in self._rooms.get(conversation_id, ()):
            user_id = self._socket_users.get(websocket)
            if user_id is not None:
                users.add(user_id)
        return users

    def connected_user_ids(self, user_ids: Iterable[int]) -> set[int]:
        return {user_id for user_id in user_ids if self._user_sockets.get(user_id)}

    async def broadcast(
        self,
        conversation_id: int,
        payload: dict[str, Any],
        *,
        exclude: Iterable[WebSocket] | None = None,
    ) -> int:
        exclude_set = set(exclude or [])
        sent = 0
        for connection in list(self._rooms.get(conversation_id, ())):
            if connection in exclude_set:
                continue
            if await safe_send_json(connection, payload):
                sent += 1
        return sent

    async def send_to_users(self, user_ids: Iterable[int], payload: dict[str, Any]) -> int:
        sent = 0
        for user_id in set(user_ids):
            for connection in list(self._user_sockets.get(user_id, ())):
                if await safe_send_json(connection, payload):
                    sent += 1
        return sent


# ---------------------------------------------------------------------------
# Room events
# ---------------------------------------------------------------------------


RemoteEventHook = Callable[[int, dict[str, Any], set[int]], Awaitable[None]]


class RoomEventRelay(_BrokerClient):
    """Delivers conversation events to local sockets and to the other nodes."""

    topic = ROOM_TOPIC

    def __init__(
        self,
        connection_manager: ConversationConnectionManager,
        transport: RealtimeTransport,
        *,
        node_id: str,
        backend: str | None,
    ) -> None:
        super().__init__(transport, node_id=node_id, backend=backend)
        self._connections = connection_manager
        self._remote_hooks: list[RemoteEventHook] = []

    def on_remote_event(self, hook: RemoteEventHook) -> None:
        """Run ``hook(conversation_id, payload, local_user_ids)`` for relayed events."""

        self._remote_hooks.append(hook)

    async def emit(
        self,
        conversation_id: int,
        payload: dict[str, Any],
        *,
        exclude: Iterable[WebSocket] | None = None,
        notify_user_ids: Iterable[int] = (),
    ) -> set[int]:
        """Broadcast ``payload`` to the room and return the users reached locally.

        ``notify_user_ids`` also receive the event on every socket they have
        open, even outside the room.
        """

        notify = set(notify_user_ids)
        recipients = self._connections.user_ids_in(conversation_id)
        await self._connections.broadcast(conversation_id, payload, exclude=exclude)
        outside = self._connections.connected_user_ids(notify - recipients)
        if outside:
            await self._connections.send_to_users(outside, payload)
        realtime_events_total.labels(self.topic, "local", str(payload.get("type"))).inc()
        await self._publish(
            str(payload.get("type", "event")),
            {
                "conversation_id": conversation_id,
                "payload": payload,
                "notify_user_ids": sorted(notify),
            },
        )
        return recipients | outside

    async def _handle_remote(self, message: dict[str, Any]) -> None:
        try:
            conversation_id = int(message["conversation_id"])
        except (KeyError, TypeError, ValueError):
            return
        payload = message.get("payload")
        if not isinstance(payload, dict):
            return
        recipients = self._connections.user_ids_in(conversation_id)
        await self._connections.broadcast(conversation_id, payload)
        outside = self._connections.connected_user_ids(
            {int(user_id) for user_id in message.get("notify_user_ids", [])} - recipients
        )
        if outside:
            await self._connections.send_to_users(outside, payload)
        for hook in list(self._remote_hooks):
            try:
                await hook(conversation_id, payload, recipients | outside)
            except Exception:
                logger.exception(
                    "Remote room event hook failed", extra={"conversation_id": conversation_id}
                )


# ---------------------------------------------------------------------------
# Typing
# ---------------------------------------------------------------------------


class TypingStatusStore:
    """Typing assertions with a server-enforced time to live."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[int, Dict[int, tuple[str, float]]] = {}
        self._lock = asyncio.Lock()

    @property
    def ttl(self) -> float:
        return self._ttl

    async def touch(self, conversation_id: int, user_id: int, display_name: str) -> bool:
        """Start or refresh a typing entry; ``True`` when it is new."""

        async with self._lock:
            bucket = self._entries.setdefault(conversation_id, {})
            is_new = user_id not in bucket
            bucket[user_id] = (display_name, self._clock())
            return is_new

    async def remove(self, conversation_id: int, user_id: int) -> bool:
        async with self._lock:
            bucket = self._entries.get(conversation_id)
            if not bucket or user_id not in bucket:
                return False
            bucket.pop(user_id)
            if not bucket:
                self._entries.pop(conversation_id, None)
            return True

    async def expire(self) -> list[tuple[int, int]]:
        """Drop entries older than the TTL and return ``(conversation, user)`` pairs."""

        now = self._clock()
        expired: list[tuple[int, int]] = []
        async with self._lock:
            for conversation_id, bucket in list(self._entries.items()):
                for user_id, (_, touched) in list(bucket.items()):
                    if now - touched >= self._ttl:
                        bucket.pop(user_id)
                        expired.append((conversation_id, user_id))
                if not bucket:
                    self._entries.pop(conversation_id, None)
        return expired

    async def snapshot(self, conversation_id: int) -> list[dict[str, Any]]:
        async with self._lock:
            bucket = self._entries.get(conversation_id, {})
            entries = [
                {"user_id": user_id, "display_name": name} for user_id, (name, _) in bucket.items()
            ]
        entries.sort(key=lambda item: item["user_id"])
        return entries


class TypingManager(_BrokerClient):
    """Relays typing start/stop and expires assertions nobody refreshed.

    Entries are tracked on the node that owns the typing user's socket; the
    other nodes only relay what they receive.
    """

    topic = TYPING_TOPIC

    def __init__(
        self,
        connection_manager: ConversationConnectionManager,
        transport: RealtimeTransport,
        *,
        node_id: str,
        backend: str | None,
        ttl_seconds: float,
        sweep_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(transport, node_id=node_id, backend=backend)
        self._connections = connection_manager
        self._store = TypingStatusStore(ttl_seconds, clock)
        self._sweep_interval = sweep_interval
        self._sweeper: asyncio.Task[None] | None = None

    @property
    def ttl(self) -> float:
        return self._store.ttl

    def _event(self, event_type: str, conversation_id: int, user_id: int, **extra: Any) -> dict[str, Any]:
        return {
            "type": event_type,
            "conversation_id": conversation_id,
            "user_id": user_id,
            **extra,
        }

    async def start_typing(
        self,
        conversation_id: int,
        user_id: int,
        display_name: str,
        *,
        source: WebSocket | None = None,
    ) -> bool:
        if not await self._store.touch(conversation_id, user_id, display_name):
            return False
        payload = self._event(
            "user_typing",
            conversation_id,
            user_id,
            display_name=display_name,
            expires_in=self._store.ttl,
        )
        await self._connections.broadcast(
            conversation_id, payload, exclude={source} if source is not None else None
        )
        await self._publish("start", {"conversation_id": conversation_id, "payload": payload})
        return True

    async def stop_typing(
        self, conversation_id: int, user_id: int, *, source: WebSocket | None = None
    ) -> bool:
        if not await self._store.remove(conversation_id, user_id):
            return False
        await self._announce_stop(conversation_id, user_id, "stop", source=source)
        return True

    async def clear_user(self, user_id: int, conversation_ids: Iterable[int]) -> None:
        for conversation_id in conversation_ids:
            if await self._store.remove(conversation_id, user_id):
                await self._announce_stop(conversation_id, user_id, "clear")

    async def sweep(self) -> int:
        expired = await self._store.expire()
        for conversation_id, user_id in expired:
            typing_expired_total.inc()
            await self._announce_stop(conversation_id, user_id, "expire")
        return len(expired)

    async def _announce_stop(
        self,
        conversation_id: int,
        user_id: int,
        action: str,
        *,
        source: WebSocket | None = None,
    ) -> None:
        payload = self._event("user_stopped_typing", conversation_id, user_id)
        await self._connections.broadcast(
            conversation_id, payload, exclude={source} if source is not None else None
        )
        await self._publish(action, {"conversation_id": conversation_id, "payload": payload})

    async def send_snapshot(self, conversation_id: int, websocket: WebSocket) -> None:
        for entry in await self._store.snapshot(conversation_id):
            await safe_send_json(
                websocket,
                self._event(
                    "user_typing",
                    conversation_id,
                    entry["user_id"],
                    display_name=entry["display_name"],
                    expires_in=self._store.ttl,
                ),
            )

    async def _handle_remote(self, message: dict[str, Any]) -> None:
        try:
            conversation_id = int(message["conversation_id"])
        except (KeyError, TypeError, ValueError):
            return
        payload = message.get("payload")
        if isinstance(payload, dict):
            await self._connections.broadcast(conversation_id, payload)

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Typing sweep failed")

    def start_sweeper(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever(), name="typing-sweeper")

    async def stop_sweeper(self) -> None:
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper


# ---------------------------------------------------------------------------
# Presence
# ---------------------------------------------------------------------------


class PresenceStatusStore:
    """Online users per conversation, counting each user's open sockets."""

    def __init__(self) -> None:
        self._online: Dict[int, Dict[int, tuple[str, int]]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _format(bucket: Dict[int, tuple[str, int]]) -> list[dict[str, Any]]:
        entries = [{"user_id": user_id, "display_name": name} for user_id, (name, _) in bucket.items()]
        entries.sort(key=lambda item: str(item["display_name"]).lower())
        return entries

    async def mark_online(
        self, conversation_id: int, user_id: int, display_name: str
    ) -> tuple[list[dict[str, Any]], bool]:
        async with self._lock:
            bucket = self._online.setdefault(conversation_id, {})
            _, count = bucket.get(user_id, (display_name, 0))
            bucket[user_id] = (display_name, count + 1)
            return self._format(bucket), count == 0

    async def mark_offline(
        self, conversation_id: int, user_id: int
    ) -> tuple[list[dict[str, Any]], bool]:
        async with self._lock:
            bucket = self._online.get(conversation_id)
            if not bucket or user_id not in bucket:
                return self._format(bucket or {}), False
            name, count = bucket[user_id]
            if count > 1:
                bucket[user_id] = (name, count - 1)
                return self._format(bucket), False
            bucket.pop(user_id)
            if not bucket:
                self._online.pop(conversation_id, None)
            return self._format(bucket), True

    async def replace_snapshot(
        self, conversation_id: int, entries: Sequence[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        async with self._lock:
            bucket: Dict[int, tuple[str, int]] = {}
            for entry in entries:
                try:
                    user_id = int(entry["user_id"])
                except (KeyError, TypeError, ValueError):
                    continue
                bucket[user_id] = (str(entry.get("display_name") or ""), 1)
            if bucket:
                self._online[conversation_id] = bucket
            else:
                self._online.pop(conversation_id, None)
            return self._format(bucket)


class PresenceManager(_BrokerClient):
    """Broadcasts who is currently looking at each conversation."""

    topic = PRESENCE_TOPIC

    def __init__(
        self,
        connection_manager: ConversationConnectionManager,
        transport: RealtimeTransport,
        *,
        node_id: str,
        backend: str | None,
    ) -> None:
        super().__init__(transport, node_id=node_id, backend=backend)
        self._connections = connection_manager
        self._store = PresenceStatusStore()

    @staticmethod
    def _payload(conversation_id: int, online: list[dict[str, Any]]) -> dict[str, Any]:
        return {"type": "presence", "conversation_id": conversation_id, "online": online}

    async def join(
        self, conversation_id: int, user_id: int, display_name: str, websocket: WebSocket
    ) -> None:
        snapshot, changed = await self._store.mark_online(conversation_id, user_id, display_name)
        payload = self._payload(conversation_id, snapshot)
        await safe_send_json(websocket, payload)
        if changed:
            await self._connections.broadcast(conversation_id, payload, exclude={websocket})
            await self._publish("join", {"conversation_id": conversation_id, "online": snapshot})

    async def leave(self, conversation_id: int, user_id: int) -> None:
        snapshot, changed = await self._store.mark_offline(conversation_id, user_id)
        if changed:
            await self._connections.broadcast(conversation_id, self._payload(conversation_id, snapshot))
            await self._publish("leave", {"conversation_id": conversation_id, "online": snapshot})

    async def _handle_remote(self, message: dict[str, Any]) -> None:
        try:
            conversation_id = int(message["conversation_id"])
        except (KeyError, TypeError, ValueError):
            return
        snapshot = await self._store.replace_snapshot(conversation_id, message.get("online", []))
        await self._connections.broadcast(conversation_id, self._payload(conversation_id, snapshot))


# ---------------------------------------------------------------------------
# Module level lifecycle helpers
# ---------------------------------------------------------------------------


settings = get_settings()

_node_id = settings.realtime_node_id or uuid.uuid4().hex

transport = RealtimeTransport(
    BrokerConfig(
        redis_url=settings.realtime_redis_url,
        redis_prefix=settings.realtime_redis_prefix,
        nats_url=settings.realtime_nats_url,
        nats_prefix=settings.realtime_nats_prefix,
        node_id=_node_id,
    )
)

connection_manager = ConversationConnectionManager()
room_relay = RoomEventRelay(
    connection_manager,
    transport,
    node_id=_node_id,
    backend=settings.realtime_backend_preference,
)
presence_manager = PresenceManager(
    connection_manager,
    transport,
    node_id=_node_id,
    backend=settings.realtime_backend_preference,
)
typing_manager = TypingManager(
    connection_manager,
    transport,
    node_id=_node_id,
    backend=settings.realtime_backend_preference,
    ttl_seconds=float(settings.realtime_typing_ttl_seconds),
    sweep_interval=float(settings.realtime_typing_sweep_interval_seconds),
)


async def startup_realtime() -> None:
    typing_manager.start_sweeper()
    if not settings.realtime_enabled:
        logger.info("No realtime broker configured; events stay on this instance")
        return
    try:
        await transport.start()
    except (TransportUnavailableError, *CONNECT_ERRORS):
        logger.warning(
            "Realtime backend unavailable during startup; continuing without cross-node sync",
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )
        return

    await asyncio.gather(
        room_relay.subscribe(),
        presence_manager.subscribe(),
        typing_manager.subscribe(),
    )


async def shutdown_realtime() -> None:
    await typing_manager.stop_sweeper()
    await asyncio.gather(
        room_relay.unsubscribe(),
        presence_manager.unsubscribe(),
        typing_manager.unsubscribe(),
    )
    await transport.stop()


# Convenience accessors exposed to the FastAPI layer ----------------------


def get_connection_manager() -> ConversationConnectionManager:
    return connection_manager


def get_room_relay() -> RoomEventRelay:
    return room_relay


def get_presence_manager() -> PresenceManager:
    return presence_manager


def get_typing_manager() -> TypingManager:
    return typing_manager


def realtime_status() -> str:
    """Return ``local`` without a broker, else ``connected`` or ``degraded``."""

    if not settings.realtime_enabled:
        return "local"
    return "connected" if transport.is_running else "degraded"


__all__ = [
    "ConversationConnectionManager",
    "PresenceManager",
    "RoomEventRelay",
    "TypingManager",
    "TypingStatusStore",
    "safe_send_json",
    "startup_realtime",
    "shutdown_realtime",
    "get_connection_manager",
    "get_presence_manager",
    "get_room_relay",
    "get_typing_manager",
    "realtime_status",
]
