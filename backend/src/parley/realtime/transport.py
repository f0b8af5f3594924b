"""Cross-node pub/sub for realtime chat events over Redis or NATS."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import nats
import redis.asyncio as redis_asyncio
from nats.errors import Error as NatsError
from redis.exceptions import RedisError

from app.monitoring.metrics import realtime_transport_restarts_total

logger = logging.getLogger(__name__)

PRESENCE_TOPIC = "presence"
TYPING_TOPIC = "typing"
ROOM_TOPIC = "rooms"

_RECOVERY_BASE_DELAY = 0.5
_RECOVERY_MAX_DELAY = 30.0

_REDIS_ERRORS: tuple[type[BaseException], ...] = (
    RedisError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)
_NATS_ERRORS: tuple[type[BaseException], ...] = (
    NatsError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)

CONNECT_ERRORS: tuple[type[BaseException], ...] = (OSError, *_REDIS_ERRORS, *_NATS_ERRORS)

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]


class TransportUnavailableError(RuntimeError):
    """Raised when no broker backend can carry a publish or subscribe."""


@dataclass(slots=True)
class BrokerConfig:
    redis_url: str | None = None
    redis_prefix: str = "parley.realtime"
    nats_url: str | None = None
    nats_prefix: str = "parley.realtime"
    node_id: str | None = None


def _qualify(prefix: str, topic: str) -> str:
    prefix = prefix.rstrip(".")
    return f"{prefix}.{topic}" if prefix else topic


def _decode(raw: Any, where: str) -> dict[str, Any] | None:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if not isinstance(raw, str):
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Discarded malformed realtime payload", extra={"channel": where})
        return None
    return payload if isinstance(payload, dict) else None


class Subscription:
    """Handle for an active topic subscription; ``close`` is idempotent."""

    def __init__(self, name: str, cleanup: Callable[[], Awaitable[None]]) -> None:
        self.name = name
        self._cleanup = cleanup
        self._closed = False

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._cleanup()


@dataclass(slots=True, eq=False)
class _RedisListener:
    channel: str
    handler: MessageHandler
    pubsub: Any | None = None
    task: asyncio.Task[Any] | None = None
    active: bool = True
    pausing: bool = False
    subscription: Subscription | None = field(default=None, repr=False)


class RealtimeTransport:
    """Publishes and subscribes JSON payloads on named topics.

    Redis readers that die are restarted by a background recovery task with
    exponential backoff; listeners survive the restart. NATS reconnection is
    left to the client library.
    """

    def __init__(self, config: BrokerConfig) -> None:
        self._config = config
        self._redis: Any | None = None
        self._listeners: list[_RedisListener] = []
        self._recovery_lock = asyncio.Lock()
        self._recovery_task: asyncio.Task[Any] | None = None
        self._nats: Any | None = None
        self._nats_subscriptions: list[Subscription] = []

    @property
    def node_id(self) -> str | None:
        return self._config.node_id

    @property
    def is_running(self) -> bool:
        return self._redis is not None or self._nats_connected

    @property
    def _nats_connected(self) -> bool:
        return self._nats is not None and self._nats.is_connected

    async def start(self) -> None:
        if self._config.redis_url and self._redis is None:
            await self._connect_redis()
        if self._config.nats_url and not self._nats_connected:
            try:
                client = await nats.connect(self._config.nats_url, name=self._config.node_id)
            except Exception:
                logger.exception("Failed to connect to NATS realtime backend")
                raise
            self._nats = client

    async def stop(self) -> None:
        if self._recovery_task is not None:
            self._recovery_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._recovery_task
            self._recovery_task = None
        for listener in list(self._listeners):
            await self._drop_listener(listener)
        for subscription in list(self._nats_subscriptions):
            await subscription.close()
        self._nats_subscriptions.clear()
        if self._redis is not None:
            with contextlib.suppress(Exception):
                await self._redis.close()
            self._redis = None
        if self._nats_connected:
            await self._nats.drain()
        self._nats = None

    def _default_backend(self) -> str:
        if self._redis is not None or self._config.redis_url:
            return "redis"
        if self._nats_connected:
            return "nats"
        raise TransportUnavailableError("No realtime backend is configured")

    # ------------------------------------------------------------------
    # Redis
    # ------------------------------------------------------------------
    async def _connect_redis(self) -> None:
        client = redis_asyncio.from_url(
            self._config.redis_url, encoding="utf-8", decode_responses=True
        )
        try:
            await client.ping()
        except (OSError, *_REDIS_ERRORS):
            logger.exception("Failed to connect to Redis realtime backend")
            with contextlib.suppress(Exception):
                await client.close()
            raise
        self._redis = client

    async def _ensure_redis(self) -> Any:
        if self._redis is None and self._config.redis_url:
            try:
                await self._connect_redis()
            except (OSError, *_REDIS_ERRORS) as exc:
                raise TransportUnavailableError("Redis backend is unavailable") from exc
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not configured")
        return self._redis

    async def _start_reader(self, listener: _RedisListener) -> None:
        client = await self._ensure_redis()
        pubsub = client.pubsub()
        try:
            await pubsub.subscribe(listener.channel)
        except _REDIS_ERRORS as exc:
            with contextlib.suppress(Exception):
                await pubsub.close()
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        listener.pubsub = pubsub

        async def read() -> None:
            try:
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    payload = _decode(message.get("data"), listener.channel)
                    if payload is not None:
                        await listener.handler(payload)
            finally:
                with contextlib.suppress(Exception):
                    await pubsub.unsubscribe(listener.channel)
                with contextlib.suppress(Exception):
                    await pubsub.close()

        listener.task = asyncio.create_task(read(), name=f"realtime-redis-{listener.channel}")
        listener.task.add_done_callback(lambda task: self._reader_finished(listener, task))

    def _reader_finished(self, listener: _RedisListener, task: asyncio.Task[Any]) -> None:
        listener.task = None
        listener.pubsub = None
        if not listener.active or listener.pausing or task.cancelled():
            return
        exc = task.exception()
        logger.warning(
            "Redis subscription reader stopped; scheduling recovery",
            exc_info=exc,
            extra={"channel": listener.channel},
        )
        self._schedule_recovery("reader_stopped")

    async def _pause_reader(self, listener: _RedisListener) -> None:
        listener.pausing = True
        task, listener.task = listener.task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        pubsub, listener.pubsub = listener.pubsub, None
        if pubsub is not None:
            with contextlib.suppress(Exception):
                await pubsub.unsubscribe(listener.channel)
            with contextlib.suppress(Exception):
                await pubsub.close()
        listener.pausing = False

    async def _drop_listener(self, listener: _RedisListener) -> None:
        listener.active = False
        await self._pause_reader(listener)
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _schedule_recovery(self, reason: str) -> None:
        if not self._config.redis_url:
            return
        if self._recovery_task is not None and not self._recovery_task.done():
            return
        logger.info("Scheduling Redis realtime recovery", extra={"reason": reason})
        self._recovery_task = asyncio.create_task(
            self._recover(reason), name="realtime-redis-recovery"
        )

    async def _recover(self, reason: str) -> None:
        attempt = 0
        while True:
            await asyncio.sleep(min(_RECOVERY_BASE_DELAY * (2**attempt), _RECOVERY_MAX_DELAY))
            try:
                await self._reconnect_redis()
            except Exception:
                attempt += 1
                logger.warning(
                    "Redis realtime recovery attempt failed",
                    exc_info=True,
                    extra={"attempt": attempt, "reason": reason},
                )
                continue
            break
        realtime_transport_restarts_total.labels("redis", reason).inc()
        logger.info(
            "Redis realtime backend recovered",
            extra={"reason": reason, "subscriptions": len(self._listeners)},
        )
        self._recovery_task = None

    async def _reconnect_redis(self) -> None:
        async with self._recovery_lock:
            for listener in list(self._listeners):
                await self._pause_reader(listener)
            if self._redis is not None:
                with contextlib.suppress(Exception):
                    await self._redis.close()
                self._redis = None
            await self._connect_redis()
            for listener in [item for item in self._listeners if item.active]:
                await self._start_reader(listener)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def publish(
        self, topic: str, payload: dict[str, Any], *, backend: str | None = None
    ) -> None:
        target = backend or self._default_backend()
        encoded = json.dumps(payload, default=str)
        if target == "redis":
            client = await self._ensure_redis()
            channel = _qualify(self._config.redis_prefix, topic)
            try:
                await client.publish(channel, encoded)
            except _REDIS_ERRORS as exc:
                self._schedule_recovery("publish_failed")
                raise TransportUnavailableError("Redis backend is unavailable") from exc
            logger.debug("Published realtime payload via Redis", extra={"channel": channel})
            return
        if target == "nats":
            if not self._nats_connected:
                raise TransportUnavailableError("NATS backend is not connected")
            subject = _qualify(self._config.nats_prefix, topic)
            try:
                await self._nats.publish(subject, encoded.encode("utf-8"))
            except _NATS_ERRORS as exc:
                raise TransportUnavailableError("NATS backend is unavailable") from exc
            logger.debug("Published realtime payload via NATS", extra={"subject": subject})
            return
        raise TransportUnavailableError(f"Unsupported backend '{target}'")

    async def subscribe(
        self, topic: str, handler: MessageHandler, *, backend: str | None = None
    ) -> Subscription:
        target = backend or self._default_backend()
        if target == "redis":
            listener = _RedisListener(
                channel=_qualify(self._config.redis_prefix, topic), handler=handler
            )

            async def cleanup() -> None:
                await self._drop_listener(listener)

            listener.subscription = Subscription(listener.channel, cleanup)
            self._listeners.append(listener)
            try:
                await self._start_reader(listener)
            except TransportUnavailableError:
                await self._drop_listener(listener)
                self._schedule_recovery("subscribe_failed")
                raise
            return listener.subscription

        if target == "nats":
            if not self._nats_connected:
                raise TransportUnavailableError("NATS backend is not connected")
            subject = _qualify(self._config.nats_prefix, topic)

            async def callback(message: Any) -> None:
                payload = _decode(message.data, subject)
                if payload is not None:
                    await handler(payload)

            nats_subscription = await self._nats.subscribe(subject, cb=callback)

            async def unsubscribe() -> None:
                with contextlib.suppress(*_NATS_ERRORS):
                    await nats_subscription.unsubscribe()

            wrapper = Subscription(subject, unsubscribe)
            self._nats_subscriptions.append(wrapper)
            return wrapper

        raise TransportUnavailableError(f"Unsupported backend '{target}'")
