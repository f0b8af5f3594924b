"""Typing indicators for the local and the remote side of a conversation."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 1.0
DEFAULT_REFRESH_SECONDS = 3.0

TypingEmitter = Callable[[bool], Awaitable[None]]


class TypingNotifier:
    """Turns a burst of keystrokes into one start and one stop event.

    ``keystroke`` emits ``True`` when the burst begins and re-arms a quiet
    timer. When the timer fires ``False`` is emitted exactly once for that
    burst.

    The server forgets typing assertions after a short TTL, so a burst that
    outlasts ``refresh_interval`` re-sends ``True`` to keep the indicator
    alive. Pass ``refresh_interval=None`` to disable this.
    """

    def __init__(
        self,
        emit: TypingEmitter,
        *,
        debounce: float = DEFAULT_DEBOUNCE_SECONDS,
        refresh_interval: float | None = DEFAULT_REFRESH_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._emit = emit
        self._debounce = debounce
        self._refresh_interval = refresh_interval
        self._clock = clock
        self._typing = False
        self._last_emit = 0.0
        self._timer: asyncio.Task[None] | None = None

    @property
    def is_typing(self) -> bool:
        return self._typing

    async def keystroke(self) -> None:
        if not self._typing:
            self._typing = True
            self._last_emit = self._clock()
            await self._emit(True)
        elif (
            self._refresh_interval is not None
            and self._clock() - self._last_emit >= self._refresh_interval
        ):
            self._last_emit = self._clock()
            await self._emit(True)
        self._rearm()

    async def stop(self) -> None:
        """Emit the stop event now, e.g. when the message is sent."""

        self._cancel_timer()
        await self._flush()

    def cancel(self) -> None:
        """Forget the burst without emitting anything."""

        self._cancel_timer()
        self._typing = False

    def _rearm(self) -> None:
        self._cancel_timer()
        self._timer = asyncio.create_task(self._wait_for_quiet())

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and not timer.done():
            timer.cancel()

    async def _wait_for_quiet(self) -> None:
        await asyncio.sleep(self._debounce)
        self._timer = None
        await self._flush()

    async def _flush(self) -> None:
        if not self._typing:
            return
        self._typing = False
        try:
            await self._emit(False)
        except Exception:
            logger.warning("Failed to emit typing stop", exc_info=True)

    async def aclose(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await timer


class RemoteTypingState:
    """Users other than ourselves currently typing in the active conversation."""

    def __init__(self, self_id: int) -> None:
        self._self_id = self_id
        self._users: set[int] = set()

    @property
    def users(self) -> frozenset[int]:
        return frozenset(self._users)

    @property
    def is_anyone_typing(self) -> bool:
        return bool(self._users)

    def start(self, user_id: int) -> bool:
        if user_id == self._self_id or user_id in self._users:
            return False
        self._users.add(user_id)
        return True

    def stop(self, user_id: int) -> bool:
        if user_id not in self._users:
            return False
        self._users.discard(user_id)
        return True

    def clear(self) -> None:
        self._users.clear()
