"""Per-conversation message store and the reducer that applies channel events.

All mutations happen on a single event loop: inbound events arrive through
:meth:`ConversationStore.apply_incoming` and outbound actions only change
state once the server has acknowledged them. Nothing is inserted
optimistically, so there is never anything to roll back.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Protocol

from pydantic import ValidationError

from .editing import EDIT_WINDOW, can_edit
from .errors import (
    ActionInProgressError,
    MessageNotFoundError,
    PermissionDeniedError,
    SyncError,
    TransientNetworkError,
    UnexpectedPayloadError,
    UploadFailedError,
)
from .indicators import DEFAULT_DEBOUNCE_SECONDS, RemoteTypingState, TypingNotifier
from .models import ChatMessage, ConversationInfo, MediaItem, MessageDraft, Reaction
from .reactions import ReactionGroup, group_reactions
from .receipts import DeliveryStatus, GroupReceiptSummary, add_receipt, receipt_model_for
from .session import SessionContext
from .timeline import DaySection, day_sections

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Something went wrong"


class OutboundChannel(Protocol):
    async def join_room(self, conversation_id: int) -> bool: ...

    async def leave_room(self, conversation_id: int) -> bool: ...

    async def mark_read(self, message_id: int, conversation_id: int) -> bool: ...

    async def start_typing(self, conversation_id: int) -> bool: ...

    async def stop_typing(self, conversation_id: int) -> bool: ...


class ChatApi(Protocol):
    async def get_conversation(self, conversation_id: int) -> ConversationInfo: ...

    async def get_messages(self, conversation_id: int) -> list[ChatMessage]: ...

    async def send_message(self, conversation_id: int, draft: MessageDraft) -> ChatMessage: ...

    async def edit_message(self, message_id: int, content: str) -> ChatMessage: ...

    async def delete_message(self, message_id: int) -> None: ...

    async def add_reaction(self, message_id: int, emoji: str) -> Any: ...

    async def mark_read(self, message_id: int) -> None: ...

    async def upload(self, filename: str, content: bytes, mime_type: str | None = None) -> Any: ...


class ConversationStore:
    """Ordered, deduplicated message list of the active conversation."""

    def __init__(
        self,
        api: ChatApi,
        channel: OutboundChannel,
        session: SessionContext,
        *,
        typing_debounce: float = DEFAULT_DEBOUNCE_SECONDS,
    ) -> None:
        self.api = api
        self.channel = channel
        self.session = session
        self.conversation_id: int | None = None
        self.conversation: ConversationInfo | None = None
        self.messages: list[ChatMessage] = []
        self.remote_typing = RemoteTypingState(session.user_id)
        self.error: str | None = None
        self.malformed_events = 0
        self._ids: set[int] = set()
        self._reaction_seq: dict[int, int] = {}
        self._in_flight: set[str] = set()
        self._reported_reads: set[int] = set()
        # events that arrive while history is loading, replayed after it
        self._pending_events: list[dict[str, Any]] | None = None
        self._typing = TypingNotifier(self._emit_typing, debounce=typing_debounce)
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[bool]]] = {
            "message_received": self._on_message_received,
            "reaction_changed": self._on_reaction_changed,
            "message_delivered": self._on_delivered,
            "message_read": self._on_read,
            "message_deleted": self._on_deleted,
            "message_edited": self._on_edited,
            "conversation_updated": self._on_conversation_updated,
            "user_typing": self._on_user_typing,
            "user_stopped_typing": self._on_user_stopped_typing,
        }

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    @property
    def user_id(self) -> int:
        return self.session.user_id

    @property
    def message_ids(self) -> frozenset[int]:
        return frozenset(self._ids)

    def get_message(self, message_id: int) -> ChatMessage | None:
        if message_id not in self._ids:
            return None
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def is_in_flight(self, action: str) -> bool:
        return action in self._in_flight

    def status_for(self, message: ChatMessage) -> DeliveryStatus | GroupReceiptSummary | None:
        if self.conversation is None or message.sender_id != self.user_id:
            return None
        return receipt_model_for(self.conversation, self.user_id).summarize(message)

    def reaction_groups(self, message: ChatMessage) -> list[ReactionGroup]:
        return group_reactions(message.reactions, self.user_id)

    def can_edit(self, message: ChatMessage, now: datetime | None = None) -> bool:
        return can_edit(message, self.user_id, now, EDIT_WINDOW)

    def sections(self) -> list[DaySection]:
        return day_sections(self.messages)

    def dismiss_error(self) -> None:
        self.error = None

    # ------------------------------------------------------------------
    # Conversation lifecycle
    # ------------------------------------------------------------------
    async def switch_conversation(self, conversation_id: int | None) -> None:
        """Tear down the current room and clear every piece of ephemeral state.

        Leaving is fire-and-forget; stray events for the old room are dropped
        by the conversation id filter.
        """

        previous = self.conversation_id
        if previous is not None:
            await self._typing.stop()
            await self.channel.leave_room(previous)
        self._typing.cancel()
        self.conversation_id = conversation_id
        self.conversation = None
        self.messages = []
        self._ids = set()
        self._reaction_seq = {}
        self._reported_reads = set()
        self._pending_events = None
        self.remote_typing.clear()
        self.error = None

    async def load_history(self, conversation_id: int) -> bool:
        """Open ``conversation_id`` and seed the store with its history.

        Returns ``False`` when a transient failure prevented the load; the
        reason is kept in :attr:`error`. A missing conversation propagates as
        :class:`~parley.sync.errors.ConversationNotFoundError`.

        The room is joined before the history request so nothing sent in
        between is lost; events received meanwhile are held back and applied
        on top of the history once it is seeded. Unread messages from other
        members are then acknowledged.
        """

        await self.switch_conversation(conversation_id)
        self._pending_events = []
        await self.channel.join_room(conversation_id)
        try:
            conversation = await self.api.get_conversation(conversation_id)
            history = await self.api.get_messages(conversation_id)
        except (TransientNetworkError, UnexpectedPayloadError) as exc:
            if self.conversation_id == conversation_id:
                self.error = str(exc) or GENERIC_ERROR
                await self._replay_pending_events()
            return False
        except SyncError:
            if self.conversation_id == conversation_id:
                self._pending_events = None
            raise

        if self.conversation_id != conversation_id:
            logger.debug("Discarding history for inactive conversation %s", conversation_id)
            return False

        self.conversation = conversation
        for message in history:
            if message.id in self._ids:
                continue
            self._ids.add(message.id)
            self._reaction_seq[message.id] = message.reaction_seq
            self.messages.append(message)
        await self._replay_pending_events()
        for message in history:
            if self.conversation_id != conversation_id:
                break
            if self._is_unread_from_peer(message):
                await self._acknowledge_read(message)
        return True

    async def _replay_pending_events(self) -> None:
        pending, self._pending_events = self._pending_events or [], None
        for event in pending:
            await self.apply_incoming(event)

    def _is_unread_from_peer(self, message: ChatMessage) -> bool:
        if message.sender_id is None or message.sender_id == self.user_id:
            return False
        return all(entry.user_id != self.user_id for entry in message.read_by)

    async def close(self) -> None:
        await self.switch_conversation(None)
        await self._typing.aclose()

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------
    async def apply_incoming(self, event: dict[str, Any]) -> bool:
        """Apply one channel event; returns ``True`` when state changed.

        Duplicates, events for other conversations and events about unknown
        messages are ignored. Malformed events never raise.
        """

        handler = self._handlers.get(str(event.get("type")))
        if handler is None:
            return False
        if self._pending_events is not None:
            self._pending_events.append(event)
            return False
        try:
            return await handler(event)
        except (KeyError, TypeError, ValueError, ValidationError):
            self.malformed_events += 1
            self.error = GENERIC_ERROR
            logger.warning(
                "Ignored malformed realtime event",
                extra={"event_type": event.get("type")},
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            return False

    def _for_other_conversation(self, event: dict[str, Any], conversation_id: Any = None) -> bool:
        if conversation_id is None:
            conversation_id = event.get("conversation_id")
        if self.conversation_id is None:
            return True
        if conversation_id is None:
            return False
        return int(conversation_id) != self.conversation_id

    def _insert(self, message: ChatMessage) -> bool:
        if message.id in self._ids:
            return False
        self._ids.add(message.id)
        self._reaction_seq.setdefault(message.id, message.reaction_seq)
        self.messages.append(message)
        return True

    async def _on_message_received(self, event: dict[str, Any]) -> bool:
        message = ChatMessage.model_validate(event["message"])
        if self._for_other_conversation(event, event.get("conversation_id", message.conversation_id)):
            return False
        if not self._insert(message):
            return False
        if message.sender_id is not None and message.sender_id != self.user_id:
            self.remote_typing.stop(message.sender_id)
            await self._acknowledge_read(message)
        return True

    async def _acknowledge_read(self, message: ChatMessage) -> None:
        if message.id in self._reported_reads:
            return
        self._reported_reads.add(message.id)
        if await self.channel.mark_read(message.id, message.conversation_id):
            return
        try:
            await self.api.mark_read(message.id)
        except SyncError:
            logger.info("Read receipt for message %s was not delivered", message.id)

    async def _on_reaction_changed(self, event: dict[str, Any]) -> bool:
        if self._for_other_conversation(event):
            return False
        message_id = int(event["message_id"])
        reactions = [Reaction.model_validate(item) for item in event["reactions"]]
        return self._replace_reactions(message_id, reactions, event.get("seq"))

    def _replace_reactions(self, message_id: int, reactions: list[Reaction], seq: Any) -> bool:
        message = self.get_message(message_id)
        if message is None:
            return False
        if seq is not None:
            seq = int(seq)
            if seq <= self._reaction_seq.get(message_id, 0):
                return False
            self._reaction_seq[message_id] = seq
            message.reaction_seq = seq
        message.reactions = reactions
        return True

    @staticmethod
    def _receipt_time(event: dict[str, Any]) -> datetime:
        raw = event.get("at")
        if raw is None:
            return datetime.now(timezone.utc)
        if isinstance(raw, datetime):
            return raw
        return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))

    async def _on_delivered(self, event: dict[str, Any]) -> bool:
        if self._for_other_conversation(event):
            return False
        message = self.get_message(int(event["message_id"]))
        if message is None:
            return False
        return add_receipt(message.delivered_to, int(event["user_id"]), self._receipt_time(event))

    async def _on_read(self, event: dict[str, Any]) -> bool:
        if self._for_other_conversation(event):
            return False
        message = self.get_message(int(event["message_id"]))
        if message is None:
            return False
        user_id = int(event["user_id"])
        at = self._receipt_time(event)
        delivered = add_receipt(message.delivered_to, user_id, at)
        read = add_receipt(message.read_by, user_id, at)
        return delivered or read

    async def _on_deleted(self, event: dict[str, Any]) -> bool:
        if self._for_other_conversation(event):
            return False
        return self._remove(int(event["message_id"]))

    def _remove(self, message_id: int) -> bool:
        if message_id not in self._ids:
            return False
        self._ids.discard(message_id)
        self._reaction_seq.pop(message_id, None)
        self.messages = [message for message in self.messages if message.id != message_id]
        return True

    async def _on_edited(self, event: dict[str, Any]) -> bool:
        edited = ChatMessage.model_validate(event["message"])
        if self._for_other_conversation(event, event.get("conversation_id", edited.conversation_id)):
            return False
        return self._apply_edit(edited)

    def _apply_edit(self, edited: ChatMessage) -> bool:
        message = self.get_message(edited.id)
        if message is None:
            return False
        message.content = edited.content
        message.edited_at = edited.edited_at
        return True

    async def _on_conversation_updated(self, event: dict[str, Any]) -> bool:
        conversation = ConversationInfo.model_validate(event["conversation"])
        if self._for_other_conversation(event, conversation.id):
            return False
        self.conversation = conversation
        return True

    async def _on_user_typing(self, event: dict[str, Any]) -> bool:
        if self._for_other_conversation(event):
            return False
        return self.remote_typing.start(int(event["user_id"]))

    async def _on_user_stopped_typing(self, event: dict[str, Any]) -> bool:
        if self._for_other_conversation(event):
            return False
        return self.remote_typing.stop(int(event["user_id"]))

    # ------------------------------------------------------------------
    # Outbound actions
    # ------------------------------------------------------------------
    def _begin(self, action: str) -> None:
        if action in self._in_flight:
            raise ActionInProgressError(f"{action} is already in progress")
        self._in_flight.add(action)

    def _active_conversation(self) -> int:
        if self.conversation_id is None:
            raise SyncError("No conversation is open")
        return self.conversation_id

    async def keystroke(self) -> None:
        await self._typing.keystroke()

    async def _emit_typing(self, is_typing: bool) -> None:
        if self.conversation_id is None:
            return
        if is_typing:
            await self.channel.start_typing(self.conversation_id)
        else:
            await self.channel.stop_typing(self.conversation_id)

    async def send_message(self, draft: MessageDraft) -> ChatMessage | None:
        """Send ``draft`` and insert the acknowledged copy.

        Returns ``None`` when the conversation changed while the request was
        in flight; the result is then discarded.
        """

        if draft.is_empty():
            raise ValueError("Message must have content or attachments")
        conversation_id = self._active_conversation()
        self._begin("send")
        try:
            await self._typing.stop()
            message = await self.api.send_message(conversation_id, draft)
        except TransientNetworkError as exc:
            self.error = str(exc) or GENERIC_ERROR
            raise
        finally:
            self._in_flight.discard("send")

        if self.conversation_id != conversation_id:
            logger.debug("Discarding send result for inactive conversation %s", conversation_id)
            return None
        self._insert(message)
        return message

    async def upload_attachments(
        self, files: Iterable[tuple[str, bytes, str | None]]
    ) -> list[MediaItem]:
        """Upload files in order; failed files are left out, never retried."""

        conversation_id = self._active_conversation()
        self._begin("upload")
        media: list[MediaItem] = []
        try:
            for filename, content, mime_type in files:
                try:
                    result = await self.api.upload(filename, content, mime_type)
                except UploadFailedError:
                    logger.warning("Upload of %s failed", filename)
                    self.error = "Upload failed"
                    continue
                media.append(result.as_media())
        finally:
            self._in_flight.discard("upload")
        if self.conversation_id != conversation_id:
            return []
        return media

    async def add_reaction(self, message_id: int, emoji: str) -> bool:
        self._begin(f"react:{message_id}")
        try:
            snapshot = await self.api.add_reaction(message_id, emoji)
        except TransientNetworkError as exc:
            self.error = str(exc) or GENERIC_ERROR
            raise
        finally:
            self._in_flight.discard(f"react:{message_id}")
        return self._replace_reactions(snapshot.message_id, snapshot.reactions, snapshot.seq)

    async def delete_message(self, message_id: int) -> bool:
        self._begin(f"delete:{message_id}")
        try:
            await self.api.delete_message(message_id)
        except MessageNotFoundError:
            logger.debug("Message %s was already deleted", message_id)
        except TransientNetworkError as exc:
            self.error = str(exc) or GENERIC_ERROR
            raise
        finally:
            self._in_flight.discard(f"delete:{message_id}")
        return self._remove(message_id)

    async def edit_message(self, message_id: int, content: str) -> bool:
        message = self.get_message(message_id)
        if message is None or not self.can_edit(message):
            raise PermissionDeniedError("Message can no longer be edited")
        self._begin(f"edit:{message_id}")
        try:
            edited = await self.api.edit_message(message_id, content)
        except TransientNetworkError as exc:
            self.error = str(exc) or GENERIC_ERROR
            raise
        finally:
            self._in_flight.discard(f"edit:{message_id}")
        return self._apply_edit(edited)
