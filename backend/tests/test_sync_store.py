from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from parley.sync import (
    ActionInProgressError,
    ChatMessage,
    ConversationInfo,
    ConversationNotFoundError,
    ConversationStore,
    DeliveryStatus,
    MediaItem,
    MessageDraft,
    MessageNotFoundError,
    MessageType,
    Participant,
    PermissionDeniedError,
    Reaction,
    SessionContext,
    TransientNetworkError,
)
from parley.sync.api import ReactionSnapshot, UploadResult
from parley.sync.errors import UploadFailedError

ME = 1
PEER = 2
NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


def make_message(message_id: int, *, conversation_id: int = 10, sender_id: int = PEER, **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": message_id,
        "conversation_id": conversation_id,
        "sender_id": sender_id,
        "content": f"message {message_id}",
        "type": "text",
        "created_at": NOW.isoformat(),
    }
    payload.update(extra)
    return payload


def direct_conversation(conversation_id: int = 10) -> ConversationInfo:
    return ConversationInfo(
        id=conversation_id,
        participants=[Participant(user_id=ME), Participant(user_id=PEER)],
    )


class FakeChannel:
    def __init__(self, *, connected: bool = True) -> None:
        self.connected = connected
        self.calls: list[tuple[str, Any]] = []

    async def join_room(self, conversation_id: int) -> bool:
        self.calls.append(("join", conversation_id))
        return self.connected

    async def leave_room(self, conversation_id: int) -> bool:
        self.calls.append(("leave", conversation_id))
        return self.connected

    async def mark_read(self, message_id: int, conversation_id: int) -> bool:
        self.calls.append(("read", message_id))
        return self.connected

    async def start_typing(self, conversation_id: int) -> bool:
        self.calls.append(("typing_start", conversation_id))
        return self.connected

    async def stop_typing(self, conversation_id: int) -> bool:
        self.calls.append(("typing_stop", conversation_id))
        return self.connected

    def named(self, name: str) -> list[Any]:
        return [value for call, value in self.calls if call == name]


class FakeApi:
    def __init__(self) -> None:
        self.conversations: dict[int, ConversationInfo] = {10: direct_conversation(10)}
        self.history: dict[int, list[ChatMessage]] = {}
        self.sent: list[tuple[int, MessageDraft]] = []
        self.read: list[int] = []
        self.gate: asyncio.Event | None = None
        self.fail_with: Exception | None = None
        self.next_id = 100
        self.snapshots: dict[int, ReactionSnapshot] = {}
        self.failing_uploads: set[str] = set()
        self.history_gate: asyncio.Event | None = None
        self.deleted_elsewhere: set[int] = set()

    async def _maybe_wait(self) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with

    async def get_conversation(self, conversation_id: int) -> ConversationInfo:
        await self._maybe_wait()
        if conversation_id not in self.conversations:
            raise ConversationNotFoundError("Conversation not found")
        return self.conversations[conversation_id]

    async def get_messages(self, conversation_id: int) -> list[ChatMessage]:
        if self.history_gate is not None:
            await self.history_gate.wait()
        return list(self.history.get(conversation_id, []))

    async def send_message(self, conversation_id: int, draft: MessageDraft) -> ChatMessage:
        self.sent.append((conversation_id, draft))
        await self._maybe_wait()
        self.next_id += 1
        return ChatMessage.model_validate(
            make_message(
                self.next_id,
                conversation_id=conversation_id,
                sender_id=ME,
                content=draft.content,
                type=draft.type.value,
                media=[item.model_dump() for item in draft.media],
            )
        )

    async def edit_message(self, message_id: int, content: str) -> ChatMessage:
        return ChatMessage.model_validate(
            make_message(message_id, sender_id=ME, content=content, edited_at=NOW.isoformat())
        )

    async def delete_message(self, message_id: int) -> None:
        if message_id in self.deleted_elsewhere:
            raise MessageNotFoundError("Message not found")

    async def add_reaction(self, message_id: int, emoji: str) -> ReactionSnapshot:
        await self._maybe_wait()
        return self.snapshots[message_id]

    async def mark_read(self, message_id: int) -> None:
        self.read.append(message_id)

    async def upload(self, filename: str, content: bytes, mime_type: str | None = None) -> UploadResult:
        if filename in self.failing_uploads:
            raise UploadFailedError("Upload failed")
        return UploadResult(
            url=f"/media/{filename}",
            key=f"1/{filename}",
            filename=filename,
            size=len(content),
            mime_type=mime_type,
            type="image" if (mime_type or "").startswith("image/") else "file",
        )


@pytest.fixture()
def api() -> FakeApi:
    return FakeApi()


@pytest.fixture()
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture()
def store(api, channel) -> ConversationStore:
    return ConversationStore(
        api, channel, SessionContext(base_url="http://chat.test", token="t", user_id=ME)
    )


@pytest.mark.anyio("asyncio")
async def test_duplicate_message_event_is_applied_once(store):
    await store.load_history(10)
    event = {"type": "message_received", "conversation_id": 10, "message": make_message(1)}

    assert await store.apply_incoming(event) is True
    assert await store.apply_incoming(event) is False
    assert [message.id for message in store.messages] == [1]
    assert store.message_ids == frozenset({1})


@pytest.mark.anyio("asyncio")
async def test_history_is_deduplicated(store, api):
    duplicate = ChatMessage.model_validate(make_message(1))
    api.history[10] = [duplicate, duplicate, ChatMessage.model_validate(make_message(2))]

    assert await store.load_history(10) is True

    assert [message.id for message in store.messages] == [1, 2]


@pytest.mark.anyio("asyncio")
async def test_incoming_message_acknowledged_over_channel(store, channel, api):
    await store.load_history(10)
    await store.apply_incoming(
        {"type": "message_received", "conversation_id": 10, "message": make_message(1)}
    )

    assert channel.named("read") == [1]
    assert api.read == []


@pytest.mark.anyio("asyncio")
async def test_read_falls_back_to_http_when_channel_is_down(api):
    channel = FakeChannel(connected=False)
    store = ConversationStore(api, channel, SessionContext("http://chat.test", "t", ME))
    await store.load_history(10)

    await store.apply_incoming(
        {"type": "message_received", "conversation_id": 10, "message": make_message(7)}
    )

    assert api.read == [7]


@pytest.mark.anyio("asyncio")
async def test_own_messages_are_not_acknowledged(store, channel):
    await store.load_history(10)
    await store.apply_incoming(
        {"type": "message_received", "conversation_id": 10, "message": make_message(3, sender_id=ME)}
    )

    assert channel.named("read") == []


@pytest.mark.anyio("asyncio")
async def test_sent_message_delivered_then_read(store):
    await store.load_history(10)
    message = await store.send_message(MessageDraft(content="hello"))
    assert message is not None

    assert store.status_for(store.get_message(message.id)) == DeliveryStatus.SENT

    await store.apply_incoming(
        {"type": "message_delivered", "conversation_id": 10, "message_id": message.id, "user_id": PEER, "at": NOW.isoformat()}
    )
    assert store.status_for(store.get_message(message.id)) == DeliveryStatus.DELIVERED

    await store.apply_incoming(
        {"type": "message_read", "conversation_id": 10, "message_id": message.id, "user_id": PEER, "at": NOW.isoformat()}
    )
    assert store.status_for(store.get_message(message.id)) == DeliveryStatus.READ


@pytest.mark.anyio("asyncio")
async def test_read_receipt_without_delivery_implies_delivered(store):
    await store.load_history(10)
    await store.apply_incoming(
        {"type": "message_received", "conversation_id": 10, "message": make_message(5, sender_id=ME)}
    )

    changed = await store.apply_incoming(
        {"type": "message_read", "conversation_id": 10, "message_id": 5, "user_id": PEER}
    )

    message = store.get_message(5)
    assert changed is True
    assert [receipt.user_id for receipt in message.delivered_to] == [PEER]
    assert [receipt.user_id for receipt in message.read_by] == [PEER]


@pytest.mark.anyio("asyncio")
async def test_receipts_are_not_duplicated(store):
    await store.load_history(10)
    await store.apply_incoming(
        {"type": "message_received", "conversation_id": 10, "message": make_message(5, sender_id=ME)}
    )
    event = {"type": "message_read", "conversation_id": 10, "message_id": 5, "user_id": PEER}

    assert await store.apply_incoming(event) is True
    assert await store.apply_incoming(event) is False
    assert len(store.get_message(5).read_by) == 1


@pytest.mark.anyio("asyncio")
async def test_media_message_type_is_inferred(store, api):
    await store.load_history(10)
    media = [
        MediaItem(type="image", url="/media/a.png", filename="a.png"),
        MediaItem(type="video", url="/media/b.mp4", filename="b.mp4"),
    ]

    message = await store.send_message(MessageDraft(media=media))

    assert message.type == MessageType.MEDIA_GROUP
    assert api.sent[0][1].type == MessageType.MEDIA_GROUP
    assert MessageDraft(media=media[:1]).type == MessageType.IMAGE
    assert MessageDraft(content="hi").type == MessageType.TEXT


@pytest.mark.anyio("asyncio")
async def test_empty_draft_is_rejected(store, api):
    await store.load_history(10)

    with pytest.raises(ValueError):
        await store.send_message(MessageDraft(content="   "))
    assert api.sent == []


@pytest.mark.anyio("asyncio")
async def test_reaction_snapshot_replaces_and_clears(store):
    await store.load_history(10)
    await store.apply_incoming(
        {"type": "message_received", "conversation_id": 10, "message": make_message(1)}
    )

    await store.apply_incoming(
        {
            "type": "reaction_changed",
            "conversation_id": 10,
            "message_id": 1,
            "reactions": [{"emoji": "👍", "user_id": PEER}, {"emoji": "🎉", "user_id": ME}],
            "seq": 1,
        }
    )
    assert [reaction.emoji for reaction in store.get_message(1).reactions] == ["👍", "🎉"]

    await store.apply_incoming(
        {"type": "reaction_changed", "conversation_id": 10, "message_id": 1, "reactions": [], "seq": 2}
    )
    assert store.get_message(1).reactions == []


@pytest.mark.anyio("asyncio")
async def test_stale_reaction_snapshot_is_ignored(store):
    await store.load_history(10)
    await store.apply_incoming(
        {"type": "message_received", "conversation_id": 10, "message": make_message(1)}
    )
    newer = {
        "type": "reaction_changed",
        "conversation_id": 10,
        "message_id": 1,
        "reactions": [{"emoji": "🔥", "user_id": PEER}],
        "seq": 3,
    }
    older = {**newer, "reactions": [], "seq": 2}

    assert await store.apply_incoming(newer) is True
    assert await store.apply_incoming(older) is False
    assert [reaction.emoji for reaction in store.get_message(1).reactions] == ["🔥"]


@pytest.mark.anyio("asyncio")
async def test_events_for_other_conversations_are_ignored(store):
    await store.load_history(10)

    changed = await store.apply_incoming(
        {"type": "message_received", "conversation_id": 11, "message": make_message(1, conversation_id=11)}
    )
    typing = await store.apply_incoming({"type": "user_typing", "conversation_id": 11, "user_id": PEER})

    assert changed is False
    assert typing is False
    assert store.messages == []
    assert not store.remote_typing.is_anyone_typing


@pytest.mark.anyio("asyncio")
async def test_malformed_event_sets_generic_error(store):
    await store.load_history(10)

    changed = await store.apply_incoming({"type": "message_received", "conversation_id": 10, "message": {"id": "x"}})

    assert changed is False
    assert store.malformed_events == 1
    assert store.error == "Something went wrong"


@pytest.mark.anyio("asyncio")
async def test_unknown_events_are_ignored(store):
    await store.load_history(10)

    assert await store.apply_incoming({"type": "conversation_deleted", "conversation_id": 10}) is False
    assert store.malformed_events == 0


@pytest.mark.anyio("asyncio")
async def test_message_from_typing_user_clears_indicator(store):
    await store.load_history(10)
    await store.apply_incoming({"type": "user_typing", "conversation_id": 10, "user_id": PEER})
    assert store.remote_typing.users == frozenset({PEER})

    await store.apply_incoming(
        {"type": "message_received", "conversation_id": 10, "message": make_message(1)}
    )

    assert not store.remote_typing.is_anyone_typing


@pytest.mark.anyio("asyncio")
async def test_own_typing_events_are_ignored(store):
    await store.load_history(10)

    assert await store.apply_incoming({"type": "user_typing", "conversation_id": 10, "user_id": ME}) is False


@pytest.mark.anyio("asyncio")
async def test_second_send_while_first_in_flight_is_rejected(store, api):
    await store.load_history(10)
    api.gate = asyncio.Event()

    first = asyncio.create_task(store.send_message(MessageDraft(content="one")))
    await asyncio.sleep(0)
    assert store.is_in_flight("send")

    with pytest.raises(ActionInProgressError):
        await store.send_message(MessageDraft(content="two"))

    api.gate.set()
    message = await first
    assert message is not None
    assert len(api.sent) == 1
    assert not store.is_in_flight("send")


@pytest.mark.anyio("asyncio")
async def test_send_result_discarded_after_switch(store, api):
    api.conversations[20] = direct_conversation(20)
    await store.load_history(10)
    api.gate = asyncio.Event()

    pending = asyncio.create_task(store.send_message(MessageDraft(content="late")))
    await asyncio.sleep(0)
    await store.switch_conversation(20)
    api.gate.set()

    assert await pending is None
    assert store.messages == []


@pytest.mark.anyio("asyncio")
async def test_history_discarded_when_conversation_changes(store, api, channel):
    api.conversations[20] = direct_conversation(20)
    api.history[10] = [ChatMessage.model_validate(make_message(1))]
    gate = asyncio.Event()
    api.gate = gate

    pending = asyncio.create_task(store.load_history(10))
    await asyncio.sleep(0)
    api.gate = None
    await store.load_history(20)
    gate.set()

    assert await pending is False
    assert store.conversation_id == 20
    assert store.messages == []
    assert channel.named("leave") == [10]


@pytest.mark.anyio("asyncio")
async def test_switch_clears_ephemeral_state(store, api):
    api.conversations[20] = direct_conversation(20)
    await store.load_history(10)
    await store.apply_incoming({"type": "user_typing", "conversation_id": 10, "user_id": PEER})
    await store.apply_incoming(
        {"type": "message_received", "conversation_id": 10, "message": make_message(1)}
    )

    await store.load_history(20)

    assert store.messages == []
    assert store.message_ids == frozenset()
    assert not store.remote_typing.is_anyone_typing


@pytest.mark.anyio("asyncio")
async def test_transient_failure_sets_error_and_keeps_store_empty(store, api):
    api.fail_with = TransientNetworkError("Network unavailable")

    assert await store.load_history(10) is False
    assert store.error == "Network unavailable"
    assert store.messages == []

    store.dismiss_error()
    assert store.error is None


@pytest.mark.anyio("asyncio")
async def test_missing_conversation_propagates(store):
    with pytest.raises(ConversationNotFoundError):
        await store.load_history(404)


@pytest.mark.anyio("asyncio")
async def test_failed_send_sets_error(store, api):
    await store.load_history(10)
    api.fail_with = TransientNetworkError("Network unavailable")

    with pytest.raises(TransientNetworkError):
        await store.send_message(MessageDraft(content="hi"))
    assert store.error == "Network unavailable"
    assert not store.is_in_flight("send")


@pytest.mark.anyio("asyncio")
async def test_add_reaction_applies_server_snapshot(store, api):
    await store.load_history(10)
    await store.apply_incoming(
        {"type": "message_received", "conversation_id": 10, "message": make_message(1)}
    )
    api.snapshots[1] = ReactionSnapshot(
        message_id=1, reactions=[Reaction(emoji="👍", user_id=ME)], seq=1
    )

    assert await store.add_reaction(1, "👍") is True
    groups = store.reaction_groups(store.get_message(1))
    assert [(group.emoji, group.count, group.reacted) for group in groups] == [("👍", 1, True)]

    # the broadcast of the same change arrives afterwards
    echoed = await store.apply_incoming(
        {"type": "reaction_changed", "conversation_id": 10, "message_id": 1, "reactions": [{"emoji": "👍", "user_id": ME}], "seq": 1}
    )
    assert echoed is False


@pytest.mark.anyio("asyncio")
async def test_delete_and_edit_events(store):
    await store.load_history(10)
    await store.apply_incoming(
        {"type": "message_received", "conversation_id": 10, "message": make_message(1)}
    )
    await store.apply_incoming(
        {"type": "message_received", "conversation_id": 10, "message": make_message(2)}
    )

    edited = make_message(2, content="changed", edited_at=NOW.isoformat())
    assert await store.apply_incoming({"type": "message_edited", "conversation_id": 10, "message": edited})
    assert store.get_message(2).content == "changed"

    assert await store.apply_incoming({"type": "message_deleted", "conversation_id": 10, "message_id": 1})
    assert [message.id for message in store.messages] == [2]
    assert await store.apply_incoming({"type": "message_deleted", "conversation_id": 10, "message_id": 1}) is False


@pytest.mark.anyio("asyncio")
async def test_edit_outside_window_is_refused(store):
    await store.load_history(10)
    old = (datetime.now(timezone.utc) - timedelta(minutes=11)).isoformat()
    await store.apply_incoming(
        {"type": "message_received", "conversation_id": 10, "message": make_message(1, sender_id=ME, created_at=old)}
    )

    with pytest.raises(PermissionDeniedError):
        await store.edit_message(1, "too late")


@pytest.mark.anyio("asyncio")
async def test_failed_uploads_are_skipped(store, api):
    await store.load_history(10)
    api.failing_uploads.add("broken.pdf")

    media = await store.upload_attachments(
        [
            ("a.png", b"png", "image/png"),
            ("broken.pdf", b"pdf", "application/pdf"),
            ("c.png", b"png", "image/png"),
        ]
    )

    assert [item.filename for item in media] == ["a.png", "c.png"]
    assert store.error == "Upload failed"


@pytest.mark.anyio("asyncio")
async def test_typing_stops_when_message_sent(api, channel):
    store = ConversationStore(
        api, channel, SessionContext("http://chat.test", "t", ME), typing_debounce=5
    )
    await store.load_history(10)

    await store.keystroke()
    await store.keystroke()
    await store.send_message(MessageDraft(content="done"))

    assert channel.named("typing_start") == [10]
    assert channel.named("typing_stop") == [10]
    await store.close()


@pytest.mark.anyio("asyncio")
async def test_events_during_history_load_land_after_history(store, api):
    api.history[10] = [ChatMessage.model_validate(make_message(i)) for i in (1, 2, 3)]
    api.history_gate = asyncio.Event()

    loading = asyncio.create_task(store.load_history(10))
    await asyncio.sleep(0)
    live = {"type": "message_received", "conversation_id": 10, "message": make_message(4)}
    reaction = {
        "type": "reaction_changed",
        "conversation_id": 10,
        "message_id": 2,
        "reactions": [{"emoji": "👍", "user_id": PEER}],
        "seq": 1,
    }
    assert await store.apply_incoming(live) is False
    assert await store.apply_incoming(reaction) is False
    api.history_gate.set()

    assert await loading is True
    assert [message.id for message in store.messages] == [1, 2, 3, 4]
    assert [r.emoji for r in store.get_message(2).reactions] == ["👍"]
    assert await store.apply_incoming(live) is False


@pytest.mark.anyio("asyncio")
async def test_live_copy_of_history_message_is_not_duplicated(store, api):
    api.history[10] = [ChatMessage.model_validate(make_message(1))]
    api.history_gate = asyncio.Event()

    loading = asyncio.create_task(store.load_history(10))
    await asyncio.sleep(0)
    await store.apply_incoming(
        {"type": "message_received", "conversation_id": 10, "message": make_message(1)}
    )
    api.history_gate.set()
    await loading

    assert [message.id for message in store.messages] == [1]


@pytest.mark.anyio("asyncio")
async def test_unread_history_is_acknowledged_once(store, api, channel):
    already_read = [{"user_id": ME, "at": NOW.isoformat()}]
    api.history[10] = [
        ChatMessage.model_validate(make_message(1)),
        ChatMessage.model_validate(make_message(2, read_by=already_read)),
        ChatMessage.model_validate(make_message(3, sender_id=ME)),
    ]

    await store.load_history(10)

    assert channel.named("read") == [1]
    assert api.read == []


@pytest.mark.anyio("asyncio")
async def test_unread_history_falls_back_to_http(api):
    channel = FakeChannel(connected=False)
    store = ConversationStore(api, channel, SessionContext("http://chat.test", "t", ME))
    api.history[10] = [ChatMessage.model_validate(make_message(6))]

    await store.load_history(10)

    assert api.read == [6]


@pytest.mark.anyio("asyncio")
async def test_sent_message_echo_is_applied_once(store):
    await store.load_history(10)

    message = await store.send_message(MessageDraft(content="hi"))
    echoed = await store.apply_incoming(
        {
            "type": "message_received",
            "conversation_id": 10,
            "message": make_message(message.id, sender_id=ME, content="hi"),
        }
    )

    assert echoed is False
    assert [(m.id, m.content, m.type) for m in store.messages] == [
        (message.id, "hi", MessageType.TEXT)
    ]


@pytest.mark.anyio("asyncio")
async def test_late_delivery_does_not_regress_read_status(store):
    await store.load_history(10)
    message = await store.send_message(MessageDraft(content="hello"))
    read = {"type": "message_read", "conversation_id": 10, "message_id": message.id, "user_id": PEER}
    delivered = {**read, "type": "message_delivered"}

    await store.apply_incoming(read)
    assert await store.apply_incoming(delivered) is False

    current = store.get_message(message.id)
    assert store.status_for(current) == DeliveryStatus.READ
    assert [receipt.user_id for receipt in current.read_by] == [PEER]


@pytest.mark.anyio("asyncio")
async def test_deleting_already_removed_message_is_not_fatal(store, api):
    await store.load_history(10)
    await store.apply_incoming(
        {"type": "message_received", "conversation_id": 10, "message": make_message(5, sender_id=ME)}
    )
    api.deleted_elsewhere.add(5)

    assert await store.delete_message(5) is True
    assert store.get_message(5) is None
    assert store.error is None
