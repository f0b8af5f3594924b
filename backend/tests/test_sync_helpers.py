from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest

from parley.sync import (
    ChatMessage,
    ConversationInfo,
    DeliveryStatus,
    MultiPeerReceipts,
    Participant,
    Reaction,
    Receipt,
    RemoteTypingState,
    SinglePeerReceipts,
    TypingNotifier,
    can_edit,
    day_sections,
    group_reactions,
    infer_message_type,
    media_type_for_mime,
    receipt_model_for,
)
from parley.sync.editing import within_edit_window
from parley.sync.models import MediaType, MessageType

CREATED = datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc)


def message(**extra) -> ChatMessage:
    payload = {"id": 1, "conversation_id": 5, "sender_id": 1, "content": "hi", "created_at": CREATED}
    payload.update(extra)
    return ChatMessage(**payload)


class ManualClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.anyio("asyncio")
async def test_typing_burst_emits_one_start_and_one_stop():
    emitted: list[bool] = []

    async def emit(value: bool) -> None:
        emitted.append(value)

    notifier = TypingNotifier(emit, debounce=0.05)
    for _ in range(5):
        await notifier.keystroke()
    await asyncio.sleep(0.15)

    assert emitted == [True, False]
    await notifier.stop()
    assert emitted == [True, False]
    assert not notifier.is_typing


@pytest.mark.anyio("asyncio")
async def test_long_burst_refreshes_typing_start():
    emitted: list[bool] = []
    clock = ManualClock()

    async def emit(value: bool) -> None:
        emitted.append(value)

    notifier = TypingNotifier(emit, debounce=10, refresh_interval=3, clock=clock)
    await notifier.keystroke()
    clock.now = 2.0
    await notifier.keystroke()
    clock.now = 3.5
    await notifier.keystroke()
    await notifier.stop()
    await notifier.aclose()

    assert emitted == [True, True, False]


@pytest.mark.anyio("asyncio")
async def test_cancel_forgets_burst_without_emitting():
    emitted: list[bool] = []

    async def emit(value: bool) -> None:
        emitted.append(value)

    notifier = TypingNotifier(emit, debounce=0.05)
    await notifier.keystroke()
    notifier.cancel()
    await asyncio.sleep(0.1)

    assert emitted == [True]


def test_remote_typing_ignores_self():
    state = RemoteTypingState(self_id=1)

    assert state.start(1) is False
    assert state.start(2) is True
    assert state.start(2) is False
    assert state.users == frozenset({2})
    assert state.stop(2) is True
    assert state.stop(2) is False


@pytest.mark.parametrize(
    ("elapsed", "expected"),
    [
        (timedelta(minutes=9, seconds=59), True),
        (timedelta(minutes=10), False),
        (timedelta(minutes=10, seconds=1), False),
    ],
)
def test_edit_window_boundaries(elapsed, expected):
    assert within_edit_window(CREATED, CREATED + elapsed) is expected
    assert can_edit(message(), 1, CREATED + elapsed) is expected


def test_only_own_text_messages_are_editable():
    soon = CREATED + timedelta(minutes=1)

    assert can_edit(message(), 2, soon) is False
    assert can_edit(message(type=MessageType.IMAGE), 1, soon) is False


def test_naive_timestamps_are_treated_as_utc():
    naive = message(created_at=datetime(2026, 10, 17, 9, 0))

    assert can_edit(naive, 1, CREATED + timedelta(minutes=5)) is True


def test_reactions_grouped_in_first_seen_order():
    reactions = [
        Reaction(emoji="🔥", user_id=2),
        Reaction(emoji="👍", user_id=1),
        Reaction(emoji="🔥", user_id=3),
        Reaction(emoji="🔥", user_id=2),
    ]

    groups = group_reactions(reactions, current_user_id=1)

    assert [(group.emoji, group.count, group.reacted) for group in groups] == [
        ("🔥", 2, False),
        ("👍", 1, True),
    ]
    assert groups[0].user_ids == [2, 3]


def test_single_peer_status_progression():
    model = SinglePeerReceipts(peer_id=2)
    sent = message()

    assert model.status(sent) == DeliveryStatus.SENT
    sent.delivered_to.append(Receipt(user_id=2, at=CREATED))
    assert model.status(sent) == DeliveryStatus.DELIVERED
    sent.read_by.append(Receipt(user_id=2, at=CREATED))
    assert model.status(sent) == DeliveryStatus.READ


def test_group_receipts_count_readers_of_members():
    model = MultiPeerReceipts([2, 3, 4])
    sent = message(
        delivered_to=[Receipt(user_id=2, at=CREATED), Receipt(user_id=3, at=CREATED)],
        read_by=[Receipt(user_id=4, at=CREATED), Receipt(user_id=9, at=CREATED)],
    )

    summary = model.summarize(sent)

    assert summary.status == DeliveryStatus.DELIVERED
    assert summary.seen_by == 1
    assert summary.delivered_to == 3
    assert summary.label == "Seen by 1 of 3"


def test_receipt_model_depends_on_conversation_kind():
    members = [Participant(user_id=1), Participant(user_id=2), Participant(user_id=3, is_active=False)]

    direct = receipt_model_for(ConversationInfo(id=1, participants=members[:2]), 1)
    group = receipt_model_for(ConversationInfo(id=2, is_group=True, participants=members), 1)

    assert isinstance(direct, SinglePeerReceipts) and direct.peer_id == 2
    assert isinstance(group, MultiPeerReceipts) and group.member_ids == frozenset({2})


def test_direct_status_keeps_receipts_of_peer_who_left():
    conversation = ConversationInfo(
        id=1, participants=[Participant(user_id=1), Participant(user_id=2, is_active=False)]
    )
    seen = message(read_by=[Receipt(user_id=2, at=CREATED)])

    model = receipt_model_for(conversation, 1)

    assert isinstance(model, SinglePeerReceipts) and model.peer_id == 2
    assert model.summarize(seen) == DeliveryStatus.READ


def test_message_type_inference_and_mime_mapping():
    assert infer_message_type([]) == MessageType.TEXT
    assert infer_message_type([MediaType.AUDIO]) == MessageType.AUDIO
    assert infer_message_type([MediaType.IMAGE, MediaType.FILE]) == MessageType.MEDIA_GROUP
    assert media_type_for_mime("image/png") == MediaType.IMAGE
    assert media_type_for_mime("video/mp4") == MediaType.VIDEO
    assert media_type_for_mime("application/pdf") == MediaType.FILE
    assert media_type_for_mime(None) == MediaType.FILE


def test_day_sections_split_consecutive_days():
    today = date(2026, 10, 17)
    messages = [
        message(id=1, created_at=datetime(2026, 10, 15, 8, tzinfo=timezone.utc)),
        message(id=2, created_at=datetime(2026, 10, 16, 8, tzinfo=timezone.utc)),
        message(id=3, created_at=datetime(2026, 10, 17, 8, tzinfo=timezone.utc)),
        message(id=4, created_at=datetime(2026, 10, 17, 9, tzinfo=timezone.utc)),
    ]

    sections = day_sections(messages, today=today)

    assert [section.label for section in sections] == ["2026-10-15", "Yesterday", "Today"]
    assert [m.id for m in sections[-1].messages] == [3, 4]
