"""Delivery and read receipt derivations.

Receipts are append-only sets of ``(user_id, at)`` entries. The status shown
next to a self-authored message is always derived from them on demand and
never stored.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Protocol

from .models import ChatMessage, ConversationInfo, Receipt


class DeliveryStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


def add_receipt(entries: list[Receipt], user_id: int, at: datetime | None = None) -> bool:
    """Add ``user_id`` to ``entries`` unless already present.

    Returns ``True`` when the list changed. Existing entries are never removed
    or overwritten.
    """

    if any(entry.user_id == user_id for entry in entries):
        return False
    entries.append(Receipt(user_id=user_id, at=at or datetime.now(timezone.utc)))
    return True


def _user_ids(entries: Iterable[Receipt]) -> set[int]:
    return {entry.user_id for entry in entries}


@dataclass(frozen=True, slots=True)
class GroupReceiptSummary:
    status: DeliveryStatus
    seen_by: int
    delivered_to: int
    total: int

    @property
    def label(self) -> str:
        return f"Seen by {self.seen_by} of {self.total}"


class ReceiptModel(Protocol):
    def status(self, message: ChatMessage) -> DeliveryStatus: ...

    def summarize(self, message: ChatMessage) -> DeliveryStatus | GroupReceiptSummary: ...


class SinglePeerReceipts:
    """Status relative to the other party of a one-to-one conversation."""

    def __init__(self, peer_id: int | None) -> None:
        self.peer_id = peer_id

    def status(self, message: ChatMessage) -> DeliveryStatus:
        if self.peer_id is None:
            return DeliveryStatus.SENT
        if self.peer_id in _user_ids(message.read_by):
            return DeliveryStatus.READ
        if self.peer_id in _user_ids(message.delivered_to):
            return DeliveryStatus.DELIVERED
        return DeliveryStatus.SENT

    def summarize(self, message: ChatMessage) -> DeliveryStatus:
        return self.status(message)


class MultiPeerReceipts:
    """Per-member receipts aggregated into "seen by N of M"."""

    def __init__(self, member_ids: Iterable[int]) -> None:
        self.member_ids = frozenset(member_ids)

    def summarize(self, message: ChatMessage) -> GroupReceiptSummary:
        readers = _user_ids(message.read_by) & self.member_ids
        # a read implies delivery even if the delivered event was never seen
        delivered = (_user_ids(message.delivered_to) & self.member_ids) | readers
        total = len(self.member_ids)
        if total and len(readers) == total:
            status = DeliveryStatus.READ
        elif total and len(delivered) == total:
            status = DeliveryStatus.DELIVERED
        else:
            status = DeliveryStatus.SENT
        return GroupReceiptSummary(
            status=status, seen_by=len(readers), delivered_to=len(delivered), total=total
        )

    def status(self, message: ChatMessage) -> DeliveryStatus:
        return self.summarize(message).status


def receipt_model_for(conversation: ConversationInfo, self_id: int) -> ReceiptModel:
    if conversation.is_group:
        return MultiPeerReceipts(conversation.other_member_ids(self_id))
    # a peer who left still owns the receipts they already sent
    peers = [p.user_id for p in conversation.participants if p.user_id != self_id]
    return SinglePeerReceipts(peers[0] if peers else None)
