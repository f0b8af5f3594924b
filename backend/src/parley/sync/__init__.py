"""Client-side conversation synchronization."""

from .api import ChatApiClient, ReactionSnapshot, UploadResult
from .channel import RealtimeChannel
from .editing import EDIT_WINDOW, can_edit
from .errors import (
    ActionInProgressError,
    ConversationNotFoundError,
    MessageNotFoundError,
    PermissionDeniedError,
    ResourceNotFoundError,
    SyncError,
    TransientNetworkError,
    UnexpectedPayloadError,
    UploadFailedError,
)
from .indicators import RemoteTypingState, TypingNotifier
from .models import (
    ChatMessage,
    ConversationInfo,
    MediaItem,
    MediaType,
    MessageDraft,
    MessageType,
    Participant,
    Reaction,
    Receipt,
    infer_message_type,
    media_type_for_mime,
)
from .reactions import ReactionGroup, group_reactions
from .receipts import (
    DeliveryStatus,
    GroupReceiptSummary,
    MultiPeerReceipts,
    SinglePeerReceipts,
    add_receipt,
    receipt_model_for,
)
from .session import SessionContext
from .store import ConversationStore
from .timeline import DaySection, day_sections

__all__ = [
    "ActionInProgressError",
    "ChatApiClient",
    "ChatMessage",
    "ConversationInfo",
    "ConversationNotFoundError",
    "ConversationStore",
    "DaySection",
    "DeliveryStatus",
    "EDIT_WINDOW",
    "GroupReceiptSummary",
    "MediaItem",
    "MediaType",
    "MessageDraft",
    "MessageNotFoundError",
    "MessageType",
    "MultiPeerReceipts",
    "Participant",
    "PermissionDeniedError",
    "Reaction",
    "ReactionGroup",
    "ReactionSnapshot",
    "RealtimeChannel",
    "Receipt",
    "RemoteTypingState",
    "ResourceNotFoundError",
    "SessionContext",
    "SinglePeerReceipts",
    "SyncError",
    "TransientNetworkError",
    "TypingNotifier",
    "UnexpectedPayloadError",
    "UploadFailedError",
    "UploadResult",
    "add_receipt",
    "can_edit",
    "day_sections",
    "group_reactions",
    "infer_message_type",
    "media_type_for_mime",
    "receipt_model_for",
]
