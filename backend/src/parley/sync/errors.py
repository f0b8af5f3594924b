"""Error taxonomy raised by the synchronization client."""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all client-side synchronization errors."""


class TransientNetworkError(SyncError):
    """A network call failed and may succeed if the user tries again."""


class ResourceNotFoundError(SyncError):
    """The server answered 404 for the requested resource."""


class ConversationNotFoundError(ResourceNotFoundError):
    """The requested conversation does not exist; the view cannot continue."""


class MessageNotFoundError(ResourceNotFoundError):
    """The message is gone, usually because someone already deleted it."""


class PermissionDeniedError(SyncError):
    """The server rejected an action the current user may not perform."""


class ActionInProgressError(SyncError):
    """The same action is still in flight."""


class UploadFailedError(SyncError):
    """The upload gateway could not store a file."""


class UnexpectedPayloadError(SyncError):
    """A server response or event did not have the expected shape."""
