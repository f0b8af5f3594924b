"""HTTP client for the chat backend's REST collaborators."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from .errors import (
    ConversationNotFoundError,
    MessageNotFoundError,
    PermissionDeniedError,
    ResourceNotFoundError,
    SyncError,
    TransientNetworkError,
    UnexpectedPayloadError,
    UploadFailedError,
)
from .models import ChatMessage, ConversationInfo, MediaItem, MediaType, MessageDraft, Reaction
from .session import SessionContext

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(10.0, read=30.0)


class UploadResult(BaseModel):
    url: str
    key: str
    filename: str | None = None
    size: int | None = None
    mime_type: str | None = None
    type: MediaType = MediaType.FILE

    def as_media(self) -> MediaItem:
        return MediaItem(
            type=self.type,
            url=self.url,
            filename=self.filename,
            size=self.size,
            mime_type=self.mime_type,
        )


class ReactionSnapshot(BaseModel):
    message_id: int
    reactions: list[Reaction]
    seq: int


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return response.reason_phrase


class ChatApiClient:
    """Thin async wrapper over the backend endpoints used by the store.

    Every call carries the bearer token of the given :class:`SessionContext`.
    """

    def __init__(
        self,
        session: SessionContext,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
    ) -> None:
        self.session = session
        self._client = httpx.AsyncClient(
            base_url=session.base_url,
            headers=session.headers,
            transport=transport,
            timeout=timeout,
        )

    async def __aenter__(self) -> "ChatApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        url: str,
        *,
        not_found: type[ResourceNotFoundError] = ResourceNotFoundError,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            logger.info("Request failed", extra={"method": method, "url": url}, exc_info=True)
            raise TransientNetworkError(str(exc) or type(exc).__name__) from exc
        if response.is_success:
            return response
        detail = _detail(response)
        if response.status_code == 404:
            raise not_found(detail)
        if response.status_code == 403:
            raise PermissionDeniedError(detail)
        raise TransientNetworkError(f"{response.status_code}: {detail}")

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            content_type = response.headers.get("content-type", "unknown")
            raise UnexpectedPayloadError(f"Expected JSON, got {content_type}") from exc

    @staticmethod
    def _parse(model: type[BaseModel], data: Any) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise UnexpectedPayloadError(str(exc)) from exc

    async def get_conversation(self, conversation_id: int) -> ConversationInfo:
        response = await self._request(
            "GET", f"/api/conversations/{conversation_id}", not_found=ConversationNotFoundError
        )
        return self._parse(ConversationInfo, self._json(response))

    async def get_messages(
        self, conversation_id: int, *, limit: int | None = None, before: int | None = None
    ) -> list[ChatMessage]:
        params: dict[str, int] = {}
        if limit is not None:
            params["limit"] = limit
        if before is not None:
            params["before"] = before
        response = await self._request(
            "GET",
            f"/api/conversations/{conversation_id}/messages",
            params=params,
            not_found=ConversationNotFoundError,
        )
        body = self._json(response)
        if not isinstance(body, list):
            raise UnexpectedPayloadError("Message history must be a list")
        return [self._parse(ChatMessage, item) for item in body]

    async def send_message(self, conversation_id: int, draft: MessageDraft) -> ChatMessage:
        response = await self._request(
            "POST",
            "/api/messages",
            json=draft.to_payload(conversation_id),
            not_found=ConversationNotFoundError,
        )
        return self._parse(ChatMessage, self._json(response))

    async def edit_message(self, message_id: int, content: str) -> ChatMessage:
        response = await self._request(
            "PATCH",
            f"/api/messages/{message_id}",
            json={"content": content},
            not_found=MessageNotFoundError,
        )
        return self._parse(ChatMessage, self._json(response))

    async def delete_message(self, message_id: int) -> None:
        await self._request(
            "DELETE", f"/api/messages/{message_id}", not_found=MessageNotFoundError
        )

    async def add_reaction(self, message_id: int, emoji: str) -> ReactionSnapshot:
        response = await self._request(
            "POST",
            f"/api/messages/{message_id}/reactions",
            json={"emoji": emoji},
            not_found=MessageNotFoundError,
        )
        return self._parse(ReactionSnapshot, self._json(response))

    async def mark_read(self, message_id: int) -> None:
        await self._request(
            "POST", f"/api/messages/{message_id}/read", not_found=MessageNotFoundError
        )

    async def upload(
        self, filename: str, content: bytes, mime_type: str | None = None
    ) -> UploadResult:
        files = {"file": (filename, content, mime_type or "application/octet-stream")}
        try:
            response = await self._request("POST", "/api/upload", files=files)
            return self._parse(UploadResult, self._json(response))
        except SyncError as exc:
            raise UploadFailedError("Upload failed") from exc

    async def delete_upload(self, key: str) -> bool:
        try:
            await self._request("DELETE", f"/api/upload/{key}")
        except ResourceNotFoundError:
            return False
        except (TransientNetworkError, PermissionDeniedError) as exc:
            raise UploadFailedError("Delete failed") from exc
        return True
