"""Message API routes."""

import base64
import binascii
from contextlib import aclosing
from pathlib import Path
from typing import Literal

from pydantic import BaseModel
from fastapi import APIRouter, HTTPException

from ...app import Application
from ...conversations import MessageReconciler
from ...models import MediaDraft, MediaKind
from ..errors import to_http
from ..schemas import MessageResponse, StatusResponse, message_response


class MediaItem(BaseModel):
    """One attachment: base64 bytes or a local file path."""

    kind: MediaKind
    data: str | None = None
    path: str | None = None
    content_type: str | None = None


class SendRequest(BaseModel):
    """Request model for sending a message."""

    text: str | None = None
    media: list[MediaItem] = []


class SendResponse(BaseModel):
    """Response model for a send or retry."""

    messages: list[MessageResponse]
    errors: list[str]


class EditRequest(BaseModel):
    """Request model for editing a text message."""

    text: str


def _draft(item: MediaItem) -> MediaDraft:
    if item.data is None and item.path is None:
        raise HTTPException(status_code=400, detail="Media item needs data or path")
    data = None
    if item.data is not None:
        try:
            data = base64.b64decode(item.data, validate=True)
        except (binascii.Error, ValueError):
            raise HTTPException(status_code=400, detail="Media data is not base64")
    return MediaDraft(
        kind=item.kind,
        data=data,
        local_path=Path(item.path) if item.path else None,
        content_type=item.content_type,
    )


def create_messages_router(app: Application) -> APIRouter:
    """Create messages router."""
    router = APIRouter(prefix="/api/conversations", tags=["messages"])

    async def _reconciler(conversation_id: str) -> MessageReconciler:
        reconciler = await app.open_conversation(conversation_id)
        if not reconciler.messages:
            await reconciler.load()
        return reconciler

    @router.get("/{conversation_id}/messages", response_model=list[MessageResponse])
    async def list_messages(conversation_id: str) -> list[MessageResponse]:
        """Merged message list; opening it marks the conversation read."""
        try:
            reconciler = await app.open_conversation(conversation_id)
            async with aclosing(reconciler.observe_messages()) as feed:
                async for messages in feed:
                    return [message_response(m) for m in messages]
        except Exception as e:
            raise to_http(e) from e
        return []

    @router.post("/{conversation_id}/messages", response_model=SendResponse)
    async def send_message(conversation_id: str, request: SendRequest) -> SendResponse:
        """Send text and/or media."""
        drafts = [_draft(item) for item in request.media]
        try:
            reconciler = await app.open_conversation(conversation_id)
            outcome = await reconciler.send(text=request.text, media=drafts)
        except Exception as e:
            raise to_http(e) from e
        return SendResponse(
            messages=[message_response(m) for m in outcome.messages],
            errors=[str(e) for e in outcome.errors],
        )

    @router.patch(
        "/{conversation_id}/messages/{message_id}", response_model=MessageResponse
    )
    async def edit_message(
        conversation_id: str, message_id: str, request: EditRequest
    ) -> MessageResponse:
        try:
            reconciler = await _reconciler(conversation_id)
            message = await reconciler.edit_message(message_id, request.text)
        except Exception as e:
            raise to_http(e) from e
        return message_response(message)

    @router.delete(
        "/{conversation_id}/messages/{message_id}", response_model=StatusResponse
    )
    async def delete_message(
        conversation_id: str,
        message_id: str,
        scope: Literal["everyone", "me"] = "everyone",
    ) -> dict:
        """Delete for every participant, or hide for the caller (``scope=me``)."""
        try:
            reconciler = await _reconciler(conversation_id)
            if scope == "me":
                await reconciler.delete_message_for_me(message_id)
            else:
                await reconciler.delete_message(message_id)
        except Exception as e:
            raise to_http(e) from e
        return {"status": "ok"}

    @router.post(
        "/{conversation_id}/messages/{message_id}/retry", response_model=SendResponse
    )
    async def retry_message(conversation_id: str, message_id: str) -> SendResponse:
        """Re-send a failed message."""
        try:
            reconciler = await _reconciler(conversation_id)
            outcome = await reconciler.retry(message_id)
        except Exception as e:
            raise to_http(e) from e
        return SendResponse(
            messages=[message_response(m) for m in outcome.messages],
            errors=[str(e) for e in outcome.errors],
        )

    return router
