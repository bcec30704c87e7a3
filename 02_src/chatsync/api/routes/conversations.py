"""Conversation API routes."""

import asyncio
from contextlib import aclosing

from pydantic import BaseModel, Field
from fastapi import APIRouter

from ...app import Application
from ..errors import to_http
from ..schemas import ConversationResponse, StatusResponse, conversation_response
from . import require_identity


class CreateConversationRequest(BaseModel):
    """Request model for creating a conversation."""

    participant_ids: list[str] = Field(min_length=1)
    name: str | None = None


class MarkReadResponse(BaseModel):
    """Response model for mark-read."""

    changed: bool


def create_conversations_router(app: Application) -> APIRouter:
    """Create conversations router."""
    router = APIRouter(prefix="/api/conversations", tags=["conversations"])

    @router.get("", response_model=list[ConversationResponse])
    async def list_conversations() -> list[ConversationResponse]:
        """Conversations of the signed-in identity, most recent first."""
        try:
            identity = require_identity(app)
            async with aclosing(app.index.observe_conversations(identity)) as feed:
                async for conversations in feed:
                    return [conversation_response(c) for c in conversations]
        except Exception as e:
            raise to_http(e) from e
        return []

    @router.post("", response_model=ConversationResponse)
    async def create_conversation(
        request: CreateConversationRequest,
    ) -> ConversationResponse:
        """Start a direct or group conversation."""
        try:
            require_identity(app)
            participants = await asyncio.gather(
                *(app.directory.get(key) for key in request.participant_ids)
            )
            conversation = await app.index.create_conversation(
                participants, name=request.name
            )
        except Exception as e:
            raise to_http(e) from e
        return conversation_response(conversation)

    @router.get("/{conversation_id}", response_model=ConversationResponse)
    async def get_conversation(conversation_id: str) -> ConversationResponse:
        try:
            identity = require_identity(app)
            conversation = await app.index.get_conversation(
                conversation_id, identity.key
            )
        except Exception as e:
            raise to_http(e) from e
        return conversation_response(conversation)

    @router.delete("/{conversation_id}", response_model=StatusResponse)
    async def delete_conversation(conversation_id: str) -> dict:
        """Delete the conversation and its history."""
        try:
            require_identity(app)
            await app.close_conversation(conversation_id)
            await app.index.delete_conversation(conversation_id)
        except Exception as e:
            raise to_http(e) from e
        return {"status": "ok"}

    @router.post("/{conversation_id}/read", response_model=MarkReadResponse)
    async def mark_read(conversation_id: str) -> MarkReadResponse:
        try:
            identity = require_identity(app)
            changed = await app.index.mark_read(conversation_id, identity.key)
        except Exception as e:
            raise to_http(e) from e
        return MarkReadResponse(changed=changed)

    return router
