"""Response models shared by the API routes."""

from datetime import datetime

from pydantic import BaseModel

from ..models import Conversation, Identity, Message


class IdentityResponse(BaseModel):
    """Response model for an identity."""

    id: str
    name: str
    email: str | None = None
    is_online: bool
    last_seen: datetime | None = None


class MessageResponse(BaseModel):
    """Response model for a message."""

    id: str
    sender_id: str
    type: str
    text: str | None = None
    url: str | None = None
    thumbnail_url: str | None = None
    timestamp: datetime
    status: str
    edited: bool


class ConversationResponse(BaseModel):
    """Response model for a conversation."""

    id: str
    is_group: bool
    name: str | None = None
    participants: list[IdentityResponse]
    unread_count: int
    last_message: MessageResponse | None = None


class StatusResponse(BaseModel):
    """Response model for status."""

    status: str


def identity_response(identity: Identity) -> IdentityResponse:
    return IdentityResponse(
        id=identity.key,
        name=identity.name,
        email=identity.email,
        is_online=identity.is_online,
        last_seen=identity.last_seen,
    )


def message_response(message: Message) -> MessageResponse:
    media = message.content.media
    return MessageResponse(
        id=message.key,
        sender_id=message.sender_key,
        type=message.content.kind.value,
        text=message.content.text,
        url=media.url if media else None,
        thumbnail_url=media.thumbnail_url if media else None,
        timestamp=message.timestamp,
        status=message.status.value,
        edited=message.edited,
    )


def conversation_response(conversation: Conversation) -> ConversationResponse:
    last = conversation.last_message
    return ConversationResponse(
        id=conversation.key,
        is_group=conversation.is_group,
        name=conversation.group_name,
        participants=[identity_response(p) for p in conversation.participants],
        unread_count=conversation.unread_count,
        last_message=message_response(last) if last else None,
    )
