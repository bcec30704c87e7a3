"""Core data models for chatsync."""

from .codec import normalize_timestamp
from .conversation import Conversation
from .identity import Identity
from .messages import (
    ContentKind,
    MediaDraft,
    MediaKind,
    MediaRef,
    Message,
    MessageContent,
    MessageStatus,
    can_transition,
)
from .tracing import TraceEvent

__all__ = [
    # Identities
    "Identity",
    # Messages
    "ContentKind",
    "MediaDraft",
    "MediaKind",
    "MediaRef",
    "Message",
    "MessageContent",
    "MessageStatus",
    "can_transition",
    # Conversations
    "Conversation",
    # Tracing
    "TraceEvent",
    # Codec
    "normalize_timestamp",
]
