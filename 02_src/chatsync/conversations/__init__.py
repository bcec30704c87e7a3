"""Conversation list and per-conversation message reconciliation."""

from .index import CONVERSATIONS, MESSAGES, ConversationIndex, IConversationIndex
from .reconciler import MessageReconciler, SendOutcome, merge_messages

__all__ = [
    "CONVERSATIONS",
    "MESSAGES",
    "ConversationIndex",
    "IConversationIndex",
    "MessageReconciler",
    "SendOutcome",
    "merge_messages",
]
