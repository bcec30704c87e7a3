"""chatsync: conversation sync and presence over a key-path document store."""

from .app import Application, IApplication
from .conversations import (
    ConversationIndex,
    IConversationIndex,
    MessageReconciler,
    SendOutcome,
)
from .directory import IdentityDirectory, IIdentityDirectory
from .errors import AuthError, AuthErrorKind, SyncError, SyncErrorKind
from .models import (
    ContentKind,
    Conversation,
    Identity,
    MediaDraft,
    MediaKind,
    MediaRef,
    Message,
    MessageContent,
    MessageStatus,
    TraceEvent,
)
from .session import (
    ConnectivityMonitor,
    IAuthProvider,
    ISessionGate,
    LocalAuthProvider,
    SessionGate,
)
from .store import DocumentStore, IBlobStorage, IDocumentStore
from .tracker import ITracker, Tracker

__all__ = [
    # Application
    "Application",
    "IApplication",
    # Models
    "Identity",
    "Conversation",
    "Message",
    "MessageContent",
    "MessageStatus",
    "ContentKind",
    "MediaKind",
    "MediaRef",
    "MediaDraft",
    "TraceEvent",
    # Errors
    "AuthError",
    "AuthErrorKind",
    "SyncError",
    "SyncErrorKind",
    # Components
    "IDocumentStore",
    "DocumentStore",
    "IBlobStorage",
    "ITracker",
    "Tracker",
    "IAuthProvider",
    "LocalAuthProvider",
    "ConnectivityMonitor",
    "ISessionGate",
    "SessionGate",
    "IIdentityDirectory",
    "IdentityDirectory",
    "IConversationIndex",
    "ConversationIndex",
    "MessageReconciler",
    "SendOutcome",
]
