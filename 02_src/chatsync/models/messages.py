"""Message-related data models."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path


class MediaKind(str, Enum):
    """Kinds of media a message can reference."""

    IMAGE = "image"
    VIDEO = "video"

    @property
    def content_type(self) -> str:
        return "image/jpeg" if self is MediaKind.IMAGE else "video/mp4"


class ContentKind(str, Enum):
    """Wire ``type`` of a message."""

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"


class MessageStatus(str, Enum):
    """Delivery status of a message."""

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"

    @property
    def is_local(self) -> bool:
        """True for statuses that only exist on the sending client."""
        return self in (MessageStatus.PENDING, MessageStatus.FAILED)


# delivered/read are only ever observed from the remote side
_TRANSITIONS: dict[MessageStatus, frozenset[MessageStatus]] = {
    MessageStatus.PENDING: frozenset({MessageStatus.SENT, MessageStatus.FAILED}),
    MessageStatus.SENT: frozenset({MessageStatus.DELIVERED, MessageStatus.READ}),
    MessageStatus.DELIVERED: frozenset({MessageStatus.READ}),
    MessageStatus.READ: frozenset(),
    MessageStatus.FAILED: frozenset(),
}


def can_transition(src: MessageStatus, dst: MessageStatus) -> bool:
    """Whether ``src -> dst`` is a legal status change."""
    return dst in _TRANSITIONS[src]


@dataclass(frozen=True)
class MediaRef:
    """Reference to uploaded (or still local) media."""

    url: str
    kind: MediaKind
    thumbnail_url: str | None = None


@dataclass(frozen=True)
class MessageContent:
    """Body of a message: text, image or video."""

    kind: ContentKind
    text: str | None = None
    media: MediaRef | None = None

    @classmethod
    def of_text(cls, text: str) -> "MessageContent":
        return cls(kind=ContentKind.TEXT, text=text)

    @classmethod
    def of_media(cls, media: MediaRef) -> "MessageContent":
        kind = ContentKind.IMAGE if media.kind is MediaKind.IMAGE else ContentKind.VIDEO
        return cls(kind=kind, media=media)

    @property
    def preview(self) -> str:
        """Short text shown in conversation lists."""
        if self.kind is ContentKind.TEXT:
            return self.text or ""
        return "Photo" if self.kind is ContentKind.IMAGE else "Video"


@dataclass
class Message:
    """One unit of conversation content."""

    key: str
    sender_key: str
    content: MessageContent
    timestamp: datetime
    status: MessageStatus = MessageStatus.PENDING
    edited: bool = False


@dataclass
class MediaDraft:
    """An attachment picked by the user, not uploaded yet."""

    kind: MediaKind
    data: bytes | None = None
    local_path: Path | None = None
    content_type: str | None = None

    def local_url(self, fallback_key: str) -> str:
        """URL used to show the attachment before upload completes."""
        if self.local_path is not None:
            return Path(self.local_path).resolve().as_uri()
        return f"local://{fallback_key}"

    def read_bytes(self) -> bytes:
        """Return the raw bytes of the attachment."""
        if self.data is not None:
            return self.data
        if self.local_path is None:
            raise ValueError("Media draft has neither data nor local_path")
        return Path(self.local_path).read_bytes()
