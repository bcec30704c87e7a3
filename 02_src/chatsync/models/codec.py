"""Conversion between models and the JSON records held by the store.

Parsers return ``None`` for records missing required fields so callers can
drop a corrupt entry without losing the rest of a snapshot.
"""

from datetime import datetime, timezone
from typing import Any

from .conversation import Conversation
from .identity import Identity
from .messages import (
    ContentKind,
    MediaKind,
    MediaRef,
    Message,
    MessageContent,
    MessageStatus,
)

# Epoch values above this are milliseconds, anything else is seconds.
MILLISECONDS_THRESHOLD = 10**12


def normalize_timestamp(value: Any) -> datetime:
    """Turn an epoch number (seconds or milliseconds) into a UTC datetime."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Not an epoch timestamp: {value!r}")
    seconds = value / 1000 if value > MILLISECONDS_THRESHOLD else value
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def to_epoch_seconds(moment: datetime) -> float:
    """Wire representation of an instant."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


def _optional_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        return normalize_timestamp(value)
    except ValueError:
        return None


# Identities
def identity_to_record(identity: Identity) -> dict:
    record: dict[str, Any] = {
        "id": identity.key,
        "name": identity.name,
        "email": identity.email or "",
        "isOnline": identity.is_online,
    }
    if identity.last_seen is not None:
        record["lastSeen"] = to_epoch_seconds(identity.last_seen)
    if identity.created_at is not None:
        record["createdAt"] = to_epoch_seconds(identity.created_at)
    return record


def identity_from_record(key: str, record: Any) -> Identity | None:
    if not isinstance(record, dict):
        return None
    name = record.get("name")
    if not isinstance(name, str):
        return None
    email = record.get("email") or None
    return Identity(
        key=key,
        name=name,
        email=email if isinstance(email, str) else None,
        is_online=bool(record.get("isOnline", False)),
        last_seen=_optional_timestamp(record.get("lastSeen")),
        created_at=_optional_timestamp(record.get("createdAt")),
    )


# Messages
def message_to_record(message: Message) -> dict:
    record: dict[str, Any] = {
        "senderId": message.sender_key,
        "timestamp": to_epoch_seconds(message.timestamp),
        "status": message.status.value,
        "type": message.content.kind.value,
    }
    content = message.content
    if content.kind is ContentKind.TEXT:
        record["text"] = content.text or ""
    elif content.media is not None:
        record["url"] = content.media.url
        if content.media.thumbnail_url:
            record["thumbnailURL"] = content.media.thumbnail_url
    if message.edited:
        record["isEdited"] = True
    return record


def content_to_fields(content: MessageContent) -> dict:
    """Partial update replacing the content of an existing record."""
    fields: dict[str, Any] = {"type": content.kind.value}
    if content.kind is ContentKind.TEXT:
        fields.update(text=content.text or "", url=None, thumbnailURL=None)
    elif content.media is not None:
        fields.update(
            text=None,
            url=content.media.url,
            thumbnailURL=content.media.thumbnail_url,
        )
    return fields


def message_from_record(key: str, record: Any) -> Message | None:
    if not isinstance(record, dict):
        return None

    sender = record.get("senderId")
    status_raw = record.get("status")
    type_raw = record.get("type")
    if not isinstance(sender, str) or not isinstance(status_raw, str):
        return None
    try:
        timestamp = normalize_timestamp(record.get("timestamp"))
        kind = ContentKind(type_raw)
    except ValueError:
        return None

    if kind is ContentKind.TEXT:
        text = record.get("text")
        if not isinstance(text, str):
            return None
        content = MessageContent.of_text(text)
    else:
        url = record.get("url")
        if not isinstance(url, str) or not url:
            return None
        media_kind = MediaKind.IMAGE if kind is ContentKind.IMAGE else MediaKind.VIDEO
        content = MessageContent.of_media(
            MediaRef(url=url, kind=media_kind, thumbnail_url=record.get("thumbnailURL"))
        )

    try:
        status = MessageStatus(status_raw)
    except ValueError:
        status = MessageStatus.SENT

    return Message(
        key=key,
        sender_key=sender,
        content=content,
        timestamp=timestamp,
        status=status,
        edited=bool(record.get("isEdited", False)),
    )


def is_hidden_for(record: Any, identity_key: str) -> bool:
    """True when the record was deleted "for me" by ``identity_key``."""
    if not isinstance(record, dict):
        return False
    hidden = record.get("deletedFor")
    return isinstance(hidden, dict) and bool(hidden.get(identity_key))


# Conversations
def participant_keys(record: Any) -> list[str]:
    if not isinstance(record, dict):
        return []
    participants = record.get("participants")
    if not isinstance(participants, dict):
        return []
    return list(participants)


def unread_count_for(record: Any, identity_key: str) -> int:
    """Unread counter of one participant; nested map or bare integer."""
    participants = record.get("participants") if isinstance(record, dict) else None
    if not isinstance(participants, dict):
        return 0
    entry = participants.get(identity_key)
    if isinstance(entry, dict):
        count = entry.get("unreadCount", 0)
    else:
        count = entry
    if isinstance(count, bool) or not isinstance(count, int):
        return 0
    return max(count, 0)


def conversation_from_record(
    key: str,
    record: Any,
    identities: dict[str, Identity],
    viewer_key: str | None = None,
) -> Conversation | None:
    """Build a Conversation, resolving participants through ``identities``.

    Participants missing from ``identities`` are left out.
    """
    if not isinstance(record, dict):
        return None
    if not isinstance(record.get("participants"), dict):
        return None

    messages = []
    last = record.get("lastMessage")
    if last is not None:
        parsed = message_from_record("last", last)
        if parsed is not None:
            messages.append(parsed)

    group_name = record.get("groupName")
    icon = record.get("groupIconURL")
    return Conversation(
        key=key,
        participants=[
            identities[k] for k in participant_keys(record) if k in identities
        ],
        is_group=bool(record.get("isGroup", False)),
        group_name=group_name if isinstance(group_name, str) else None,
        group_icon_url=icon if isinstance(icon, str) else None,
        unread_count=unread_count_for(record, viewer_key) if viewer_key else 0,
        messages=messages,
    )
