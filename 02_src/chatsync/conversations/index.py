"""ConversationIndex: the live conversation list of one identity."""

import asyncio
import uuid
from collections.abc import AsyncIterator, Iterable
from datetime import datetime, timezone
from typing import Any, Protocol

from ..directory import IIdentityDirectory
from ..errors import SyncError, SyncErrorKind
from ..logging_config import get_logger
from ..models import Conversation, Identity, Message
from ..models.codec import (
    conversation_from_record,
    message_from_record,
    message_to_record,
    normalize_timestamp,
    participant_keys,
)
from ..session import ISessionGate
from ..store import SERVER_TIMESTAMP, IDocumentStore, Snapshot, join_path
from ..tracker import ITracker

logger = get_logger(__name__)

CONVERSATIONS = "conversations"
MESSAGES = "messages"

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


class IConversationIndex(Protocol):
    """Conversation list, unread bookkeeping and conversation lifecycle."""

    def observe_conversations(
        self, identity: Identity
    ) -> AsyncIterator[list[Conversation]]:
        """Sorted conversation list of ``identity``, one per change."""
        ...

    async def create_conversation(
        self, participants: Iterable[Identity], name: str | None = None
    ) -> Conversation:
        """Create a direct or group conversation including the caller."""
        ...

    async def get_conversation(self, conversation_key: str, viewer_key: str) -> Conversation:
        """One conversation as seen by ``viewer_key``."""
        ...

    async def mark_read(self, conversation_key: str, identity_key: str) -> bool:
        """Zero one participant's unread counter. True if a write was made."""
        ...

    async def delete_conversation(self, conversation_key: str) -> None:
        """Remove the message history, then the conversation."""
        ...

    async def record_message(self, conversation_key: str, message: Message) -> bool:
        """Bump unread counters and the last-message preview."""
        ...

    async def refresh_last_message(self, conversation_key: str) -> None:
        """Recompute the last-message preview from the messages."""
        ...


def _recency(conversation: Conversation) -> datetime:
    last = conversation.last_message
    return last.timestamp if last is not None else _OLDEST


def _unread(entry: Any) -> int:
    count = entry.get("unreadCount", 0) if isinstance(entry, dict) else entry
    if isinstance(count, bool) or not isinstance(count, int):
        return 0
    return max(count, 0)


def _record_timestamp(record: Any) -> datetime:
    try:
        return normalize_timestamp(record.get("timestamp"))
    except (AttributeError, ValueError):
        return _OLDEST


class ConversationIndex:
    """Conversations stored under ``conversations/{id}``."""

    def __init__(
        self,
        store: IDocumentStore,
        directory: IIdentityDirectory,
        session: ISessionGate,
        tracker: ITracker,
    ):
        self._store = store
        self._directory = directory
        self._session = session
        self._tracker = tracker

    # Observation
    async def observe_conversations(
        self, identity: Identity
    ) -> AsyncIterator[list[Conversation]]:
        """Recompute the full list on every change to any conversation.

        Ends with SyncError if the listener fails.
        """
        async for snapshot in self._store.observe(CONVERSATIONS):
            yield await self._build(snapshot, identity.key)

    async def _build(self, snapshot: Snapshot, viewer_key: str) -> list[Conversation]:
        visible = []
        wanted: dict[str, None] = {}
        for child in snapshot.children():
            keys = participant_keys(child.value)
            if viewer_key not in keys:
                continue
            visible.append(child)
            wanted.update(dict.fromkeys(keys))

        identities = await self._resolve(list(wanted))

        conversations = []
        for child in visible:
            conversation = conversation_from_record(
                child.key, child.value, identities, viewer_key
            )
            if conversation is None:
                logger.warning(
                    "Dropping malformed conversation record",
                    extra={"conversation": child.key},
                )
                continue
            conversations.append(conversation)

        conversations.sort(key=_recency, reverse=True)
        return conversations

    async def _resolve(self, keys: list[str]) -> dict[str, Identity]:
        """Look up identities concurrently; failed lookups are left out."""
        results = await asyncio.gather(
            *(self._directory.get(key) for key in keys),
            return_exceptions=True,
        )
        resolved = {}
        for key, result in zip(keys, results):
            if isinstance(result, BaseException):
                logger.warning("Failed to fetch identity %s: %s", key, result)
                continue
            resolved[key] = result
        return resolved

    # Lifecycle
    async def create_conversation(
        self, participants: Iterable[Identity], name: str | None = None
    ) -> Conversation:
        """Create a conversation; the signed-in identity is always a member.

        Group when more than one *other* participant is given, or a name is.
        """
        caller = self._session.current_identity()
        if caller is None:
            raise SyncError(SyncErrorKind.NOT_AUTHENTICATED)

        others: list[Identity] = []
        for identity in participants:
            if identity.key == caller.key or any(o.key == identity.key for o in others):
                continue
            others.append(identity)

        name = name.strip() if name else None
        is_group = len(others) > 1 or bool(name)
        members = [caller, *others]

        key = str(uuid.uuid4())
        record: dict[str, Any] = {
            "id": key,
            "isGroup": is_group,
            "participants": {m.key: {"unreadCount": 0} for m in members},
            "updatedAt": SERVER_TIMESTAMP,
        }
        if name:
            record["groupName"] = name

        await self._store.set(join_path(CONVERSATIONS, key), record)
        logger.info(
            "Created %s conversation with %d participants",
            "group" if is_group else "direct",
            len(members),
            extra={"conversation": key},
        )
        await self._tracker.track(
            "conversation_created",
            "conversation_index",
            {"conversation": key, "is_group": is_group, "participants": [m.key for m in members]},
        )
        return Conversation(key=key, participants=members, is_group=is_group, group_name=name)

    async def get_conversation(self, conversation_key: str, viewer_key: str) -> Conversation:
        """One conversation with resolved participants."""
        snapshot = await self._store.get(join_path(CONVERSATIONS, conversation_key))
        if not snapshot.exists:
            raise SyncError(SyncErrorKind.NOT_FOUND, f"conversation {conversation_key}")
        identities = await self._resolve(participant_keys(snapshot.value))
        conversation = conversation_from_record(
            conversation_key, snapshot.value, identities, viewer_key
        )
        if conversation is None:
            raise SyncError(
                SyncErrorKind.MALFORMED_REMOTE_RECORD, f"conversation {conversation_key}"
            )
        return conversation

    async def delete_conversation(self, conversation_key: str) -> None:
        """Remove messages first: a crash in between leaves an empty thread."""
        await self._store.remove(join_path(MESSAGES, conversation_key))
        await self._store.remove(join_path(CONVERSATIONS, conversation_key))
        logger.info("Deleted conversation", extra={"conversation": conversation_key})
        await self._tracker.track(
            "conversation_deleted", "conversation_index", {"conversation": conversation_key}
        )

    # Unread bookkeeping
    async def mark_read(self, conversation_key: str, identity_key: str) -> bool:
        """Set the counter to zero. No write when it already is zero."""
        path = join_path(CONVERSATIONS, conversation_key, "participants", identity_key)
        snapshot = await self._store.get(path)
        if not snapshot.exists:
            logger.debug(
                "mark_read on missing participant %s", identity_key,
                extra={"conversation": conversation_key},
            )
            return False
        if _unread(snapshot.value) == 0:
            return False

        await self._store.update(path, {"unreadCount": 0})
        return True

    async def record_message(self, conversation_key: str, message: Message) -> bool:
        """In one transaction: sender's counter to 0, everyone else's +1,
        and the preview moves to ``message`` unless a newer one is there.
        """
        record = message_to_record(message)

        def _apply(current: Any) -> Any:
            if not isinstance(current, dict):
                return None
            participants = current.get("participants")
            if not isinstance(participants, dict):
                return None

            for key, entry in participants.items():
                count = 0 if key == message.sender_key else _unread(entry) + 1
                if isinstance(entry, dict):
                    participants[key] = {**entry, "unreadCount": count}
                else:
                    participants[key] = {"unreadCount": count}

            previous = current.get("lastMessage")
            if previous is None or _record_timestamp(previous) <= message.timestamp:
                current["lastMessage"] = record
            current["updatedAt"] = SERVER_TIMESTAMP
            return current

        committed = await self._store.transaction(
            join_path(CONVERSATIONS, conversation_key), _apply
        )
        if committed is None:
            logger.info(
                "Conversation gone before message %s was recorded", message.key,
                extra={"conversation": conversation_key},
            )
        return committed is not None

    async def refresh_last_message(self, conversation_key: str) -> None:
        snapshot = await self._store.get(join_path(MESSAGES, conversation_key))
        snapshot.order_by = "timestamp"
        latest = None
        for child in snapshot.children():
            if message_from_record(child.key, child.value) is not None:
                latest = child.value

        def _apply(current: Any) -> Any:
            if not isinstance(current, dict):
                return None
            if latest is None:
                current.pop("lastMessage", None)
            else:
                current["lastMessage"] = {
                    k: v for k, v in latest.items() if k != "deletedFor"
                }
            return current

        await self._store.transaction(join_path(CONVERSATIONS, conversation_key), _apply)
