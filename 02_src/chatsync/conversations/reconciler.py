"""MessageReconciler: one open conversation's message list.

The visible list blends the last authoritative snapshot from the store with
messages this client has not seen confirmed yet. Reconciliation is keyed by
message key, never by arrival order: the changefeed echo of a send may come
before, after, or never relative to the local insert.

Every mutation of ``_visible`` happens in a synchronous method, so the feed
task and concurrent sends can only interleave between whole mutations.
"""

import asyncio
import uuid
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from ..directory import IIdentityDirectory
from ..errors import SyncError, SyncErrorKind
from ..logging_config import get_logger
from ..models import (
    Conversation,
    Identity,
    MediaDraft,
    MediaRef,
    Message,
    MessageContent,
    MessageStatus,
)
from ..models.codec import (
    content_to_fields,
    is_hidden_for,
    message_from_record,
    message_to_record,
)
from ..store import IBlobStorage, IDocumentStore, Snapshot, join_path
from ..tracker import ITracker
from .index import MESSAGES, IConversationIndex

logger = get_logger(__name__)

_CLOSED = object()


@dataclass
class SendOutcome:
    """Messages produced by one send, and the errors of those that failed."""

    messages: list[Message] = field(default_factory=list)
    errors: list[SyncError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def merge_messages(remote: list[Message], visible: list[Message]) -> list[Message]:
    """Authoritative ``remote`` plus unconfirmed local entries it lacks.

    Sorted by timestamp; the sort is stable so ties keep remote order first.
    """
    remote_keys = {m.key for m in remote}
    local = [m for m in visible if m.status.is_local and m.key not in remote_keys]
    return sorted([*remote, *local], key=lambda m: m.timestamp)


class MessageReconciler:
    """Owns the message list of one open conversation."""

    def __init__(
        self,
        conversation: Conversation,
        viewer: Identity,
        store: IDocumentStore,
        index: IConversationIndex,
        directory: IIdentityDirectory,
        blobs: IBlobStorage,
        tracker: ITracker,
    ):
        self.conversation = conversation
        self._viewer = viewer
        self._store = store
        self._index = index
        self._directory = directory
        self._blobs = blobs
        self._tracker = tracker

        self._visible: list[Message] = []
        self._loaded = False
        self._drafts: dict[str, MediaDraft] = {}
        self._discarded: set[str] = set()
        self._subscribers: list[asyncio.Queue] = []
        self._feed_task: asyncio.Task | None = None
        self._presence_tasks: list[asyncio.Task] = []

    @property
    def key(self) -> str:
        return self.conversation.key

    @property
    def viewer_key(self) -> str:
        return self._viewer.key

    @property
    def messages(self) -> list[Message]:
        """Current visible list."""
        return [replace(m) for m in self._visible]

    @property
    def is_open(self) -> bool:
        return self._feed_task is not None and not self._feed_task.done()

    def _path(self, *parts: str) -> str:
        return join_path(MESSAGES, self.key, *parts)

    def _log_extra(self, message_key: str | None = None) -> dict:
        extra = {"conversation": self.key, "identity": self._viewer.key}
        if message_key:
            extra["message"] = message_key
        return extra

    # Observation
    async def observe_messages(self) -> AsyncIterator[list[Message]]:
        """Merged message list, one per change.

        Starting the iteration opens the conversation (remote feed, presence
        sub-feed, one ``mark_read``); leaving it closes them once the last
        observer is gone. In-flight sends are unaffected.
        """
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            if not self.is_open:
                await self._open()
            if self._loaded or self._visible:
                queue.put_nowait(self.messages)

            while True:
                item = await queue.get()
                while not queue.empty() and not isinstance(item, BaseException):
                    item = queue.get_nowait()
                if item is _CLOSED:
                    return
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            self._subscribers.remove(queue)
            if not self._subscribers:
                await self._stop_tasks()

    async def _open(self) -> None:
        self._feed_task = asyncio.create_task(self._run_feed())
        if not self.conversation.is_group:
            for other in self.conversation.other_participants(self._viewer.key):
                self._presence_tasks.append(
                    asyncio.create_task(self._run_presence(other.key))
                )
        logger.info("Conversation opened", extra=self._log_extra())

        try:
            await self._index.mark_read(self.key, self._viewer.key)
        except SyncError as e:
            logger.warning("Failed to mark conversation read: %s", e, extra=self._log_extra())

    async def close(self) -> None:
        """Stop feeds and end every observer."""
        await self._stop_tasks()
        for queue in self._subscribers:
            queue.put_nowait(_CLOSED)

    async def _stop_tasks(self) -> None:
        tasks = [t for t in (self._feed_task, *self._presence_tasks) if t is not None]
        self._feed_task = None
        self._presence_tasks = []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if tasks:
            logger.info("Conversation closed", extra=self._log_extra())

    def _emit(self) -> None:
        current = self.messages
        for queue in self._subscribers:
            queue.put_nowait(current)

    def _fail(self, error: BaseException) -> None:
        for queue in self._subscribers:
            queue.put_nowait(error)

    async def _run_feed(self) -> None:
        try:
            async for snapshot in self._store.observe(self._path(), order_by="timestamp"):
                self._apply_snapshot(snapshot)
        except SyncError as e:
            logger.warning("Message feed ended: %s", e, extra=self._log_extra())
            self._fail(e)

    async def load(self) -> list[Message]:
        """One-shot merge of the current remote state, without opening."""
        snapshot = await self._store.get(self._path())
        snapshot.order_by = "timestamp"
        self._apply_snapshot(snapshot)
        return self.messages

    def _parse(self, snapshot: Snapshot) -> list[Message]:
        remote = []
        for child in snapshot.children():
            if is_hidden_for(child.value, self._viewer.key):
                continue
            message = message_from_record(child.key, child.value)
            if message is None:
                logger.warning(
                    "Dropping malformed message record",
                    extra=self._log_extra(child.key),
                )
                continue
            remote.append(message)
        return remote

    def _apply_snapshot(self, snapshot: Snapshot) -> None:
        self._visible = merge_messages(self._parse(snapshot), self._visible)
        self._loaded = True
        self._emit()

    async def _run_presence(self, identity_key: str) -> None:
        try:
            async for identity in self._directory.observe(identity_key):
                self.conversation.replace_participant(identity)
        except SyncError as e:
            logger.info("Presence feed for %s ended: %s", identity_key, e)

    # Local state
    def _find(self, message_key: str) -> int | None:
        for i, message in enumerate(self._visible):
            if message.key == message_key:
                return i
        return None

    def _insert_local(self, message: Message) -> None:
        self._visible = sorted([*self._visible, message], key=lambda m: m.timestamp)
        self._emit()

    def _settle(self, message_key: str, status: MessageStatus) -> Message | None:
        """Move a still-pending entry to ``status``; no-op otherwise."""
        i = self._find(message_key)
        if i is None:
            return None
        current = self._visible[i]
        if current.status is MessageStatus.PENDING:
            current = replace(current, status=status)
            self._visible[i] = current
            self._emit()
        return replace(current)

    def _set_content(self, message_key: str, content: MessageContent) -> None:
        i = self._find(message_key)
        if i is not None and self._visible[i].status.is_local:
            self._visible[i] = replace(self._visible[i], content=content)

    def _restore(self, message: Message) -> None:
        i = self._find(message.key)
        if i is None:
            self._insert_local(message)
        else:
            self._visible[i] = message
            self._emit()

    # Sending
    def _new_message(self, content: MessageContent) -> Message:
        return Message(
            key=str(uuid.uuid4()),
            sender_key=self._viewer.key,
            content=content,
            timestamp=datetime.now(timezone.utc),
            status=MessageStatus.PENDING,
        )

    async def send(
        self, text: str | None = None, media: Iterable[MediaDraft] = ()
    ) -> SendOutcome:
        """Send text and/or media.

        Each item is inserted as pending right away, then written. Media items
        upload and write concurrently; one failing does not affect the rest.
        """
        text = (text or "").strip()
        drafts = list(media)
        if not text and not drafts:
            return SendOutcome()

        jobs: list[tuple[Message, MediaDraft | None]] = []
        if text:
            jobs.append((self._new_message(MessageContent.of_text(text)), None))
        for draft in drafts:
            message = self._new_message(MessageContent.of_text(""))
            local_ref = MediaRef(url=draft.local_url(message.key), kind=draft.kind)
            jobs.append((replace(message, content=MessageContent.of_media(local_ref)), draft))

        for message, _ in jobs:
            self._insert_local(message)

        results = await asyncio.gather(
            *(self._deliver(message, draft) for message, draft in jobs)
        )
        return SendOutcome(
            messages=[message for message, _ in results],
            errors=[error for _, error in results if error is not None],
        )

    async def _deliver(
        self, message: Message, draft: MediaDraft | None
    ) -> tuple[Message, SyncError | None]:
        """Upload (media only), write, then update the conversation record."""
        extra = self._log_extra(message.key)
        pending_upload = draft
        try:
            if draft is not None:
                message = await self._upload(message, draft)
                pending_upload = None
            wire = replace(message, status=MessageStatus.SENT)
            await self._store.set(self._path(message.key), message_to_record(wire))
        except SyncError as e:
            logger.warning("Send failed: %s", e, extra=extra)
            if message.key in self._discarded:
                # Deleted while in flight: nothing to retry
                self._discarded.discard(message.key)
                return replace(message, status=MessageStatus.FAILED), e
            if pending_upload is not None:
                # Upload never finished; retry has to start from the bytes
                self._drafts[message.key] = pending_upload
            settled = self._settle(message.key, MessageStatus.FAILED) or replace(
                message, status=MessageStatus.FAILED
            )
            await self._tracker.track(
                "message_failed",
                "message_reconciler",
                {"conversation": self.key, "message": message.key, "error": str(e)},
            )
            return settled, e

        settled = self._settle(message.key, MessageStatus.SENT) or wire
        self._drafts.pop(message.key, None)

        if message.key in self._discarded:
            # Deleted by the user while still in flight
            self._discarded.discard(message.key)
            await self._remove_quietly(message.key)
            return settled, None

        try:
            await self._index.record_message(self.key, wire)
        except SyncError as e:
            logger.warning("Could not update unread counters: %s", e, extra=extra)

        await self._tracker.track(
            "message_sent",
            "message_reconciler",
            {
                "conversation": self.key,
                "message": message.key,
                "type": message.content.kind.value,
            },
        )
        return settled, None

    async def _upload(self, message: Message, draft: MediaDraft) -> Message:
        try:
            data = await asyncio.to_thread(draft.read_bytes)
        except (OSError, ValueError) as e:
            raise SyncError.transport(e) from e
        url = await self._blobs.upload(data, draft.content_type or draft.kind.content_type)
        content = MessageContent.of_media(MediaRef(url=url, kind=draft.kind))
        self._set_content(message.key, content)
        return replace(message, content=content)

    async def retry(self, message_key: str) -> SendOutcome:
        """Send a failed message again under the same key."""
        i = self._find(message_key)
        if i is None:
            raise SyncError(SyncErrorKind.NOT_FOUND, f"message {message_key}")
        failed = self._visible[i]
        if failed.status is not MessageStatus.FAILED:
            raise ValueError(f"Message {message_key} is {failed.status.value}, not failed")

        draft = self._drafts.pop(message_key, None)
        fresh = replace(
            failed, status=MessageStatus.PENDING, timestamp=datetime.now(timezone.utc)
        )
        del self._visible[i]
        self._insert_local(fresh)

        message, error = await self._deliver(fresh, draft)
        return SendOutcome(messages=[message], errors=[error] if error else [])

    # Edits and deletes
    def _require(self, message_key: str) -> Message:
        i = self._find(message_key)
        if i is None:
            raise SyncError(SyncErrorKind.NOT_FOUND, f"message {message_key}")
        return self._visible[i]

    async def edit_message(
        self, message_key: str, content: MessageContent | str
    ) -> Message:
        """Replace a message's content.

        A failed message is edited locally and goes out on retry.
        """
        if isinstance(content, str):
            content = MessageContent.of_text(content)
        old = self._require(message_key)
        if old.status is MessageStatus.PENDING:
            raise ValueError(f"Message {message_key} is still sending")

        edited = replace(old, content=content, edited=True)
        self._visible[self._find(message_key)] = edited
        self._emit()
        if old.status is MessageStatus.FAILED:
            return replace(edited)

        fields: dict[str, Any] = {**content_to_fields(content), "isEdited": True}
        try:
            await self._store.update(self._path(message_key), fields)
        except SyncError:
            self._restore(old)
            raise

        await self._refresh_preview()
        await self._tracker.track(
            "message_edited",
            "message_reconciler",
            {"conversation": self.key, "message": message_key},
        )
        return replace(edited)

    async def delete_message(self, message_key: str) -> None:
        """Delete a message for every participant."""
        old = self._require(message_key)
        del self._visible[self._find(message_key)]
        self._drafts.pop(message_key, None)
        self._emit()

        if old.status is MessageStatus.PENDING:
            self._discarded.add(message_key)
            return
        if old.status is MessageStatus.FAILED:
            return

        try:
            await self._store.remove(self._path(message_key))
        except SyncError:
            self._restore(old)
            raise

        await self._refresh_preview()
        await self._tracker.track(
            "message_deleted",
            "message_reconciler",
            {"conversation": self.key, "message": message_key, "scope": "everyone"},
        )

    async def delete_message_for_me(self, message_key: str) -> None:
        """Hide a message from the viewer only."""
        old = self._require(message_key)
        del self._visible[self._find(message_key)]
        self._emit()

        if old.status.is_local:
            self._drafts.pop(message_key, None)
            if old.status is MessageStatus.PENDING:
                self._discarded.add(message_key)
            return

        viewer_key = self._viewer.key

        def _hide(current: Any) -> Any:
            if not isinstance(current, dict):
                return None
            hidden = current.get("deletedFor")
            if not isinstance(hidden, dict):
                hidden = {}
            hidden[viewer_key] = True
            current["deletedFor"] = hidden
            return current

        try:
            await self._store.transaction(self._path(message_key), _hide)
        except SyncError:
            self._restore(old)
            raise

        await self._tracker.track(
            "message_deleted",
            "message_reconciler",
            {"conversation": self.key, "message": message_key, "scope": "viewer"},
        )

    async def _refresh_preview(self) -> None:
        try:
            await self._index.refresh_last_message(self.key)
        except SyncError as e:
            logger.warning("Could not refresh preview: %s", e, extra=self._log_extra())

    async def _remove_quietly(self, message_key: str) -> None:
        try:
            await self._store.remove(self._path(message_key))
        except SyncError as e:
            logger.warning(
                "Could not remove discarded message: %s", e,
                extra=self._log_extra(message_key),
            )
