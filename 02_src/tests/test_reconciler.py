"""Tests for MessageReconciler."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from chatsync.conversations import merge_messages
from chatsync.errors import SyncError, SyncErrorKind
from chatsync.models import (
    ContentKind,
    MediaDraft,
    MediaKind,
    Message,
    MessageContent,
    MessageStatus,
)
from chatsync.models.codec import message_to_record

PENDING = MessageStatus.PENDING
SENT = MessageStatus.SENT
FAILED = MessageStatus.FAILED


def _message(key: str, sender: str, seconds: float, text: str = "x",
             status: MessageStatus = SENT) -> Message:
    return Message(
        key=key,
        sender_key=sender,
        content=MessageContent.of_text(text),
        timestamp=datetime.fromtimestamp(seconds, tz=timezone.utc),
        status=status,
    )


@pytest_asyncio.fixture
async def direct(index, fake_session, people):
    """Direct conversation between Bob (creator) and Alice."""
    alice, bob, _ = people
    fake_session.identity = bob
    return await index.create_conversation([alice])


@pytest.fixture
def gated_set(store, monkeypatch):
    """Hold every store.set until the returned event is set."""
    gate = asyncio.Event()
    original = store.set

    async def _set(path, value):
        await gate.wait()
        await original(path, value)

    monkeypatch.setattr(store, "set", _set)
    return gate, original


class TestMerge:
    """Tests for merge_messages()."""

    def test_remote_wins_and_local_survives(self):
        remote = [_message("a", "u1", 10)]
        visible = [
            _message("a", "u2", 10, status=PENDING),
            _message("b", "u2", 5, status=PENDING),
            _message("c", "u1", 1),
            _message("d", "u2", 20, status=FAILED),
        ]

        merged = merge_messages(remote, visible)

        assert [(m.key, m.status) for m in merged] == [
            ("b", PENDING),
            ("a", SENT),
            ("d", FAILED),
        ]

    def test_ties_keep_remote_first(self):
        remote = [_message("r", "u1", 10)]
        visible = [_message("l", "u2", 10, status=PENDING)]
        assert [m.key for m in merge_messages(remote, visible)] == ["r", "l"]


class TestSendText:
    """Tests for sending text."""

    async def test_hi_from_bob(self, make_reconciler, direct, people, store, next_item):
        """Bob says hi: the entry settles as sent and Alice has one unread."""
        bob = people[1]
        reconciler = make_reconciler(direct, bob)
        feed = reconciler.observe_messages()
        assert await next_item(feed) == []

        outcome = await reconciler.send(text="hi")

        assert outcome.ok
        [message] = reconciler.messages
        assert message.status is SENT
        assert message.content.text == "hi"
        record = (await store.get(f"conversations/{direct.key}")).value
        assert record["participants"]["u1"]["unreadCount"] == 1
        assert record["participants"]["u2"]["unreadCount"] == 0
        assert record["lastMessage"]["text"] == "hi"
        await feed.aclose()

    async def test_pending_until_write_completes(
        self, make_reconciler, direct, people, gated_set, eventually, next_item
    ):
        bob = people[1]
        gate, original_set = gated_set
        reconciler = make_reconciler(direct, bob)
        feed = reconciler.observe_messages()
        await next_item(feed)

        task = asyncio.create_task(reconciler.send(text="hi"))
        await eventually(lambda: len(reconciler.messages) == 1)
        assert reconciler.messages[0].status is PENDING

        # A remote snapshot without the pending key must not drop it
        await original_set(
            f"messages/{direct.key}/m0", message_to_record(_message("m0", "u1", 1000))
        )
        await eventually(lambda: len(reconciler.messages) == 2)
        assert [m.status for m in reconciler.messages] == [SENT, PENDING]

        gate.set()
        outcome = await task
        assert outcome.ok
        await eventually(lambda: [m.status for m in reconciler.messages] == [SENT, SENT])
        await feed.aclose()

    async def test_no_duplicates_after_echo(
        self, make_reconciler, direct, people, eventually, next_item
    ):
        bob = people[1]
        reconciler = make_reconciler(direct, bob)
        feed = reconciler.observe_messages()
        await next_item(feed)

        for text in ("one", "two", "three"):
            await reconciler.send(text=text)
        await asyncio.sleep(0.05)

        keys = [m.key for m in reconciler.messages]
        assert len(keys) == 3
        assert len(set(keys)) == 3
        assert [m.content.text for m in reconciler.messages] == ["one", "two", "three"]
        await feed.aclose()

    async def test_emitted_lists_are_sorted(
        self, make_reconciler, direct, people, store, eventually, next_item
    ):
        bob = people[1]
        reconciler = make_reconciler(direct, bob)
        feed = reconciler.observe_messages()
        await next_item(feed)

        for key, seconds in (("m3", 3000), ("m1", 1000), ("m2", 2000)):
            await store.set(
                f"messages/{direct.key}/{key}", message_to_record(_message(key, "u1", seconds))
            )

        await eventually(lambda: len(reconciler.messages) == 3)
        latest = await next_item(feed)
        assert [m.key for m in latest] == ["m1", "m2", "m3"]
        await feed.aclose()

    async def test_empty_send_is_noop(self, make_reconciler, direct, people):
        reconciler = make_reconciler(direct, people[1])
        outcome = await reconciler.send(text="   ")
        assert outcome.messages == []
        assert reconciler.messages == []

    async def test_malformed_remote_record_is_dropped(
        self, make_reconciler, direct, people, store, next_item
    ):
        await store.set(f"messages/{direct.key}/bad", {"text": "no sender"})
        await store.set(
            f"messages/{direct.key}/good", message_to_record(_message("good", "u1", 1))
        )
        reconciler = make_reconciler(direct, people[1])
        feed = reconciler.observe_messages()

        assert [m.key for m in await next_item(feed)] == ["good"]
        await feed.aclose()


class TestSendFailures:
    """Tests for failed sends and retry."""

    async def test_failed_write_is_kept_and_retried(
        self, make_reconciler, direct, people, store, eventually, next_item
    ):
        bob = people[1]
        reconciler = make_reconciler(direct, bob)
        feed = reconciler.observe_messages()
        await next_item(feed)

        await store.drop_connection()
        outcome = await reconciler.send(text="hi")
        assert not outcome.ok
        assert outcome.errors[0].kind is SyncErrorKind.TRANSPORT_ERROR
        [failed] = reconciler.messages
        assert failed.status is FAILED

        # Remote activity does not remove the failed entry
        await store.reconnect()
        await store.set(
            f"messages/{direct.key}/m0", message_to_record(_message("m0", "u1", 1000))
        )
        await eventually(lambda: len(reconciler.messages) == 2)
        assert reconciler.messages[1].key == failed.key

        retried = await reconciler.retry(failed.key)
        assert retried.ok
        assert retried.messages[0].key == failed.key
        await eventually(
            lambda: [(m.key, m.status) for m in reconciler.messages][-1] == (failed.key, SENT)
        )
        assert (await store.get(f"messages/{direct.key}/{failed.key}")).exists
        await feed.aclose()

    async def test_retry_rules(self, make_reconciler, direct, people):
        reconciler = make_reconciler(direct, people[1])
        await reconciler.send(text="hi")

        with pytest.raises(ValueError):
            await reconciler.retry(reconciler.messages[0].key)
        with pytest.raises(SyncError) as exc:
            await reconciler.retry("missing")
        assert exc.value.kind is SyncErrorKind.NOT_FOUND

    async def test_failed_send_is_traced(self, make_reconciler, direct, people, store):
        reconciler = make_reconciler(direct, people[1])
        await store.drop_connection()
        await reconciler.send(text="hi")

        events = await store.get_trace_events(event_types=["message_failed"])
        assert len(events) == 1


class TestSendMedia:
    """Tests for media sends."""

    async def test_upload_failure_then_retry(self, make_reconciler, direct, people, store, blobs):
        reconciler = make_reconciler(direct, people[1])
        blobs.fail_next = 1

        outcome = await reconciler.send(media=[MediaDraft(kind=MediaKind.IMAGE, data=b"img")])

        assert len(outcome.errors) == 1
        [failed] = reconciler.messages
        assert failed.status is FAILED
        assert failed.content.kind is ContentKind.IMAGE
        assert failed.content.media.url == f"local://{failed.key}"
        assert not (await store.get(f"messages/{direct.key}/{failed.key}")).exists

        retried = await reconciler.retry(failed.key)

        assert retried.ok
        assert blobs.uploads == [(b"img", "image/jpeg")]
        [message] = reconciler.messages
        assert message.status is SENT
        assert message.content.media.url == "https://media.test/chat_media/1"
        record = (await store.get(f"messages/{direct.key}/{failed.key}")).value
        assert record["type"] == "image"
        assert record["url"] == "https://media.test/chat_media/1"

    async def test_items_are_independent(self, make_reconciler, direct, people, blobs):
        reconciler = make_reconciler(direct, people[1])
        blobs.fail_next = 1
        drafts = [
            MediaDraft(kind=MediaKind.IMAGE, data=b"one"),
            MediaDraft(kind=MediaKind.VIDEO, data=b"two"),
        ]

        outcome = await reconciler.send(text="look", media=drafts)

        assert len(outcome.messages) == 3
        assert outcome.messages[0].content.text == "look"
        assert outcome.messages[0].status is SENT
        statuses = sorted(m.status.value for m in outcome.messages[1:])
        assert statuses == ["failed", "sent"]
        assert len(outcome.errors) == 1

    async def test_unreadable_file_fails_item(self, make_reconciler, direct, people, tmp_path):
        reconciler = make_reconciler(direct, people[1])
        draft = MediaDraft(kind=MediaKind.IMAGE, local_path=tmp_path / "missing.jpg")

        outcome = await reconciler.send(media=[draft])

        assert outcome.messages[0].status is FAILED
        assert outcome.errors[0].kind is SyncErrorKind.TRANSPORT_ERROR


class TestEditAndDelete:
    """Tests for edit_message(), delete_message() and delete_message_for_me()."""

    async def test_edit(self, make_reconciler, direct, people, store):
        reconciler = make_reconciler(direct, people[1])
        await reconciler.send(text="hi")
        key = reconciler.messages[0].key

        edited = await reconciler.edit_message(key, "hello")

        assert edited.edited
        assert reconciler.messages[0].content.text == "hello"
        record = (await store.get(f"messages/{direct.key}/{key}")).value
        assert record["text"] == "hello"
        assert record["isEdited"] is True
        last = (await store.get(f"conversations/{direct.key}/lastMessage")).value
        assert last["text"] == "hello"

    async def test_failed_edit_restores(self, make_reconciler, direct, people, store):
        reconciler = make_reconciler(direct, people[1])
        await reconciler.send(text="hi")
        key = reconciler.messages[0].key
        await store.drop_connection()

        with pytest.raises(SyncError):
            await reconciler.edit_message(key, "hello")

        [message] = reconciler.messages
        assert message.content.text == "hi"
        assert not message.edited

    async def test_delete_for_everyone(self, make_reconciler, direct, people, store):
        reconciler = make_reconciler(direct, people[1])
        await reconciler.send(text="first")
        await reconciler.send(text="second")
        second = reconciler.messages[1].key

        await reconciler.delete_message(second)

        assert [m.content.text for m in reconciler.messages] == ["first"]
        assert not (await store.get(f"messages/{direct.key}/{second}")).exists
        last = (await store.get(f"conversations/{direct.key}/lastMessage")).value
        assert last["text"] == "first"

    async def test_failed_delete_restores(self, make_reconciler, direct, people, store):
        reconciler = make_reconciler(direct, people[1])
        await reconciler.send(text="hi")
        key = reconciler.messages[0].key
        await store.drop_connection()

        with pytest.raises(SyncError):
            await reconciler.delete_message(key)
        assert [m.key for m in reconciler.messages] == [key]

    async def test_delete_failed_message_is_local(self, make_reconciler, direct, people, store):
        reconciler = make_reconciler(direct, people[1])
        await store.drop_connection()
        await reconciler.send(text="hi")
        key = reconciler.messages[0].key

        await reconciler.delete_message(key)
        assert reconciler.messages == []

    async def test_delete_pending_whose_write_fails(
        self, make_reconciler, direct, people, store, gated_set, eventually
    ):
        gate, _ = gated_set
        reconciler = make_reconciler(direct, people[1])
        task = asyncio.create_task(reconciler.send(text="hi"))
        await eventually(lambda: len(reconciler.messages) == 1)
        key = reconciler.messages[0].key

        await reconciler.delete_message(key)
        await store.drop_connection()
        gate.set()
        outcome = await task

        assert not outcome.ok
        assert reconciler.messages == []
        assert reconciler._discarded == set()
        with pytest.raises(SyncError):
            await reconciler.retry(key)

    async def test_delete_for_me_hides_only_for_viewer(
        self, make_reconciler, direct, people, store, next_item
    ):
        alice, bob, _ = people
        sender = make_reconciler(direct, bob)
        await sender.send(text="oops")
        key = sender.messages[0].key

        reader = make_reconciler(direct, alice)
        await reader.load()
        await reader.delete_message_for_me(key)

        assert reader.messages == []
        record = (await store.get(f"messages/{direct.key}/{key}")).value
        assert record["deletedFor"] == {"u1": True}

        feed = reader.observe_messages()
        assert await next_item(feed) == []
        await feed.aclose()
        assert [m.key for m in await sender.load()] == [key]

    async def test_unknown_key(self, make_reconciler, direct, people):
        reconciler = make_reconciler(direct, people[1])
        with pytest.raises(SyncError) as exc:
            await reconciler.delete_message("missing")
        assert exc.value.kind is SyncErrorKind.NOT_FOUND


class TestOpenClose:
    """Tests for the observation lifecycle."""

    async def test_mark_read_once_per_open(
        self, make_reconciler, direct, people, index, monkeypatch, eventually, next_item
    ):
        alice, bob, _ = people
        spy = AsyncMock(wraps=index.mark_read)
        monkeypatch.setattr(index, "mark_read", spy)
        sender = make_reconciler(direct, bob)
        reader = make_reconciler(direct, alice)

        feed = reader.observe_messages()
        await next_item(feed)
        assert spy.await_count == 1

        await sender.send(text="one")
        await sender.send(text="two")
        await eventually(lambda: len(reader.messages) == 2)
        assert spy.await_count == 1
        await feed.aclose()

        feed = reader.observe_messages()
        await next_item(feed)
        assert spy.await_count == 2
        spy.assert_awaited_with(direct.key, "u1")
        await feed.aclose()

    async def test_open_clears_unread(self, make_reconciler, direct, people, store, next_item):
        alice, bob, _ = people
        await make_reconciler(direct, bob).send(text="hi")

        reader = make_reconciler(direct, alice)
        feed = reader.observe_messages()
        await next_item(feed)

        counter = await store.get(f"conversations/{direct.key}/participants/u1/unreadCount")
        assert counter.value == 0
        await feed.aclose()

    async def test_presence_sub_feed(
        self, make_reconciler, direct, people, directory, eventually, next_item
    ):
        alice, bob, _ = people
        reconciler = make_reconciler(direct, bob)
        feed = reconciler.observe_messages()
        await next_item(feed)

        await directory.save(alice.with_presence(True, None))

        def alice_online():
            other = reconciler.conversation.other_participants("u2")[0]
            return other.is_online

        await eventually(alice_online)
        await feed.aclose()

    async def test_group_has_no_presence_feed(
        self, make_reconciler, index, fake_session, people, next_item
    ):
        alice, bob, carol = people
        fake_session.identity = bob
        group = await index.create_conversation([alice, carol])
        reconciler = make_reconciler(group, bob)

        feed = reconciler.observe_messages()
        await next_item(feed)
        assert reconciler._presence_tasks == []
        await feed.aclose()

    async def test_feed_failure_ends_observer(self, make_reconciler, direct, people, store, next_item):
        reconciler = make_reconciler(direct, people[1])
        feed = reconciler.observe_messages()
        await next_item(feed)

        store.fail_listeners(f"messages/{direct.key}")

        with pytest.raises(SyncError) as exc:
            await next_item(feed)
        assert exc.value.kind is SyncErrorKind.TRANSPORT_ERROR
        assert not reconciler.is_open

    async def test_close_ends_observers(self, make_reconciler, direct, people, next_item):
        reconciler = make_reconciler(direct, people[1])
        feed = reconciler.observe_messages()
        await next_item(feed)

        await reconciler.close()

        with pytest.raises(StopAsyncIteration):
            await next_item(feed)

    async def test_send_outlives_observer(
        self, make_reconciler, direct, people, gated_set, eventually, next_item
    ):
        gate, _ = gated_set
        reconciler = make_reconciler(direct, people[1])
        feed = reconciler.observe_messages()
        await next_item(feed)

        task = asyncio.create_task(reconciler.send(text="hi"))
        await eventually(lambda: len(reconciler.messages) == 1)
        await feed.aclose()
        assert not reconciler.is_open

        gate.set()
        outcome = await task
        assert outcome.ok

        feed = reconciler.observe_messages()
        messages = await next_item(feed)
        assert [(m.content.text, m.status) for m in messages] == [("hi", SENT)]
        await feed.aclose()
