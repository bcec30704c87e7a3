"""Pytest configuration and fixtures."""

import asyncio
import inspect
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
import pytest_asyncio

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))


class FakeSession:
    """Stands in for SessionGate where only the current identity matters."""

    def __init__(self):
        self.identity = None

    def current_identity(self):
        return self.identity


class FakeBlobs:
    """Blob storage whose uploads can be made to fail."""

    def __init__(self):
        self.fail_next = 0
        self.uploads: list[tuple[bytes, str]] = []

    async def upload(self, data: bytes, content_type: str) -> str:
        from chatsync.errors import SyncError, SyncErrorKind

        if self.fail_next:
            self.fail_next -= 1
            raise SyncError(SyncErrorKind.TRANSPORT_ERROR, "upload refused")
        self.uploads.append((data, content_type))
        return f"https://media.test/chat_media/{len(self.uploads)}"

    async def close(self) -> None:
        return


@pytest_asyncio.fixture
async def store():
    """Create in-memory document store for testing."""
    from chatsync.store import DocumentStore

    st = DocumentStore(":memory:")
    await st.init()
    yield st
    await st.close()


@pytest.fixture
def tracker(store):
    """Create Tracker with store."""
    from chatsync.tracker import Tracker

    return Tracker(store)


@pytest.fixture
def directory(store):
    from chatsync.directory import IdentityDirectory

    return IdentityDirectory(store)


@pytest.fixture
def connectivity(store):
    from chatsync.session import ConnectivityMonitor

    return ConnectivityMonitor(store)


@pytest.fixture
def auth(store):
    """Auth provider with cheap hashing."""
    from chatsync.session import LocalAuthProvider

    return LocalAuthProvider(store, iterations=1_000)


@pytest_asyncio.fixture
async def session(auth, directory, store, connectivity, tracker):
    """Create SessionGate for testing."""
    from chatsync.session import SessionGate

    gate = SessionGate(
        auth=auth,
        directory=directory,
        store=store,
        connectivity=connectivity,
        tracker=tracker,
    )
    yield gate
    await gate.stop()


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def index(store, directory, fake_session, tracker):
    """ConversationIndex acting as whoever ``fake_session.identity`` is."""
    from chatsync.conversations import ConversationIndex

    return ConversationIndex(
        store=store, directory=directory, session=fake_session, tracker=tracker
    )


@pytest.fixture
def blobs():
    return FakeBlobs()


@pytest_asyncio.fixture
async def people(directory):
    """Alice, Bob and Carol saved in the directory."""
    from chatsync.models import Identity

    created = datetime(2024, 1, 1, tzinfo=timezone.utc)
    identities = (
        Identity(key="u1", name="Alice", email="alice@example.com", created_at=created),
        Identity(key="u2", name="Bob", email="bob@example.com", created_at=created),
        Identity(key="u3", name="Carol", email="carol@example.com", created_at=created),
    )
    await directory.seed(identities)
    return identities


@pytest.fixture
def make_reconciler(store, index, directory, blobs, tracker):
    """Build a MessageReconciler for (conversation, viewer)."""
    from chatsync.conversations import MessageReconciler

    def _make(conversation, viewer):
        return MessageReconciler(
            conversation=conversation,
            viewer=viewer,
            store=store,
            index=index,
            directory=directory,
            blobs=blobs,
            tracker=tracker,
        )

    return _make


@pytest.fixture
def next_item():
    """Await the next value of an async iterator, failing after a timeout."""

    async def _next(feed, timeout: float = 2.0):
        return await asyncio.wait_for(feed.__anext__(), timeout)

    return _next


@pytest.fixture
def eventually():
    """Poll ``predicate`` (sync or async) until it holds or the timeout expires."""

    async def _wait(predicate, timeout: float = 2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            result = predicate()
            if inspect.isawaitable(result):
                result = await result
            if result:
                return
            if loop.time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(0.01)

    return _wait
