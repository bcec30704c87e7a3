"""Tests for Application."""

import pytest
import pytest_asyncio

from chatsync.app import Application
from chatsync.config import Settings
from chatsync.errors import SyncError, SyncErrorKind
from chatsync.store import FileBlobStorage, HttpBlobStorage


@pytest_asyncio.fixture
async def app(tmp_path):
    application = Application(settings=Settings(db_path=":memory:", media_dir=tmp_path))
    await application.start()
    yield application
    await application.stop()


async def _two_people(app):
    alice = await app.session.sign_up("alice@example.com", "secret1", "Alice")
    await app.session.sign_out()
    bob = await app.session.sign_up("bob@example.com", "secret1", "Bob")
    return alice, bob


class TestApplicationStart:
    """Tests for Application.start()."""

    async def test_start_initializes_components(self, app):
        """Test that start initializes all components."""
        assert app.store.is_connected
        assert app.session.current_identity() is None
        assert isinstance(app.blobs, FileBlobStorage)
        # One connectivity monitor shared with the session gate
        assert app.session._connectivity is app.connectivity
        assert app.index._session is app.session

    async def test_http_blobs_when_configured(self, tmp_path):
        application = Application(
            settings=Settings(
                db_path=":memory:", media_dir=tmp_path, blob_base_url="http://blobs.test"
            )
        )
        await application.start()
        assert isinstance(application.blobs, HttpBlobStorage)
        await application.stop()

    def test_properties_require_start(self):
        application = Application(db_path=":memory:")
        with pytest.raises(RuntimeError):
            application.store
        with pytest.raises(RuntimeError):
            application.session


class TestOpenConversation:
    """Tests for open_conversation()."""

    async def test_requires_identity(self, app):
        with pytest.raises(SyncError) as exc:
            await app.open_conversation("c1")
        assert exc.value.kind is SyncErrorKind.NOT_AUTHENTICATED

    async def test_single_owner_per_conversation(self, app):
        alice, _ = await _two_people(app)
        conversation = await app.index.create_conversation([alice])

        first = await app.open_conversation(conversation.key)
        second = await app.open_conversation(conversation.key)
        assert first is second

        await app.close_conversation(conversation.key)
        third = await app.open_conversation(conversation.key)
        assert third is not first

    async def test_new_viewer_gets_new_reconciler(self, app):
        alice, _ = await _two_people(app)
        conversation = await app.index.create_conversation([alice])
        as_bob = await app.open_conversation(conversation.key)

        await app.session.sign_out()
        await app.session.sign_in("alice@example.com", "secret1")
        as_alice = await app.open_conversation(conversation.key)

        assert as_alice is not as_bob
        assert as_alice.viewer_key == alice.key

    async def test_missing_conversation(self, app):
        await _two_people(app)
        with pytest.raises(SyncError) as exc:
            await app.open_conversation("missing")
        assert exc.value.kind is SyncErrorKind.NOT_FOUND


class TestApplicationReset:
    """Tests for Application.reset()."""

    async def test_reset_clears_everything(self, app):
        alice, _ = await _two_people(app)
        conversation = await app.index.create_conversation([alice])
        reconciler = await app.open_conversation(conversation.key)
        await reconciler.send(text="hi")

        await app.reset()

        assert app.session.current_identity() is None
        assert not (await app.store.get("conversations")).exists
        assert not (await app.store.get("accounts")).exists
        assert await app.store.get_trace_events() == []

    async def test_reset_after_connection_loss(self, app):
        await _two_people(app)
        await app.store.drop_connection()

        await app.reset()
        assert app.store.is_connected
