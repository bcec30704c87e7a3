"""Application bootstrap and lifecycle management."""

from typing import Protocol

from .config import Settings, resolve_db_path
from .conversations import ConversationIndex, IConversationIndex, MessageReconciler
from .directory import IdentityDirectory, IIdentityDirectory
from .errors import SyncError, SyncErrorKind
from .logging_config import get_logger
from .session import ConnectivityMonitor, LocalAuthProvider, SessionGate
from .store import DocumentStore, FileBlobStorage, HttpBlobStorage, IBlobStorage
from .tracker import ITracker, Tracker

logger = get_logger(__name__)


class IApplication(Protocol):
    """Bootstrap and lifecycle."""

    async def start(self) -> None:
        """Initialize components in dependency order."""
        ...

    async def stop(self) -> None:
        """Shutdown in reverse order."""
        ...

    async def reset(self) -> None:
        """Reset data between test runs."""
        ...


class Application:
    """Main application bootstrap."""

    def __init__(self, db_path: str | None = None, settings: Settings | None = None):
        self._settings = settings or Settings.from_env()
        self._db_path = (
            resolve_db_path(db_path) if db_path is not None else self._settings.db_path
        )

        # Components (will be initialized in start())
        self._store: DocumentStore | None = None
        self._connectivity: ConnectivityMonitor | None = None
        self._tracker: ITracker | None = None
        self._blobs: IBlobStorage | None = None
        self._directory: IIdentityDirectory | None = None
        self._auth: LocalAuthProvider | None = None
        self._session: SessionGate | None = None
        self._index: IConversationIndex | None = None

        self._reconcilers: dict[str, MessageReconciler] = {}

    async def start(self) -> None:
        """Initialize components in dependency order."""
        logger.info("Starting application")

        # 1. Store (no dependencies)
        self._store = DocumentStore(self._db_path)
        await self._store.init()

        # 2. Connectivity (one monitor shared by every consumer)
        self._connectivity = ConnectivityMonitor(self._store)

        # 3. Tracker (depends on Store)
        self._tracker = Tracker(self._store)

        # 4. Blob storage
        if self._settings.blob_base_url:
            self._blobs = HttpBlobStorage(self._settings.blob_base_url)
        else:
            self._blobs = FileBlobStorage(self._settings.media_dir)
        logger.info("Blob storage: %s", type(self._blobs).__name__)

        # 5. Directory and auth (depend on Store)
        self._directory = IdentityDirectory(self._store)
        self._auth = LocalAuthProvider(self._store)

        # 6. SessionGate (depends on Auth, Directory, Connectivity)
        self._session = SessionGate(
            auth=self._auth,
            directory=self._directory,
            store=self._store,
            connectivity=self._connectivity,
            tracker=self._tracker,
        )

        # 7. ConversationIndex (depends on Directory, SessionGate)
        self._index = ConversationIndex(
            store=self._store,
            directory=self._directory,
            session=self._session,
            tracker=self._tracker,
        )
        logger.info("All components initialized successfully")

    async def stop(self) -> None:
        """Shutdown in reverse order."""
        await self.close_conversations()
        if self._session:
            await self._session.stop()
        if self._blobs:
            await self._blobs.close()
        if self._store:
            await self._store.close()
            logger.info("Store closed")

    async def reset(self) -> None:
        """Reset data between test runs."""
        # 1. Close open conversations and the session
        await self.close_conversations()
        if self._store:
            await self._store.reconnect()
        if self._session and self._session.current_identity():
            await self._session.sign_out()

        # 2. Clear store
        if self._store:
            await self._store.clear()
            logger.info("Reset complete")

    # Conversations
    async def open_conversation(self, conversation_key: str) -> MessageReconciler:
        """The reconciler owning ``conversation_key`` for the signed-in identity.

        Repeated calls return the same instance.
        """
        viewer = self.session.current_identity()
        if viewer is None:
            raise SyncError(SyncErrorKind.NOT_AUTHENTICATED)

        existing = self._reconcilers.get(conversation_key)
        if existing is not None:
            if existing.viewer_key == viewer.key:
                return existing
            await self.close_conversation(conversation_key)

        conversation = await self.index.get_conversation(conversation_key, viewer.key)
        if viewer.key not in conversation.participant_keys:
            raise SyncError(SyncErrorKind.NOT_FOUND, f"conversation {conversation_key}")

        reconciler = MessageReconciler(
            conversation=conversation,
            viewer=viewer,
            store=self.store,
            index=self.index,
            directory=self.directory,
            blobs=self.blobs,
            tracker=self.tracker,
        )
        self._reconcilers[conversation_key] = reconciler
        return reconciler

    async def close_conversation(self, conversation_key: str) -> None:
        reconciler = self._reconcilers.pop(conversation_key, None)
        if reconciler is not None:
            await reconciler.close()

    async def close_conversations(self) -> None:
        """Close every open conversation."""
        for key in list(self._reconcilers):
            await self.close_conversation(key)

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def store(self) -> DocumentStore:
        """Get store instance."""
        if not self._store:
            raise RuntimeError("Application not started")
        return self._store

    @property
    def tracker(self) -> ITracker:
        if not self._tracker:
            raise RuntimeError("Application not started")
        return self._tracker

    @property
    def blobs(self) -> IBlobStorage:
        if not self._blobs:
            raise RuntimeError("Application not started")
        return self._blobs

    @property
    def directory(self) -> IIdentityDirectory:
        if not self._directory:
            raise RuntimeError("Application not started")
        return self._directory

    @property
    def auth(self) -> LocalAuthProvider:
        if not self._auth:
            raise RuntimeError("Application not started")
        return self._auth

    @property
    def session(self) -> SessionGate:
        """Get session gate instance."""
        if not self._session:
            raise RuntimeError("Application not started")
        return self._session

    @property
    def connectivity(self) -> ConnectivityMonitor:
        if not self._connectivity:
            raise RuntimeError("Application not started")
        return self._connectivity

    @property
    def index(self) -> IConversationIndex:
        """Get conversation index instance."""
        if not self._index:
            raise RuntimeError("Application not started")
        return self._index
