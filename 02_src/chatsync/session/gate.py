"""SessionGate: authenticated identity and presence publishing."""

import asyncio
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Protocol

from ..directory import IDENTITIES, IIdentityDirectory
from ..errors import AuthError, AuthErrorKind, SyncError, SyncErrorKind
from ..logging_config import get_logger
from ..models import Identity
from ..models.codec import to_epoch_seconds
from ..store import SERVER_TIMESTAMP, IDocumentStore, join_path
from ..tracker import ITracker
from .auth import IAuthProvider
from .connectivity import ConnectivityMonitor

logger = get_logger(__name__)


class ISessionGate(Protocol):
    """Owns the authenticated identity and its presence."""

    def current_identity(self) -> Identity | None:
        """The signed-in identity, or None."""
        ...

    def observe_identity(self) -> AsyncIterator[Identity | None]:
        """Current identity, then one value per sign-in/sign-out."""
        ...

    async def set_presence(self, is_online: bool) -> None:
        """Best-effort online/offline publishing."""
        ...


def _same_session(a: Identity | None, b: Identity | None) -> bool:
    if a is None or b is None:
        return a is b
    return a.key == b.key


class SessionGate:
    """Holds the current identity and publishes presence transitions."""

    def __init__(
        self,
        auth: IAuthProvider,
        directory: IIdentityDirectory,
        store: IDocumentStore,
        connectivity: ConnectivityMonitor,
        tracker: ITracker,
    ):
        self._auth = auth
        self._directory = directory
        self._store = store
        self._connectivity = connectivity
        self._tracker = tracker

        self._identity: Identity | None = None
        self._watchers: list[asyncio.Queue[Identity | None]] = []
        self._presence_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._busy = False

        auth.add_state_listener(self._on_auth_state)

    # Identity
    def current_identity(self) -> Identity | None:
        return self._identity

    async def observe_identity(self) -> AsyncIterator[Identity | None]:
        """Current identity, then one value per sign-in/sign-out."""
        queue: asyncio.Queue[Identity | None] = asyncio.Queue()
        self._watchers.append(queue)
        try:
            yield self._identity
            while True:
                yield await queue.get()
        finally:
            self._watchers.remove(queue)

    def _publish(self, identity: Identity | None) -> None:
        if _same_session(self._identity, identity):
            # Same principal, fresher record: no state change to announce
            self._identity = identity
            return
        self._identity = identity
        logger.info(
            "Session %s",
            f"started for {identity.key}" if identity else "ended",
        )
        for queue in self._watchers:
            queue.put_nowait(identity)

    def _on_auth_state(self, uid: str | None) -> None:
        if uid is None:
            ended = self._identity
            task, self._presence_task = self._presence_task, None
            self._publish(None)
            if task is not None:
                # Session ended while still online, e.g. a revoked token
                task.cancel()
                if ended is not None:
                    self._spawn(self._end_presence(ended))
            return
        if self._busy or (self._identity and self._identity.key == uid):
            return
        self._spawn(self._restore(uid))

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _end_presence(self, identity: Identity) -> None:
        """Disarm and go offline for a session that ended without sign-out."""
        if _same_session(self._identity, identity):
            return
        try:
            await self._go_offline(identity)
        except SyncError as e:
            logger.warning(
                "Offline update after session end failed: %s",
                e,
                extra={"identity": identity.key},
            )

    async def _restore(self, uid: str) -> None:
        """Resolve the profile of a session started outside this gate."""
        try:
            profile = await self._directory.get(uid)
        except SyncError as e:
            logger.info("Profile not yet available for %s: %s", uid, e)
            return
        if self._auth.current_identity() == uid:
            self._publish(profile)

    # Flows
    async def sign_up(self, email: str, password: str, name: str) -> Identity:
        """Register, write the profile, go online."""
        if not name.strip():
            raise AuthError(
                AuthErrorKind.INVALID_CREDENTIAL_FORMAT,
                message="Please enter your name",
            )

        self._busy = True
        try:
            uid = await self._auth.create_identity(email, password)
            profile = Identity(
                key=uid,
                name=name.strip(),
                email=email.strip().lower(),
                is_online=True,
                created_at=datetime.now(timezone.utc),
            )
            try:
                await self._directory.save(profile)
            except SyncError as e:
                raise AuthError(AuthErrorKind.TRANSPORT_ERROR, str(e)) from e
            self._publish(profile)
        finally:
            self._busy = False

        await self.set_presence(True)
        await self._tracker.track(
            "signed_up", "session_gate", {"identity": uid, "name": profile.name}
        )
        return profile

    async def sign_in(self, email: str, password: str) -> Identity:
        """Authenticate, load the profile, go online."""
        self._busy = True
        try:
            uid = await self._auth.authenticate(email, password)
            try:
                profile = await self._directory.get(uid)
            except SyncError as e:
                await self._auth.deauthenticate()
                if e.kind is SyncErrorKind.TRANSPORT_ERROR:
                    raise AuthError(AuthErrorKind.TRANSPORT_ERROR, str(e)) from e
                raise AuthError(AuthErrorKind.IDENTITY_NOT_FOUND, str(e)) from e
            self._publish(profile)
        finally:
            self._busy = False

        await self.set_presence(True)
        await self._tracker.track("signed_in", "session_gate", {"identity": uid})
        return profile

    async def sign_out(self) -> None:
        """Go offline, then drop the session."""
        identity = self._identity
        await self.set_presence(False)
        await self._auth.deauthenticate()
        self._publish(None)
        if identity:
            await self._tracker.track(
                "signed_out", "session_gate", {"identity": identity.key}
            )

    # Presence
    async def set_presence(self, is_online: bool) -> None:
        """Publish presence. Silently does nothing without an identity."""
        identity = self._identity
        if identity is None:
            logger.debug("Presence change ignored: no identity")
            return

        try:
            if is_online:
                await self._go_online(identity)
                if self._presence_task is None or self._presence_task.done():
                    self._presence_task = asyncio.create_task(
                        self._watch_connectivity(identity)
                    )
            else:
                await self._stop_watching()
                await self._go_offline(identity)
        except SyncError as e:
            logger.warning(
                "Presence update to %s failed: %s",
                "online" if is_online else "offline",
                e,
                extra={"identity": identity.key},
            )
            return

        await self._tracker.track(
            "presence_changed",
            "session_gate",
            {"identity": identity.key, "is_online": is_online},
        )

    async def _go_online(self, identity: Identity) -> None:
        path = join_path(IDENTITIES, identity.key)
        # Armed first so a crash right after the write still flips us offline
        await self._store.on_disconnect_set(join_path(path, "isOnline"), False)
        await self._store.on_disconnect_set(join_path(path, "lastSeen"), SERVER_TIMESTAMP)
        await self._store.update(path, {"isOnline": True})
        if self._identity and self._identity.key == identity.key:
            self._identity = self._identity.with_presence(True, identity.last_seen)

    async def _go_offline(self, identity: Identity) -> None:
        path = join_path(IDENTITIES, identity.key)
        now = datetime.now(timezone.utc)
        await self._store.cancel_on_disconnect(path)
        await self._store.update(
            path, {"isOnline": False, "lastSeen": to_epoch_seconds(now)}
        )
        if self._identity and self._identity.key == identity.key:
            self._identity = self._identity.with_presence(False, now)

    async def _watch_connectivity(self, identity: Identity) -> None:
        """Re-assert online presence after every reconnect."""
        was_offline = False
        try:
            async for connected in self._connectivity.observe():
                if not connected:
                    was_offline = True
                    continue
                if was_offline:
                    was_offline = False
                    if not _same_session(self._identity, identity):
                        return
                    try:
                        await self._go_online(identity)
                        logger.info(
                            "Presence restored after reconnect",
                            extra={"identity": identity.key},
                        )
                    except SyncError as e:
                        logger.warning("Could not restore presence: %s", e)
        except SyncError as e:
            logger.info("Connectivity watch ended: %s", e)

    async def _stop_watching(self) -> None:
        task, self._presence_task = self._presence_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def stop(self) -> None:
        """Cancel background work."""
        await self._stop_watching()
        for task in list(self._background):
            task.cancel()
