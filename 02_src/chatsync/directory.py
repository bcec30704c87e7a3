"""Identity directory: profile lookups and presence streams."""

from collections.abc import AsyncIterator, Iterable
from typing import Protocol

from .errors import SyncError, SyncErrorKind
from .logging_config import get_logger
from .models import Identity
from .models.codec import identity_from_record, identity_to_record
from .store import IDocumentStore, join_path

logger = get_logger(__name__)

IDENTITIES = "identities"


class IIdentityDirectory(Protocol):
    """Read and observe identity records."""

    async def get(self, key: str) -> Identity:
        """Fetch one identity. Raises SyncError(not_found)."""
        ...

    def observe(self, key: str) -> AsyncIterator[Identity]:
        """Presence stream of one identity."""
        ...

    async def list_identities(self, exclude: str | None = None) -> list[Identity]:
        """All known identities, optionally without one key."""
        ...

    async def save(self, identity: Identity) -> None:
        """Write a full identity record."""
        ...


class IdentityDirectory:
    """Identity records stored under ``identities/{id}``."""

    def __init__(self, store: IDocumentStore):
        self._store = store

    async def get(self, key: str) -> Identity:
        """Fetch one identity. Raises SyncError(not_found)."""
        snapshot = await self._store.get(join_path(IDENTITIES, key))
        if not snapshot.exists:
            raise SyncError(SyncErrorKind.NOT_FOUND, f"identity {key}")
        identity = identity_from_record(key, snapshot.value)
        if identity is None:
            raise SyncError(SyncErrorKind.MALFORMED_REMOTE_RECORD, f"identity {key}")
        return identity

    async def observe(self, key: str) -> AsyncIterator[Identity]:
        """Yield the identity every time its record changes."""
        async for snapshot in self._store.observe(join_path(IDENTITIES, key)):
            if not snapshot.exists:
                continue
            identity = identity_from_record(key, snapshot.value)
            if identity is None:
                logger.warning("Skipping malformed identity record %s", key)
                continue
            yield identity

    async def list_identities(self, exclude: str | None = None) -> list[Identity]:
        snapshot = await self._store.get(IDENTITIES)
        identities = []
        for child in snapshot.children():
            if child.key == exclude:
                continue
            identity = identity_from_record(child.key, child.value)
            if identity is not None:
                identities.append(identity)
        return identities

    async def save(self, identity: Identity) -> None:
        await self._store.set(
            join_path(IDENTITIES, identity.key), identity_to_record(identity)
        )

    async def seed(self, identities: Iterable[Identity]) -> int:
        """Write sample identities, keeping any that already exist."""
        written = 0
        for identity in identities:
            existing = await self._store.get(join_path(IDENTITIES, identity.key))
            if existing.exists:
                continue
            await self.save(identity)
            written += 1
        logger.info("Seeded %d identities", written)
        return written
