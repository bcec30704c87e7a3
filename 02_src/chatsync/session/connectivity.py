"""Connection liveness, shared by everything that reacts to reconnects."""

from collections.abc import AsyncIterator

from ..logging_config import get_logger
from ..store import CONNECTED_PATH, IDocumentStore

logger = get_logger(__name__)


class ConnectivityMonitor:
    """Watches the store's liveness path.

    Construct one per store and pass it to the components that need it.
    """

    def __init__(self, store: IDocumentStore):
        self._store = store

    @property
    def is_connected(self) -> bool:
        return self._store.is_connected

    async def observe(self) -> AsyncIterator[bool]:
        """Current liveness, then every change (no repeats)."""
        last: bool | None = None
        async for snapshot in self._store.observe(CONNECTED_PATH):
            connected = bool(snapshot.value)
            if connected == last:
                continue
            last = connected
            logger.debug("Connectivity: %s", "online" if connected else "offline")
            yield connected
