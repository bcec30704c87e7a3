"""Path-scoped change notification for the document store."""

import asyncio
from typing import Protocol

from ..logging_config import get_logger

logger = get_logger(__name__)


def split_path(path: str) -> list[str]:
    """Split a slash-separated path, ignoring empty segments."""
    return [part for part in path.split("/") if part]


def join_path(*parts: str) -> str:
    return "/".join(seg for part in parts for seg in split_path(part))


def paths_overlap(a: str, b: str) -> bool:
    """True if one path equals, contains, or lies inside the other."""
    sa, sb = split_path(a), split_path(b)
    n = min(len(sa), len(sb))
    return sa[:n] == sb[:n]


class Subscription:
    """A listener on one path. Signals are coalesced by the consumer."""

    def __init__(self, path: str):
        self.path = join_path(path)
        self._queue: asyncio.Queue[str | BaseException] = asyncio.Queue()
        self.closed = False

    def signal(self, changed_path: str) -> None:
        if not self.closed:
            self._queue.put_nowait(changed_path)

    def fail(self, exc: BaseException) -> None:
        if not self.closed:
            self._queue.put_nowait(exc)

    async def wait(self) -> list[str]:
        """Wait for the next change; return every changed path queued so far.

        Raises the failure if one was delivered.
        """
        items = [await self._queue.get()]
        while not self._queue.empty():
            items.append(self._queue.get_nowait())

        for item in items:
            if isinstance(item, BaseException):
                self.closed = True
                raise item
        return [item for item in items if isinstance(item, str)]


class IChangefeed(Protocol):
    """Fan-out of committed writes to path subscribers."""

    def subscribe(self, path: str) -> Subscription:
        """Register a listener on a path."""
        ...

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a listener."""
        ...

    def publish(self, changed_path: str) -> None:
        """Signal every listener whose path overlaps ``changed_path``."""
        ...


class Changefeed:
    """In-memory changefeed keyed by path."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(self, path: str) -> Subscription:
        """Register a listener on a path."""
        subscription = Subscription(path)
        self._subscriptions.append(subscription)
        logger.debug("Listener added on %r", subscription.path)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a listener."""
        subscription.closed = True
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
            logger.debug("Listener removed from %r", subscription.path)

    def publish(self, changed_path: str) -> None:
        """Signal every listener whose path overlaps ``changed_path``."""
        for subscription in list(self._subscriptions):
            if paths_overlap(subscription.path, changed_path):
                subscription.signal(changed_path)

    def fail(self, path: str, exc: BaseException) -> int:
        """Terminate listeners at or below ``path``. Returns how many."""
        prefix = split_path(path)
        failed = 0
        for subscription in list(self._subscriptions):
            if split_path(subscription.path)[: len(prefix)] == prefix:
                subscription.fail(exc)
                self._subscriptions.remove(subscription)
                failed += 1
        if failed:
            logger.warning("Terminated %d listener(s) under %r: %s", failed, path, exc)
        return failed

    def close(self, exc: BaseException) -> None:
        """Terminate every listener."""
        self.fail("", exc)

    @property
    def listener_count(self) -> int:
        return len(self._subscriptions)
