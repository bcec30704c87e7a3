"""Tracker implementation for creating TraceEvents."""

import uuid
from datetime import datetime, timezone
from typing import Protocol

from ..errors import SyncError
from ..logging_config import get_logger
from ..models import TraceEvent
from ..store import IDocumentStore

logger = get_logger(__name__)


class ITracker(Protocol):
    """Creating TraceEvents for sync, session and presence activity."""

    async def track(self, event_type: str, actor: str, data: dict) -> None:
        """Create TraceEvent and save to the store."""
        ...


class Tracker:
    """Persists TraceEvents. Never fails the operation being traced."""

    def __init__(self, store: IDocumentStore):
        self._store = store

    async def track(self, event_type: str, actor: str, data: dict) -> None:
        """Create TraceEvent and save to the store."""
        trace_event = TraceEvent(
            id=str(uuid.uuid4()),
            event_type=event_type,
            actor=actor,
            data=data,
            timestamp=datetime.now(timezone.utc),
        )
        try:
            await self._store.save_trace_event(trace_event)
        except (SyncError, RuntimeError) as e:
            logger.warning("Dropped trace event %s: %s", event_type, e)
