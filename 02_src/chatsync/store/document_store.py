"""SQLite-backed key-path document store with changefeed semantics."""

import asyncio
import copy
import json
import sqlite3
import time
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

import aiosqlite

from ..config import resolve_db_path
from ..errors import SyncError, SyncErrorKind
from ..logging_config import get_logger
from ..models import TraceEvent
from .changefeed import Changefeed, join_path, split_path

logger = get_logger(__name__)

# Written in place of a value, replaced by the server clock (epoch ms).
SERVER_TIMESTAMP = {".sv": "timestamp"}

CONNECTED_PATH = ".info/connected"


def _sort_key(value: Any) -> tuple:
    if value is None:
        return (2, "")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (0, value)
    return (1, str(value))


@dataclass
class Snapshot:
    """Value at a path at one point in time."""

    key: str
    value: Any
    order_by: str | None = None

    @property
    def exists(self) -> bool:
        return self.value is not None

    def child(self, name: str) -> "Snapshot":
        value = self.value.get(name) if isinstance(self.value, dict) else None
        return Snapshot(key=name, value=value)

    def children(self) -> list["Snapshot"]:
        """Child snapshots, ordered by ``order_by`` then key."""
        if not isinstance(self.value, dict):
            return []
        items = [Snapshot(key=k, value=v) for k, v in self.value.items()]
        field_name = self.order_by
        if field_name:
            items.sort(
                key=lambda s: (
                    _sort_key(
                        s.value.get(field_name) if isinstance(s.value, dict) else None
                    ),
                    s.key,
                )
            )
        else:
            items.sort(key=lambda s: s.key)
        return items


class IDocumentStore(Protocol):
    """Remote key-path store: snapshot reads, writes and changefeeds."""

    async def init(self) -> None:
        """Open the backing database."""
        ...

    async def close(self) -> None:
        """Close the backing database and terminate listeners."""
        ...

    async def get(self, path: str) -> Snapshot:
        """Read the value at a path."""
        ...

    async def set(self, path: str, value: Any) -> None:
        """Replace the value at a path."""
        ...

    async def update(self, path: str, fields: dict) -> None:
        """Replace some children of a path."""
        ...

    async def remove(self, path: str) -> None:
        """Delete a path and everything below it."""
        ...

    async def transaction(
        self, path: str, update_fn: Callable[[Any], Any]
    ) -> Any:
        """Atomic read-modify-write. ``update_fn`` returning None aborts."""
        ...

    def observe(
        self, path: str, order_by: str | None = None
    ) -> AsyncIterator[Snapshot]:
        """Snapshot now, then one per change under the path."""
        ...

    async def on_disconnect_set(self, path: str, value: Any) -> None:
        """Arm a write the server applies when this connection drops."""
        ...

    async def cancel_on_disconnect(self, path: str) -> None:
        """Disarm writes armed at or below a path."""
        ...

    @property
    def is_connected(self) -> bool:
        """Transport liveness."""
        ...

    # TraceEvents
    async def save_trace_event(self, event: TraceEvent) -> None:
        """Save a trace event."""
        ...

    async def get_trace_events(
        self,
        after: datetime | None = None,
        event_types: list[str] | None = None,
        actor: str | None = None,
        limit: int = 100,
    ) -> list[TraceEvent]:
        """Get trace events with optional filters."""
        ...

    # Lifecycle
    async def clear(self) -> None:
        """Clear all data."""
        ...


@contextmanager
def _driver_errors():
    """Translate driver failures into SyncError."""
    try:
        yield
    except sqlite3.Error as e:
        raise SyncError.transport(e) from e


def _flatten(path: str, value: Any) -> list[tuple[str, str]]:
    """Leaf rows for ``value`` stored at ``path``. None and {} produce none."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        value = {str(i): v for i, v in enumerate(value)}
    if isinstance(value, dict):
        rows = []
        for key, child in value.items():
            rows.extend(_flatten(join_path(path, str(key)), child))
        return rows
    return [(path, json.dumps(value))]


class DocumentStore:
    """Key-path document store on SQLite.

    Every leaf of the JSON tree is one row. Writes are serialized by a lock
    and signalled to observers after commit.
    """

    def __init__(self, db_path: str | Path | None = None):
        if db_path is None:
            self._db_path = resolve_db_path()
        else:
            self._db_path = resolve_db_path(db_path)
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._changefeed = Changefeed()
        self._connected = False
        self._on_disconnect: dict[str, Any] = {}

    async def init(self) -> None:
        """Initialize database and create tables."""
        with _driver_errors():
            self._conn = await aiosqlite.connect(self._db_path)

            schema_path = Path(__file__).parent / "schema.sql"
            with open(schema_path, "r", encoding="utf-8") as f:
                schema_sql = f.read()
            await self._conn.executescript(schema_sql)
            await self._conn.commit()
        self._connected = True
        logger.info("Document store opened at %s", self._db_path)

    async def close(self) -> None:
        """Close database connection."""
        self._changefeed.close(
            SyncError(SyncErrorKind.TRANSPORT_ERROR, "store closed")
        )
        self._connected = False
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def changefeed(self) -> Changefeed:
        return self._changefeed

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _require_conn(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("Store not initialized")
        return self._conn

    def _require_online(self) -> None:
        if not self._connected:
            raise SyncError(SyncErrorKind.TRANSPORT_ERROR, "connection lost")

    # Reads
    async def _read(self, path: str) -> Any:
        conn = self._require_conn()
        parts = split_path(path)
        norm = "/".join(parts)

        if not parts:
            cursor = await conn.execute("SELECT path, value FROM nodes ORDER BY path")
        else:
            prefix = norm + "/"
            cursor = await conn.execute(
                """
                SELECT path, value FROM nodes
                WHERE path = ? OR substr(path, 1, ?) = ?
                ORDER BY path
                """,
                (norm, len(prefix), prefix),
            )
        rows = await cursor.fetchall()

        if not rows:
            return None
        if len(rows) == 1 and rows[0][0] == norm:
            return json.loads(rows[0][1])

        tree: dict[str, Any] = {}
        for row_path, raw in rows:
            rel = split_path(row_path)[len(parts):]
            node = tree
            for seg in rel[:-1]:
                node = node.setdefault(seg, {})
            node[rel[-1]] = json.loads(raw)
        return tree

    async def get(self, path: str) -> Snapshot:
        """Read the value at a path."""
        parts = split_path(path)
        if "/".join(parts) == CONNECTED_PATH:
            return Snapshot(key="connected", value=self._connected)
        # Writes delete then insert on the shared connection
        async with self._lock:
            with _driver_errors():
                value = await self._read(path)
        return Snapshot(key=parts[-1] if parts else "", value=value)

    # Writes
    def _resolve(self, value: Any, now_ms: int) -> Any:
        if value == SERVER_TIMESTAMP:
            return now_ms
        if isinstance(value, dict):
            return {k: self._resolve(v, now_ms) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._resolve(v, now_ms) for v in value]
        return value

    async def _write(self, path: str, value: Any) -> None:
        """Replace the subtree at ``path``. Caller holds the lock."""
        conn = self._require_conn()
        parts = split_path(path)
        norm = "/".join(parts)
        prefix = norm + "/"
        value = self._resolve(value, int(time.time() * 1000))

        await conn.execute(
            "DELETE FROM nodes WHERE path = ? OR substr(path, 1, ?) = ?",
            (norm, len(prefix), prefix),
        )
        # A leaf stored at an ancestor would shadow the new subtree
        ancestors = ["/".join(parts[:i]) for i in range(1, len(parts))]
        if ancestors:
            placeholders = ",".join("?" * len(ancestors))
            await conn.execute(
                f"DELETE FROM nodes WHERE path IN ({placeholders})", ancestors
            )
        rows = _flatten(norm, value)
        if rows:
            await conn.executemany(
                "INSERT INTO nodes (path, value) VALUES (?, ?)", rows
            )

    async def set(self, path: str, value: Any) -> None:
        """Replace the value at a path. None deletes."""
        self._require_online()
        async with self._lock:
            with _driver_errors():
                await self._write(path, value)
                await self._require_conn().commit()
        self._changefeed.publish(join_path(path))

    async def update(self, path: str, fields: dict) -> None:
        """Replace the named children of a path. None values delete."""
        self._require_online()
        async with self._lock:
            with _driver_errors():
                for name, value in fields.items():
                    await self._write(join_path(path, name), value)
                await self._require_conn().commit()
        self._changefeed.publish(join_path(path))

    async def remove(self, path: str) -> None:
        """Delete a path and everything below it."""
        await self.set(path, None)

    async def transaction(self, path: str, update_fn: Callable[[Any], Any]) -> Any:
        """Atomic read-modify-write.

        ``update_fn`` receives a copy of the current value and returns the
        new one; returning None leaves the path untouched. Returns the
        committed value or None.
        """
        self._require_online()
        async with self._lock:
            with _driver_errors():
                current = await self._read(path)
                new_value = update_fn(copy.deepcopy(current))
                if new_value is None:
                    return None
                await self._write(path, new_value)
                await self._require_conn().commit()
        self._changefeed.publish(join_path(path))
        return new_value

    # Changefeed
    async def observe(
        self, path: str, order_by: str | None = None
    ) -> AsyncIterator[Snapshot]:
        """Snapshot now, then one per committed change under the path.

        Ends with SyncError when the listener is terminated.
        """
        subscription = self._changefeed.subscribe(path)
        try:
            snapshot = await self.get(path)
            snapshot.order_by = order_by
            yield snapshot
            while True:
                await subscription.wait()
                snapshot = await self.get(path)
                snapshot.order_by = order_by
                yield snapshot
        finally:
            self._changefeed.unsubscribe(subscription)

    def fail_listeners(self, path: str, reason: str = "listener cancelled") -> int:
        """Terminate listeners at or below ``path`` with a transport error."""
        return self._changefeed.fail(
            path, SyncError(SyncErrorKind.TRANSPORT_ERROR, reason)
        )

    # Connection lifecycle
    async def on_disconnect_set(self, path: str, value: Any) -> None:
        """Arm a write the server applies when this connection drops."""
        self._require_online()
        self._on_disconnect[join_path(path)] = copy.deepcopy(value)

    async def cancel_on_disconnect(self, path: str) -> None:
        """Disarm writes armed at or below a path."""
        prefix = split_path(path)
        for armed in list(self._on_disconnect):
            if split_path(armed)[: len(prefix)] == prefix:
                del self._on_disconnect[armed]

    @property
    def armed_disconnect_writes(self) -> dict[str, Any]:
        return dict(self._on_disconnect)

    async def drop_connection(self) -> None:
        """Simulate an ungraceful transport loss.

        The server applies every armed on-disconnect write; the client then
        sees ``.info/connected`` go false and its own writes rejected.
        """
        if not self._connected:
            return
        armed, self._on_disconnect = self._on_disconnect, {}
        async with self._lock:
            with _driver_errors():
                for path, value in armed.items():
                    await self._write(path, value)
                await self._require_conn().commit()
        self._connected = False
        logger.warning("Connection dropped, applied %d on-disconnect write(s)", len(armed))
        for path in armed:
            self._changefeed.publish(path)
        self._changefeed.publish(CONNECTED_PATH)

    async def reconnect(self) -> None:
        """Restore the transport."""
        if self._connected:
            return
        self._connected = True
        logger.info("Connection restored")
        self._changefeed.publish(CONNECTED_PATH)

    # TraceEvents
    async def save_trace_event(self, event: TraceEvent) -> None:
        """Save a trace event."""
        conn = self._require_conn()
        with _driver_errors():
            await conn.execute(
                """
                INSERT INTO trace_events (id, event_type, actor, data, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    event.id or str(uuid.uuid4()),
                    event.event_type,
                    event.actor,
                    json.dumps(event.data, default=str),
                    event.timestamp.astimezone(timezone.utc).isoformat(),
                ),
            )
            await conn.commit()

    async def get_trace_events(
        self,
        after: datetime | None = None,
        event_types: list[str] | None = None,
        actor: str | None = None,
        limit: int = 100,
    ) -> list[TraceEvent]:
        """Get trace events with optional filters (newest first)."""
        conn = self._require_conn()

        conditions = []
        params: list[Any] = []

        if after:
            if after.tzinfo is None:
                after = after.replace(tzinfo=timezone.utc)
            conditions.append("timestamp > ?")
            params.append(after.astimezone(timezone.utc).isoformat())
        if event_types:
            placeholders = ",".join("?" * len(event_types))
            conditions.append(f"event_type IN ({placeholders})")
            params.extend(event_types)
        if actor:
            conditions.append("actor = ?")
            params.append(actor)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        query = f"""
            SELECT id, event_type, actor, data, timestamp
            FROM trace_events
            {where_clause}
            ORDER BY timestamp DESC
            LIMIT ?
        """
        params.append(limit)

        with _driver_errors():
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()

        return [
            TraceEvent(
                id=row[0],
                event_type=row[1],
                actor=row[2],
                data=json.loads(row[3]),
                timestamp=datetime.fromisoformat(row[4]),
            )
            for row in rows
        ]

    # Lifecycle
    async def clear(self) -> None:
        """Clear all data."""
        conn = self._require_conn()
        async with self._lock:
            with _driver_errors():
                for table in ("nodes", "trace_events"):
                    await conn.execute(f"DELETE FROM {table}")
                await conn.commit()
        self._on_disconnect.clear()
        self._changefeed.publish("")
