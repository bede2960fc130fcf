"""
SQLite document store for vaultsync.

This module keeps every document of the tree in a single SQLite file so a
device or a small deployment can run the core without a remote store.

Invariants:
    - One row per document path
    - All writes run inside BEGIN IMMEDIATE ... COMMIT
    - Listeners are notified after COMMIT, outside the store lock

How to change safely:
    - Schema migrations must be backward compatible
    - Use transactions for all write operations
    - Keep listener semantics identical to InMemoryDocumentStore

Table schema:
    documents:
        - path TEXT PRIMARY KEY
        - collection TEXT (parent collection path)
        - grp TEXT (collection group, last collection segment)
        - doc_id TEXT
        - data_json TEXT
        - updated_at INTEGER (Unix ms)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

from ..errors import StoreUnavailableError
from .base import (
    Document,
    ListenerHandle,
    Snapshot,
    SnapshotCallback,
    WriteKind,
    WriteOp,
    collection_of,
    doc_id_of,
    group_of,
    matches,
    order_and_limit,
    overlay_writes,
    parent_document,
)
from .listeners import ListenerRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _SqliteTransaction:
    """Reads through the open connection; buffers writes until commit."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self.writes: list[WriteOp] = []

    async def get(self, path: str) -> Document | None:
        doc = _read(self._conn, path)
        committed = {path: doc} if doc is not None else {}
        own = [op for op in self.writes if op.path == path]
        return overlay_writes(committed, own, collection_of(path)).get(path)

    async def query(self, collection: str, where: dict[str, Any] | None = None) -> list[Document]:
        view = overlay_writes(_collection_rows(self._conn, collection), self.writes, collection)
        return [d for _, d in sorted(view.items()) if matches(d, where)]

    def set(self, path: str, data: Document, merge: bool = False) -> None:
        self.writes.append(WriteOp.set(path, data, merge))

    def delete(self, path: str) -> None:
        self.writes.append(WriteOp.delete(path))


def _read(conn: sqlite3.Connection, path: str) -> Document | None:
    row = conn.execute("SELECT data_json FROM documents WHERE path = ?", (path,)).fetchone()
    return json.loads(row["data_json"]) if row else None


def _collection_rows(conn: sqlite3.Connection, collection: str) -> dict[str, Document]:
    rows = conn.execute(
        "SELECT path, data_json FROM documents WHERE collection = ? ORDER BY path",
        (collection.strip("/"),),
    ).fetchall()
    return {r["path"]: json.loads(r["data_json"]) for r in rows}


class SqliteDocumentStore:
    """Single-file SQLite implementation of DocumentStore.

    Thread safety:
        Each operation opens its own connection. Writes are serialised
        by an asyncio lock and SQLite's IMMEDIATE transactions.

    Example:
        >>> store = SqliteDocumentStore("/var/lib/vaultsync")
        >>> await store.connect()
        >>> await store.set("containers/c1", {"name": "Home"})
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        db_name: str = "vaultsync.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the store.

        Args:
            data_dir: Directory for the SQLite database file
            db_name: Database file name
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_name
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._connected = False
        self._lock = asyncio.Lock()
        self._listeners = ListenerRegistry()

    @property
    def is_connected(self) -> bool:
        return self._connected

    @contextmanager
    def _get_connection(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Open a configured connection, mapping SQLite errors.

        Raises:
            StoreUnavailableError: On any SQLite failure
        """
        if not self._connected:
            raise StoreUnavailableError("Not connected", operation=operation)
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Cannot open {self.db_path}: {e}", operation) from e

        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"SQLite {operation} failed: {e}", operation) from e
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS documents (
                path TEXT PRIMARY KEY,
                collection TEXT NOT NULL,
                grp TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                data_json TEXT NOT NULL DEFAULT '{}',
                updated_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents(collection);
            CREATE INDEX IF NOT EXISTS idx_documents_group ON documents(grp);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def connect(self) -> None:
        """Create the database file and schema if needed."""
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreUnavailableError(f"Cannot create {self.data_dir}: {e}", "connect") from e
        self._connected = True
        try:
            async with self._lock:
                with self._get_connection("connect") as conn:
                    self._create_schema(conn)
        except StoreUnavailableError:
            self._connected = False
            raise
        logger.info("SQLite document store ready", extra={"db_path": str(self.db_path)})

    async def close(self) -> None:
        self._connected = False
        self._listeners.clear()

    async def get(self, path: str) -> Document | None:
        with self._get_connection("get") as conn:
            return _read(conn, path)

    async def set(self, path: str, data: Document, merge: bool = False) -> None:
        await self.batch([WriteOp.set(path, data, merge)])

    async def delete(self, path: str) -> None:
        await self.batch([WriteOp.delete(path)])

    async def run_transaction(self, fn: Callable[[Any], Awaitable[T]]) -> T:
        async with self._lock:
            with self._get_connection("transaction") as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    tx = _SqliteTransaction(conn)
                    result = await fn(tx)
                    touched = self._apply(conn, tx.writes)
                    conn.execute("COMMIT")
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
        self._listeners.notify(touched, self._snapshot)
        return result

    async def batch(self, ops: list[WriteOp]) -> None:
        async with self._lock:
            with self._get_connection("batch") as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    touched = self._apply(conn, ops)
                    conn.execute("COMMIT")
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
        self._listeners.notify(touched, self._snapshot)

    def _apply(self, conn: sqlite3.Connection, ops: list[WriteOp]) -> list[str]:
        """Apply writes inside an open transaction."""
        now = int(time.time() * 1000)
        touched = []
        for op in ops:
            collection = collection_of(op.path)
            if op.kind is WriteKind.DELETE:
                conn.execute("DELETE FROM documents WHERE path = ?", (op.path,))
            else:
                data = dict(op.data or {})
                data["id"] = doc_id_of(op.path)
                if op.merge:
                    existing = _read(conn, op.path)
                    if existing is not None:
                        existing.update(data)
                        data = existing
                conn.execute(
                    """
                    INSERT INTO documents (path, collection, grp, doc_id, data_json, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(path) DO UPDATE SET
                        data_json = excluded.data_json,
                        updated_at = excluded.updated_at
                    """,
                    (
                        op.path,
                        collection,
                        group_of(collection),
                        data["id"],
                        json.dumps(data),
                        now,
                    ),
                )
            touched.append(op.path)
        return touched

    def _collection_docs(
        self,
        conn: sqlite3.Connection,
        collection: str,
        where: dict[str, Any] | None,
    ) -> list[Document]:
        docs = _collection_rows(conn, collection).values()
        return [d for d in docs if matches(d, where)]

    async def query(
        self,
        collection: str,
        where: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Document]:
        with self._get_connection("query") as conn:
            docs = self._collection_docs(conn, collection, where)
        return order_and_limit(docs, order_by, descending, limit)

    async def query_group(
        self,
        group: str,
        where: dict[str, Any] | None = None,
    ) -> list[Document]:
        with self._get_connection("query_group") as conn:
            rows = conn.execute(
                "SELECT data_json FROM documents WHERE grp = ? ORDER BY path",
                (group,),
            ).fetchall()
        docs = [json.loads(r["data_json"]) for r in rows]
        return [d for d in docs if matches(d, where)]

    async def listen(
        self,
        collection: str,
        callback: SnapshotCallback,
        where: dict[str, Any] | None = None,
    ) -> ListenerHandle:
        snapshot = self._snapshot(collection, where)
        handle = self._listeners.add(collection, callback, where)
        self._listeners.deliver(collection, callback, snapshot)
        return handle

    def _snapshot(self, collection: str, where: dict[str, Any] | None) -> Snapshot:
        parent = parent_document(collection)
        with self._get_connection("snapshot") as conn:
            items = self._collection_docs(conn, collection, where)
            removed = parent is not None and _read(conn, parent) is None
        return Snapshot(collection=collection, items=items, removed=removed)
