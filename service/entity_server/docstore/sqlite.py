"""
SQLite document store for the entity service.

This module stores documents in a single SQLite database file, one table
per logical collection:

    docs_<collection>:
        - tenant_id TEXT
        - doc_key TEXT
        - version INTEGER
        - body_json TEXT (canonical JSON)
        - PRIMARY KEY (tenant_id, doc_key)

The primary key doubles as the tenant index: every lookup and scan is
prefixed by tenant_id.

Invariants:
    - All blocking SQLite calls run in a worker thread, never on the event loop
    - Cancelling the awaiting task interrupts the running statement
    - A find() cursor is closed when the iterator finishes, is closed, or is
      cancelled
    - Compare-and-set is a single UPDATE ... WHERE version = ? statement

How to change safely:
    - Table layout changes must stay readable by older versions
    - Keep JSON path pushdown a pre-filter only; DocumentFilter.matches()
      is always applied to fetched rows
    - Test with WAL mode on and off
"""

from __future__ import annotations

import asyncio
import logging
import re
import sqlite3
from collections.abc import Callable
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, TypeVar

from .base import (
    Document,
    DocumentFilter,
    DocumentStoreConnectionError,
    DocumentStoreError,
    FieldIn,
    VersionConflictError,
    decode_body,
    encode_body,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_COLLECTION_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class _ConnectionHandle:
    """One SQLite connection driven from a worker thread.

    Work submitted through run() executes in the default executor. If the
    awaiting task is cancelled the statement is interrupted; the connection
    is only closed once the worker has let go of it.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self._pending: Optional[asyncio.Future] = None

    async def run(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        fut = loop.run_in_executor(None, fn, *args)
        fut.add_done_callback(_consume_exception)
        self._pending = fut
        try:
            return await asyncio.shield(fut)
        except asyncio.CancelledError:
            self.conn.interrupt()
            raise

    def close(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.add_done_callback(lambda _f: self.conn.close())
        else:
            self.conn.close()


def _consume_exception(fut: asyncio.Future) -> None:
    if not fut.cancelled():
        fut.exception()


class SqliteDocumentStore:
    """SQLite-backed implementation of DocumentStore.

    Thread safety:
        A connection is opened per operation (and per find() cursor) with
        check_same_thread disabled, so each call owns its connection for
        its lifetime. SQLite serializes writers; WAL mode lets readers run
        alongside them.

    Example:
        >>> store = SqliteDocumentStore("/var/lib/entity-service", "entity_service")
        >>> await store.connect()
        >>> doc = await store.insert("entities", "tenant_1", "abc", {"type": "K8S_POD"})
    """

    def __init__(
        self,
        data_dir: str,
        database_name: str = "entity_service",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        batch_size: int = 100,
    ) -> None:
        """Initialize the SQLite document store.

        Args:
            data_dir: Directory holding the database file
            database_name: Database file stem
            wal_mode: Enable SQLite WAL journal mode
            busy_timeout_ms: SQLite busy timeout
            batch_size: Rows fetched per round trip while streaming
        """
        self.data_dir = Path(data_dir)
        self.database_name = database_name
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.batch_size = batch_size
        self._ready_collections: set[str] = set()
        self._connected = False

    @property
    def db_path(self) -> Path:
        # Sanitize the database name to prevent path traversal
        safe_name = "".join(c for c in self.database_name if c.isalnum() or c in "-_")
        return self.data_dir / f"{safe_name}.db"

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Create the data directory and database file.

        Raises:
            DocumentStoreConnectionError: If the database cannot be opened
        """
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DocumentStoreConnectionError(f"Cannot open SQLite database {self.db_path}: {e}")
        handle = await self._open()
        try:
            if self.wal_mode:
                await handle.run(handle.conn.execute, "PRAGMA journal_mode = WAL")
        except sqlite3.Error as e:
            raise DocumentStoreConnectionError(f"Cannot configure SQLite database: {e}")
        finally:
            handle.close()

        self._connected = True
        logger.info("SQLite document store opened", extra={"path": str(self.db_path)})

    async def close(self) -> None:
        self._connected = False
        self._ready_collections.clear()

    async def ping(self) -> None:
        await self._execute(lambda conn: conn.execute("SELECT 1").fetchone())

    async def get(self, collection: str, tenant_id: str, key: str) -> Optional[Document]:
        table = self._table(collection)

        def _get(conn: sqlite3.Connection) -> Optional[Document]:
            self._ensure_table(conn, collection)
            row = conn.execute(
                f"SELECT version, body_json FROM {table} WHERE tenant_id = ? AND doc_key = ?",
                (tenant_id, key),
            ).fetchone()
            if row is None:
                return None
            return Document(collection, tenant_id, key, row["version"], decode_body(row["body_json"]))

        return await self._execute(_get)

    async def insert(
        self,
        collection: str,
        tenant_id: str,
        key: str,
        body: Dict[str, Any],
    ) -> Document:
        table = self._table(collection)
        body_json = encode_body(body)

        def _insert(conn: sqlite3.Connection) -> None:
            self._ensure_table(conn, collection)
            conn.execute(
                f"INSERT INTO {table} (tenant_id, doc_key, version, body_json) VALUES (?, ?, 1, ?)",
                (tenant_id, key, body_json),
            )

        try:
            await self._execute(_insert)
        except sqlite3.IntegrityError:
            raise VersionConflictError(collection, key, None)

        logger.debug(
            "Document inserted",
            extra={"collection": collection, "tenant_id": tenant_id, "key": key},
        )
        return Document(collection, tenant_id, key, 1, decode_body(body_json))

    async def replace(
        self,
        collection: str,
        tenant_id: str,
        key: str,
        body: Dict[str, Any],
        expected_version: int,
    ) -> Document:
        table = self._table(collection)
        body_json = encode_body(body)

        def _replace(conn: sqlite3.Connection) -> int:
            self._ensure_table(conn, collection)
            cursor = conn.execute(
                f"""
                UPDATE {table} SET version = version + 1, body_json = ?
                WHERE tenant_id = ? AND doc_key = ? AND version = ?
                """,
                (body_json, tenant_id, key, expected_version),
            )
            return cursor.rowcount

        if await self._execute(_replace) == 0:
            raise VersionConflictError(collection, key, expected_version)
        return Document(collection, tenant_id, key, expected_version + 1, decode_body(body_json))

    async def delete(self, collection: str, tenant_id: str, key: str) -> bool:
        table = self._table(collection)

        def _delete(conn: sqlite3.Connection) -> int:
            self._ensure_table(conn, collection)
            cursor = conn.execute(
                f"DELETE FROM {table} WHERE tenant_id = ? AND doc_key = ?",
                (tenant_id, key),
            )
            return cursor.rowcount

        return await self._execute(_delete) > 0

    async def find(
        self,
        collection: str,
        tenant_id: str,
        doc_filter: Optional[DocumentFilter] = None,
        limit: Optional[int] = None,
    ) -> AsyncIterator[Document]:
        """Stream matching documents in batches of ``batch_size`` rows."""
        self._check()
        table = self._table(collection)
        sql, params = self._build_find_query(table, tenant_id, doc_filter)

        handle = await self._open()
        try:
            def _start() -> sqlite3.Cursor:
                self._ensure_table(handle.conn, collection)
                return handle.conn.execute(sql, params)

            cursor = await handle.run(_start)
            emitted = 0
            while True:
                rows = await handle.run(cursor.fetchmany, self.batch_size)
                if not rows:
                    return
                for row in rows:
                    body = decode_body(row["body_json"])
                    if doc_filter is not None and not doc_filter.matches(body):
                        continue
                    if limit is not None and emitted >= limit:
                        return
                    emitted += 1
                    yield Document(collection, tenant_id, row["doc_key"], row["version"], body)
        except sqlite3.Error as e:
            raise DocumentStoreError(f"SQLite scan of {collection} failed: {e}")
        finally:
            handle.close()

    def _build_find_query(
        self,
        table: str,
        tenant_id: str,
        doc_filter: Optional[DocumentFilter],
    ) -> Tuple[str, List[Any]]:
        """Build the scan query, pushing string equality predicates into SQL."""
        query = f"SELECT doc_key, version, body_json FROM {table} WHERE tenant_id = ?"
        params: List[Any] = [tenant_id]

        for predicate in doc_filter.predicates if doc_filter else ():
            json_path = _json_path(predicate)
            if json_path is None:
                continue
            if not predicate.values:
                query += " AND 0"
                continue
            placeholders = ", ".join("?" for _ in predicate.values)
            query += f" AND json_extract(body_json, ?) IN ({placeholders})"
            params.append(json_path)
            params.extend(predicate.values)

        return query, params

    async def _open(self) -> _ConnectionHandle:
        """Open a connection in a worker thread.

        Raises:
            DocumentStoreConnectionError: If the database file cannot be opened
        """
        try:
            conn = await asyncio.to_thread(self._connect)
        except sqlite3.Error as e:
            raise DocumentStoreConnectionError(f"Cannot open SQLite database {self.db_path}: {e}")
        return _ConnectionHandle(conn)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit; every statement is atomic
            check_same_thread=False,
        )
        try:
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute("PRAGMA synchronous = NORMAL")
        except sqlite3.Error:
            conn.close()
            raise
        return conn

    async def _execute(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        """Run ``fn`` against a fresh connection in a worker thread."""
        self._check()
        handle = await self._open()
        try:
            return await handle.run(fn, handle.conn)
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise DocumentStoreError(f"SQLite operation failed: {e}")
        finally:
            handle.close()

    def _ensure_table(self, conn: sqlite3.Connection, collection: str) -> None:
        if collection in self._ready_collections:
            return
        table = self._table(collection)
        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {table} (
                tenant_id TEXT NOT NULL,
                doc_key TEXT NOT NULL,
                version INTEGER NOT NULL,
                body_json TEXT NOT NULL,
                PRIMARY KEY (tenant_id, doc_key)
            )
            """
        )
        self._ready_collections.add(collection)

    def _table(self, collection: str) -> str:
        if not _COLLECTION_NAME.match(collection):
            raise ValueError(f"Invalid collection name '{collection}'")
        return f"docs_{collection}"

    def _check(self) -> None:
        if not self._connected:
            raise DocumentStoreConnectionError("Not connected")


def _json_path(predicate: FieldIn) -> Optional[str]:
    """SQLite JSON path for a predicate, or None if it cannot be pushed down.

    Only string values are pushed down: SQLite compares 1 and 1.0 as equal
    and has no bool type, so other values are left to DocumentFilter.
    """
    if not all(isinstance(v, str) for v in predicate.values):
        return None
    if any('"' in segment for segment in predicate.path):
        return None
    return "$" + "".join(f'."{segment}"' for segment in predicate.path)
