"""
Unit tests for the document store engines.

Every test in TestDocumentStoreContract runs against both the in-memory
and the SQLite engine.

Tests cover:
- Connection lifecycle
- Insert/get/replace/delete with compare-and-set
- Tenant isolation
- Filtered streaming find
- Engine-specific behaviour (failure injection, persistence, cursor release)
"""

import asyncio
import os
import shutil
import sqlite3
import tempfile

import pytest

from service.entity_server.docstore import (
    DocumentFilter,
    DocumentSerializationError,
    DocumentStoreConnectionError,
    DocumentStoreError,
    FieldIn,
    InMemoryDocumentStore,
    SqliteDocumentStore,
    VersionConflictError,
)
from service.entity_server.errors import StoreUnavailableError


@pytest.fixture(params=["memory", "sqlite"])
async def store(request):
    """Connected store for each engine."""
    if request.param == "memory":
        engine = InMemoryDocumentStore()
        await engine.connect()
        yield engine
        await engine.close()
    else:
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = SqliteDocumentStore(tmpdir, "test_db", wal_mode=False, batch_size=2)
            await engine.connect()
            yield engine
            await engine.close()


async def collect(iterator):
    return [doc async for doc in iterator]


class TestDocumentStoreContract:
    """Behaviour shared by every engine."""

    @pytest.mark.asyncio
    async def test_insert_then_get(self, store):
        """Inserted document is readable at version 1."""
        doc = await store.insert("entities", "t1", "k1", {"type": "POD", "n": 1})

        assert doc.version == 1
        fetched = await store.get("entities", "t1", "k1")
        assert fetched is not None
        assert fetched.body == {"type": "POD", "n": 1}
        assert fetched.version == 1
        assert fetched.tenant_id == "t1"

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store):
        """Absent key reads as None."""
        assert await store.get("entities", "t1", "nope") is None

    @pytest.mark.asyncio
    async def test_insert_existing_key_conflicts(self, store):
        """Second insert of the same key is a version conflict."""
        await store.insert("entities", "t1", "k1", {"a": 1})

        with pytest.raises(VersionConflictError):
            await store.insert("entities", "t1", "k1", {"a": 2})

    @pytest.mark.asyncio
    async def test_replace_bumps_version(self, store):
        """Replace with the current version succeeds and increments it."""
        doc = await store.insert("entities", "t1", "k1", {"a": 1})

        replaced = await store.replace("entities", "t1", "k1", {"a": 2}, doc.version)

        assert replaced.version == 2
        fetched = await store.get("entities", "t1", "k1")
        assert fetched.body == {"a": 2}
        assert fetched.version == 2

    @pytest.mark.asyncio
    async def test_replace_with_stale_version_conflicts(self, store):
        """Replace against an old version never overwrites."""
        doc = await store.insert("entities", "t1", "k1", {"a": 1})
        await store.replace("entities", "t1", "k1", {"a": 2}, doc.version)

        with pytest.raises(VersionConflictError):
            await store.replace("entities", "t1", "k1", {"a": 3}, doc.version)

        assert (await store.get("entities", "t1", "k1")).body == {"a": 2}

    @pytest.mark.asyncio
    async def test_replace_vanished_document_conflicts(self, store):
        """Replace of a deleted document is a conflict."""
        doc = await store.insert("entities", "t1", "k1", {"a": 1})
        await store.delete("entities", "t1", "k1")

        with pytest.raises(VersionConflictError):
            await store.replace("entities", "t1", "k1", {"a": 2}, doc.version)

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, store):
        """Delete reports whether something was removed."""
        await store.insert("entities", "t1", "k1", {"a": 1})

        assert await store.delete("entities", "t1", "k1") is True
        assert await store.delete("entities", "t1", "k1") is False
        assert await store.get("entities", "t1", "k1") is None

    @pytest.mark.asyncio
    async def test_tenants_are_isolated(self, store):
        """Same key in two tenants are two documents."""
        await store.insert("entities", "t1", "k1", {"owner": "t1"})
        await store.insert("entities", "t2", "k1", {"owner": "t2"})

        assert (await store.get("entities", "t1", "k1")).body == {"owner": "t1"}
        assert (await store.get("entities", "t2", "k1")).body == {"owner": "t2"}

        docs = await collect(store.find("entities", "t1"))
        assert [d.body["owner"] for d in docs] == ["t1"]

    @pytest.mark.asyncio
    async def test_collections_are_isolated(self, store):
        """Same key in two collections are two documents."""
        await store.insert("entities", "t1", "k1", {"c": "entities"})
        await store.insert("entity_types", "t1", "k1", {"c": "types"})

        assert (await store.get("entity_types", "t1", "k1")).body == {"c": "types"}

    @pytest.mark.asyncio
    async def test_find_without_filter_returns_all(self, store):
        """Find streams every document of the tenant."""
        for i in range(5):
            await store.insert("entities", "t1", f"k{i}", {"i": i})

        docs = await collect(store.find("entities", "t1"))

        assert sorted(d.key for d in docs) == ["k0", "k1", "k2", "k3", "k4"]

    @pytest.mark.asyncio
    async def test_find_empty_collection(self, store):
        """Find on an unknown collection yields nothing."""
        assert await collect(store.find("entities", "t1")) == []

    @pytest.mark.asyncio
    async def test_find_filter_is_conjunction(self, store):
        """All predicates must match."""
        await store.insert("entities", "t1", "a", {"type": "POD", "id": "a"})
        await store.insert("entities", "t1", "b", {"type": "POD", "id": "b"})
        await store.insert("entities", "t1", "c", {"type": "NODE", "id": "c"})

        doc_filter = DocumentFilter((
            FieldIn(("type",), ("POD",)),
            FieldIn(("id",), ("b", "c")),
        ))
        docs = await collect(store.find("entities", "t1", doc_filter))

        assert [d.key for d in docs] == ["b"]

    @pytest.mark.asyncio
    async def test_find_nested_path_and_dotted_names(self, store):
        """Path segments are literal, so dotted attribute names work."""
        await store.insert(
            "entities", "t1", "a",
            {"attributes": {"app.kubernetes.io/name": {"kind": "string", "value": "web"}}},
        )
        await store.insert(
            "entities", "t1", "b",
            {"attributes": {"app.kubernetes.io/name": {"kind": "string", "value": "db"}}},
        )

        doc_filter = DocumentFilter((
            FieldIn(
                ("attributes", "app.kubernetes.io/name"),
                ({"kind": "string", "value": "web"},),
            ),
        ))
        docs = await collect(store.find("entities", "t1", doc_filter))

        assert [d.key for d in docs] == ["a"]

    @pytest.mark.asyncio
    async def test_find_absent_field_never_matches(self, store):
        """A document without the field is excluded."""
        await store.insert("entities", "t1", "a", {"type": "POD"})
        await store.insert("entities", "t1", "b", {})

        docs = await collect(
            store.find("entities", "t1", DocumentFilter((FieldIn(("type",), ("POD",)),)))
        )

        assert [d.key for d in docs] == ["a"]

    @pytest.mark.asyncio
    async def test_find_keeps_bool_and_int_apart(self, store):
        """True does not match 1."""
        await store.insert("entities", "t1", "a", {"v": True})
        await store.insert("entities", "t1", "b", {"v": 1})

        docs = await collect(
            store.find("entities", "t1", DocumentFilter((FieldIn(("v",), (1,)),)))
        )

        assert [d.key for d in docs] == ["b"]

    @pytest.mark.asyncio
    async def test_find_respects_limit(self, store):
        """Limit caps the number of matching documents."""
        for i in range(5):
            await store.insert("entities", "t1", f"k{i}", {"type": "POD"})

        docs = await collect(
            store.find(
                "entities", "t1", DocumentFilter((FieldIn(("type",), ("POD",)),)), limit=3
            )
        )

        assert len(docs) == 3

    @pytest.mark.asyncio
    async def test_find_can_be_closed_early(self, store):
        """Closing the iterator mid-stream releases it."""
        for i in range(5):
            await store.insert("entities", "t1", f"k{i}", {"i": i})

        iterator = store.find("entities", "t1")
        first = await iterator.__anext__()
        await iterator.aclose()

        assert first.key.startswith("k")
        # Store remains usable
        assert await store.get("entities", "t1", "k0") is not None

    @pytest.mark.asyncio
    async def test_returned_bodies_are_copies(self, store):
        """Mutating a returned body does not change the stored document."""
        await store.insert("entities", "t1", "k1", {"tags": ["a"]})

        doc = await store.get("entities", "t1", "k1")
        doc.body["tags"].append("b")

        assert (await store.get("entities", "t1", "k1")).body == {"tags": ["a"]}

    @pytest.mark.asyncio
    async def test_ping(self, store):
        """Ping succeeds on a connected store."""
        await store.ping()


class TestConnectionLifecycle:
    """Connection handling for both engines."""

    @pytest.mark.asyncio
    async def test_memory_requires_connection(self):
        """Operations before connect() fail."""
        store = InMemoryDocumentStore()
        assert not store.is_connected

        with pytest.raises(DocumentStoreConnectionError):
            await store.get("entities", "t1", "k1")

    @pytest.mark.asyncio
    async def test_sqlite_requires_connection(self):
        """Operations before connect() fail."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = SqliteDocumentStore(tmpdir)
            with pytest.raises(DocumentStoreConnectionError):
                await store.ping()

    def test_connection_error_is_store_unavailable(self):
        """Store errors surface as the STORE_UNAVAILABLE kind."""
        error = DocumentStoreConnectionError("down")

        assert isinstance(error, DocumentStoreError)
        assert isinstance(error, StoreUnavailableError)
        assert error.code == "STORE_UNAVAILABLE"
        assert error.retryable is True


class TestInMemoryHelpers:
    """Testing helpers of the in-memory engine."""

    @pytest.fixture
    def store(self):
        return InMemoryDocumentStore()

    @pytest.mark.asyncio
    async def test_inject_failure_hits_next_operation_only(self, store):
        """Injected failure is raised once."""
        await store.connect()
        store.inject_failure(DocumentStoreError("boom"))

        with pytest.raises(DocumentStoreError):
            await store.get("entities", "t1", "k1")

        assert await store.get("entities", "t1", "k1") is None

    @pytest.mark.asyncio
    async def test_document_counts(self, store):
        """Counts per collection and tenant."""
        await store.connect()
        await store.insert("entities", "t1", "a", {})
        await store.insert("entities", "t1", "b", {})
        await store.insert("entities", "t2", "a", {})

        assert store.get_document_count("entities") == 3
        assert store.get_document_count("entities", "t1") == 2
        assert len(store.get_all_documents("entities")) == 3

    @pytest.mark.asyncio
    async def test_close_clears_data(self, store):
        """Close drops all data."""
        await store.connect()
        await store.insert("entities", "t1", "a", {})
        await store.close()
        await store.connect()

        assert await store.get("entities", "t1", "a") is None


class TestSqliteDocumentStore:
    """SQLite-specific behaviour."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.mark.asyncio
    async def test_data_survives_reopen(self, data_dir):
        """Documents persist across store instances."""
        store = SqliteDocumentStore(data_dir, "persist")
        await store.connect()
        await store.insert("entities", "t1", "k1", {"a": 1})
        await store.close()

        reopened = SqliteDocumentStore(data_dir, "persist")
        await reopened.connect()
        doc = await reopened.get("entities", "t1", "k1")

        assert doc is not None
        assert doc.body == {"a": 1}
        await reopened.close()

    def test_database_name_is_sanitized(self, data_dir):
        """Path separators are stripped from the database name."""
        store = SqliteDocumentStore(data_dir, "../../etc/passwd")

        assert store.db_path.parent.resolve() == store.data_dir.resolve()
        assert store.db_path.name == "etcpasswd.db"

    @pytest.mark.asyncio
    async def test_invalid_collection_name_rejected(self, data_dir):
        """Collection names are restricted to identifiers."""
        store = SqliteDocumentStore(data_dir)
        await store.connect()

        with pytest.raises(ValueError):
            await store.get("entities; DROP TABLE x", "t1", "k1")

    @pytest.mark.asyncio
    async def test_find_maps_open_failure_to_unavailable(self, data_dir):
        """A database that cannot be opened fails find() like get()."""
        db_dir = os.path.join(data_dir, "db")
        store = SqliteDocumentStore(db_dir)
        await store.connect()
        shutil.rmtree(db_dir)

        with pytest.raises(DocumentStoreConnectionError):
            await store.get("entities", "t1", "k1")
        with pytest.raises(StoreUnavailableError):
            await collect(store.find("entities", "t1"))

    @pytest.mark.asyncio
    async def test_non_finite_numbers_never_stored(self, data_dir):
        """NaN and infinities are refused, so json_extract pushdown keeps working."""
        store = SqliteDocumentStore(data_dir)
        await store.connect()
        await store.insert("entities", "t1", "good", {"type": "POD", "cpu": 1.5})

        for bad in (float("nan"), float("inf"), float("-inf")):
            with pytest.raises(DocumentSerializationError):
                await store.insert("entities", "t1", "bad", {"type": "POD", "cpu": bad})

        docs = await collect(
            store.find("entities", "t1", DocumentFilter((FieldIn(("type",), ("POD",)),)))
        )
        assert [d.key for d in docs] == ["good"]


class TestSqliteCursorRelease:
    """Connections opened by find() are closed however the stream ends."""

    @pytest.fixture
    async def tracked(self, monkeypatch):
        """SQLite store whose connections record when they are closed."""
        opened = []
        real_connect = sqlite3.connect

        class TrackingConnection(sqlite3.Connection):
            closed = False

            def close(self):
                self.closed = True
                super().close()

        def connect(*args, **kwargs):
            conn = real_connect(*args, factory=TrackingConnection, **kwargs)
            opened.append(conn)
            return conn

        monkeypatch.setattr(sqlite3, "connect", connect)
        with tempfile.TemporaryDirectory() as tmpdir:
            store = SqliteDocumentStore(tmpdir, "cursors", batch_size=1)
            await store.connect()
            for i in range(3):
                await store.insert("entities", "t1", f"k{i}", {"n": i})
            yield store, opened
            await store.close()

    @staticmethod
    async def wait_closed(opened):
        for _ in range(200):
            if all(conn.closed for conn in opened):
                return
            await asyncio.sleep(0.01)

    @pytest.mark.asyncio
    async def test_aclose_releases_connection(self, tracked):
        store, opened = tracked
        stream = store.find("entities", "t1")
        await stream.__anext__()

        assert not opened[-1].closed
        await stream.aclose()

        assert all(conn.closed for conn in opened)

    @pytest.mark.asyncio
    async def test_cancel_mid_stream_releases_connection(self, tracked):
        """Cancelling a pending fetch interrupts it and closes the connection."""
        store, opened = tracked
        stream = store.find("entities", "t1")
        await stream.__anext__()

        pending = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0)
        pending.cancel()
        with pytest.raises(asyncio.CancelledError):
            await pending

        await self.wait_closed(opened)
        assert all(conn.closed for conn in opened)
        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()
