"""
In-memory document store implementation.

This module provides a document store that keeps everything in process
memory, for:
- Unit tests
- Integration tests
- Local development without a data directory

Invariants:
    - All data is lost on process exit
    - Same compare-and-set semantics as the SQLite engine
    - Bodies are deep-copied on the way in and out; callers never share state

How to change safely:
    - Keep interface compatible with DocumentStore protocol
    - Testing helpers live at the bottom and must not be used by server code
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import defaultdict
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from .base import (
    Document,
    DocumentFilter,
    DocumentStoreConnectionError,
    VersionConflictError,
)

logger = logging.getLogger(__name__)


class InMemoryDocumentStore:
    """In-memory implementation of DocumentStore.

    Documents live in a dict keyed by (collection, tenant_id) and then by
    document key.

    Thread safety:
        Uses an asyncio lock around every mutation. Safe to use from
        multiple coroutines on one event loop.

    Example:
        >>> store = InMemoryDocumentStore()
        >>> await store.connect()
        >>> await store.insert("entities", "t1", "k1", {"type": "K8S_POD"})
        >>> async for doc in store.find("entities", "t1"):
        ...     print(doc.key)
    """

    def __init__(self) -> None:
        self._data: Dict[Tuple[str, str], Dict[str, Document]] = defaultdict(dict)
        self._connected = False
        self._lock = asyncio.Lock()
        self._injected_failure: Optional[Exception] = None

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryDocumentStore connected")

    async def close(self) -> None:
        """Close and clear all data."""
        self._connected = False
        self._data.clear()
        logger.debug("InMemoryDocumentStore closed")

    async def ping(self) -> None:
        self._check()

    async def get(self, collection: str, tenant_id: str, key: str) -> Optional[Document]:
        self._check()
        doc = self._data.get((collection, tenant_id), {}).get(key)
        return _copy(doc) if doc else None

    async def insert(
        self,
        collection: str,
        tenant_id: str,
        key: str,
        body: Dict[str, Any],
    ) -> Document:
        self._check()
        async with self._lock:
            docs = self._data[(collection, tenant_id)]
            if key in docs:
                raise VersionConflictError(collection, key, None)
            doc = Document(collection, tenant_id, key, 1, copy.deepcopy(body))
            docs[key] = doc
        logger.debug(
            "Document inserted",
            extra={"collection": collection, "tenant_id": tenant_id, "key": key},
        )
        return _copy(doc)

    async def replace(
        self,
        collection: str,
        tenant_id: str,
        key: str,
        body: Dict[str, Any],
        expected_version: int,
    ) -> Document:
        self._check()
        async with self._lock:
            docs = self._data[(collection, tenant_id)]
            current = docs.get(key)
            if current is None or current.version != expected_version:
                raise VersionConflictError(collection, key, expected_version)
            doc = Document(collection, tenant_id, key, expected_version + 1, copy.deepcopy(body))
            docs[key] = doc
        return _copy(doc)

    async def delete(self, collection: str, tenant_id: str, key: str) -> bool:
        self._check()
        async with self._lock:
            docs = self._data.get((collection, tenant_id))
            if not docs or key not in docs:
                return False
            del docs[key]
            return True

    async def find(
        self,
        collection: str,
        tenant_id: str,
        doc_filter: Optional[DocumentFilter] = None,
        limit: Optional[int] = None,
    ) -> AsyncIterator[Document]:
        """Stream matching documents.

        Takes a snapshot of the tenant's collection when iteration starts;
        documents written afterwards are not observed.
        """
        self._check()
        async with self._lock:
            snapshot = list(self._data.get((collection, tenant_id), {}).values())

        emitted = 0
        for doc in snapshot:
            if limit is not None and emitted >= limit:
                return
            if doc_filter is None or doc_filter.matches(doc.body):
                emitted += 1
                yield _copy(doc)
                # Yield control so long scans stay cancellable
                await asyncio.sleep(0)

    def _check(self) -> None:
        if self._injected_failure is not None:
            failure, self._injected_failure = self._injected_failure, None
            raise failure
        if not self._connected:
            raise DocumentStoreConnectionError("Not connected")

    # Testing helpers

    def inject_failure(self, exception: Exception) -> None:
        """Make the next store operation raise ``exception`` (testing helper)."""
        self._injected_failure = exception

    def get_all_documents(self, collection: str) -> List[Document]:
        """Get all documents of a collection across tenants (testing helper)."""
        docs: List[Document] = []
        for (coll, _tenant), by_key in self._data.items():
            if coll == collection:
                docs.extend(_copy(d) for d in by_key.values())
        return docs

    def get_document_count(self, collection: str, tenant_id: Optional[str] = None) -> int:
        """Count documents of a collection, optionally for one tenant (testing helper)."""
        count = 0
        for (coll, tenant), by_key in self._data.items():
            if coll == collection and (tenant_id is None or tenant == tenant_id):
                count += len(by_key)
        return count


def _copy(doc: Document) -> Document:
    return Document(doc.collection, doc.tenant_id, doc.key, doc.version, copy.deepcopy(doc.body))
