"""
Base protocol and types for the document store abstraction.

This module defines the DocumentStore protocol that all engines must
implement, along with the document, filter and error types they share.

Invariants:
    - Every document is addressed by (collection, tenant_id, key)
    - version starts at 1 and increases by exactly 1 on every replace
    - replace() is a compare-and-set on version; it never overwrites blindly
    - find() only ever returns documents of the requested tenant

How to change safely:
    - Protocol changes require updating all engines
    - Filters must keep conjunction semantics; engines may pre-filter but the
      final decision is DocumentFilter.matches()
    - Keep bodies JSON-serializable; the SQLite engine stores them as text
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Dict,
    Optional,
    Protocol,
    Tuple,
    runtime_checkable,
)

from ..errors import StoreUnavailableError

if TYPE_CHECKING:
    from ..config import ServerConfig

logger = logging.getLogger(__name__)

_MISSING = object()


class DocumentStoreError(StoreUnavailableError):
    """Base exception for document store I/O failures."""
    pass


class DocumentStoreConnectionError(DocumentStoreError):
    """Connection to the document store failed or was never opened."""
    pass


class DocumentSerializationError(DocumentStoreError):
    """Failed to serialize/deserialize a document body."""
    pass


class VersionConflictError(Exception):
    """Compare-and-set lost: the stored version is not the expected one.

    Attributes:
        collection: Collection name
        key: Document key
        expected_version: Version the caller read (None for insert)
    """

    def __init__(self, collection: str, key: str, expected_version: Optional[int]) -> None:
        self.collection = collection
        self.key = key
        self.expected_version = expected_version
        super().__init__(
            f"Version conflict on {collection}/{key} (expected {expected_version})"
        )


@dataclass(frozen=True)
class Document:
    """A stored document.

    Attributes:
        collection: Logical collection name
        tenant_id: Owning tenant
        key: Primary key within (collection, tenant_id)
        version: Monotonic version used for compare-and-set
        body: JSON-compatible document body
    """
    collection: str
    tenant_id: str
    key: str
    version: int
    body: Dict[str, Any]

    def __str__(self) -> str:
        return f"Document({self.collection}/{self.tenant_id}/{self.key}@v{self.version})"


def resolve_path(body: Dict[str, Any], path: Tuple[str, ...]) -> Any:
    """Walk ``path`` through nested dicts; returns _MISSING if absent."""
    current: Any = body
    for segment in path:
        if not isinstance(current, dict) or segment not in current:
            return _MISSING
        current = current[segment]
    return current


@dataclass(frozen=True)
class FieldIn:
    """Predicate: the value at ``path`` equals one of ``values``.

    Path segments are taken literally, so attribute names containing dots
    are safe. An absent field never matches.

    Attributes:
        path: Segments leading into the document body
        values: Accepted values (compared with ==)
    """
    path: Tuple[str, ...]
    values: Tuple[Any, ...]

    def matches(self, body: Dict[str, Any]) -> bool:
        value = resolve_path(body, self.path)
        if value is _MISSING:
            return False
        return any(_json_equal(value, candidate) for candidate in self.values)


@dataclass(frozen=True)
class DocumentFilter:
    """Conjunction of FieldIn predicates. An empty filter matches everything."""
    predicates: Tuple[FieldIn, ...] = field(default_factory=tuple)

    def matches(self, body: Dict[str, Any]) -> bool:
        return all(p.matches(body) for p in self.predicates)

    def and_(self, predicate: FieldIn) -> DocumentFilter:
        return DocumentFilter(self.predicates + (predicate,))

    @property
    def is_empty(self) -> bool:
        return not self.predicates


def _json_equal(a: Any, b: Any) -> bool:
    # bool is an int subclass in Python; JSON keeps them apart
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(_json_equal(a[k], b[k]) for k in a)
    if isinstance(a, list) and isinstance(b, list):
        return len(a) == len(b) and all(_json_equal(x, y) for x, y in zip(a, b))
    return a == b


def encode_body(body: Dict[str, Any]) -> str:
    """Serialize a body to canonical JSON text."""
    try:
        return json.dumps(body, sort_keys=True, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as e:
        raise DocumentSerializationError(f"Document body is not JSON-serializable: {e}")


def decode_body(text: str) -> Dict[str, Any]:
    """Parse stored JSON text back into a body."""
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise DocumentSerializationError(f"Stored document body is not valid JSON: {e}")


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol for document store engines.

    Concurrency contract:
        - Safe for concurrent use by many request coroutines
        - insert() and replace() are atomic per document
        - replace() succeeds only if the stored version equals expected_version

    Cancellation contract:
        - Cancelling the awaiting task aborts the in-flight call
        - Closing or cancelling a find() iterator releases its cursor

    Example:
        >>> store = InMemoryDocumentStore()
        >>> await store.connect()
        >>> doc = await store.insert("entities", "tenant_1", "abc", {"name": "x"})
        >>> doc = await store.replace("entities", "tenant_1", "abc", {"name": "y"}, doc.version)
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the store.

        Raises:
            DocumentStoreConnectionError: If the engine cannot be opened
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release all resources held by the store."""
        ...

    @abstractmethod
    async def ping(self) -> None:
        """Check that the engine is reachable.

        Raises:
            DocumentStoreError: If the engine does not answer
        """
        ...

    @abstractmethod
    async def get(self, collection: str, tenant_id: str, key: str) -> Optional[Document]:
        """Fetch one document, or None if absent."""
        ...

    @abstractmethod
    async def insert(
        self,
        collection: str,
        tenant_id: str,
        key: str,
        body: Dict[str, Any],
    ) -> Document:
        """Create a document at version 1.

        Raises:
            VersionConflictError: If the key already exists
        """
        ...

    @abstractmethod
    async def replace(
        self,
        collection: str,
        tenant_id: str,
        key: str,
        body: Dict[str, Any],
        expected_version: int,
    ) -> Document:
        """Overwrite a document if its version is still expected_version.

        Raises:
            VersionConflictError: If the version moved or the document vanished
        """
        ...

    @abstractmethod
    async def delete(self, collection: str, tenant_id: str, key: str) -> bool:
        """Delete a document. Returns True iff something was removed."""
        ...

    @abstractmethod
    def find(
        self,
        collection: str,
        tenant_id: str,
        doc_filter: Optional[DocumentFilter] = None,
        limit: Optional[int] = None,
    ) -> AsyncIterator[Document]:
        """Stream documents of a tenant matching a filter.

        The iterator is lazy, finite and not restartable. Order is unspecified.
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether the store is open."""
        ...


def create_document_store(config: "ServerConfig") -> DocumentStore:
    """Factory function to create a document store from configuration.

    Args:
        config: Server configuration

    Returns:
        Appropriate DocumentStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StorageBackend
    from .memory import InMemoryDocumentStore
    from .sqlite import SqliteDocumentStore

    if config.storage.backend == StorageBackend.SQLITE:
        return SqliteDocumentStore(
            data_dir=config.storage.data_dir,
            database_name=config.storage.database_name,
            busy_timeout_ms=config.storage.busy_timeout_ms,
            batch_size=config.storage.cursor_batch_size,
        )
    elif config.storage.backend == StorageBackend.MEMORY:
        return InMemoryDocumentStore()
    else:
        raise ValueError(f"Unsupported storage backend: {config.storage.backend}")
