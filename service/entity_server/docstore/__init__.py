"""
Document store abstraction for the entity service.

This module provides a pluggable persistence interface supporting:
- SQLite (single-node persistent deployments)
- In-memory (tests and local development)

Both engines store JSON documents addressed by (collection, tenant_id, key)
and offer per-document compare-and-set through a monotonic version.

Invariants:
    - No call ever reads or writes another tenant's documents
    - replace() never succeeds against a stale version
    - I/O failures surface as DocumentStoreError (a StoreUnavailableError)

How to change safely:
    - New engines must implement the DocumentStore protocol
    - Run the shared docstore unit tests against every engine
"""

from .base import (
    Document,
    DocumentFilter,
    DocumentSerializationError,
    DocumentStore,
    DocumentStoreConnectionError,
    DocumentStoreError,
    FieldIn,
    VersionConflictError,
    create_document_store,
)
from .memory import InMemoryDocumentStore
from .sqlite import SqliteDocumentStore

__all__ = [
    # Protocol and types
    "DocumentStore",
    "Document",
    "DocumentFilter",
    "FieldIn",
    "DocumentStoreError",
    "DocumentStoreConnectionError",
    "DocumentSerializationError",
    "VersionConflictError",
    # Factory
    "create_document_store",
    # Implementations
    "InMemoryDocumentStore",
    "SqliteDocumentStore",
]
