"""
Entity Service - multi-tenant entity and entity-relationship data service.

This package implements a gRPC service that stores typed entities and
directed typed relationships between them, backed by a document store:
- Entity types declare an ordered attribute list with identifying attributes
- Entity ids are derived from tenant + type + identifying values
- Relationships are unique per (tenant, type, from_id, to_id)

Architecture:
    ┌─────────────┐     ┌──────────────────┐     ┌───────────────────┐
    │   Client    │────▶│   gRPC server    │────▶│ EntityTypeRegistry│
    │   (SDK)     │     │ (x-tenant-id)    │     └─────────┬─────────┘
    └─────────────┘     └───────┬──────────┘               │
                                │                          ▼
                                │               ┌───────────────────┐
                                ├──────────────▶│   EntityStore     │
                                │               └─────────┬─────────┘
                                │               ┌─────────┴─────────┐
                                └──────────────▶│ RelationshipStore │
                                                └─────────┬─────────┘
                                                          ▼
                                        ┌─────────────────────────────────┐
                                        │  DocumentStore (memory/SQLite)  │
                                        └─────────────────────────────────┘

Invariants:
    - Every persisted record carries its tenant_id; no operation crosses tenants
    - Entity ids are never client-assigned
    - The identifying attribute set of an entity type never changes

How to change safely:
    - Entity type evolution is append-only for non-identifying attributes
    - Never change the identity byte layout; existing ids would no longer resolve
    - New document store engines must implement the DocumentStore protocol

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
