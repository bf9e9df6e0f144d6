"""
Data module for the entity service.

This module provides:
- Identity derivation (tenant, type, identifying values -> entity id)
- Entity and relationship records and their query filters
- EntityStore and RelationshipStore on top of the document store
"""

from .entity_store import EntityStore
from .identity import canonical_value_bytes, derive_entity_id, encode_varint, identity_bytes
from .models import (
    ENTITIES_COLLECTION,
    RELATIONSHIPS_COLLECTION,
    Entity,
    EntityQuery,
    EntityRelationship,
    RelationshipKey,
    RelationshipQuery,
    RelationshipResult,
)
from .relationship_store import RelationshipStore

__all__ = [
    # Identity
    "derive_entity_id",
    "identity_bytes",
    "canonical_value_bytes",
    "encode_varint",
    # Records
    "Entity",
    "EntityQuery",
    "EntityRelationship",
    "RelationshipKey",
    "RelationshipQuery",
    "RelationshipResult",
    "ENTITIES_COLLECTION",
    "RELATIONSHIPS_COLLECTION",
    # Stores
    "EntityStore",
    "RelationshipStore",
]
