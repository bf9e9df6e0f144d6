"""
Schema module for the entity service.

This module provides the entity type system, including:
- Type definitions (AttributeKind, AttributeType, EntityType)
- Typed attribute values (TypedValue)
- The per-tenant entity type registry
- Evolution checking for stored types

Invariants:
    - Every entity type has at least one identifying attribute
    - The identifying attribute set of a stored type never changes
    - Only non-identifying attributes may be appended to a stored type

How to change safely:
    - Declare a new type name instead of changing identifying attributes
    - Append new non-identifying attributes at the end of the list
"""

from .compat import ChangeKind, TypeChange, check_evolution, ensure_compatible
from .registry import (
    ENTITIES_COLLECTION,
    ENTITY_TYPES_COLLECTION,
    MAX_CAS_ATTEMPTS,
    EntityTypeRegistry,
    entities_of_type_exist,
    now_ms,
)
from .types import AttributeKind, AttributeType, EntityType, attribute
from .values import TypedValue, attributes_from_dict, attributes_to_dict

__all__ = [
    # Types
    "AttributeKind",
    "AttributeType",
    "EntityType",
    "attribute",
    "TypedValue",
    "attributes_to_dict",
    "attributes_from_dict",
    # Registry
    "EntityTypeRegistry",
    "ENTITY_TYPES_COLLECTION",
    "ENTITIES_COLLECTION",
    "MAX_CAS_ATTEMPTS",
    "entities_of_type_exist",
    "now_ms",
    # Evolution
    "ChangeKind",
    "TypeChange",
    "check_evolution",
    "ensure_compatible",
]
