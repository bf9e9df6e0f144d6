"""
Entity service Python SDK - client library for the entity service.

This SDK provides:
- EntityClient for connecting to the server
- SDK error classes mirroring the server's error kinds
- Schema and record types used in requests and responses

Example:
    >>> from entity_sdk import EntityClient, EntityType, attribute
    >>>
    >>> Pod = EntityType("K8S_POD", (
    ...     attribute("external_id", "string", identifying=True),
    ...     attribute("phase", "string"),
    ... ))
    >>>
    >>> async with EntityClient("localhost:50061") as client:
    ...     await client.upsert_entity_type("tenant_1", Pod)
    ...     pod = await client.upsert("tenant_1", "K8S_POD", {"external_id": "pod-a"})

Invariants:
    - Entity ids are derived by the server and never chosen by the client
    - Every call is scoped to one tenant
"""

from .client import EntityClient
from .errors import (
    ConcurrentModificationError,
    ConnectionError,
    DeadlineExceededError,
    EntityClientError,
    IdentityConflictError,
    IdentityIncompleteError,
    InternalError,
    InvalidArgumentError,
    InvalidTypeEvolutionError,
    NotFoundError,
    StoreUnavailableError,
    TypeInUseError,
    UnauthenticatedError,
    UnknownTypeError,
)
from .records import Entity, EntityRelationship, RelationshipResult
from .schema import AttributeKind, AttributeType, EntityType, TypedValue, attribute

__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Client
    "EntityClient",
    # Records
    "AttributeKind",
    "AttributeType",
    "EntityType",
    "attribute",
    "TypedValue",
    "Entity",
    "EntityRelationship",
    "RelationshipResult",
    # Errors
    "EntityClientError",
    "ConnectionError",
    "UnauthenticatedError",
    "InvalidArgumentError",
    "UnknownTypeError",
    "InvalidTypeEvolutionError",
    "IdentityIncompleteError",
    "IdentityConflictError",
    "NotFoundError",
    "TypeInUseError",
    "ConcurrentModificationError",
    "StoreUnavailableError",
    "DeadlineExceededError",
    "InternalError",
]
