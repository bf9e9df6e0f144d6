"""
Entity Type Registry.

The registry is the per-tenant authority for declared entity types. It
provides:
- Upsert with evolution checking (append-only for non-identifying attributes)
- Lookup by name, listing, deletion guarded by live entities
- A read-through TTL cache keyed by (tenant_id, type name)

Types are persisted in the ``entity_types`` collection, keyed by type name.

Invariants:
    - Within a tenant, a type name maps to exactly one stored declaration
    - The identifying attribute set of a stored type never changes
    - The cache is advisory: entries expire after ttl_seconds and are
      dropped on local upsert/delete; correctness never depends on it

How to change safely:
    - Keep ttl_seconds <= 30 so other replicas observe changes quickly
    - Evolution rules live in schema.compat, not here

Example:
    >>> registry = EntityTypeRegistry(store, cache_ttl_seconds=30)
    >>> await registry.upsert_type("tenant_1", Pod)
    >>> await registry.get_type("tenant_1", "K8S_POD")
    EntityType(name='K8S_POD', ...)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Dict, List, Optional, Tuple

from ..docstore import DocumentFilter, DocumentStore, FieldIn, VersionConflictError
from ..errors import (
    ConcurrentModificationError,
    InvalidArgumentError,
    NotFoundError,
    TypeInUseError,
)
from .compat import ensure_compatible
from .types import EntityType

logger = logging.getLogger(__name__)

ENTITY_TYPES_COLLECTION = "entity_types"
ENTITIES_COLLECTION = "entities"

MAX_CAS_ATTEMPTS = 5


def now_ms() -> int:
    return int(time.time() * 1000)


class EntityTypeRegistry:
    """Per-tenant registry of entity types backed by the document store.

    Thread-safety:
        Designed for a single event loop. Concurrent upserts of the same
        type are serialized by the document store's compare-and-set.

    Attributes:
        store: Document store holding the entity_types collection
        cache_ttl_seconds: Cache entry lifetime (0 disables the cache)
    """

    def __init__(
        self,
        store: DocumentStore,
        cache_ttl_seconds: float = 30,
        clock: Callable[[], int] = now_ms,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the registry.

        Args:
            store: Document store
            cache_ttl_seconds: Read-through cache TTL in seconds (0 disables)
            clock: Wall clock in Unix ms, used for record timestamps
            monotonic: Monotonic clock in seconds, used for cache expiry
        """
        self.store = store
        self.cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock
        self._monotonic = monotonic
        self._cache: Dict[Tuple[str, str], Tuple[float, EntityType]] = {}

    async def upsert_type(self, tenant_id: str, entity_type: EntityType) -> EntityType:
        """Create or evolve an entity type.

        Args:
            tenant_id: Tenant identifier
            entity_type: Requested declaration

        Returns:
            The stored declaration after the call

        Raises:
            InvalidArgumentError: If tenant_id is empty
            InvalidTypeEvolutionError: If the change is not an append of
                non-identifying attributes
            ConcurrentModificationError: If the compare-and-set loop is exhausted
        """
        _require_tenant(tenant_id)

        for _attempt in range(MAX_CAS_ATTEMPTS):
            doc = await self.store.get(ENTITY_TYPES_COLLECTION, tenant_id, entity_type.name)
            now = self._clock()

            if doc is None:
                body = _to_body(tenant_id, entity_type, created_at=now, updated_at=now)
                try:
                    await self.store.insert(
                        ENTITY_TYPES_COLLECTION, tenant_id, entity_type.name, body
                    )
                except VersionConflictError:
                    continue
                logger.info(
                    "Registered entity type",
                    extra={"tenant_id": tenant_id, "type": entity_type.name},
                )
                self.invalidate(tenant_id, entity_type.name)
                return entity_type

            stored = EntityType.from_dict(doc.body["entity_type"])
            changes = ensure_compatible(stored, entity_type)
            if not changes:
                return stored

            body = _to_body(
                tenant_id,
                entity_type,
                created_at=doc.body.get("created_at", now),
                updated_at=now,
            )
            try:
                await self.store.replace(
                    ENTITY_TYPES_COLLECTION, tenant_id, entity_type.name, body, doc.version
                )
            except VersionConflictError:
                continue
            logger.info(
                "Evolved entity type",
                extra={
                    "tenant_id": tenant_id,
                    "type": entity_type.name,
                    "changes": [str(c) for c in changes],
                },
            )
            self.invalidate(tenant_id, entity_type.name)
            return entity_type

        raise ConcurrentModificationError(
            ENTITY_TYPES_COLLECTION, entity_type.name, MAX_CAS_ATTEMPTS
        )

    async def find_type(self, tenant_id: str, name: str) -> Optional[EntityType]:
        """Look up a type through the cache. Returns None if not registered."""
        _require_tenant(tenant_id)
        cache_key = (tenant_id, name)

        if self.cache_ttl_seconds > 0:
            cached = self._cache.get(cache_key)
            if cached is not None:
                expires_at, entity_type = cached
                if self._monotonic() < expires_at:
                    return entity_type
                del self._cache[cache_key]

        doc = await self.store.get(ENTITY_TYPES_COLLECTION, tenant_id, name)
        if doc is None:
            return None

        entity_type = EntityType.from_dict(doc.body["entity_type"])
        if self.cache_ttl_seconds > 0:
            self._cache[cache_key] = (self._monotonic() + self.cache_ttl_seconds, entity_type)
        return entity_type

    async def get_type(self, tenant_id: str, name: str) -> EntityType:
        """Get a type by name.

        Raises:
            NotFoundError: If the type is not registered for the tenant
        """
        entity_type = await self.find_type(tenant_id, name)
        if entity_type is None:
            raise NotFoundError("entity_type", name)
        return entity_type

    async def list_types(self, tenant_id: str) -> List[EntityType]:
        """List all types of a tenant. Order is unspecified."""
        _require_tenant(tenant_id)
        return [
            EntityType.from_dict(doc.body["entity_type"])
            async for doc in self.store.find(ENTITY_TYPES_COLLECTION, tenant_id)
        ]

    async def delete_type(self, tenant_id: str, name: str) -> None:
        """Delete a type.

        Raises:
            NotFoundError: If the type is not registered
            TypeInUseError: If any entity of the type exists in the tenant
        """
        _require_tenant(tenant_id)
        if await self.store.get(ENTITY_TYPES_COLLECTION, tenant_id, name) is None:
            raise NotFoundError("entity_type", name)

        if await entities_of_type_exist(self.store, tenant_id, name):
            raise TypeInUseError(tenant_id, name)

        await self.store.delete(ENTITY_TYPES_COLLECTION, tenant_id, name)
        self.invalidate(tenant_id, name)
        logger.info("Deleted entity type", extra={"tenant_id": tenant_id, "type": name})

    def invalidate(self, tenant_id: str, name: str) -> None:
        """Drop a cache entry."""
        self._cache.pop((tenant_id, name), None)


def _to_body(tenant_id: str, entity_type: EntityType, created_at: int, updated_at: int) -> dict:
    return {
        "tenant_id": tenant_id,
        "name": entity_type.name,
        "entity_type": entity_type.to_dict(),
        "created_at": created_at,
        "updated_at": updated_at,
    }


def _require_tenant(tenant_id: str) -> None:
    if not tenant_id:
        raise InvalidArgumentError("tenant_id is required")


async def entities_of_type_exist(store: DocumentStore, tenant_id: str, type_name: str) -> bool:
    """Whether at least one entity of ``type_name`` exists in the tenant."""
    entities = store.find(
        ENTITIES_COLLECTION,
        tenant_id,
        DocumentFilter((FieldIn(("type",), (type_name,)),)),
        limit=1,
    )
    try:
        async for _doc in entities:
            return True
        return False
    finally:
        await entities.aclose()
