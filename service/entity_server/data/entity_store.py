"""
Entity Store: upsert, lookup, query and delete of tenant entities.

Upsert flow:
    1. Resolve the entity type from the registry (UnknownTypeError if absent)
    2. Validate declared attribute kinds; undeclared attributes pass through
    3. Derive the entity id from the identifying projection
    4. Insert, or merge into the stored record with compare-and-set

Merge rules:
    - Attribute map is merged right-biased: incoming keys replace stored ones
    - Identifying values must be identical, otherwise the derived id collided
      (IdentityConflictError, fatal)
    - created_at is kept, updated_at is set to now
    - An empty incoming name keeps the stored name

Invariants:
    - Entity ids are never client-assigned
    - Store failures propagate unmodified and are never retried here
    - Only VersionConflictError is retried, at most MAX_CAS_ATTEMPTS times
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import AsyncIterator, Dict, Mapping, Optional

from ..docstore import Document, DocumentStore, VersionConflictError
from ..errors import (
    ConcurrentModificationError,
    IdentityConflictError,
    InvalidArgumentError,
    NotFoundError,
    UnknownTypeError,
)
from ..schema.registry import (
    MAX_CAS_ATTEMPTS,
    EntityTypeRegistry,
    entities_of_type_exist,
    now_ms,
)
from ..schema.types import EntityType
from ..schema.values import TypedValue
from .identity import derive_entity_id, identifying_projection
from .models import ENTITIES_COLLECTION, Entity, EntityQuery

logger = logging.getLogger(__name__)


class EntityStore:
    """Tenant-scoped entity persistence.

    Attributes:
        store: Document store holding the entities collection
        registry: Entity type registry consulted on every upsert
    """

    def __init__(
        self,
        store: DocumentStore,
        registry: EntityTypeRegistry,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.registry = registry
        self._clock = clock

    async def resolve_id(
        self,
        tenant_id: str,
        type_name: str,
        attributes: Mapping[str, TypedValue],
    ) -> str:
        """Derive the id an entity with these attributes has (or would have).

        Raises:
            InvalidArgumentError: If tenant or type name is empty
            UnknownTypeError: If the type is not registered
            IdentityIncompleteError: If identifying attributes are missing or mistyped
        """
        entity_type = await self._resolve_type(tenant_id, type_name)
        return derive_entity_id(tenant_id, entity_type, attributes)

    async def upsert(self, entity: Entity) -> Entity:
        """Create or merge an entity.

        Args:
            entity: Incoming record; entity_id may be empty

        Returns:
            The stored record after the merge

        Raises:
            InvalidArgumentError: On malformed input or a mismatching client id
            UnknownTypeError: If the type is not registered
            IdentityIncompleteError: If identifying attributes are missing or mistyped
            IdentityConflictError: If the derived id belongs to another identity
            ConcurrentModificationError: If the compare-and-set loop is exhausted
            StoreUnavailableError: On document store failure
        """
        tenant_id = entity.tenant_id
        entity_type = await self._resolve_type(tenant_id, entity.entity_type)
        _check_declared_kinds(entity_type, entity.attributes)

        entity_id = derive_entity_id(tenant_id, entity_type, entity.attributes)
        if entity.entity_id and entity.entity_id != entity_id:
            raise InvalidArgumentError(
                f"Entity id '{entity.entity_id}' does not match derived id '{entity_id}'",
                details={"derived_id": entity_id},
            )

        for attempt in range(MAX_CAS_ATTEMPTS):
            doc = await self.store.get(ENTITIES_COLLECTION, tenant_id, entity_id)
            now = self._clock()

            if doc is None:
                created = Entity(
                    tenant_id=tenant_id,
                    entity_type=entity_type.name,
                    attributes=dict(entity.attributes),
                    entity_id=entity_id,
                    name=entity.name,
                    created_at=now,
                    updated_at=now,
                )
                try:
                    await self.store.insert(
                        ENTITIES_COLLECTION, tenant_id, entity_id, created.to_dict()
                    )
                except VersionConflictError:
                    continue
                logger.debug(
                    "Created entity",
                    extra={"tenant_id": tenant_id, "type": entity_type.name, "id": entity_id},
                )
                return created

            stored = Entity.from_dict(doc.body)
            _check_same_identity(entity_type, stored, entity)

            merged = Entity(
                tenant_id=tenant_id,
                entity_type=entity_type.name,
                attributes={**stored.attributes, **entity.attributes},
                entity_id=entity_id,
                name=entity.name or stored.name,
                created_at=stored.created_at,
                updated_at=now,
            )
            try:
                await self.store.replace(
                    ENTITIES_COLLECTION, tenant_id, entity_id, merged.to_dict(), doc.version
                )
            except VersionConflictError:
                logger.debug(
                    "Entity changed under upsert, retrying",
                    extra={"tenant_id": tenant_id, "id": entity_id, "attempt": attempt + 1},
                )
                continue
            return merged

        raise ConcurrentModificationError(ENTITIES_COLLECTION, entity_id, MAX_CAS_ATTEMPTS)

    async def get(self, tenant_id: str, entity_id: str) -> Entity:
        """Get an entity by id.

        Raises:
            NotFoundError: If no such entity exists in the tenant
        """
        _require(tenant_id, "tenant_id")
        _require(entity_id, "id")
        doc = await self.store.get(ENTITIES_COLLECTION, tenant_id, entity_id)
        if doc is None:
            raise NotFoundError("entity", entity_id)
        return _from_document(doc)

    async def get_by_identifying_attributes(
        self,
        tenant_id: str,
        type_name: str,
        attributes: Mapping[str, TypedValue],
    ) -> Entity:
        """Get an entity by its identifying attributes.

        Extra non-identifying attributes in ``attributes`` are ignored.

        Raises:
            UnknownTypeError: If the type is not registered
            IdentityIncompleteError: If identifying attributes are missing or mistyped
            NotFoundError: If no such entity exists
        """
        entity_id = await self.resolve_id(tenant_id, type_name, attributes)
        return await self.get(tenant_id, entity_id)

    async def query(
        self,
        tenant_id: str,
        query: Optional[EntityQuery] = None,
        limit: Optional[int] = None,
    ) -> AsyncIterator[Entity]:
        """Stream entities matching a conjunctive filter.

        The stream is lazy, finite and not restartable. Closing it releases
        the underlying cursor.
        """
        _require(tenant_id, "tenant_id")
        if limit is not None and limit < 0:
            raise InvalidArgumentError("limit must be non-negative")
        doc_filter = (query or EntityQuery()).to_filter()

        documents = self.store.find(ENTITIES_COLLECTION, tenant_id, doc_filter, limit=limit)
        try:
            async for doc in documents:
                yield _from_document(doc)
        finally:
            await documents.aclose()

    async def delete(self, tenant_id: str, entity_id: str) -> bool:
        """Delete an entity. Idempotent; returns True iff something was removed."""
        _require(tenant_id, "tenant_id")
        _require(entity_id, "id")
        deleted = await self.store.delete(ENTITIES_COLLECTION, tenant_id, entity_id)
        if deleted:
            logger.debug("Deleted entity", extra={"tenant_id": tenant_id, "id": entity_id})
        return deleted

    async def exists_of_type(self, tenant_id: str, type_name: str) -> bool:
        _require(tenant_id, "tenant_id")
        return await entities_of_type_exist(self.store, tenant_id, type_name)

    async def _resolve_type(self, tenant_id: str, type_name: str) -> EntityType:
        _require(tenant_id, "tenant_id")
        _require(type_name, "type")
        entity_type = await self.registry.find_type(tenant_id, type_name)
        if entity_type is None:
            raise UnknownTypeError(tenant_id, type_name)
        return entity_type


def _check_declared_kinds(entity_type: EntityType, attributes: Dict[str, TypedValue]) -> None:
    # Identifying attributes are reported by the projection as IdentityIncomplete
    for attr in entity_type.attributes:
        if attr.identifying:
            continue
        value = attributes.get(attr.name)
        if value is not None and value.kind != attr.kind:
            raise InvalidArgumentError(
                f"Attribute '{attr.name}' of '{entity_type.name}' must be "
                f"{attr.kind.value}, got {value.kind.value}",
                details={"attribute": attr.name},
            )


def _check_same_identity(entity_type: EntityType, stored: Entity, incoming: Entity) -> None:
    if stored.entity_type == entity_type.name and identifying_projection(
        entity_type, stored.attributes
    ) == identifying_projection(entity_type, incoming.attributes):
        return
    logger.error(
        "Entity id collision between distinct identities",
        extra={"tenant_id": incoming.tenant_id, "id": stored.entity_id, "type": entity_type.name},
    )
    raise IdentityConflictError(
        f"Entity id '{stored.entity_id}' is already held by a different identity",
        details={"id": stored.entity_id, "type": entity_type.name},
    )


def _from_document(doc: Document) -> Entity:
    return Entity.from_dict(doc.body, tenant_id=doc.tenant_id)


def _require(value: str, name: str) -> None:
    if not value:
        raise InvalidArgumentError(f"{name} is required")
