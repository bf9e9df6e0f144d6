"""
Relationship Store: directed, typed edges between entity ids.

A relationship is unique per (tenant, type, from_id, to_id). Upserting an
existing edge only touches updated_at. Edges are not checked against the
entity store; dangling ids are allowed.

Invariants:
    - Batch upserts are per-record, never atomic; one bad record does not
      fail its neighbours
    - Result vectors have exactly one entry per input record, in input order
    - Cancellation stops the batch; records already written stay written
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import AsyncIterator, List, Optional, Sequence

from ..docstore import DocumentStore, VersionConflictError
from ..errors import ConcurrentModificationError, EntityServiceError, InvalidArgumentError
from ..schema.registry import MAX_CAS_ATTEMPTS, now_ms
from .models import (
    RELATIONSHIPS_COLLECTION,
    EntityRelationship,
    RelationshipKey,
    RelationshipQuery,
    RelationshipResult,
)

logger = logging.getLogger(__name__)


class RelationshipStore:
    """Tenant-scoped relationship persistence."""

    def __init__(self, store: DocumentStore, clock: Callable[[], int] = now_ms) -> None:
        self.store = store
        self._clock = clock

    async def upsert(
        self,
        tenant_id: str,
        relationships: Sequence[EntityRelationship],
    ) -> List[RelationshipResult]:
        """Upsert a batch of relationships.

        Args:
            tenant_id: Tenant identifier
            relationships: Records to upsert

        Returns:
            One RelationshipResult per input record, in input order

        Raises:
            InvalidArgumentError: If tenant_id is empty (whole batch rejected)
        """
        _require_tenant(tenant_id)
        results: List[RelationshipResult] = []

        for index, relationship in enumerate(relationships):
            try:
                stored = await self._upsert_one(tenant_id, relationship)
            except EntityServiceError as e:
                logger.debug(
                    "Relationship upsert failed",
                    extra={"tenant_id": tenant_id, "index": index, "error_kind": e.code},
                )
                results.append(RelationshipResult(
                    index=index,
                    success=False,
                    error_kind=e.code,
                    error_message=e.message,
                ))
            else:
                results.append(RelationshipResult(index=index, success=True, relationship=stored))

        failed = sum(1 for r in results if not r.success)
        logger.info(
            "Upserted relationships",
            extra={"tenant_id": tenant_id, "count": len(results), "failed": failed},
        )
        return results

    async def _upsert_one(
        self,
        tenant_id: str,
        relationship: EntityRelationship,
    ) -> EntityRelationship:
        key = relationship.key
        key.validate()
        doc_key = key.doc_key()

        for _attempt in range(MAX_CAS_ATTEMPTS):
            doc = await self.store.get(RELATIONSHIPS_COLLECTION, tenant_id, doc_key)
            now = self._clock()
            record = EntityRelationship(
                tenant_id=tenant_id,
                relationship_type=key.relationship_type,
                from_entity_id=key.from_entity_id,
                to_entity_id=key.to_entity_id,
                created_at=now,
                updated_at=now,
            )
            try:
                if doc is None:
                    await self.store.insert(
                        RELATIONSHIPS_COLLECTION, tenant_id, doc_key, record.to_dict()
                    )
                else:
                    record.created_at = doc.body.get("created_at", now)
                    await self.store.replace(
                        RELATIONSHIPS_COLLECTION, tenant_id, doc_key, record.to_dict(), doc.version
                    )
            except VersionConflictError:
                continue
            return record

        raise ConcurrentModificationError(RELATIONSHIPS_COLLECTION, doc_key, MAX_CAS_ATTEMPTS)

    async def query(
        self,
        tenant_id: str,
        query: Optional[RelationshipQuery] = None,
        limit: Optional[int] = None,
    ) -> AsyncIterator[EntityRelationship]:
        """Stream relationships matching a conjunctive filter."""
        _require_tenant(tenant_id)
        if limit is not None and limit < 0:
            raise InvalidArgumentError("limit must be non-negative")
        doc_filter = (query or RelationshipQuery()).to_filter()

        documents = self.store.find(RELATIONSHIPS_COLLECTION, tenant_id, doc_filter, limit=limit)
        try:
            async for doc in documents:
                yield EntityRelationship.from_dict(doc.body, tenant_id=doc.tenant_id)
        finally:
            await documents.aclose()

    async def delete(self, tenant_id: str, key: RelationshipKey) -> bool:
        """Delete a relationship by natural key. Idempotent."""
        _require_tenant(tenant_id)
        key.validate()
        deleted = await self.store.delete(RELATIONSHIPS_COLLECTION, tenant_id, key.doc_key())
        if deleted:
            logger.debug(
                "Deleted relationship",
                extra={"tenant_id": tenant_id, "type": key.relationship_type},
            )
        return deleted


def _require_tenant(tenant_id: str) -> None:
    if not tenant_id:
        raise InvalidArgumentError("tenant_id is required")
