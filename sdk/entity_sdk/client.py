"""
Entity service client for the Python SDK.

This module provides the main client interface:
- EntityClient: connection to the entity service, one method per RPC

Records (EntityType, Entity, EntityRelationship, ...) come from the SDK's
schema and records modules and follow the server's JSON wire form.

Example:
    >>> async with EntityClient("localhost:50061") as client:
    ...     await client.upsert_entity_type("tenant_1", Pod)
    ...     pod = await client.upsert("tenant_1", "K8S_POD", {"external_id": "pod-a"})
    ...     same = await client.get("tenant_1", pod.entity_id)

Invariants:
    - Every call is scoped to exactly one tenant
    - Plain Python attribute values are tagged with TypedValue.of()
    - Streams are lazy; breaking out of the loop cancels the call
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from ._grpc_client import DATA_SERVICE, TYPE_SERVICE, GrpcClient
from .errors import ConnectionError
from .records import Entity, EntityRelationship, RelationshipResult
from .schema import EntityType, TypedValue, attributes_to_dict

logger = logging.getLogger(__name__)

DEFAULT_PORT = 50061

RelationshipLike = Union[EntityRelationship, Tuple[str, str, str]]


def typed_attributes(attributes: Optional[Mapping[str, Any]]) -> dict[str, TypedValue]:
    """Tag plain Python values; TypedValue instances pass through."""
    return {name: TypedValue.of(value) for name, value in (attributes or {}).items()}


def _filter(**predicates: Optional[Iterable[str]]) -> dict[str, List[str]]:
    """Wire filter holding the predicates that were given."""
    return {key: list(values) for key, values in predicates.items() if values is not None}


class EntityClient:
    """Client for the entity service.

    Example:
        >>> async with EntityClient("localhost:50061", timeout=5.0) as client:
        ...     async for pod in client.query("tenant_1", types=["K8S_POD"]):
        ...         print(pod.entity_id)
    """

    def __init__(
        self,
        address: str,
        *,
        secure: bool = False,
        timeout: Optional[float] = None,
    ) -> None:
        """Initialize client.

        Args:
            address: Server address (host:port or just host)
            secure: Whether to use TLS
            timeout: Default per-call deadline in seconds (None = no deadline)
        """
        if ":" in address:
            host, port_str = address.rsplit(":", 1)
            port = int(port_str)
        else:
            host = address
            port = DEFAULT_PORT

        self._grpc = GrpcClient(host=host, port=port, secure=secure)
        self.timeout = timeout
        self._connected = False

    async def connect(self) -> None:
        """Connect to the server."""
        if self._connected:
            return

        try:
            await self._grpc.connect()
            self._connected = True
        except Exception as e:
            raise ConnectionError(f"Failed to connect: {e}", address=self._grpc.address) from e

    async def close(self) -> None:
        """Close the connection."""
        if self._connected:
            await self._grpc.close()
            self._connected = False

    async def __aenter__(self) -> EntityClient:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # =========================================================================
    # Entity types
    # =========================================================================

    async def upsert_entity_type(self, tenant_id: str, entity_type: EntityType) -> EntityType:
        """Create or evolve an entity type. Returns the stored declaration."""
        response = await self._type_call(
            "UpsertEntityType", tenant_id, {"entity_type": entity_type.to_dict()}
        )
        return EntityType.from_dict(response["entity_type"])

    async def get_entity_type(self, tenant_id: str, name: str) -> EntityType:
        response = await self._type_call("GetEntityType", tenant_id, {"name": name})
        return EntityType.from_dict(response["entity_type"])

    async def list_entity_types(self, tenant_id: str) -> List[EntityType]:
        response = await self._type_call("QueryEntityTypes", tenant_id, {})
        return [EntityType.from_dict(t) for t in response.get("entity_types", [])]

    async def delete_entity_type(self, tenant_id: str, name: str) -> None:
        await self._type_call("DeleteEntityType", tenant_id, {"name": name})

    # =========================================================================
    # Entities
    # =========================================================================

    async def upsert(
        self,
        tenant_id: str,
        type_name: str,
        attributes: Mapping[str, Any],
        name: str = "",
    ) -> Entity:
        """Create or merge an entity.

        Args:
            tenant_id: Tenant identifier
            type_name: Registered entity type
            attributes: Attribute values (plain Python values or TypedValue)
            name: Optional display name

        Returns:
            The stored entity after the merge
        """
        entity = Entity(
            tenant_id=tenant_id,
            entity_type=type_name,
            attributes=typed_attributes(attributes),
            name=name,
        )
        response = await self._data_call("Upsert", tenant_id, {"entity": entity.to_dict()})
        return Entity.from_dict(response["entity"])

    async def get(self, tenant_id: str, entity_id: str) -> Entity:
        response = await self._data_call("Get", tenant_id, {"id": entity_id})
        return Entity.from_dict(response["entity"])

    async def get_by_identifying_attributes(
        self,
        tenant_id: str,
        type_name: str,
        attributes: Mapping[str, Any],
    ) -> Entity:
        response = await self._data_call(
            "GetByIdentifyingAttributes",
            tenant_id,
            {"type": type_name, "attributes": attributes_to_dict(typed_attributes(attributes))},
        )
        return Entity.from_dict(response["entity"])

    async def query(
        self,
        tenant_id: str,
        *,
        types: Optional[Iterable[str]] = None,
        ids: Optional[Iterable[str]] = None,
        attributes: Optional[Mapping[str, Sequence[Any]]] = None,
        limit: Optional[int] = None,
    ) -> AsyncIterator[Entity]:
        """Stream entities matching every given predicate."""
        query_filter = _filter(types=types, ids=ids)
        if attributes:
            query_filter["attributes"] = {
                name: [TypedValue.of(v).to_dict() for v in values]
                for name, values in attributes.items()
            }
        request: dict[str, Any] = {"filter": query_filter}
        if limit is not None:
            request["limit"] = limit
        stream = self._data_stream("Query", tenant_id, request)
        try:
            async for message in stream:
                yield Entity.from_dict(message["entity"])
        finally:
            await stream.aclose()

    async def delete(self, tenant_id: str, entity_id: str) -> bool:
        response = await self._data_call("Delete", tenant_id, {"id": entity_id})
        return bool(response.get("deleted"))

    # =========================================================================
    # Relationships
    # =========================================================================

    async def upsert_relationships(
        self,
        tenant_id: str,
        relationships: Sequence[RelationshipLike],
    ) -> List[RelationshipResult]:
        """Upsert relationships; accepts records or (type, from_id, to_id) tuples.

        Returns:
            One result per input, in input order. Failed records do not raise.
        """
        records = []
        for relationship in relationships:
            if not isinstance(relationship, EntityRelationship):
                relationship_type, from_id, to_id = relationship
                relationship = EntityRelationship(tenant_id, relationship_type, from_id, to_id)
            records.append(
                {
                    "type": relationship.relationship_type,
                    "from_id": relationship.from_entity_id,
                    "to_id": relationship.to_entity_id,
                }
            )
        response = await self._data_call(
            "UpsertRelationships", tenant_id, {"relationships": records}
        )
        return [RelationshipResult.from_dict(r) for r in response.get("results", [])]

    async def get_relationships(
        self,
        tenant_id: str,
        *,
        types: Optional[Iterable[str]] = None,
        from_ids: Optional[Iterable[str]] = None,
        to_ids: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
    ) -> AsyncIterator[EntityRelationship]:
        """Stream relationships matching every given predicate."""
        request: dict[str, Any] = {
            "filter": _filter(types=types, from_ids=from_ids, to_ids=to_ids)
        }
        if limit is not None:
            request["limit"] = limit
        stream = self._data_stream("GetRelationships", tenant_id, request)
        try:
            async for message in stream:
                yield EntityRelationship.from_dict(message["relationship"])
        finally:
            await stream.aclose()

    async def delete_relationship(
        self,
        tenant_id: str,
        relationship_type: str,
        from_id: str,
        to_id: str,
    ) -> bool:
        response = await self._data_call(
            "DeleteRelationship",
            tenant_id,
            {"type": relationship_type, "from_id": from_id, "to_id": to_id},
        )
        return bool(response.get("deleted"))

    # =========================================================================
    # Transport
    # =========================================================================

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise ConnectionError("Not connected. Call connect() first.", address=self._grpc.address)

    async def _type_call(self, method: str, tenant_id: str, request: dict) -> dict:
        self._ensure_connected()
        return await self._grpc.unary(TYPE_SERVICE, method, tenant_id, request, self.timeout)

    async def _data_call(self, method: str, tenant_id: str, request: dict) -> dict:
        self._ensure_connected()
        return await self._grpc.unary(DATA_SERVICE, method, tenant_id, request, self.timeout)

    async def _data_stream(
        self,
        method: str,
        tenant_id: str,
        request: dict,
    ) -> AsyncIterator[dict]:
        self._ensure_connected()
        stream = self._grpc.stream(DATA_SERVICE, method, tenant_id, request, self.timeout)
        try:
            async for message in stream:
                yield message
        finally:
            await stream.aclose()
