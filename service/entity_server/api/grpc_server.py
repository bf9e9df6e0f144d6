"""
gRPC server implementation for the entity service.

Two services are exposed, both carrying JSON message bodies:

    entityservice.v1.EntityTypeService
        UpsertEntityType, GetEntityType, QueryEntityTypes, DeleteEntityType

    entityservice.v1.EntityDataService
        Upsert, Get, GetByIdentifyingAttributes, Query (server stream), Delete,
        UpsertRelationships, GetRelationships (server stream), DeleteRelationship

The tenant comes from the ``x-tenant-id`` metadata key; request bodies never
carry it. Failures abort the call with the mapped status code and set the
trailing metadata key ``x-error-kind`` to the error kind.

Invariants:
    - Every RPC requires a non-empty x-tenant-id (UNAUTHENTICATED otherwise)
    - Unary handlers and every streamed item are bounded by the RPC deadline
    - Unclassified exceptions surface as INTERNAL and are logged with traceback
    - Expected domain errors are logged at debug level only

How to change safely:
    - Add new RPCs without modifying existing ones
    - Add new message fields as optional; old clients must keep working
    - Keep ERROR_STATUS in sync with the SDK's error mapping
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, Optional, Tuple

import grpc
from grpc import aio as grpc_aio

from ..data import (
    Entity,
    EntityQuery,
    EntityRelationship,
    EntityStore,
    RelationshipKey,
    RelationshipQuery,
    RelationshipStore,
)
from ..errors import (
    EntityServiceError,
    InvalidArgumentError,
    UnauthenticatedError,
)
from ..schema import EntityType, EntityTypeRegistry, attributes_from_dict

logger = logging.getLogger(__name__)

TENANT_METADATA_KEY = "x-tenant-id"
ERROR_KIND_METADATA_KEY = "x-error-kind"

TYPE_SERVICE_NAME = "entityservice.v1.EntityTypeService"
DATA_SERVICE_NAME = "entityservice.v1.EntityDataService"

ERROR_STATUS: Dict[str, grpc.StatusCode] = {
    "UNAUTHENTICATED": grpc.StatusCode.UNAUTHENTICATED,
    "INVALID_ARGUMENT": grpc.StatusCode.INVALID_ARGUMENT,
    "UNKNOWN_TYPE": grpc.StatusCode.FAILED_PRECONDITION,
    "INVALID_TYPE_EVOLUTION": grpc.StatusCode.FAILED_PRECONDITION,
    "IDENTITY_INCOMPLETE": grpc.StatusCode.INVALID_ARGUMENT,
    "IDENTITY_CONFLICT": grpc.StatusCode.INTERNAL,
    "NOT_FOUND": grpc.StatusCode.NOT_FOUND,
    "TYPE_IN_USE": grpc.StatusCode.FAILED_PRECONDITION,
    "CONCURRENT_MODIFICATION": grpc.StatusCode.ABORTED,
    "STORE_UNAVAILABLE": grpc.StatusCode.UNAVAILABLE,
    "INTERNAL": grpc.StatusCode.INTERNAL,
}

Message = Dict[str, Any]
UnaryMethod = Callable[[str, Message], Awaitable[Message]]
StreamMethod = Callable[[str, Message], AsyncIterator[Message]]


def extract_tenant_id(metadata: Optional[Iterable[Tuple[str, Any]]]) -> str:
    """Read the tenant identifier from invocation metadata.

    Raises:
        UnauthenticatedError: If the key is absent or empty
    """
    for key, value in metadata or ():
        if key.lower() == TENANT_METADATA_KEY:
            if isinstance(value, bytes):
                value = value.decode("utf-8", errors="replace")
            tenant_id = value.strip()
            if tenant_id:
                return tenant_id
            break
    raise UnauthenticatedError(f"Missing '{TENANT_METADATA_KEY}' metadata")


def decode_message(data: bytes) -> Message:
    """Parse a JSON request body. An empty body is an empty message."""
    if not data:
        return {}
    try:
        message = json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidArgumentError(f"Request body is not valid JSON: {e}")
    if not isinstance(message, dict):
        raise InvalidArgumentError("Request body must be a JSON object")
    return message


def encode_message(message: Message) -> bytes:
    return json.dumps(message, separators=(",", ":")).encode("utf-8")


def _require_str(request: Message, key: str) -> str:
    value = request.get(key)
    if not isinstance(value, str) or not value:
        raise InvalidArgumentError(f"'{key}' is required")
    return value


def _optional_limit(request: Message) -> Optional[int]:
    limit = request.get("limit")
    if limit in (None, 0):
        return None
    if not isinstance(limit, int) or isinstance(limit, bool) or limit < 0:
        raise InvalidArgumentError("'limit' must be a non-negative integer")
    return limit


class EntityTypeServicer:
    """EntityTypeService implementation.

    Methods take the tenant and a decoded request and return a response
    message; domain errors propagate as EntityServiceError.
    """

    def __init__(self, registry: EntityTypeRegistry) -> None:
        self.registry = registry

    async def upsert_entity_type(self, tenant_id: str, request: Message) -> Message:
        raw = request.get("entity_type")
        if not isinstance(raw, dict):
            raise InvalidArgumentError("'entity_type' is required")
        stored = await self.registry.upsert_type(tenant_id, EntityType.from_dict(raw))
        return {"entity_type": stored.to_dict()}

    async def get_entity_type(self, tenant_id: str, request: Message) -> Message:
        entity_type = await self.registry.get_type(tenant_id, _require_str(request, "name"))
        return {"entity_type": entity_type.to_dict()}

    async def query_entity_types(self, tenant_id: str, request: Message) -> Message:
        entity_types = await self.registry.list_types(tenant_id)
        return {"entity_types": [t.to_dict() for t in entity_types]}

    async def delete_entity_type(self, tenant_id: str, request: Message) -> Message:
        await self.registry.delete_type(tenant_id, _require_str(request, "name"))
        return {}


class EntityDataServicer:
    """EntityDataService implementation.

    Attributes:
        entities: Entity store
        relationships: Relationship store
    """

    def __init__(self, entities: EntityStore, relationships: RelationshipStore) -> None:
        self.entities = entities
        self.relationships = relationships

    async def upsert(self, tenant_id: str, request: Message) -> Message:
        raw = request.get("entity")
        if not isinstance(raw, dict):
            raise InvalidArgumentError("'entity' is required")
        entity = await self.entities.upsert(Entity.from_dict(raw, tenant_id=tenant_id))
        return {"entity": entity.to_dict()}

    async def get(self, tenant_id: str, request: Message) -> Message:
        entity = await self.entities.get(tenant_id, _require_str(request, "id"))
        return {"entity": entity.to_dict()}

    async def get_by_identifying_attributes(self, tenant_id: str, request: Message) -> Message:
        entity = await self.entities.get_by_identifying_attributes(
            tenant_id,
            _require_str(request, "type"),
            attributes_from_dict(request.get("attributes")),
        )
        return {"entity": entity.to_dict()}

    async def query(self, tenant_id: str, request: Message) -> AsyncIterator[Message]:
        query = EntityQuery.from_dict(request.get("filter"))
        entities = self.entities.query(tenant_id, query, limit=_optional_limit(request))
        try:
            async for entity in entities:
                yield {"entity": entity.to_dict()}
        finally:
            await entities.aclose()

    async def delete(self, tenant_id: str, request: Message) -> Message:
        deleted = await self.entities.delete(tenant_id, _require_str(request, "id"))
        return {"deleted": deleted}

    async def upsert_relationships(self, tenant_id: str, request: Message) -> Message:
        raw = request.get("relationships")
        if not isinstance(raw, list):
            raise InvalidArgumentError("'relationships' must be a list")
        relationships = [EntityRelationship.from_dict(r, tenant_id=tenant_id) for r in raw]
        results = await self.relationships.upsert(tenant_id, relationships)
        return {"results": [r.to_dict() for r in results]}

    async def get_relationships(self, tenant_id: str, request: Message) -> AsyncIterator[Message]:
        query = RelationshipQuery.from_dict(request.get("filter"))
        relationships = self.relationships.query(
            tenant_id, query, limit=_optional_limit(request)
        )
        try:
            async for relationship in relationships:
                yield {"relationship": relationship.to_dict()}
        finally:
            await relationships.aclose()

    async def delete_relationship(self, tenant_id: str, request: Message) -> Message:
        key = RelationshipKey(
            relationship_type=_require_str(request, "type"),
            from_entity_id=_require_str(request, "from_id"),
            to_entity_id=_require_str(request, "to_id"),
        )
        deleted = await self.relationships.delete(tenant_id, key)
        return {"deleted": deleted}


async def _abort(context: grpc_aio.ServicerContext, method: str, error: Exception) -> None:
    """Abort the RPC with the status mapped from ``error``. Never returns."""
    if isinstance(error, EntityServiceError):
        kind = error.code
        message = error.message
        if kind == "INTERNAL" or kind == "IDENTITY_CONFLICT":
            logger.error(
                f"{method} failed: {message}",
                extra={"method": method, "error_kind": kind},
                exc_info=error,
            )
        else:
            logger.debug(
                f"{method} rejected: {message}",
                extra={"method": method, "error_kind": kind},
            )
        status = ERROR_STATUS.get(kind, grpc.StatusCode.INTERNAL)
    elif isinstance(error, asyncio.TimeoutError):
        kind = "DEADLINE_EXCEEDED"
        message = "Deadline exceeded"
        status = grpc.StatusCode.DEADLINE_EXCEEDED
        logger.debug(f"{method} exceeded its deadline", extra={"method": method})
    else:
        kind = "INTERNAL"
        message = "Internal error"
        status = grpc.StatusCode.INTERNAL
        logger.error(
            f"{method} failed: {error}",
            extra={"method": method, "error_kind": kind},
            exc_info=error,
        )
    await context.abort(status, message, trailing_metadata=((ERROR_KIND_METADATA_KEY, kind),))


def unary_handler(method: str, func: UnaryMethod) -> grpc.RpcMethodHandler:
    """Wrap a servicer coroutine as a unary-unary gRPC handler."""

    async def handle(request: bytes, context: grpc_aio.ServicerContext) -> bytes:
        try:
            tenant_id = extract_tenant_id(context.invocation_metadata())
            message = decode_message(request)
            response = await asyncio.wait_for(
                func(tenant_id, message), timeout=context.time_remaining()
            )
        except Exception as e:
            await _abort(context, method, e)
        return encode_message(response)

    return grpc.unary_unary_rpc_method_handler(handle)


def stream_handler(method: str, func: StreamMethod) -> grpc.RpcMethodHandler:
    """Wrap a servicer async generator as a unary-stream gRPC handler.

    Each item is fetched under the remaining deadline. The generator is
    closed when the call ends, which releases the store cursor.
    """

    async def handle(request: bytes, context: grpc_aio.ServicerContext) -> None:
        try:
            tenant_id = extract_tenant_id(context.invocation_metadata())
            message = decode_message(request)
        except EntityServiceError as e:
            await _abort(context, method, e)

        items = func(tenant_id, message)
        count = 0
        try:
            while True:
                try:
                    item = await asyncio.wait_for(
                        items.__anext__(), timeout=context.time_remaining()
                    )
                except StopAsyncIteration:
                    break
                await context.write(encode_message(item))
                count += 1
        except Exception as e:
            await _abort(context, method, e)
        finally:
            await items.aclose()
        logger.debug(
            f"{method} streamed {count} items",
            extra={"method": method, "tenant_id": tenant_id, "count": count},
        )

    return grpc.unary_stream_rpc_method_handler(handle)


def build_handlers(
    type_servicer: EntityTypeServicer,
    data_servicer: EntityDataServicer,
) -> list[grpc.GenericRpcHandler]:
    """Generic handlers for both services."""
    type_methods = {
        "UpsertEntityType": unary_handler(
            "UpsertEntityType", type_servicer.upsert_entity_type
        ),
        "GetEntityType": unary_handler("GetEntityType", type_servicer.get_entity_type),
        "QueryEntityTypes": unary_handler("QueryEntityTypes", type_servicer.query_entity_types),
        "DeleteEntityType": unary_handler("DeleteEntityType", type_servicer.delete_entity_type),
    }
    data_methods = {
        "Upsert": unary_handler("Upsert", data_servicer.upsert),
        "Get": unary_handler("Get", data_servicer.get),
        "GetByIdentifyingAttributes": unary_handler(
            "GetByIdentifyingAttributes", data_servicer.get_by_identifying_attributes
        ),
        "Query": stream_handler("Query", data_servicer.query),
        "Delete": unary_handler("Delete", data_servicer.delete),
        "UpsertRelationships": unary_handler(
            "UpsertRelationships", data_servicer.upsert_relationships
        ),
        "GetRelationships": stream_handler("GetRelationships", data_servicer.get_relationships),
        "DeleteRelationship": unary_handler(
            "DeleteRelationship", data_servicer.delete_relationship
        ),
    }
    return [
        grpc.method_handlers_generic_handler(TYPE_SERVICE_NAME, type_methods),
        grpc.method_handlers_generic_handler(DATA_SERVICE_NAME, data_methods),
    ]


class GrpcServer:
    """gRPC server wrapper for the entity service.

    This class manages the gRPC server lifecycle including:
    - Server initialization
    - Service registration
    - Graceful shutdown

    Example:
        >>> server = GrpcServer(type_servicer, data_servicer, port=50061)
        >>> await server.start()
        >>> # Server is now running
        >>> await server.stop()
    """

    def __init__(
        self,
        type_servicer: EntityTypeServicer,
        data_servicer: EntityDataServicer,
        host: str = "0.0.0.0",
        port: int = 50061,
        max_message_size: int = 16 * 1024 * 1024,
    ) -> None:
        """Initialize the gRPC server.

        Args:
            type_servicer: EntityTypeService implementation
            data_servicer: EntityDataService implementation
            host: Host to bind to
            port: Port to listen on (0 picks an ephemeral port)
            max_message_size: Maximum send/receive message size in bytes
        """
        self.type_servicer = type_servicer
        self.data_servicer = data_servicer
        self.host = host
        self.port = port
        self.max_message_size = max_message_size
        self._server: Optional[grpc_aio.Server] = None
        self._running = False

    async def start(self) -> None:
        """Bind and start serving.

        Raises:
            RuntimeError: If the address cannot be bound
        """
        if self._running:
            logger.warning("Server already running")
            return

        server = grpc_aio.server(
            options=[
                ("grpc.max_send_message_length", self.max_message_size),
                ("grpc.max_receive_message_length", self.max_message_size),
            ],
        )
        server.add_generic_rpc_handlers(build_handlers(self.type_servicer, self.data_servicer))

        address = f"{self.host}:{self.port}"
        bound_port = server.add_insecure_port(address)
        if bound_port == 0:
            raise RuntimeError(f"Could not bind gRPC server to {address}")
        self.port = bound_port

        await server.start()
        self._server = server
        self._running = True
        logger.info(
            f"gRPC server listening on {self.host}:{self.port}",
            extra={"host": self.host, "port": self.port},
        )

    async def stop(self, grace_period: float = 5.0) -> None:
        """Stop the gRPC server gracefully.

        Args:
            grace_period: Time to wait for pending RPCs to complete
        """
        if not self._running:
            return

        logger.info("Stopping gRPC server")
        self._running = False

        if self._server:
            await self._server.stop(grace_period)
            self._server = None

    async def wait_for_termination(self) -> None:
        if self._server:
            await self._server.wait_for_termination()

    @property
    def is_running(self) -> bool:
        """Whether the server is running."""
        return self._running
