"""
API module for the entity service.

This module provides the external interface: a gRPC server hosting the
EntityTypeService and EntityDataService with JSON message bodies.

Invariants:
    - All operations require the x-tenant-id metadata key
    - Errors surface as gRPC status codes plus the x-error-kind trailer

How to change safely:
    - gRPC changes must be backward compatible
    - Add new RPC methods, don't modify existing ones
"""

from .grpc_server import (
    DATA_SERVICE_NAME,
    ERROR_KIND_METADATA_KEY,
    ERROR_STATUS,
    TENANT_METADATA_KEY,
    TYPE_SERVICE_NAME,
    EntityDataServicer,
    EntityTypeServicer,
    GrpcServer,
    build_handlers,
    decode_message,
    encode_message,
    extract_tenant_id,
)

__all__ = [
    "GrpcServer",
    "EntityTypeServicer",
    "EntityDataServicer",
    "build_handlers",
    "extract_tenant_id",
    "decode_message",
    "encode_message",
    "TENANT_METADATA_KEY",
    "ERROR_KIND_METADATA_KEY",
    "ERROR_STATUS",
    "TYPE_SERVICE_NAME",
    "DATA_SERVICE_NAME",
]
