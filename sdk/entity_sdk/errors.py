"""
Error types for the entity service SDK.

Every failed call raises a subclass of EntityClientError. The class is
chosen from the ``x-error-kind`` trailer the server sets; calls that fail
before reaching a handler (transport errors, deadlines) fall back to the
gRPC status code.

Invariants:
    - All errors inherit from EntityClientError
    - ``code`` is the server's error kind (or the status name as fallback)
    - ``retryable`` is True only for StoreUnavailableError and ConnectionError
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Type

import grpc

ERROR_KIND_METADATA_KEY = "x-error-kind"


class EntityClientError(Exception):
    """Base exception for all SDK errors.

    Attributes:
        message: Error message
        code: Error kind for programmatic handling
        status: gRPC status code of the failed call, if any
        details: Additional error context
    """

    retryable = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status: Optional[grpc.StatusCode] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "INTERNAL"
        self.status = status
        self.details = details or {}


class ConnectionError(EntityClientError):
    """Server unreachable or the channel broke.

    Raised when:
    - Server is unreachable
    - The channel was never opened
    """

    retryable = True

    def __init__(self, message: str, address: Optional[str] = None) -> None:
        super().__init__(message, code="CONNECTION_ERROR", details={"address": address})
        self.address = address


class UnauthenticatedError(EntityClientError):
    """No tenant was supplied."""


class InvalidArgumentError(EntityClientError):
    """Request was malformed."""


class UnknownTypeError(EntityClientError):
    """Entity type is not registered for the tenant."""


class InvalidTypeEvolutionError(EntityClientError):
    """Entity type change was rejected."""


class IdentityIncompleteError(EntityClientError):
    """Identifying attributes were missing or mistyped."""


class IdentityConflictError(EntityClientError):
    """Derived id collided with a different identity."""


class NotFoundError(EntityClientError):
    """Entity, type or relationship absent."""


class TypeInUseError(EntityClientError):
    """Type still has entities."""


class ConcurrentModificationError(EntityClientError):
    """Server gave up after repeated concurrent updates; safe to retry the call."""


class StoreUnavailableError(EntityClientError):
    """Server's document store failed; retry with backoff."""

    retryable = True


class DeadlineExceededError(EntityClientError):
    """Call did not complete before its deadline."""


class CancelledError(EntityClientError):
    """Call was cancelled."""


class InternalError(EntityClientError):
    """Unclassified server fault."""


ERROR_CLASSES: Dict[str, Type[EntityClientError]] = {
    "UNAUTHENTICATED": UnauthenticatedError,
    "INVALID_ARGUMENT": InvalidArgumentError,
    "UNKNOWN_TYPE": UnknownTypeError,
    "INVALID_TYPE_EVOLUTION": InvalidTypeEvolutionError,
    "IDENTITY_INCOMPLETE": IdentityIncompleteError,
    "IDENTITY_CONFLICT": IdentityConflictError,
    "NOT_FOUND": NotFoundError,
    "TYPE_IN_USE": TypeInUseError,
    "CONCURRENT_MODIFICATION": ConcurrentModificationError,
    "STORE_UNAVAILABLE": StoreUnavailableError,
    "DEADLINE_EXCEEDED": DeadlineExceededError,
    "CANCELLED": CancelledError,
    "INTERNAL": InternalError,
}

# Used when the server did not set x-error-kind
STATUS_KINDS: Dict[grpc.StatusCode, str] = {
    grpc.StatusCode.UNAUTHENTICATED: "UNAUTHENTICATED",
    grpc.StatusCode.INVALID_ARGUMENT: "INVALID_ARGUMENT",
    grpc.StatusCode.NOT_FOUND: "NOT_FOUND",
    grpc.StatusCode.ABORTED: "CONCURRENT_MODIFICATION",
    grpc.StatusCode.DEADLINE_EXCEEDED: "DEADLINE_EXCEEDED",
    grpc.StatusCode.CANCELLED: "CANCELLED",
}


def error_from_rpc(error: grpc.aio.AioRpcError, address: Optional[str] = None) -> EntityClientError:
    """Translate a failed call into an SDK exception."""
    status = error.code()
    message = error.details() or status.name

    kind = None
    for key, value in error.trailing_metadata() or ():
        if key == ERROR_KIND_METADATA_KEY:
            kind = value.decode("utf-8") if isinstance(value, bytes) else value
            break

    if kind is None:
        if status == grpc.StatusCode.UNAVAILABLE:
            return ConnectionError(message, address=address)
        kind = STATUS_KINDS.get(status, "INTERNAL")

    error_class = ERROR_CLASSES.get(kind, InternalError)
    return error_class(message, code=kind, status=status)
