"""
Error types for the entity service.

Every failure the core can report is a subclass of EntityServiceError and
carries a stable ``code`` (the error kind surfaced at the RPC boundary):

- UNAUTHENTICATED: missing tenant
- INVALID_ARGUMENT: malformed request
- UNKNOWN_TYPE: entity type not registered for the tenant
- INVALID_TYPE_EVOLUTION: attempt to change a declared type
- IDENTITY_INCOMPLETE: missing or mistyped identifying attributes
- IDENTITY_CONFLICT: hash collision on distinct identifying tuples
- NOT_FOUND: entity, type or relationship absent
- TYPE_IN_USE: type delete blocked by live entities
- CONCURRENT_MODIFICATION: compare-and-set loop exhausted
- STORE_UNAVAILABLE: document store I/O failure
- INTERNAL: any unclassified fault

Invariants:
    - Error codes are part of the wire contract; never rename them
    - Validation and identity errors are final, callers must not retry them
    - Only STORE_UNAVAILABLE is safe for callers to retry with backoff
"""

from __future__ import annotations

from typing import Any


class EntityServiceError(Exception):
    """Base exception for all entity service errors.

    Attributes:
        message: Error message
        code: Error kind for programmatic handling
        details: Additional error context
    """

    code = "INTERNAL"
    retryable = False

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class UnauthenticatedError(EntityServiceError):
    """Request carried no tenant identifier."""

    code = "UNAUTHENTICATED"


class InvalidArgumentError(EntityServiceError, ValueError):
    """Request is malformed.

    Raised when:
    - A required field is missing or empty
    - An attribute kind is unknown
    - A typed value does not match its declared kind
    """

    code = "INVALID_ARGUMENT"


class UnknownTypeError(EntityServiceError):
    """Entity type is not registered for the tenant."""

    code = "UNKNOWN_TYPE"

    def __init__(self, tenant_id: str, type_name: str) -> None:
        super().__init__(
            f"Entity type '{type_name}' is not registered for tenant '{tenant_id}'",
            details={"tenant_id": tenant_id, "type": type_name},
        )
        self.tenant_id = tenant_id
        self.type_name = type_name


class InvalidTypeEvolutionError(EntityServiceError):
    """Entity type change is not an append of non-identifying attributes.

    Attributes:
        changes: Human-readable descriptions of the rejected changes
    """

    code = "INVALID_TYPE_EVOLUTION"

    def __init__(self, type_name: str, changes: list[str]) -> None:
        super().__init__(
            f"Entity type '{type_name}' cannot evolve this way: " + "; ".join(changes),
            details={"type": type_name, "changes": changes},
        )
        self.type_name = type_name
        self.changes = changes


class IdentityIncompleteError(EntityServiceError):
    """Identifying attributes are missing or have the wrong kind."""

    code = "IDENTITY_INCOMPLETE"

    def __init__(self, type_name: str, problems: list[str]) -> None:
        super().__init__(
            f"Identifying attributes of '{type_name}' are incomplete: " + "; ".join(problems),
            details={"type": type_name, "problems": problems},
        )
        self.type_name = type_name
        self.problems = problems


class IdentityConflictError(EntityServiceError):
    """Two distinct identifying tuples derived the same entity id.

    This can only happen on a hash collision and is treated as fatal.
    """

    code = "IDENTITY_CONFLICT"


class NotFoundError(EntityServiceError):
    """Resource not found.

    Attributes:
        resource_type: Kind of resource ("entity", "entity_type", ...)
        resource_id: Identifier that did not resolve
    """

    code = "NOT_FOUND"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        super().__init__(
            f"{resource_type} '{resource_id}' not found",
            details={"resource_type": resource_type, "resource_id": resource_id},
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class TypeInUseError(EntityServiceError):
    """Entity type cannot be deleted while entities of that type exist."""

    code = "TYPE_IN_USE"

    def __init__(self, tenant_id: str, type_name: str) -> None:
        super().__init__(
            f"Entity type '{type_name}' still has entities in tenant '{tenant_id}'",
            details={"tenant_id": tenant_id, "type": type_name},
        )
        self.tenant_id = tenant_id
        self.type_name = type_name


class ConcurrentModificationError(EntityServiceError):
    """Compare-and-set loop gave up after repeated version mismatches."""

    code = "CONCURRENT_MODIFICATION"

    def __init__(self, collection: str, key: str, attempts: int) -> None:
        super().__init__(
            f"Document '{key}' in '{collection}' kept changing; gave up after {attempts} attempts",
            details={"collection": collection, "key": key, "attempts": attempts},
        )
        self.attempts = attempts


class StoreUnavailableError(EntityServiceError):
    """Underlying document store failed an I/O operation.

    Never retried internally; callers retry with backoff.
    """

    code = "STORE_UNAVAILABLE"
    retryable = True


class InternalError(EntityServiceError):
    """Unclassified fault."""

    code = "INTERNAL"
