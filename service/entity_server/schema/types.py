"""
Core type definitions for the entity type system.

This module defines the declared schema of entities:
- AttributeKind: the value kinds an attribute may hold
- AttributeType: one declared attribute (name, kind, identifying flag)
- EntityType: an ordered list of attribute types under a tenant-unique name

Invariants:
    - Every entity type declares at least one identifying attribute
    - Attribute names are distinct within a type
    - Attribute order is significant: identity is derived in declared order
    - AttributeKind tags are part of the identity byte layout and never change

How to change safely:
    - New kinds need a new, never-used tag
    - Never renumber or reuse a tag
    - Evolution of a stored type is checked by schema.compat

Example:
    >>> from service.entity_server.schema.types import EntityType, attribute
    >>> Pod = EntityType(
    ...     name="K8S_POD",
    ...     attributes=(
    ...         attribute("external_id", "string", identifying=True),
    ...         attribute("labels", "string"),
    ...     ),
    ... )
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field as dataclass_field
from enum import Enum
from typing import Any

from ..errors import InvalidArgumentError


class AttributeKind(Enum):
    """Supported attribute value kinds.

    The value is the wire name; ``tag`` is the one-byte identity tag.
    """

    STRING = "string"
    INT64 = "int64"
    DOUBLE = "double"
    BOOL = "bool"
    BYTES = "bytes"
    TIMESTAMP = "timestamp"  # Signed nanoseconds since the Unix epoch

    @property
    def tag(self) -> int:
        return _KIND_TAGS[self]

    @classmethod
    def from_str(cls, value: str) -> AttributeKind:
        """Convert string representation to AttributeKind.

        Args:
            value: Wire name of the kind

        Returns:
            Corresponding AttributeKind

        Raises:
            InvalidArgumentError: If value is not a valid kind
        """
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise InvalidArgumentError(f"Invalid attribute kind '{value}'. Valid kinds: {valid}")


_KIND_TAGS = {
    AttributeKind.STRING: 1,
    AttributeKind.INT64: 2,
    AttributeKind.DOUBLE: 3,
    AttributeKind.BOOL: 4,
    AttributeKind.BYTES: 5,
    AttributeKind.TIMESTAMP: 6,
}


@dataclass(frozen=True)
class AttributeType:
    """Definition of a single attribute within an entity type.

    Attributes:
        name: Attribute name (the key in an entity's attribute map)
        kind: Value kind
        identifying: Whether the value participates in the entity id
    """

    name: str
    kind: AttributeKind
    identifying: bool = False

    def __post_init__(self) -> None:
        if not self.name:
            raise InvalidArgumentError("Attribute name cannot be empty")
        if not isinstance(self.kind, AttributeKind):
            raise InvalidArgumentError(f"Attribute '{self.name}' has no valid kind")

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "identifying": self.identifying,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AttributeType:
        if not isinstance(data, dict):
            raise InvalidArgumentError("Attribute type must be an object")
        kind = data.get("kind")
        if not isinstance(kind, str):
            raise InvalidArgumentError(f"Attribute '{data.get('name')}' is missing its kind")
        return cls(
            name=data.get("name") or "",
            kind=AttributeKind.from_str(kind),
            identifying=bool(data.get("identifying", False)),
        )


def attribute(name: str, kind: str | AttributeKind, *, identifying: bool = False) -> AttributeType:
    """Convenience function to create an AttributeType.

    Example:
        >>> external_id = attribute("external_id", "string", identifying=True)
    """
    if isinstance(kind, str):
        kind = AttributeKind.from_str(kind)
    return AttributeType(name=name, kind=kind, identifying=identifying)


@dataclass(frozen=True)
class EntityType:
    """Declared schema of an entity.

    Attributes:
        name: Type name, unique within a tenant
        attributes: Ordered attribute declarations

    Invariants:
        - At least one attribute is identifying
        - Attribute names are distinct
        - The identifying set never changes once stored

    Example:
        >>> Container = EntityType(
        ...     name="DOCKER_CONTAINER",
        ...     attributes=(attribute("external_id", "string", identifying=True),),
        ... )
        >>> [a.name for a in Container.identifying_attributes]
        ['external_id']
    """

    name: str
    attributes: tuple[AttributeType, ...] = dataclass_field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not self.name:
            raise InvalidArgumentError("Entity type name cannot be empty")
        if "\x00" in self.name:
            raise InvalidArgumentError("Entity type name cannot contain NUL")

        names = [a.name for a in self.attributes]
        if len(names) != len(set(names)):
            duplicates = sorted({n for n in names if names.count(n) > 1})
            raise InvalidArgumentError(
                f"Duplicate attribute names in entity type '{self.name}': {duplicates}"
            )

        if not any(a.identifying for a in self.attributes):
            raise InvalidArgumentError(
                f"Entity type '{self.name}' must declare at least one identifying attribute"
            )

    @property
    def identifying_attributes(self) -> tuple[AttributeType, ...]:
        """Identifying attributes in declared order."""
        return tuple(a for a in self.attributes if a.identifying)

    def get_attribute(self, name: str) -> AttributeType | None:
        for a in self.attributes:
            if a.name == name:
                return a
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "attributes": [a.to_dict() for a in self.attributes],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EntityType:
        if not isinstance(data, dict):
            raise InvalidArgumentError("Entity type must be an object")
        raw_attributes = data.get("attributes") or []
        if not isinstance(raw_attributes, list):
            raise InvalidArgumentError("Entity type attributes must be a list")
        return cls(
            name=data.get("name") or "",
            attributes=tuple(AttributeType.from_dict(a) for a in raw_attributes),
        )
