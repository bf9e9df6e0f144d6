"""
Schema types for the entity service SDK.

This module provides the client-side view of the type system:
- AttributeKind: value kinds an attribute may hold
- AttributeType / attribute(): one declared attribute
- EntityType: ordered attribute declarations under a tenant-unique name
- TypedValue: an attribute value tagged with its kind

The wire form matches the server's JSON messages, so declarations built
here round-trip through UpsertEntityType / GetEntityType unchanged. The
server remains the authority: these checks only fail obviously bad input
early, with ValueError.

Invariants:
    - Every entity type declares at least one identifying attribute
    - Attribute order is significant (identity is derived in declared order)
    - double values are finite floats; -0.0 is sent as 0.0
    - bool is never accepted where a number is expected (and vice versa)

Example:
    >>> Pod = EntityType(
    ...     name="K8S_POD",
    ...     attributes=(
    ...         attribute("external_id", "string", identifying=True),
    ...         attribute("phase", "string"),
    ...     ),
    ... )
"""

from __future__ import annotations

import base64
import math
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class AttributeKind(Enum):
    """Supported attribute value kinds."""

    STRING = "string"
    INT64 = "int64"
    DOUBLE = "double"
    BOOL = "bool"
    BYTES = "bytes"
    TIMESTAMP = "timestamp"  # Signed nanoseconds since the Unix epoch

    @classmethod
    def from_str(cls, value: str) -> AttributeKind:
        """Convert string to AttributeKind."""
        for kind in cls:
            if kind.value == value:
                return kind
        raise ValueError(f"Invalid attribute kind: {value}")


@dataclass(frozen=True)
class AttributeType:
    """Attribute declaration within an entity type.

    Attributes:
        name: Attribute name
        kind: Value kind
        identifying: Whether the value participates in the entity id
    """

    name: str
    kind: AttributeKind
    identifying: bool = False

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Attribute name cannot be empty")

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "kind": self.kind.value, "identifying": self.identifying}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AttributeType:
        return cls(
            name=data["name"],
            kind=AttributeKind.from_str(data["kind"]),
            identifying=bool(data.get("identifying", False)),
        )


def attribute(name: str, kind: str | AttributeKind, *, identifying: bool = False) -> AttributeType:
    """Convenience function to create an AttributeType."""
    if isinstance(kind, str):
        kind = AttributeKind.from_str(kind)
    return AttributeType(name=name, kind=kind, identifying=identifying)


@dataclass(frozen=True)
class EntityType:
    """Entity type declaration.

    Attributes:
        name: Type name, unique within a tenant
        attributes: Ordered attribute declarations
    """

    name: str
    attributes: tuple[AttributeType, ...] = dataclass_field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Entity type name cannot be empty")
        names = [a.name for a in self.attributes]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate attribute names in entity type '{self.name}'")
        if not any(a.identifying for a in self.attributes):
            raise ValueError(
                f"Entity type '{self.name}' must declare at least one identifying attribute"
            )

    @property
    def identifying_attributes(self) -> tuple[AttributeType, ...]:
        return tuple(a for a in self.attributes if a.identifying)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "attributes": [a.to_dict() for a in self.attributes]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EntityType:
        return cls(
            name=data["name"],
            attributes=tuple(AttributeType.from_dict(a) for a in data.get("attributes") or []),
        )


@dataclass(frozen=True)
class TypedValue:
    """An attribute value tagged with its kind.

    Example:
        >>> TypedValue.of("pod-a") == TypedValue.string("pod-a")
        True
    """

    kind: AttributeKind
    value: Any

    def __post_init__(self) -> None:
        ok, value = _check_value(self.kind, self.value)
        if not ok:
            raise ValueError(f"Value {self.value!r} is not a valid {self.kind.value}")
        object.__setattr__(self, "value", value)

    @classmethod
    def string(cls, value: str) -> TypedValue:
        return cls(AttributeKind.STRING, value)

    @classmethod
    def int64(cls, value: int) -> TypedValue:
        return cls(AttributeKind.INT64, value)

    @classmethod
    def double(cls, value: float) -> TypedValue:
        return cls(AttributeKind.DOUBLE, value)

    @classmethod
    def boolean(cls, value: bool) -> TypedValue:
        return cls(AttributeKind.BOOL, value)

    @classmethod
    def binary(cls, value: bytes) -> TypedValue:
        return cls(AttributeKind.BYTES, value)

    @classmethod
    def timestamp(cls, value: int | datetime) -> TypedValue:
        """Timestamp from nanoseconds since the epoch or an aware datetime."""
        if isinstance(value, datetime):
            if value.tzinfo is None:
                raise ValueError("Timestamp datetimes must be timezone-aware")
            value = (value - _EPOCH) // timedelta(microseconds=1) * 1000
        return cls(AttributeKind.TIMESTAMP, value)

    @classmethod
    def of(cls, value: Any) -> TypedValue:
        """Infer the kind from a plain Python value."""
        if isinstance(value, TypedValue):
            return value
        if isinstance(value, bool):
            return cls.boolean(value)
        if isinstance(value, int):
            return cls.int64(value)
        if isinstance(value, float):
            return cls.double(value)
        if isinstance(value, str):
            return cls.string(value)
        if isinstance(value, (bytes, bytearray)):
            return cls.binary(bytes(value))
        if isinstance(value, datetime):
            return cls.timestamp(value)
        raise ValueError(f"Cannot infer attribute kind for {type(value).__name__}")

    def to_dict(self) -> dict[str, Any]:
        value = self.value
        if self.kind == AttributeKind.BYTES:
            value = base64.b64encode(value).decode("ascii")
        return {"kind": self.kind.value, "value": value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TypedValue:
        kind = AttributeKind.from_str(data["kind"])
        value = data["value"]
        if kind == AttributeKind.BYTES:
            value = base64.b64decode(value)
        return cls(kind, value)


def _check_value(kind: AttributeKind, value: Any) -> tuple[bool, Any]:
    if isinstance(value, bool):
        return kind == AttributeKind.BOOL, value
    if kind == AttributeKind.STRING:
        return isinstance(value, str), value
    if kind in (AttributeKind.INT64, AttributeKind.TIMESTAMP):
        return isinstance(value, int) and INT64_MIN <= value <= INT64_MAX, value
    if kind == AttributeKind.DOUBLE:
        if not isinstance(value, (int, float)):
            return False, value
        try:
            value = float(value)
        except OverflowError:
            return False, value
        return math.isfinite(value), value + 0.0
    if kind == AttributeKind.BYTES and isinstance(value, (bytes, bytearray)):
        return True, bytes(value)
    return False, value


def attributes_to_dict(attributes: dict[str, TypedValue]) -> dict[str, dict[str, Any]]:
    return {name: value.to_dict() for name, value in attributes.items()}


def attributes_from_dict(data: dict[str, Any] | None) -> dict[str, TypedValue]:
    return {name: TypedValue.from_dict(value) for name, value in (data or {}).items()}
