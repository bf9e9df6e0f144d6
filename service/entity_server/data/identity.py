"""
Entity identity derivation.

An entity id is a pure function of (tenant, entity type, identifying values):

    tenant ∥ 0x00 ∥ type-name ∥ 0x00 ∥
        for each identifying attribute, in declared order:
            kind-tag ∥ length-varint ∥ value-bytes ∥ 0x00

hashed with SHA-256, truncated to 128 bits and rendered as a lowercase
hyphenated UUID (8-4-4-4-12).

Value bytes:
    string      UTF-8
    int64       8 bytes, little-endian, signed
    double      8 bytes, little-endian IEEE-754
    bool        1 byte (0x00 or 0x01)
    bytes       verbatim
    timestamp   signed nanoseconds, 8 bytes, little-endian

Invariants:
    - Deterministic and stable across processes and versions
    - Presentation order of the attribute map never matters
    - Non-identifying attributes never influence the id

How to change safely:
    - Never. Any change to this layout orphans every stored entity.
"""

from __future__ import annotations

import hashlib
import struct
import uuid
from collections.abc import Mapping

from ..errors import IdentityIncompleteError, InvalidArgumentError
from ..schema.types import AttributeKind, EntityType
from ..schema.values import TypedValue


def encode_varint(n: int) -> bytes:
    """Unsigned LEB128."""
    if n < 0:
        raise ValueError("varint must be non-negative")
    out = bytearray()
    while True:
        byte = n & 0x7F
        n >>= 7
        if n:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def canonical_value_bytes(value: TypedValue) -> bytes:
    kind = value.kind
    if kind == AttributeKind.STRING:
        return value.value.encode("utf-8")
    if kind in (AttributeKind.INT64, AttributeKind.TIMESTAMP):
        return struct.pack("<q", value.value)
    if kind == AttributeKind.DOUBLE:
        return struct.pack("<d", value.value)
    if kind == AttributeKind.BOOL:
        return b"\x01" if value.value else b"\x00"
    if kind == AttributeKind.BYTES:
        return value.value
    raise InvalidArgumentError(f"Unsupported attribute kind {kind}")


def identifying_projection(
    entity_type: EntityType,
    attributes: Mapping[str, TypedValue],
) -> list[tuple[str, TypedValue]]:
    """Project identifying values in declared order.

    Raises:
        IdentityIncompleteError: If any identifying attribute is missing or
            has the wrong kind. All problems are reported at once.
    """
    projection: list[tuple[str, TypedValue]] = []
    problems: list[str] = []

    for attr in entity_type.identifying_attributes:
        value = attributes.get(attr.name)
        if value is None:
            problems.append(f"'{attr.name}' is missing")
        elif value.kind != attr.kind:
            problems.append(
                f"'{attr.name}' must be {attr.kind.value}, got {value.kind.value}"
            )
        else:
            projection.append((attr.name, value))

    if problems:
        raise IdentityIncompleteError(entity_type.name, problems)
    return projection


def identity_bytes(
    tenant_id: str,
    entity_type: EntityType,
    attributes: Mapping[str, TypedValue],
) -> bytes:
    """Canonical byte string hashed into the entity id."""
    if not tenant_id:
        raise InvalidArgumentError("tenant_id is required")
    if "\x00" in tenant_id:
        raise InvalidArgumentError("tenant_id cannot contain NUL")

    buf = bytearray()
    buf += tenant_id.encode("utf-8")
    buf += b"\x00"
    buf += entity_type.name.encode("utf-8")
    buf += b"\x00"
    for _name, value in identifying_projection(entity_type, attributes):
        value_bytes = canonical_value_bytes(value)
        buf.append(value.kind.tag)
        buf += encode_varint(len(value_bytes))
        buf += value_bytes
        buf += b"\x00"
    return bytes(buf)


def derive_entity_id(
    tenant_id: str,
    entity_type: EntityType,
    attributes: Mapping[str, TypedValue],
) -> str:
    """Derive the entity id for an attribute map.

    Args:
        tenant_id: Tenant identifier
        entity_type: Declared type of the entity
        attributes: Attribute map (must cover the identifying attributes)

    Returns:
        Lowercase hyphenated UUID string

    Raises:
        InvalidArgumentError: If tenant_id is empty or contains NUL
        IdentityIncompleteError: If identifying attributes are missing or mistyped

    Example:
        >>> derive_entity_id("t1", Pod, {"external_id": TypedValue.string("pod-a")})
        '3f0c...'
    """
    digest = hashlib.sha256(identity_bytes(tenant_id, entity_type, attributes)).digest()
    return str(uuid.UUID(bytes=digest[:16]))
