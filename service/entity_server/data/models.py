"""
Records and query filters for entities and entity relationships.

Document layout:

    entities (key: derived entity id):
        - tenant_id, id, type, name
        - attributes: {name: {"kind": ..., "value": ...}}
        - created_at, updated_at (Unix ms)

    entity_relationships (key: RelationshipKey.doc_key()):
        - tenant_id, type, from_id, to_id
        - created_at, updated_at (Unix ms)

The wire form used by the RPC boundary is the same as the document body.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple

from ..docstore import DocumentFilter, FieldIn
from ..errors import InvalidArgumentError
from ..schema.registry import ENTITIES_COLLECTION
from ..schema.values import TypedValue, attributes_from_dict, attributes_to_dict

RELATIONSHIPS_COLLECTION = "entity_relationships"

__all__ = [
    "ENTITIES_COLLECTION",
    "RELATIONSHIPS_COLLECTION",
    "Entity",
    "EntityQuery",
    "EntityRelationship",
    "RelationshipKey",
    "RelationshipQuery",
    "RelationshipResult",
]


@dataclass
class Entity:
    """An entity.

    Attributes:
        tenant_id: Owning tenant
        entity_type: Declared type name
        attributes: Attribute map
        entity_id: Derived id (empty on input; never client-assigned)
        name: Optional display name
        created_at: Creation timestamp (Unix ms)
        updated_at: Last update timestamp (Unix ms)
    """

    tenant_id: str
    entity_type: str
    attributes: Dict[str, TypedValue] = field(default_factory=dict)
    entity_id: str = ""
    name: str = ""
    created_at: int = 0
    updated_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "id": self.entity_id,
            "type": self.entity_type,
            "name": self.name,
            "attributes": attributes_to_dict(self.attributes),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], tenant_id: Optional[str] = None) -> Entity:
        """Build from a document body or request message.

        Args:
            data: Wire/document dictionary
            tenant_id: Overrides any tenant_id in ``data`` (request scope wins)
        """
        if not isinstance(data, dict):
            raise InvalidArgumentError("entity must be an object")
        return cls(
            tenant_id=tenant_id if tenant_id is not None else data.get("tenant_id", ""),
            entity_type=_str_field(data, "type"),
            attributes=attributes_from_dict(data.get("attributes")),
            entity_id=_str_field(data, "id"),
            name=_str_field(data, "name"),
            created_at=int(data.get("created_at") or 0),
            updated_at=int(data.get("updated_at") or 0),
        )


@dataclass(frozen=True)
class EntityQuery:
    """Conjunction of entity predicates.

    A None (or empty) predicate is not applied; an empty query matches every
    entity of the tenant.

    Attributes:
        entity_types: type in [...]
        entity_ids: id in [...]
        attributes: attribute[k] in [...] for every k
    """

    entity_types: Optional[Tuple[str, ...]] = None
    entity_ids: Optional[Tuple[str, ...]] = None
    attributes: Dict[str, Tuple[TypedValue, ...]] = field(default_factory=dict)

    def to_filter(self) -> DocumentFilter:
        doc_filter = DocumentFilter()
        if self.entity_types:
            doc_filter = doc_filter.and_(FieldIn(("type",), tuple(self.entity_types)))
        if self.entity_ids:
            doc_filter = doc_filter.and_(FieldIn(("id",), tuple(self.entity_ids)))
        for name, values in self.attributes.items():
            if values:
                doc_filter = doc_filter.and_(
                    FieldIn(("attributes", name), tuple(v.to_dict() for v in values))
                )
        return doc_filter

    def matches(self, entity: Entity) -> bool:
        return self.to_filter().matches(entity.to_dict())

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> EntityQuery:
        data = data or {}
        raw_attributes = data.get("attributes") or {}
        if not isinstance(raw_attributes, dict):
            raise InvalidArgumentError("attribute filter must be an object")
        attributes: Dict[str, Tuple[TypedValue, ...]] = {}
        for name, values in raw_attributes.items():
            if not isinstance(values, list):
                raise InvalidArgumentError(f"attribute filter '{name}' must be a list")
            attributes[name] = tuple(TypedValue.from_dict(v) for v in values)
        return cls(
            entity_types=_str_tuple(data, "types"),
            entity_ids=_str_tuple(data, "ids"),
            attributes=attributes,
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.entity_types:
            result["types"] = list(self.entity_types)
        if self.entity_ids:
            result["ids"] = list(self.entity_ids)
        if self.attributes:
            result["attributes"] = {
                name: [v.to_dict() for v in values] for name, values in self.attributes.items()
            }
        return result


@dataclass(frozen=True)
class RelationshipKey:
    """Natural key of a relationship within a tenant."""

    relationship_type: str
    from_entity_id: str
    to_entity_id: str

    def validate(self) -> None:
        missing = [
            name
            for name, value in (
                ("type", self.relationship_type),
                ("from_id", self.from_entity_id),
                ("to_id", self.to_entity_id),
            )
            if not value
        ]
        if missing:
            raise InvalidArgumentError(f"Relationship is missing {', '.join(missing)}")

    def doc_key(self) -> str:
        """Document key: SHA-256 hex of the NUL-joined key parts."""
        joined = "\x00".join((self.relationship_type, self.from_entity_id, self.to_entity_id))
        return hashlib.sha256(joined.encode("utf-8")).hexdigest()


@dataclass
class EntityRelationship:
    """A directed, typed edge between two entity ids.

    Attributes:
        tenant_id: Owning tenant
        relationship_type: Free-form type, e.g. "POD_CONTAINER"
        from_entity_id: Source entity id
        to_entity_id: Target entity id
        created_at: Creation timestamp (Unix ms)
        updated_at: Last upsert timestamp (Unix ms)
    """

    tenant_id: str
    relationship_type: str
    from_entity_id: str
    to_entity_id: str
    created_at: int = 0
    updated_at: int = 0

    @property
    def key(self) -> RelationshipKey:
        return RelationshipKey(self.relationship_type, self.from_entity_id, self.to_entity_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "type": self.relationship_type,
            "from_id": self.from_entity_id,
            "to_id": self.to_entity_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        tenant_id: Optional[str] = None,
    ) -> EntityRelationship:
        if not isinstance(data, dict):
            raise InvalidArgumentError("relationship must be an object")
        return cls(
            tenant_id=tenant_id if tenant_id is not None else data.get("tenant_id", ""),
            relationship_type=_str_field(data, "type"),
            from_entity_id=_str_field(data, "from_id"),
            to_entity_id=_str_field(data, "to_id"),
            created_at=int(data.get("created_at") or 0),
            updated_at=int(data.get("updated_at") or 0),
        )


@dataclass(frozen=True)
class RelationshipQuery:
    """Conjunction of relationship predicates; None (or empty) is the universal set."""

    relationship_types: Optional[Tuple[str, ...]] = None
    from_entity_ids: Optional[Tuple[str, ...]] = None
    to_entity_ids: Optional[Tuple[str, ...]] = None

    def to_filter(self) -> DocumentFilter:
        doc_filter = DocumentFilter()
        for path, values in (
            ("type", self.relationship_types),
            ("from_id", self.from_entity_ids),
            ("to_id", self.to_entity_ids),
        ):
            if values:
                doc_filter = doc_filter.and_(FieldIn((path,), tuple(values)))
        return doc_filter

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> RelationshipQuery:
        data = data or {}
        return cls(
            relationship_types=_str_tuple(data, "types"),
            from_entity_ids=_str_tuple(data, "from_ids"),
            to_entity_ids=_str_tuple(data, "to_ids"),
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.relationship_types:
            result["types"] = list(self.relationship_types)
        if self.from_entity_ids:
            result["from_ids"] = list(self.from_entity_ids)
        if self.to_entity_ids:
            result["to_ids"] = list(self.to_entity_ids)
        return result


@dataclass
class RelationshipResult:
    """Outcome of one record of a relationship batch upsert."""

    index: int
    success: bool
    relationship: Optional[EntityRelationship] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"index": self.index, "success": self.success}
        if self.relationship is not None:
            result["relationship"] = self.relationship.to_dict()
        if self.error_kind:
            result["error_kind"] = self.error_kind
            result["error_message"] = self.error_message or ""
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> RelationshipResult:
        relationship = data.get("relationship")
        return cls(
            index=int(data["index"]),
            success=bool(data["success"]),
            relationship=EntityRelationship.from_dict(relationship) if relationship else None,
            error_kind=data.get("error_kind"),
            error_message=data.get("error_message"),
        )


def _str_field(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise InvalidArgumentError(f"'{key}' must be a string")
    return value


def _str_tuple(data: Dict[str, Any], key: str) -> Optional[Tuple[str, ...]]:
    values = data.get(key)
    if values is None:
        return None
    if isinstance(values, str) or not isinstance(values, Sequence):
        raise InvalidArgumentError(f"'{key}' must be a list of strings")
    if not all(isinstance(v, str) for v in values):
        raise InvalidArgumentError(f"'{key}' must be a list of strings")
    return tuple(values)
