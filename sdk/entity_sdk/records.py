"""
Records returned by the entity service.

Entity, EntityRelationship and RelationshipResult mirror the JSON messages
of EntityDataService. Timestamps are Unix milliseconds assigned by the
server.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .schema import TypedValue, attributes_from_dict, attributes_to_dict


@dataclass
class Entity:
    """An entity.

    Attributes:
        tenant_id: Owning tenant
        entity_type: Declared type name
        attributes: Attribute map
        entity_id: Server-derived id (empty before the first upsert)
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
            "id": self.entity_id,
            "type": self.entity_type,
            "name": self.name,
            "attributes": attributes_to_dict(self.attributes),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Entity:
        return cls(
            tenant_id=data.get("tenant_id", ""),
            entity_type=data.get("type", ""),
            attributes=attributes_from_dict(data.get("attributes")),
            entity_id=data.get("id", ""),
            name=data.get("name", ""),
            created_at=int(data.get("created_at") or 0),
            updated_at=int(data.get("updated_at") or 0),
        )


@dataclass
class EntityRelationship:
    """A directed, typed edge between two entity ids."""

    tenant_id: str
    relationship_type: str
    from_entity_id: str
    to_entity_id: str
    created_at: int = 0
    updated_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.relationship_type,
            "from_id": self.from_entity_id,
            "to_id": self.to_entity_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> EntityRelationship:
        return cls(
            tenant_id=data.get("tenant_id", ""),
            relationship_type=data.get("type", ""),
            from_entity_id=data.get("from_id", ""),
            to_entity_id=data.get("to_id", ""),
            created_at=int(data.get("created_at") or 0),
            updated_at=int(data.get("updated_at") or 0),
        )


@dataclass
class RelationshipResult:
    """Outcome of one record of a relationship batch upsert."""

    index: int
    success: bool
    relationship: Optional[EntityRelationship] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

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
