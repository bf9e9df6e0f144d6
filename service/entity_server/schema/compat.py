"""
Entity type evolution checking.

A stored entity type may only grow by appending non-identifying attributes.
Everything else would make existing entity ids undefined or reinterpret
stored values:

- Appending a non-identifying attribute: allowed
- Appending an identifying attribute: forbidden (identifying set changes)
- Removing, renaming or reordering attributes: forbidden
- Changing an attribute's kind or identifying flag: forbidden

Invariants:
    - The stored attribute list is always a prefix of the new list
    - An identical re-declaration produces no changes

Example:
    >>> changes = check_evolution(stored_type, requested_type)
    >>> breaking = [c for c in changes if c.is_breaking]
    >>> if breaking:
    ...     raise InvalidTypeEvolutionError(stored_type.name, [str(c) for c in breaking])
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import List, Optional

from ..errors import InvalidTypeEvolutionError
from .types import EntityType

logger = logging.getLogger(__name__)


class ChangeKind(Enum):
    """Types of entity type changes."""
    # Allowed
    ATTRIBUTE_APPENDED = auto()

    # Forbidden
    IDENTIFYING_ATTRIBUTE_ADDED = auto()
    IDENTIFYING_ATTRIBUTE_REMOVED = auto()
    IDENTIFYING_ATTRIBUTE_RENAMED = auto()
    IDENTIFYING_FLAG_CHANGED = auto()
    ATTRIBUTE_REMOVED = auto()
    ATTRIBUTE_RENAMED = auto()
    ATTRIBUTE_REORDERED = auto()
    ATTRIBUTE_KIND_CHANGED = auto()

    @property
    def is_breaking(self) -> bool:
        return self is not ChangeKind.ATTRIBUTE_APPENDED


@dataclass
class TypeChange:
    """A single difference between a stored and a requested entity type.

    Attributes:
        kind: The type of change
        path: Path to the changed element (e.g. "K8S_POD.external_id")
        old_value: Previous value (if applicable)
        new_value: New value (if applicable)
        message: Human-readable description of the change
    """
    kind: ChangeKind
    path: str
    old_value: Optional[object] = None
    new_value: Optional[object] = None
    message: str = ""

    @property
    def is_breaking(self) -> bool:
        return self.kind.is_breaking

    def __str__(self) -> str:
        status = "BREAKING" if self.is_breaking else "OK"
        return f"[{status}] {self.kind.name}: {self.path} - {self.message}"


def check_evolution(old: EntityType, new: EntityType) -> List[TypeChange]:
    """Compare a stored entity type with a requested re-declaration.

    Args:
        old: The stored type
        new: The requested type (same name)

    Returns:
        List of TypeChange objects; empty if the declarations are identical
    """
    changes: List[TypeChange] = []
    old_names = {a.name for a in old.attributes}
    new_names = {a.name for a in new.attributes}

    for index, old_attr in enumerate(old.attributes):
        path = f"{old.name}.{old_attr.name}"

        if index >= len(new.attributes):
            if old_attr.name in new_names:
                changes.append(_reordered(path, old_attr.name, index))
                continue
            kind = (
                ChangeKind.IDENTIFYING_ATTRIBUTE_REMOVED
                if old_attr.identifying
                else ChangeKind.ATTRIBUTE_REMOVED
            )
            changes.append(TypeChange(
                kind=kind,
                path=path,
                old_value=old_attr.name,
                message=f"Attribute '{old_attr.name}' was removed",
            ))
            continue

        new_attr = new.attributes[index]

        if new_attr.name != old_attr.name:
            if new_attr.name in old_names or old_attr.name in new_names:
                changes.append(_reordered(path, old_attr.name, index))
            else:
                kind = (
                    ChangeKind.IDENTIFYING_ATTRIBUTE_RENAMED
                    if old_attr.identifying
                    else ChangeKind.ATTRIBUTE_RENAMED
                )
                changes.append(TypeChange(
                    kind=kind,
                    path=path,
                    old_value=old_attr.name,
                    new_value=new_attr.name,
                    message=f"Attribute '{old_attr.name}' renamed to '{new_attr.name}'",
                ))
            continue

        if new_attr.kind != old_attr.kind:
            changes.append(TypeChange(
                kind=ChangeKind.ATTRIBUTE_KIND_CHANGED,
                path=path,
                old_value=old_attr.kind.value,
                new_value=new_attr.kind.value,
                message=f"Kind changed from {old_attr.kind.value} to {new_attr.kind.value}",
            ))

        if new_attr.identifying != old_attr.identifying:
            changes.append(TypeChange(
                kind=ChangeKind.IDENTIFYING_FLAG_CHANGED,
                path=path,
                old_value=old_attr.identifying,
                new_value=new_attr.identifying,
                message=(
                    f"Attribute '{old_attr.name}' "
                    + ("became identifying" if new_attr.identifying else "is no longer identifying")
                ),
            ))

    for new_attr in new.attributes[len(old.attributes):]:
        if new_attr.name in old_names:
            # Already reported as a reorder above
            continue
        path = f"{new.name}.{new_attr.name}"
        if new_attr.identifying:
            changes.append(TypeChange(
                kind=ChangeKind.IDENTIFYING_ATTRIBUTE_ADDED,
                path=path,
                new_value=new_attr.name,
                message=f"Identifying attribute '{new_attr.name}' cannot be added",
            ))
        else:
            changes.append(TypeChange(
                kind=ChangeKind.ATTRIBUTE_APPENDED,
                path=path,
                new_value=new_attr.name,
                message=f"Attribute '{new_attr.name}' appended",
            ))

    return changes


def ensure_compatible(old: EntityType, new: EntityType) -> List[TypeChange]:
    """Check evolution and raise on any breaking change.

    Returns:
        The (non-breaking) changes

    Raises:
        InvalidTypeEvolutionError: If any change is breaking
    """
    changes = check_evolution(old, new)
    breaking = [c for c in changes if c.is_breaking]
    if breaking:
        logger.debug(
            "Rejected entity type evolution",
            extra={"type": new.name, "changes": [str(c) for c in breaking]},
        )
        raise InvalidTypeEvolutionError(new.name, [str(c) for c in breaking])
    return changes


def _reordered(path: str, name: str, index: int) -> TypeChange:
    return TypeChange(
        kind=ChangeKind.ATTRIBUTE_REORDERED,
        path=path,
        old_value=index,
        message=f"Attribute '{name}' moved from position {index}",
    )
