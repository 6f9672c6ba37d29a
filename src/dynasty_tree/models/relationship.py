"""Directed, typed relationship edges."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field

from .ids import utcnow, uuid7


class RelationshipType(str, Enum):
    """Stored edge types. ``(A, B, parent)`` reads "A is a parent of B"."""

    PARENT = "parent"
    CHILD = "child"
    SPOUSE = "spouse"

    @property
    def inverse(self) -> RelationshipType:
        return INVERSE_TYPES[self]


# Consulted by every write: each edge must be stored with its inverse.
INVERSE_TYPES: dict[RelationshipType, RelationshipType] = {
    RelationshipType.PARENT: RelationshipType.CHILD,
    RelationshipType.CHILD: RelationshipType.PARENT,
    RelationshipType.SPOUSE: RelationshipType.SPOUSE,
}

EdgeKey = tuple[UUID, UUID, RelationshipType]


class Relationship(BaseModel):
    """One directed edge scoped to a tree; unique per (tree, from, to, type)."""

    relationship_id: UUID = Field(default_factory=uuid7)
    tree_id: UUID
    from_member_id: UUID
    to_member_id: UUID
    relationship_type: RelationshipType
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def key(self) -> EdgeKey:
        return (self.from_member_id, self.to_member_id, self.relationship_type)

    def inverse_key(self) -> EdgeKey:
        return (self.to_member_id, self.from_member_id, self.relationship_type.inverse)

    def inverse(self) -> Relationship:
        """Build (unsaved) the mandatory counterpart of this edge."""
        return Relationship(
            tree_id=self.tree_id,
            from_member_id=self.to_member_id,
            to_member_id=self.from_member_id,
            relationship_type=self.relationship_type.inverse,
        )
