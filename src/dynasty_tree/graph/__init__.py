"""Relationship graph: write-path consistency and read-path projection."""

from .consistency import RelationshipEngine, RemovalResult, parse_relationship_type
from .models import NodeRef, ProjectedNode, Projection, RelType
from .projection import ProjectionBuilder

__all__ = [
    "NodeRef",
    "ProjectedNode",
    "Projection",
    "ProjectionBuilder",
    "RelType",
    "RelationshipEngine",
    "RemovalResult",
    "parse_relationship_type",
]
