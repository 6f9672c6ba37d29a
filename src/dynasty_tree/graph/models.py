"""Projected-node models consumed by hierarchical tree renderers.

The node shape follows the relatives-tree layout input: id, gender,
parents/children/siblings/spouses as ``{id, type}`` references and a free
``attributes`` mapping for display.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..exceptions import ConsistencyViolation
    from ..models.tree import FamilyTree


class RelType(str, Enum):
    """Kind of link carried by a projected reference."""
    BLOOD = "blood"
    HALF = "half"  # Sibling sharing only some parents
    MARRIED = "married"


@dataclass(frozen=True)
class NodeRef:
    """Reference from a projected node to another member."""
    id: str
    type: RelType = RelType.BLOOD

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "type": self.type.value}


@dataclass
class ProjectedNode:
    """Per-member adjacency view derived from the flat edge set."""
    id: str
    gender: str
    parents: list[NodeRef] = field(default_factory=list)
    children: list[NodeRef] = field(default_factory=list)
    siblings: list[NodeRef] = field(default_factory=list)
    spouses: list[NodeRef] = field(default_factory=list)
    is_blood_related: bool = True
    has_hidden_subtree: bool = False
    is_pending: bool = False
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def parent_ids(self) -> list[str]:
        return [ref.id for ref in self.parents]

    @property
    def child_ids(self) -> list[str]:
        return [ref.id for ref in self.children]

    @property
    def sibling_ids(self) -> list[str]:
        return [ref.id for ref in self.siblings]

    @property
    def spouse_ids(self) -> list[str]:
        return [ref.id for ref in self.spouses]

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the renderer's node shape."""
        return {
            "id": self.id,
            "gender": self.gender,
            "parents": [ref.to_dict() for ref in self.parents],
            "children": [ref.to_dict() for ref in self.children],
            "siblings": [ref.to_dict() for ref in self.siblings],
            "spouses": [ref.to_dict() for ref in self.spouses],
            "isBloodRelated": self.is_blood_related,
            "hasSubTree": self.has_hidden_subtree,
            "isPending": self.is_pending,
            "attributes": self.attributes,
        }


@dataclass
class Projection:
    """Result of projecting one tree."""
    nodes: list[ProjectedNode]
    tree: FamilyTree | None = None
    violations: list[ConsistencyViolation] = field(default_factory=list)
    focus_id: str | None = None
    depth: int | None = None
    reference_id: str | None = None

    @property
    def is_consistent(self) -> bool:
        return not self.violations

    @property
    def truncated(self) -> bool:
        """True if any rendered node hides neighbours."""
        return any(node.has_hidden_subtree for node in self.nodes)

    def node(self, member_id: Any) -> ProjectedNode | None:
        key = str(member_id)
        for node in self.nodes:
            if node.id == key:
                return node
        return None

    def as_map(self) -> dict[str, ProjectedNode]:
        return {node.id: node for node in self.nodes}

    def to_dict(self) -> dict[str, Any]:
        return {
            "tree": self.tree.model_dump(mode="json") if self.tree else None,
            "focus_id": self.focus_id,
            "depth": self.depth,
            "nodes": [node.to_dict() for node in self.nodes],
            "violations": [v.to_dict() for v in self.violations],
        }
