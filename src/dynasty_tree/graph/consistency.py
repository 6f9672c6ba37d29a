"""Write-path guard for relationship edges.

The engine is the only component that writes relationship rows. Every edge
is stored together with its mandatory inverse inside one transaction, so
the edge set is symmetric after any sequence of adds and removes.
"""
from __future__ import annotations

import sqlite3
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from ..config import CONFIG, FamilyTreeConfig
from ..exceptions import ConsistencyViolation, NotFoundError, ValidationError
from ..models.ids import parse_id
from ..models.relationship import Relationship, RelationshipType

if TYPE_CHECKING:
    from uuid import UUID

    from ..store.sqlite_store import SQLiteFamilyStore

logger = structlog.get_logger(__name__)


def parse_relationship_type(value: Any) -> RelationshipType:
    if isinstance(value, RelationshipType):
        return value
    try:
        return RelationshipType(str(value).lower())
    except ValueError as e:
        raise ValidationError(
            "unknown relationship type",
            invariant="unknown_relationship_type",
            ids={"relationship_type": value},
        ) from e


@dataclass
class RemovalResult:
    """Outcome of removing an edge pair."""
    relationship: Relationship
    partner: Relationship | None = None
    deleted_ids: list[UUID] = field(default_factory=list)

    @property
    def partner_missing(self) -> bool:
        return self.partner is None


class RelationshipEngine:
    """Adds and removes relationship edges in symmetric pairs.

    Rejects self relationships, type contradictions between the same two
    members and, when ``config.reject_cycles`` is set, parent/child edges
    that would make a member their own ancestor. Duplicate adds return the
    stored edge.
    """

    def __init__(self, store: SQLiteFamilyStore, config: FamilyTreeConfig | None = None) -> None:
        self.store = store
        self.config = config or CONFIG

    # ------------------------------------------------------------------ add

    def add_relationship(
        self,
        tree_id: Any,
        from_member_id: Any,
        to_member_id: Any,
        relationship_type: Any,
    ) -> Relationship:
        """Insert ``(from, to, type)`` and its inverse atomically.

        Raises:
            ValidationError: self relationship, unknown type, malformed id,
                member outside the tree, contradiction or ancestry cycle
            NotFoundError: tree or member does not exist
        """
        tree_id = parse_id(tree_id, "tree_id")
        from_id = parse_id(from_member_id, "from_member_id")
        to_id = parse_id(to_member_id, "to_member_id")
        rel_type = parse_relationship_type(relationship_type)

        if from_id == to_id:
            raise ValidationError(
                "a member cannot be related to themselves",
                invariant="self_relationship",
                ids={"member_id": from_id, "relationship_type": rel_type.value},
            )

        with self.store.transaction() as conn:
            self._require_members(conn, tree_id, from_id, to_id)

            existing = self.store.find_relationship(tree_id, from_id, to_id, rel_type, conn=conn)
            existing_inverse = self.store.find_relationship(
                tree_id, to_id, from_id, rel_type.inverse, conn=conn
            )

            if existing is None and existing_inverse is None:
                self._check_contradiction(conn, tree_id, from_id, to_id, rel_type)
                if self.config.reject_cycles and rel_type != RelationshipType.SPOUSE:
                    self._check_cycle(conn, tree_id, from_id, to_id, rel_type)

            if existing is not None and existing_inverse is not None:
                logger.debug("relationship_exists", relationship_id=str(existing.relationship_id))
                return existing

            primary = existing
            if primary is None:
                primary = self.store.insert_relationship(
                    Relationship(
                        tree_id=tree_id,
                        from_member_id=from_id,
                        to_member_id=to_id,
                        relationship_type=rel_type,
                    ),
                    conn=conn,
                )
                if existing_inverse is not None:
                    logger.warning(
                        "primary_repaired",
                        relationship_id=str(primary.relationship_id),
                        inverse_id=str(existing_inverse.relationship_id),
                    )

            if existing_inverse is None:
                inverse = self.store.insert_relationship(primary.inverse(), conn=conn)
                if existing is not None:
                    logger.warning(
                        "inverse_repaired",
                        relationship_id=str(primary.relationship_id),
                        inverse_id=str(inverse.relationship_id),
                    )

        logger.info(
            "relationship_added",
            tree_id=str(tree_id),
            from_member_id=str(from_id),
            to_member_id=str(to_id),
            relationship_type=rel_type.value,
            relationship_id=str(primary.relationship_id),
        )
        return primary

    def _require_members(
        self, conn: sqlite3.Connection, tree_id: UUID, *member_ids: UUID
    ) -> None:
        if self.store.get_tree(tree_id, conn=conn) is None:
            raise NotFoundError("family tree not found", invariant="unknown_tree", ids={"tree_id": tree_id})
        for member_id in member_ids:
            member = self.store.get_member(member_id, conn=conn)
            if member is None:
                raise NotFoundError(
                    "member not found", invariant="unknown_member", ids={"member_id": member_id}
                )
            if member.tree_id != tree_id:
                raise ValidationError(
                    "member belongs to another tree",
                    invariant="cross_tree",
                    ids={"member_id": member_id, "tree_id": tree_id, "member_tree_id": member.tree_id},
                )

    def _check_contradiction(
        self,
        conn: sqlite3.Connection,
        tree_id: UUID,
        from_id: UUID,
        to_id: UUID,
        rel_type: RelationshipType,
    ) -> None:
        """Only the requested edge and its inverse may link the two members."""
        allowed = {(from_id, to_id, rel_type), (to_id, from_id, rel_type.inverse)}
        for rel in self.store.list_relationships_between(tree_id, from_id, to_id, conn=conn):
            if rel.key() not in allowed:
                raise ValidationError(
                    f"{rel.relationship_type.value} edge already links these members",
                    invariant="type_contradiction",
                    ids={
                        "from_member_id": from_id,
                        "to_member_id": to_id,
                        "requested": rel_type.value,
                        "existing_relationship_id": rel.relationship_id,
                    },
                )

    def _check_cycle(
        self,
        conn: sqlite3.Connection,
        tree_id: UUID,
        from_id: UUID,
        to_id: UUID,
        rel_type: RelationshipType,
    ) -> None:
        """Reject the edge if the prospective parent already descends from the child."""
        if rel_type == RelationshipType.PARENT:
            parent_id, child_id = from_id, to_id
        else:
            parent_id, child_id = to_id, from_id

        children_of: dict[UUID, set[UUID]] = defaultdict(set)
        for rel in self.store.list_relationships(tree_id, conn=conn):
            if rel.relationship_type == RelationshipType.PARENT:
                children_of[rel.from_member_id].add(rel.to_member_id)
            elif rel.relationship_type == RelationshipType.CHILD:
                children_of[rel.to_member_id].add(rel.from_member_id)

        seen = {child_id}
        queue = deque([child_id])
        while queue:
            current = queue.popleft()
            for nxt in children_of[current]:
                if nxt == parent_id:
                    raise ValidationError(
                        "edge would make a member their own ancestor",
                        invariant="ancestry_cycle",
                        ids={"parent_id": parent_id, "child_id": child_id},
                    )
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)

    # --------------------------------------------------------------- remove

    def remove_relationship(self, relationship_id: Any) -> RemovalResult:
        """Delete an edge and its symmetric partner in one transaction.

        A missing partner is logged and the delete still goes ahead.
        """
        rel_id = parse_id(relationship_id, "relationship_id")
        with self.store.transaction() as conn:
            rel = self.store.get_relationship(rel_id, conn=conn)
            if rel is None:
                raise NotFoundError(
                    "relationship not found",
                    invariant="unknown_relationship",
                    ids={"relationship_id": rel_id},
                )
            from_id, to_id, inverse_type = rel.inverse_key()
            partner = self.store.find_relationship(rel.tree_id, from_id, to_id, inverse_type, conn=conn)

            result = RemovalResult(relationship=rel, partner=partner)
            self.store.delete_relationship(rel.relationship_id, conn=conn)
            result.deleted_ids.append(rel.relationship_id)
            if partner is not None:
                self.store.delete_relationship(partner.relationship_id, conn=conn)
                result.deleted_ids.append(partner.relationship_id)

        if partner is None:
            logger.warning(
                "inverse_missing",
                relationship_id=str(rel.relationship_id),
                from_member_id=str(rel.from_member_id),
                to_member_id=str(rel.to_member_id),
                relationship_type=rel.relationship_type.value,
                operation="remove",
            )
        logger.info("relationship_removed", deleted=[str(i) for i in result.deleted_ids])
        return result

    def cascade_on_member_delete(
        self, member_id: Any, conn: sqlite3.Connection | None = None
    ) -> int:
        """Delete every edge where the member is ``from`` or ``to``.

        Pass the connection of the transaction that deletes the member row
        so no dangling edge is ever visible.
        """
        mid = parse_id(member_id, "member_id")
        if conn is None:
            with self.store.transaction() as own:
                deleted = self.store.delete_relationships_for_member(mid, conn=own)
        else:
            deleted = self.store.delete_relationships_for_member(mid, conn=conn)
        logger.info("relationships_cascaded", member_id=str(mid), deleted=deleted)
        return deleted

    # ---------------------------------------------------------------- audit

    def audit(self, tree_id: Any) -> list[ConsistencyViolation]:
        """Report every edge stored without its inverse. Read only."""
        tree_id = parse_id(tree_id, "tree_id")
        relationships = self.store.list_relationships(tree_id)
        keys = {rel.key() for rel in relationships}
        violations = [
            ConsistencyViolation.missing_inverse(
                rel.relationship_id,
                rel.from_member_id,
                rel.to_member_id,
                rel.relationship_type.value,
            )
            for rel in relationships
            if rel.inverse_key() not in keys
        ]
        if violations:
            logger.warning("audit_violations", tree_id=str(tree_id), count=len(violations))
        return violations
