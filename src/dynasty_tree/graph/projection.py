"""Read-path transform from a tree's flat edge set to projected nodes.

Everything is read from edges anchored at the member being projected
(``from_member_id == m``):

- ``(m, X, child)``  => X is a parent of m
- ``(m, X, parent)`` => X is a child of m
- ``(m, X, spouse)`` => X is a spouse of m

Siblings are never stored; they are derived here from shared parents. The
mirrored half of each pair is only used to detect asymmetric edges, which
are reported on the result instead of failing the read.
"""
from __future__ import annotations

from collections import defaultdict, deque
from typing import TYPE_CHECKING, Any

import structlog

from ..exceptions import ConsistencyViolation, NotFoundError
from ..models.relationship import RelationshipType
from ..store.sqlite_store import MemberAdjacency
from .models import NodeRef, ProjectedNode, Projection, RelType

if TYPE_CHECKING:
    from collections.abc import Iterable

    from ..models.member import Member
    from ..models.relationship import Relationship
    from ..models.tree import FamilyTree

logger = structlog.get_logger(__name__)


class ProjectionBuilder:
    """Builds one ``ProjectedNode`` per member from adjacency rows.

    Example:
        >>> rows = store.get_member_adjacency(tree.tree_id)
        >>> projection = ProjectionBuilder().build(rows, tree=tree)
        >>> projection.node(carol_id).parent_ids
        ['<alice>', '<bob>']

    With ``focus`` set, only members within ``depth`` hops of the focal
    member are returned and truncation points carry ``has_hidden_subtree``.
    """

    @staticmethod
    def rows_from_relationships(
        members: Iterable[Member], relationships: Iterable[Relationship]
    ) -> list[MemberAdjacency]:
        """Group a flat edge list into adjacency rows in a single pass."""
        rows = {str(m.member_id): MemberAdjacency(member=m) for m in members}
        for rel in relationships:
            row = rows.get(str(rel.from_member_id))
            if row is None:
                continue
            target = str(rel.to_member_id)
            if rel.relationship_type == RelationshipType.CHILD:
                row.parent_ids.append(target)
            elif rel.relationship_type == RelationshipType.PARENT:
                row.child_ids.append(target)
            else:
                row.spouse_ids.append(target)
        for row in rows.values():
            row.parent_ids = sorted(set(row.parent_ids))
            row.child_ids = sorted(set(row.child_ids))
            row.spouse_ids = sorted(set(row.spouse_ids))
        return [rows[key] for key in sorted(rows)]

    def from_relationships(
        self,
        members: Iterable[Member],
        relationships: Iterable[Relationship],
        **kwargs: Any,
    ) -> Projection:
        return self.build(self.rows_from_relationships(members, relationships), **kwargs)

    def build(
        self,
        rows: Iterable[MemberAdjacency],
        tree: FamilyTree | None = None,
        focus: Any | None = None,
        depth: int | None = None,
        reference: Any | None = None,
    ) -> Projection:
        """Project adjacency rows into nodes.

        Args:
            rows: Adjacency aggregation for one tree
            tree: Tree the rows belong to (owner picks the blood reference)
            focus: Member id to centre a partial projection on
            depth: Hops around ``focus`` to include (None = whole component)
            reference: Member id the blood-relation flag is relative to;
                defaults to ``focus``, then the owner's member

        Returns:
            Projection with nodes sorted by member id and any asymmetric
            edges reported as violations
        """
        rows = sorted(rows, key=lambda r: str(r.member.member_id))
        members = {str(r.member.member_id): r.member for r in rows}

        parents = {mid: set() for mid in members}
        children = {mid: set() for mid in members}
        spouses = {mid: set() for mid in members}
        for row in rows:
            mid = str(row.member.member_id)
            parents[mid].update(p for p in row.parent_ids if p in members and p != mid)
            children[mid].update(c for c in row.child_ids if c in members and c != mid)
            spouses[mid].update(s for s in row.spouse_ids if s in members and s != mid)

        violations = self._find_violations(parents, children, spouses)
        siblings = self._derive_siblings(parents)

        focus_id = self._resolve(focus, members, "focus")
        reference_id = self._resolve(reference, members, "reference") or focus_id
        if reference_id is None and tree is not None:
            reference_id = next(
                (mid for mid, m in members.items() if m.account_id == tree.owner_id),
                None,
            )
        blood = self._blood_relatives(reference_id, parents, children)

        if focus_id is not None:
            visible = self._neighbourhood(focus_id, depth, parents, children, spouses, siblings)
        else:
            visible = set(members)

        nodes = []
        for mid in sorted(visible):
            member = members[mid]
            neighbours = parents[mid] | children[mid] | spouses[mid] | set(siblings[mid])
            node = ProjectedNode(
                id=mid,
                gender=member.gender.value,
                parents=[NodeRef(p, RelType.BLOOD) for p in sorted(parents[mid]) if p in visible],
                children=[NodeRef(c, RelType.BLOOD) for c in sorted(children[mid]) if c in visible],
                siblings=[
                    NodeRef(s, kind) for s, kind in sorted(siblings[mid].items()) if s in visible
                ],
                spouses=[NodeRef(s, RelType.MARRIED) for s in sorted(spouses[mid]) if s in visible],
                is_blood_related=blood is None or mid in blood,
                has_hidden_subtree=not neighbours <= visible,
                is_pending=member.is_pending,
                attributes=self._attributes(member),
            )
            nodes.append(node)

        logger.debug(
            "projection_built",
            members=len(members),
            nodes=len(nodes),
            violations=len(violations),
            focus=focus_id,
            depth=depth,
        )
        return Projection(
            nodes=nodes,
            tree=tree,
            violations=violations,
            focus_id=focus_id,
            depth=depth if focus_id is not None else None,
            reference_id=reference_id,
        )

    # ------------------------------------------------------------------

    @staticmethod
    def _resolve(member_id: Any | None, members: dict[str, Member], role: str) -> str | None:
        if member_id is None:
            return None
        key = str(member_id)
        if key not in members:
            raise NotFoundError(f"{role} member not in tree", invariant="unknown_member", ids={role: key})
        return key

    @staticmethod
    def _find_violations(
        parents: dict[str, set[str]],
        children: dict[str, set[str]],
        spouses: dict[str, set[str]],
    ) -> list[ConsistencyViolation]:
        violations = []
        for mid in sorted(parents):
            for p in sorted(parents[mid]):
                if mid not in children[p]:
                    violations.append(
                        ConsistencyViolation.missing_inverse(None, mid, p, RelationshipType.CHILD.value)
                    )
            for c in sorted(children[mid]):
                if mid not in parents[c]:
                    violations.append(
                        ConsistencyViolation.missing_inverse(None, mid, c, RelationshipType.PARENT.value)
                    )
            for s in sorted(spouses[mid]):
                if mid not in spouses[s]:
                    violations.append(
                        ConsistencyViolation.missing_inverse(None, mid, s, RelationshipType.SPOUSE.value)
                    )
        for v in violations:
            logger.warning("inverse_missing", **{k: str(val) for k, val in v.ids.items()})
        return violations

    @staticmethod
    def _derive_siblings(parents: dict[str, set[str]]) -> dict[str, dict[str, RelType]]:
        """Members sharing at least one parent; full siblings are blood, others half."""
        kids_of: dict[str, set[str]] = defaultdict(set)
        for mid, pids in parents.items():
            for p in pids:
                kids_of[p].add(mid)

        siblings: dict[str, dict[str, RelType]] = {}
        for mid, pids in parents.items():
            found: dict[str, RelType] = {}
            for p in pids:
                for sib in kids_of[p]:
                    if sib == mid or sib in found:
                        continue
                    found[sib] = RelType.BLOOD if parents[sib] == pids else RelType.HALF
            siblings[mid] = found
        return siblings

    @staticmethod
    def _blood_relatives(
        reference_id: str | None,
        parents: dict[str, set[str]],
        children: dict[str, set[str]],
    ) -> set[str] | None:
        """The reference, its ancestors, and every descendant of those ancestors.

        Walks parent links upward, then child links downward. A co-parent of
        the reference's child is never an ancestor of the reference, so
        spouses and in-laws stay outside the set.
        """
        if reference_id is None:
            return None
        up: dict[str, set[str]] = defaultdict(set)
        down: dict[str, set[str]] = defaultdict(set)
        for mid in parents:
            for p in parents[mid]:
                up[mid].add(p)
                down[p].add(mid)
            for c in children[mid]:
                down[mid].add(c)
                up[c].add(mid)

        def walk(start: set[str], links: dict[str, set[str]]) -> set[str]:
            seen = set(start)
            queue = deque(start)
            while queue:
                for nxt in links[queue.popleft()]:
                    if nxt not in seen:
                        seen.add(nxt)
                        queue.append(nxt)
            return seen

        return walk(walk({reference_id}, up), down)

    @staticmethod
    def _neighbourhood(
        focus_id: str,
        depth: int | None,
        parents: dict[str, set[str]],
        children: dict[str, set[str]],
        spouses: dict[str, set[str]],
        siblings: dict[str, dict[str, RelType]],
    ) -> set[str]:
        """Breadth-first neighbourhood of the focal member, bounded by depth."""
        distance = {focus_id: 0}
        queue = deque([focus_id])
        while queue:
            current = queue.popleft()
            if depth is not None and distance[current] >= depth:
                continue
            adjacent = parents[current] | children[current] | spouses[current] | set(siblings[current])
            for nxt in sorted(adjacent):
                if nxt not in distance:
                    distance[nxt] = distance[current] + 1
                    queue.append(nxt)
        return set(distance)

    @staticmethod
    def _attributes(member: Member) -> dict[str, Any]:
        return {
            "firstName": member.first_name,
            "lastName": member.last_name,
            "displayName": member.display_name,
            "dateOfBirth": member.date_of_birth.isoformat() if member.date_of_birth else None,
            "dateOfDeath": member.date_of_death.isoformat() if member.date_of_death else None,
            "bio": member.bio,
            "imageUrl": member.image_url,
        }
