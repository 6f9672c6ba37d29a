"""Service boundary for family tree operations.

Thin orchestration over the store, the relationship engine, the projection
builder and the member lifecycle. Inputs from an API layer arrive as plain
ids and dicts; they are validated here and every failure surfaces as a
typed ``FamilyTreeError``.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .config import CONFIG, FamilyTreeConfig
from .exceptions import AuthorizationError, NotFoundError, ValidationError
from .graph.consistency import RelationshipEngine, RemovalResult
from .graph.projection import ProjectionBuilder
from .lifecycle import AcceptedInvitation, MemberLifecycle
from .models.ids import parse_id, utcnow
from .models.member import Member, MemberProfile
from .models.tree import Access, AccessRole, FamilyTree, PrivacyLevel
from .store.sqlite_store import SQLiteFamilyStore

if TYPE_CHECKING:
    from pathlib import Path

    from .exceptions import ConsistencyViolation
    from .graph.models import Projection
    from .models.relationship import Relationship
    from .models.tree import Invitation

logger = structlog.get_logger(__name__)


def _validate(model: type[BaseModel], data: Any, what: str) -> Any:
    """Validate a dict (or model) and convert pydantic errors to ours."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) or "__root__" for err in e.errors()})
        raise ValidationError(
            f"invalid {what}: {e.error_count()} error(s)",
            invariant=f"invalid_{what}",
            ids={"fields": ",".join(fields)},
        ) from e


class FamilyTreeService:
    """Operations exposed to an API or CLI layer.

    Core operations do not check permissions; callers use ``can_mutate``
    (or ``require_mutate``) at the boundary.

    Example:
        >>> svc = FamilyTreeService.from_path("family.db")
        >>> tree = svc.create_tree("Smiths", None, "private", "acct-1",
        ...                        {"first_name": "Alice", "last_name": "Smith"})
        >>> projection = svc.get_tree_with_projected_nodes(tree.tree_id)
    """

    def __init__(
        self,
        store: SQLiteFamilyStore,
        config: FamilyTreeConfig | None = None,
    ) -> None:
        self.store = store
        self.config = config or CONFIG
        self.engine = RelationshipEngine(store, self.config)
        self.lifecycle = MemberLifecycle(store, self.config)
        self.projector = ProjectionBuilder()

    @classmethod
    def from_path(cls, db_path: str | Path | None = None, config: FamilyTreeConfig | None = None) -> FamilyTreeService:
        config = config or CONFIG
        store = SQLiteFamilyStore(db_path or config.db_path, busy_timeout_ms=config.busy_timeout_ms)
        return cls(store, config)

    # --------------------------------------------------------------- trees

    def _require_tree(self, tree_id: Any) -> FamilyTree:
        tree_id = parse_id(tree_id, "tree_id")
        tree = self.store.get_tree(tree_id)
        if tree is None:
            raise NotFoundError("family tree not found", invariant="unknown_tree", ids={"tree_id": tree_id})
        return tree

    def create_tree(
        self,
        name: str,
        description: str | None,
        privacy_level: PrivacyLevel | str,
        owner_account_id: str,
        owner_profile: MemberProfile | dict[str, Any] | None = None,
    ) -> FamilyTree:
        """Create a tree with the owner's claimed member and admin access.

        Without ``owner_profile`` the owner member is named after the account.
        """
        tree = _validate(
            FamilyTree,
            {
                "name": name,
                "description": description,
                "privacy_level": privacy_level,
                "owner_id": owner_account_id,
            },
            "tree",
        )
        if owner_profile is None:
            owner_profile = MemberProfile.from_account(tree.owner_id)
        profile = _validate(MemberProfile, owner_profile, "profile")
        with self.store.transaction() as conn:
            self.store.insert_tree(tree, conn=conn)
            member = self.lifecycle.create_claimed_member(tree.tree_id, profile, tree.owner_id, conn=conn)
            self.store.upsert_access(
                Access(tree_id=tree.tree_id, account_id=tree.owner_id, role=AccessRole.ADMIN), conn=conn
            )
        logger.info(
            "tree_created",
            tree_id=str(tree.tree_id),
            owner_id=tree.owner_id,
            owner_member_id=str(member.member_id),
        )
        return tree

    def get_tree(self, tree_id: Any) -> FamilyTree:
        return self._require_tree(tree_id)

    def get_user_trees(self, account_id: str) -> list[FamilyTree]:
        """Trees the account owns or has an access row on."""
        return self.store.list_trees_for_account(account_id)

    def delete_tree(self, tree_id: Any, account_id: str) -> None:
        """Delete a tree and everything scoped to it. Owner only."""
        tree = self._require_tree(tree_id)
        if tree.owner_id != account_id:
            raise AuthorizationError(
                "only the owner can delete a tree",
                invariant="owner_only",
                ids={"tree_id": tree.tree_id, "account_id": account_id},
            )
        self.store.delete_tree(tree.tree_id)
        logger.info("tree_deleted", tree_id=str(tree.tree_id), account_id=account_id)

    def get_tree_with_projected_nodes(
        self,
        tree_id: Any,
        focus: Any | None = None,
        depth: int | None = None,
    ) -> Projection:
        """Project the whole tree, or the ``depth``-hop neighbourhood of ``focus``."""
        tree = self._require_tree(tree_id)
        if depth is not None and depth < 0:
            raise ValidationError("depth must be >= 0", invariant="invalid_depth", ids={"depth": depth})
        focus_id = parse_id(focus, "focus") if focus is not None else None
        rows = self.store.get_member_adjacency(tree.tree_id)
        return self.projector.build(rows, tree=tree, focus=focus_id, depth=depth)

    def audit_tree(self, tree_id: Any) -> list[ConsistencyViolation]:
        tree = self._require_tree(tree_id)
        return self.engine.audit(tree.tree_id)

    def tree_statistics(self, tree_id: Any) -> dict:
        tree = self._require_tree(tree_id)
        return self.store.get_statistics(tree.tree_id)

    def list_access(self, tree_id: Any) -> list[Access]:
        """Access rows of a tree, oldest first. The owner holds an admin row."""
        tree = self._require_tree(tree_id)
        return self.store.list_access(tree.tree_id)

    # ------------------------------------------------------------- members

    def get_member(self, member_id: Any) -> Member:
        member_id = parse_id(member_id, "member_id")
        member = self.store.get_member(member_id)
        if member is None:
            raise NotFoundError("member not found", invariant="unknown_member", ids={"member_id": member_id})
        return member

    def list_members(self, tree_id: Any) -> list[Member]:
        tree = self._require_tree(tree_id)
        return self.store.list_members(tree.tree_id)

    def add_member(
        self,
        tree_id: Any,
        profile: MemberProfile | dict[str, Any],
        account_id: str | None = None,
    ) -> Member:
        """Add a pending member, or a claimed one when ``account_id`` is given."""
        profile = _validate(MemberProfile, profile, "profile")
        if account_id:
            return self.lifecycle.create_claimed_member(tree_id, profile, account_id)
        return self.lifecycle.create_pending_member(tree_id, profile)

    def update_member(self, member_id: Any, changes: dict[str, Any]) -> Member:
        """Apply profile changes; identity, account and pending state are untouched."""
        member = self.get_member(member_id)
        current = member.profile().model_dump()
        if ("first_name" in changes or "last_name" in changes) and "display_name" not in changes:
            current["display_name"] = None
        unknown = set(changes) - set(MemberProfile.model_fields)
        if unknown:
            raise ValidationError(
                "unknown profile fields",
                invariant="invalid_profile",
                ids={"fields": ",".join(sorted(unknown))},
            )
        profile = _validate(MemberProfile, {**current, **changes}, "profile")
        updated = member.model_copy(update={**profile.model_dump(), "updated_at": utcnow()})
        self.store.update_member(updated)
        logger.info("member_updated", member_id=str(updated.member_id), fields=sorted(changes))
        return updated

    def delete_member(self, member_id: Any) -> int:
        """Delete a member and every edge touching it in one transaction.

        Returns the number of relationship rows removed.
        """
        member_id = parse_id(member_id, "member_id")
        with self.store.transaction() as conn:
            if self.store.get_member(member_id, conn=conn) is None:
                raise NotFoundError("member not found", invariant="unknown_member", ids={"member_id": member_id})
            removed = self.engine.cascade_on_member_delete(member_id, conn=conn)
            self.store.delete_member(member_id, conn=conn)
        logger.info("member_deleted", member_id=str(member_id), relationships_removed=removed)
        return removed

    def claim_member(self, member_id: Any, account_id: str) -> Member:
        return self.lifecycle.claim(member_id, account_id)

    # ------------------------------------------------------- relationships

    def get_relationship(self, relationship_id: Any) -> Relationship:
        relationship_id = parse_id(relationship_id, "relationship_id")
        rel = self.store.get_relationship(relationship_id)
        if rel is None:
            raise NotFoundError(
                "relationship not found",
                invariant="unknown_relationship",
                ids={"relationship_id": relationship_id},
            )
        return rel

    def add_relationship(
        self,
        tree_id: Any,
        from_member_id: Any,
        to_member_id: Any,
        relationship_type: Any,
    ) -> Relationship:
        return self.engine.add_relationship(tree_id, from_member_id, to_member_id, relationship_type)

    def remove_relationship(self, relationship_id: Any) -> RemovalResult:
        return self.engine.remove_relationship(relationship_id)

    # --------------------------------------------------------- invitations

    def invite_member(
        self,
        tree_id: Any,
        inviter_id: str,
        email: str,
        role: AccessRole | str = AccessRole.VIEWER,
        prefill: MemberProfile | dict[str, Any] | None = None,
    ) -> Invitation:
        profile = _validate(MemberProfile, prefill, "profile") if prefill is not None else None
        return self.lifecycle.issue_invitation(tree_id, inviter_id, email, role=role, prefill=profile)

    def accept_invitation(self, invitation_id: Any, account_id: str) -> AcceptedInvitation:
        return self.lifecycle.accept_invitation(invitation_id, account_id)

    def reject_invitation(self, invitation_id: Any) -> Invitation:
        return self.lifecycle.reject_invitation(invitation_id)

    # -------------------------------------------------------- authorization

    def can_mutate(self, tree_id: Any, account_id: str | None) -> bool:
        """Owner, or an account holding an admin/editor access row."""
        tree = self._require_tree(tree_id)
        if not account_id:
            return False
        if tree.owner_id == account_id:
            return True
        access = self.store.get_access(tree.tree_id, account_id)
        return access is not None and access.role.can_mutate

    def require_mutate(self, tree_id: Any, account_id: str | None) -> None:
        if not self.can_mutate(tree_id, account_id):
            raise AuthorizationError(
                "account may not modify this tree",
                invariant="mutate_denied",
                ids={"tree_id": tree_id, "account_id": account_id},
            )
