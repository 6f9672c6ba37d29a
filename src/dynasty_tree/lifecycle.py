"""Member lifecycle: pending placeholders, claiming, invitations.

A member starts pending (no account) and becomes claimed when an account
is linked. Claiming is terminal. Invitation acceptance links the invitee's
account to a member of the tree and grants the invited role.
"""
from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from .config import CONFIG, FamilyTreeConfig
from .exceptions import ConflictError, NotFoundError, ValidationError
from .models.ids import parse_id, utcnow
from .models.member import Member, MemberProfile
from .models.tree import Access, AccessRole, FamilyTree, Invitation, InvitationStatus

if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID

    from .store.sqlite_store import SQLiteFamilyStore

logger = structlog.get_logger(__name__)

_ROLE_RANK = {AccessRole.VIEWER: 0, AccessRole.EDITOR: 1, AccessRole.ADMIN: 2}


def parse_role(value: Any) -> AccessRole:
    if isinstance(value, AccessRole):
        return value
    try:
        return AccessRole(str(value).lower())
    except ValueError as e:
        raise ValidationError("unknown access role", invariant="unknown_role", ids={"role": value}) from e


def _require_account(account_id: Any) -> str:
    if not isinstance(account_id, str) or not account_id.strip():
        raise ValidationError("account id is required", invariant="missing_account", ids={"account_id": account_id})
    return account_id.strip()


def _normalize_email(email: Any) -> str:
    value = str(email or "").strip().lower()
    local, _, domain = value.partition("@")
    if not local or not domain:
        raise ValidationError("invitee email is not valid", invariant="invalid_email", ids={"email": email})
    return value


@dataclass
class AcceptedInvitation:
    """What accepting an invitation produced."""
    invitation: Invitation
    member: Member
    access: Access


class MemberLifecycle:
    """Pending → claimed transitions and invitation handling.

    Every method takes an optional ``conn`` so the service can run several
    lifecycle steps inside one store transaction.
    """

    def __init__(self, store: SQLiteFamilyStore, config: FamilyTreeConfig | None = None) -> None:
        self.store = store
        self.config = config or CONFIG

    @contextmanager
    def _tx(self, conn: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        with self.store.transaction() as own:
            yield own

    def _require_tree(self, conn: sqlite3.Connection, tree_id: UUID) -> FamilyTree:
        tree = self.store.get_tree(tree_id, conn=conn)
        if tree is None:
            raise NotFoundError("family tree not found", invariant="unknown_tree", ids={"tree_id": tree_id})
        return tree

    def _require_member(self, conn: sqlite3.Connection, member_id: UUID) -> Member:
        member = self.store.get_member(member_id, conn=conn)
        if member is None:
            raise NotFoundError("member not found", invariant="unknown_member", ids={"member_id": member_id})
        return member

    # -------------------------------------------------------------- members

    def create_pending_member(
        self,
        tree_id: Any,
        profile: MemberProfile,
        conn: sqlite3.Connection | None = None,
    ) -> Member:
        """Add a person with no linked account (is_pending=True)."""
        tree_id = parse_id(tree_id, "tree_id")
        member = Member(tree_id=tree_id, is_pending=True, **profile.model_dump())
        with self._tx(conn) as c:
            self._require_tree(c, tree_id)
            self.store.insert_member(member, conn=c)
        logger.info("member_created", tree_id=str(tree_id), member_id=str(member.member_id), pending=True)
        return member

    def create_claimed_member(
        self,
        tree_id: Any,
        profile: MemberProfile,
        account_id: Any,
        conn: sqlite3.Connection | None = None,
    ) -> Member:
        """Add a person already linked to ``account_id``.

        Raises:
            ConflictError: the account already has a member in this tree
        """
        tree_id = parse_id(tree_id, "tree_id")
        account_id = _require_account(account_id)
        member = Member(tree_id=tree_id, account_id=account_id, is_pending=False, **profile.model_dump())
        with self._tx(conn) as c:
            self._require_tree(c, tree_id)
            existing = self.store.find_member_by_account(tree_id, account_id, conn=c)
            if existing is not None:
                raise ConflictError(
                    "account already has a member in this tree",
                    invariant="account_already_linked",
                    ids={"tree_id": tree_id, "account_id": account_id, "member_id": existing.member_id},
                )
            self.store.insert_member(member, conn=c)
        logger.info(
            "member_created",
            tree_id=str(tree_id),
            member_id=str(member.member_id),
            account_id=account_id,
            pending=False,
        )
        return member

    def claim(
        self,
        member_id: Any,
        account_id: Any,
        conn: sqlite3.Connection | None = None,
    ) -> Member:
        """Link a pending member to an account.

        Claiming again with the same account returns the member unchanged.

        Raises:
            ConflictError: member already claimed by another account, or the
                account already owns a different member in the tree
        """
        member_id = parse_id(member_id, "member_id")
        account_id = _require_account(account_id)
        with self._tx(conn) as c:
            member = self._require_member(c, member_id)
            if not member.is_pending:
                if member.account_id == account_id:
                    logger.debug("member_already_claimed", member_id=str(member_id), account_id=account_id)
                    return member
                raise ConflictError(
                    "member is already claimed by another account",
                    invariant="claim_conflict",
                    ids={"member_id": member_id, "account_id": account_id, "claimed_by": member.account_id},
                )
            other = self.store.find_member_by_account(member.tree_id, account_id, conn=c)
            if other is not None and other.member_id != member.member_id:
                raise ConflictError(
                    "account already has a member in this tree",
                    invariant="claim_conflict",
                    ids={"member_id": member_id, "account_id": account_id, "linked_member_id": other.member_id},
                )
            member.account_id = account_id
            member.is_pending = False
            member.updated_at = utcnow()
            self.store.update_member(member, conn=c)
        logger.info("member_claimed", member_id=str(member_id), account_id=account_id)
        return member

    # ---------------------------------------------------------- invitations

    def issue_invitation(
        self,
        tree_id: Any,
        inviter_id: Any,
        email: Any,
        role: Any = AccessRole.VIEWER,
        prefill: MemberProfile | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Invitation:
        """Create a pending invitation; with ``prefill`` also create its placeholder member."""
        tree_id = parse_id(tree_id, "tree_id")
        inviter_id = _require_account(inviter_id)
        email = _normalize_email(email)
        role = parse_role(role)
        with self._tx(conn) as c:
            self._require_tree(c, tree_id)
            placeholder = None
            if prefill is not None:
                if prefill.email is None:
                    prefill = prefill.model_copy(update={"email": email})
                placeholder = self.create_pending_member(tree_id, prefill, conn=c)
            invitation = Invitation.expiring_in(
                self.config.invitation_ttl_days,
                tree_id=tree_id,
                inviter_id=inviter_id,
                invitee_email=email,
                role=role,
                prefill=prefill,
                member_id=placeholder.member_id if placeholder else None,
            )
            self.store.insert_invitation(invitation, conn=c)
        logger.info(
            "invitation_issued",
            tree_id=str(tree_id),
            invitation_id=str(invitation.invitation_id),
            role=role.value,
            placeholder=str(invitation.member_id) if invitation.member_id else None,
        )
        return invitation

    def _require_pending_invitation(
        self, conn: sqlite3.Connection, invitation_id: UUID
    ) -> Invitation:
        invitation = self.store.get_invitation(invitation_id, conn=conn)
        if invitation is None:
            raise NotFoundError(
                "invitation not found", invariant="unknown_invitation", ids={"invitation_id": invitation_id}
            )
        if invitation.status != InvitationStatus.PENDING:
            raise ConflictError(
                f"invitation is already {invitation.status.value}",
                invariant="invitation_not_pending",
                ids={"invitation_id": invitation_id},
            )
        return invitation

    def accept_invitation(
        self,
        invitation_id: Any,
        account_id: Any,
        now: datetime | None = None,
    ) -> AcceptedInvitation:
        """Accept an invitation for ``account_id`` in one transaction.

        The account is linked to, in order of preference: the member it
        already has in the tree, the invitation's placeholder, a pending
        member with the invitee's email, or a new claimed member built from
        the prefill. The invitation role is then granted; an existing higher
        role is kept.

        Raises:
            ValidationError: invitation expired
            ConflictError: invitation no longer pending
        """
        invitation_id = parse_id(invitation_id, "invitation_id")
        account_id = _require_account(account_id)
        with self.store.transaction() as c:
            invitation = self._require_pending_invitation(c, invitation_id)
            if invitation.is_expired(now):
                raise ValidationError(
                    "invitation has expired",
                    invariant="invitation_expired",
                    ids={"invitation_id": invitation_id, "expires_at": invitation.expires_at.isoformat()},
                )
            tree_id = invitation.tree_id

            member = self.store.find_member_by_account(tree_id, account_id, conn=c)
            if member is None:
                target = None
                if invitation.member_id is not None:
                    target = self.store.get_member(invitation.member_id, conn=c)
                if target is None or not target.is_pending:
                    target = self.store.find_pending_member_by_email(tree_id, invitation.invitee_email, conn=c)
                if target is not None:
                    member = self.claim(target.member_id, account_id, conn=c)
                else:
                    profile = invitation.prefill or MemberProfile.from_email(invitation.invitee_email)
                    member = self.create_claimed_member(tree_id, profile, account_id, conn=c)
            else:
                logger.info("invitee_already_member", tree_id=str(tree_id), member_id=str(member.member_id))

            role = invitation.role
            current = self.store.get_access(tree_id, account_id, conn=c)
            if current is not None and _ROLE_RANK[current.role] > _ROLE_RANK[role]:
                role = current.role
            access = self.store.upsert_access(Access(tree_id=tree_id, account_id=account_id, role=role), conn=c)

            invitation.status = InvitationStatus.ACCEPTED
            invitation.member_id = member.member_id
            invitation.updated_at = utcnow()
            self.store.update_invitation(invitation, conn=c)

        logger.info(
            "invitation_accepted",
            invitation_id=str(invitation_id),
            tree_id=str(tree_id),
            member_id=str(member.member_id),
            account_id=account_id,
            role=access.role.value,
        )
        return AcceptedInvitation(invitation=invitation, member=member, access=access)

    def reject_invitation(self, invitation_id: Any) -> Invitation:
        """Mark a pending invitation rejected. Its placeholder member stays in the tree."""
        invitation_id = parse_id(invitation_id, "invitation_id")
        with self.store.transaction() as c:
            invitation = self._require_pending_invitation(c, invitation_id)
            invitation.status = InvitationStatus.REJECTED
            invitation.updated_at = utcnow()
            self.store.update_invitation(invitation, conn=c)
        logger.info("invitation_rejected", invitation_id=str(invitation_id))
        return invitation
