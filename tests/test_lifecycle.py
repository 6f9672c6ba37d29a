"""Tests for member claiming and invitations."""
from __future__ import annotations

from datetime import timedelta

import pytest

from dynasty_tree.config import FamilyTreeConfig
from dynasty_tree.exceptions import ConflictError, NotFoundError, ValidationError
from dynasty_tree.lifecycle import MemberLifecycle
from dynasty_tree.models import AccessRole, InvitationStatus, MemberProfile, uuid7
from dynasty_tree.models.ids import utcnow


@pytest.fixture
def lifecycle(family):
    return family.service.lifecycle


class TestMembers:
    def test_pending_member(self, family, lifecycle):
        member = lifecycle.create_pending_member(
            family.tree.tree_id, MemberProfile(first_name="Dave", last_name="Smith")
        )
        assert member.is_pending
        assert member.account_id is None
        assert lifecycle.store.get_member(member.member_id).is_pending

    def test_pending_member_needs_tree(self, lifecycle):
        with pytest.raises(NotFoundError):
            lifecycle.create_pending_member(uuid7(), MemberProfile(first_name="X", last_name="Y"))

    def test_claimed_member(self, family, lifecycle):
        member = lifecycle.create_claimed_member(
            family.tree.tree_id, MemberProfile(first_name="Dave", last_name="Smith"), "acct-dave"
        )
        assert member.is_claimed
        assert member.account_id == "acct-dave"

    def test_second_claimed_member_for_account_conflicts(self, family, lifecycle):
        with pytest.raises(ConflictError):
            lifecycle.create_claimed_member(
                family.tree.tree_id, MemberProfile(first_name="Alice", last_name="Again"), "acct-alice"
            )

    def test_blank_account_rejected(self, family, lifecycle):
        with pytest.raises(ValidationError):
            lifecycle.create_claimed_member(
                family.tree.tree_id, MemberProfile(first_name="X", last_name="Y"), "  "
            )


class TestClaim:
    """Claim idempotence and conflicts."""

    def test_claim_pending_member(self, family, lifecycle):
        member = lifecycle.claim(family.bob.member_id, "acct-bob")
        assert member.is_claimed
        stored = lifecycle.store.get_member(family.bob.member_id)
        assert stored.account_id == "acct-bob"
        assert not stored.is_pending

    def test_same_account_is_noop(self, family, lifecycle):
        first = lifecycle.claim(family.bob.member_id, "acct-bob")
        second = lifecycle.claim(family.bob.member_id, "acct-bob")
        assert second.member_id == first.member_id
        assert second.updated_at == first.updated_at

    def test_different_account_conflicts(self, family, lifecycle):
        lifecycle.claim(family.bob.member_id, "acct-bob")
        with pytest.raises(ConflictError) as exc:
            lifecycle.claim(family.bob.member_id, "acct-mallory")
        assert exc.value.invariant == "claim_conflict"
        assert lifecycle.store.get_member(family.bob.member_id).account_id == "acct-bob"

    def test_account_already_linked_in_tree(self, family, lifecycle):
        with pytest.raises(ConflictError):
            lifecycle.claim(family.bob.member_id, "acct-alice")
        assert lifecycle.store.get_member(family.bob.member_id).is_pending

    def test_same_account_in_another_tree_is_fine(self, family, lifecycle):
        other = family.service.create_tree(
            "Other", None, "private", "acct-zed", {"first_name": "Zed", "last_name": "Jones"}
        )
        pending = family.service.add_member(other.tree_id, {"first_name": "Al", "last_name": "Jones"})
        assert lifecycle.claim(pending.member_id, "acct-alice").is_claimed

    def test_unknown_member(self, lifecycle):
        with pytest.raises(NotFoundError):
            lifecycle.claim(uuid7(), "acct-x")


class TestInvitations:
    def test_issue_with_prefill_creates_placeholder(self, family, lifecycle):
        inv = lifecycle.issue_invitation(
            family.tree.tree_id,
            "acct-alice",
            "Dave@Example.com",
            role="editor",
            prefill=MemberProfile(first_name="Dave", last_name="Smith"),
        )
        assert inv.status == InvitationStatus.PENDING
        assert inv.invitee_email == "dave@example.com"
        assert inv.role == AccessRole.EDITOR
        placeholder = lifecycle.store.get_member(inv.member_id)
        assert placeholder.is_pending
        assert placeholder.email == "dave@example.com"
        assert timedelta(days=6, hours=23) < inv.expires_at - utcnow() <= timedelta(days=7)

    def test_ttl_from_config(self, family):
        lifecycle = MemberLifecycle(family.service.store, FamilyTreeConfig(invitation_ttl_days=1))
        inv = lifecycle.issue_invitation(family.tree.tree_id, "acct-alice", "x@example.com")
        assert inv.expires_at - utcnow() <= timedelta(days=1)
        assert inv.member_id is None

    def test_invalid_email_and_role(self, family, lifecycle):
        with pytest.raises(ValidationError):
            lifecycle.issue_invitation(family.tree.tree_id, "acct-alice", "nobody")
        with pytest.raises(ValidationError):
            lifecycle.issue_invitation(family.tree.tree_id, "acct-alice", "a@b.c", role="overlord")

    def test_accept_claims_placeholder(self, family, lifecycle):
        inv = lifecycle.issue_invitation(
            family.tree.tree_id,
            "acct-alice",
            "dave@example.com",
            role="editor",
            prefill=MemberProfile(first_name="Dave", last_name="Smith"),
        )
        accepted = lifecycle.accept_invitation(inv.invitation_id, "acct-dave")

        assert accepted.member.member_id == inv.member_id
        assert accepted.member.is_claimed
        assert accepted.access.role == AccessRole.EDITOR
        stored = lifecycle.store.get_invitation(inv.invitation_id)
        assert stored.status == InvitationStatus.ACCEPTED
        assert lifecycle.store.get_access(family.tree.tree_id, "acct-dave").role == AccessRole.EDITOR

    def test_accept_matches_pending_member_by_email(self, family, lifecycle):
        eve = family.service.add_member(
            family.tree.tree_id, {"first_name": "Eve", "last_name": "Smith", "email": "eve@example.com"}
        )
        inv = lifecycle.issue_invitation(family.tree.tree_id, "acct-alice", "eve@example.com")
        accepted = lifecycle.accept_invitation(inv.invitation_id, "acct-eve")
        assert accepted.member.member_id == eve.member_id
        assert len(lifecycle.store.list_members(family.tree.tree_id)) == 4

    def test_accept_without_match_creates_member(self, family, lifecycle):
        inv = lifecycle.issue_invitation(family.tree.tree_id, "acct-alice", "frank@example.com")
        accepted = lifecycle.accept_invitation(inv.invitation_id, "acct-frank")
        assert accepted.member.first_name == "frank"
        assert accepted.member.is_claimed
        assert accepted.access.role == AccessRole.VIEWER

    def test_accept_by_existing_member_keeps_higher_role(self, family, lifecycle):
        inv = lifecycle.issue_invitation(family.tree.tree_id, "acct-alice", "alice@example.com")
        accepted = lifecycle.accept_invitation(inv.invitation_id, "acct-alice")
        assert accepted.member.member_id == family.alice.member_id
        assert accepted.access.role == AccessRole.ADMIN

    def test_accept_twice_conflicts(self, family, lifecycle):
        inv = lifecycle.issue_invitation(family.tree.tree_id, "acct-alice", "g@example.com")
        lifecycle.accept_invitation(inv.invitation_id, "acct-g")
        with pytest.raises(ConflictError):
            lifecycle.accept_invitation(inv.invitation_id, "acct-g")

    def test_accept_expired(self, family, lifecycle):
        inv = lifecycle.issue_invitation(family.tree.tree_id, "acct-alice", "h@example.com")
        with pytest.raises(ValidationError) as exc:
            lifecycle.accept_invitation(inv.invitation_id, "acct-h", now=inv.expires_at + timedelta(seconds=1))
        assert exc.value.invariant == "invitation_expired"
        assert lifecycle.store.get_access(family.tree.tree_id, "acct-h") is None
        assert lifecycle.store.get_invitation(inv.invitation_id).status == InvitationStatus.PENDING

    def test_reject(self, family, lifecycle):
        inv = lifecycle.issue_invitation(family.tree.tree_id, "acct-alice", "i@example.com")
        rejected = lifecycle.reject_invitation(inv.invitation_id)
        assert rejected.status == InvitationStatus.REJECTED
        with pytest.raises(ConflictError):
            lifecycle.accept_invitation(inv.invitation_id, "acct-i")

    def test_unknown_invitation(self, lifecycle):
        with pytest.raises(NotFoundError):
            lifecycle.accept_invitation(uuid7(), "acct-x")
