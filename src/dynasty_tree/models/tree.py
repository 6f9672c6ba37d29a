"""Family tree and access models."""
from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field

from .ids import utcnow, uuid7
from .member import MemberProfile


class PrivacyLevel(str, Enum):
    """Visibility of a tree outside its access list."""

    PUBLIC = "public"
    PRIVATE = "private"
    SHARED = "shared"


class AccessRole(str, Enum):
    """Role granted to an account on a tree."""

    ADMIN = "admin"
    EDITOR = "editor"
    VIEWER = "viewer"

    @property
    def can_mutate(self) -> bool:
        return self in (AccessRole.ADMIN, AccessRole.EDITOR)


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class FamilyTree(BaseModel):
    """Scoping boundary for members, relationships, access and invitations."""

    tree_id: UUID = Field(default_factory=uuid7)
    name: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    owner_id: str = Field(min_length=1, description="Account id of the owner")
    privacy_level: PrivacyLevel = PrivacyLevel.PRIVATE
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Access(BaseModel):
    """Role of one account on one tree."""

    tree_id: UUID
    account_id: str = Field(min_length=1)
    role: AccessRole = AccessRole.VIEWER
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Invitation(BaseModel):
    """Invitation for an email address to join a tree.

    ``member_id`` points at the pending placeholder created from ``prefill``
    when the invitation was issued.
    """

    invitation_id: UUID = Field(default_factory=uuid7)
    tree_id: UUID
    inviter_id: str = Field(min_length=1)
    invitee_email: str = Field(min_length=3)
    role: AccessRole = AccessRole.VIEWER
    status: InvitationStatus = InvitationStatus.PENDING
    expires_at: datetime
    prefill: MemberProfile | None = None
    member_id: UUID | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def expiring_in(cls, days: int, **kwargs) -> Invitation:
        return cls(expires_at=utcnow() + timedelta(days=days), **kwargs)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at
