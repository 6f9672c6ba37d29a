"""Pydantic data models."""

from .ids import parse_id, uuid7
from .member import Gender, Member, MemberProfile
from .relationship import INVERSE_TYPES, Relationship, RelationshipType
from .tree import (
    Access,
    AccessRole,
    FamilyTree,
    Invitation,
    InvitationStatus,
    PrivacyLevel,
)

__all__ = [
    "FamilyTree",
    "PrivacyLevel",
    "Member",
    "MemberProfile",
    "Gender",
    "Relationship",
    "RelationshipType",
    "INVERSE_TYPES",
    "Access",
    "AccessRole",
    "Invitation",
    "InvitationStatus",
    "parse_id",
    "uuid7",
]
