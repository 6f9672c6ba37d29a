"""Member (person node) models."""
from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from .ids import utcnow, uuid7


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


class MemberProfile(BaseModel):
    """Editable profile fields of a member.

    Used as the prefill payload of invitations and as the input of
    ``add_member``.
    """

    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    display_name: str | None = Field(default=None, max_length=101)
    date_of_birth: date | None = None
    date_of_death: date | None = None
    gender: Gender = Gender.OTHER
    bio: str | None = Field(default=None, max_length=500)
    image_url: str | None = None
    phone_number: str | None = None
    email: str | None = None

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str | None) -> str | None:
        if value is None:
            return value
        value = value.strip().lower()
        if "@" not in value or value.startswith("@") or value.endswith("@"):
            raise ValueError("email must look like name@domain")
        return value

    @model_validator(mode="after")
    def _fill_and_check(self) -> MemberProfile:
        if not self.display_name:
            self.display_name = f"{self.first_name} {self.last_name}"
        if self.date_of_birth and self.date_of_death and self.date_of_death < self.date_of_birth:
            raise ValueError("date_of_death precedes date_of_birth")
        return self

    @classmethod
    def from_email(cls, email: str) -> MemberProfile:
        """Minimal profile for an invitee nobody described."""
        local = email.split("@", 1)[0] or "Invited"
        return cls(first_name=local[:50], last_name="(invited)", email=email)

    @classmethod
    def from_account(cls, account_id: str) -> MemberProfile:
        """Minimal profile for a tree owner who gave no details."""
        return cls(first_name=(account_id.strip() or "Owner")[:50], last_name="(owner)")


class Member(MemberProfile):
    """A person node within one family tree.

    Pending members have no linked account. Claiming links an account and
    is terminal: a claimed member never reverts to pending.
    """

    member_id: UUID = Field(default_factory=uuid7)
    tree_id: UUID
    account_id: str | None = None
    is_pending: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_claimed(self) -> bool:
        return not self.is_pending and self.account_id is not None

    def profile(self) -> MemberProfile:
        return MemberProfile.model_validate(
            self.model_dump(include=set(MemberProfile.model_fields))
        )
