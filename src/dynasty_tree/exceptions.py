"""Typed failures raised by the family tree core.

Every error names the invariant it protects and the ids involved so the
caller can build an actionable message.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(eq=False)
class FamilyTreeError(Exception):
    """Base class for all family tree failures."""

    message: str
    invariant: str | None = None
    ids: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:  # pragma: no cover - human readable
        base = self.message
        if self.invariant:
            base += f" [{self.invariant}]"
        if self.ids:
            details = ", ".join(f"{k}={v}" for k, v in self.ids.items())
            base += f" ({details})"
        return base

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "invariant": self.invariant,
            "ids": {k: str(v) for k, v in self.ids.items()},
        }


class ValidationError(FamilyTreeError):
    """Input rejected before any store write.

    Self relationships, unknown relationship types, malformed ids, type
    contradictions and ancestry cycles. Recoverable: fix input and retry.
    """


class NotFoundError(ValidationError):
    """A referenced tree, member, relationship or invitation does not exist."""


class ConflictError(FamilyTreeError):
    """State conflict requiring manual resolution.

    Raised for claim conflicts (member already linked to another account)
    and duplicate claimed members for one account in a tree.
    """


class ConsistencyViolation(FamilyTreeError):
    """An edge exists without its mandatory inverse.

    Raised in tests as a fatal precondition failure; reported (not raised)
    by projection and audit so reads never crash on inconsistent data.
    """

    @classmethod
    def missing_inverse(
        cls,
        relationship_id: Any,
        from_member_id: Any,
        to_member_id: Any,
        relationship_type: str,
    ) -> ConsistencyViolation:
        return cls(
            message=f"{relationship_type} edge has no inverse",
            invariant="inverse_missing",
            ids={
                "relationship_id": relationship_id,
                "from_member_id": from_member_id,
                "to_member_id": to_member_id,
                "relationship_type": relationship_type,
            },
        )


class AuthorizationError(FamilyTreeError):
    """Caller may not perform the operation on this tree."""


class StoreError(FamilyTreeError):
    """Transaction or connectivity failure from the backing store.

    The driver exception is chained as ``__cause__``. Never retried here.
    """
