"""Identifier helpers shared by all entities."""
from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from uuid_utils import uuid7 as _uuid7

from ..exceptions import ValidationError


def uuid7() -> UUID:
    """Generate a UUID7 compatible with stdlib UUID."""
    return UUID(str(_uuid7()))


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_id(value: Any, field_name: str = "id") -> UUID:
    """Coerce a caller-supplied id to UUID or raise ValidationError."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError, AttributeError) as e:
        raise ValidationError(
            f"malformed {field_name}",
            invariant="malformed_id",
            ids={field_name: value},
        ) from e
