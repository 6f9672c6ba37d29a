"""SQLite persistence for trees, members and relationship edges."""
from __future__ import annotations

from .sqlite_store import MemberAdjacency, SQLiteFamilyStore

__all__ = ["SQLiteFamilyStore", "MemberAdjacency"]
