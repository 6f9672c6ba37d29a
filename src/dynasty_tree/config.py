from __future__ import annotations

import os
from dataclasses import dataclass, field


def _s(name: str, default: str) -> str:
    return os.getenv(name, default)


def _i(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except Exception:
        return default


def _b(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class FamilyTreeConfig:
    db_path: str = field(default_factory=lambda: _s("FAMILY_TREE_DB_PATH", "./data/family_tree.db"))

    # Reject parent/child edges that would make a member their own ancestor
    reject_cycles: bool = field(default_factory=lambda: _b("FAMILY_TREE_REJECT_CYCLES", True))

    invitation_ttl_days: int = field(default_factory=lambda: _i("FAMILY_TREE_INVITATION_TTL_DAYS", 7))
    busy_timeout_ms: int = field(default_factory=lambda: _i("FAMILY_TREE_BUSY_TIMEOUT_MS", 5000))

    # Hops around the focal member rendered by `show --focus`
    default_depth: int = field(default_factory=lambda: _i("FAMILY_TREE_DEFAULT_DEPTH", 2))

    log_level: str = field(default_factory=lambda: _s("FAMILY_TREE_LOG_LEVEL", "INFO").upper())

    @classmethod
    def from_env(cls) -> FamilyTreeConfig:
        """Read a fresh config from the current environment."""
        return cls()


CONFIG = FamilyTreeConfig()
