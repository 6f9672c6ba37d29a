"""SQLite member/relationship store + tree-wide adjacency aggregation."""
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from ..exceptions import StoreError
from ..models.member import Member, MemberProfile
from ..models.relationship import Relationship, RelationshipType
from ..models.tree import Access, FamilyTree, Invitation

if TYPE_CHECKING:
    from collections.abc import Iterator
    from uuid import UUID

logger = structlog.get_logger(__name__)

_MEMBER_COLUMNS = (
    "member_id", "tree_id", "account_id", "first_name", "last_name", "display_name",
    "date_of_birth", "date_of_death", "gender", "bio", "image_url", "phone_number",
    "email", "is_pending", "created_at", "updated_at",
)


@dataclass
class MemberAdjacency:
    """One row of the adjacency aggregation: a member and its outgoing edges.

    ``parent_ids`` come from ``(member, X, child)`` edges, ``child_ids`` from
    ``(member, X, parent)`` edges and ``spouse_ids`` from spouse edges.
    """
    member: Member
    parent_ids: list[str] = field(default_factory=list)
    child_ids: list[str] = field(default_factory=list)
    spouse_ids: list[str] = field(default_factory=list)


def _split_ids(value: str | None) -> list[str]:
    if not value:
        return []
    return sorted(set(value.split(",")))


class SQLiteFamilyStore:
    """SQLite-based store for trees, members, relationship edges, access
    and invitations.

    Responsibilities:
    - Durable rows scoped by tree (FKs cascade on tree deletion)
    - Uniqueness: one edge per (tree, from, to, type); one member per
      (tree, account)
    - Multi-statement transactions via ``transaction()``
    - The adjacency aggregation query used by the projection builder

    Relationship rows must only be written through the consistency engine.
    """

    def __init__(self, db_path: str | Path, busy_timeout_ms: int = 5000) -> None:
        self.db_path = Path(db_path)
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError("could not create store directory", ids={"db_path": str(self.db_path)}) from e
        self.busy_timeout_ms = busy_timeout_ms
        self._init_schema()

    @contextmanager
    def _get_conn(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, isolation_level=None)
        except sqlite3.Error as e:
            raise StoreError("could not open store", ids={"db_path": str(self.db_path)}) from e
        conn.row_factory = sqlite3.Row
        try:
            # Enforce PRAGMAs per-connection
            conn.execute("PRAGMA foreign_keys=ON;")
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)};")
            yield conn
        except sqlite3.Error as e:
            logger.error("store_error", error=str(e), db_path=str(self.db_path))
            raise StoreError(f"store operation failed: {e}", ids={"db_path": str(self.db_path)}) from e
        finally:
            conn.close()

    @contextmanager
    def _use(self, conn: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
        """Reuse the caller's connection (inside a transaction) or open one."""
        if conn is not None:
            yield conn
            return
        with self._get_conn() as own:
            yield own

    def _init_schema(self) -> None:
        with self._get_conn() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS family_trees (
                    tree_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT,
                    owner_id TEXT NOT NULL,
                    privacy_level TEXT NOT NULL DEFAULT 'private'
                        CHECK (privacy_level IN ('public', 'private', 'shared')),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_trees_owner ON family_trees(owner_id);

                CREATE TABLE IF NOT EXISTS members (
                    member_id TEXT PRIMARY KEY,
                    tree_id TEXT NOT NULL REFERENCES family_trees(tree_id) ON DELETE CASCADE,
                    account_id TEXT,
                    first_name TEXT NOT NULL,
                    last_name TEXT NOT NULL,
                    display_name TEXT NOT NULL,
                    date_of_birth TEXT,
                    date_of_death TEXT,
                    gender TEXT NOT NULL DEFAULT 'other'
                        CHECK (gender IN ('male', 'female', 'other')),
                    bio TEXT,
                    image_url TEXT,
                    phone_number TEXT,
                    email TEXT,
                    is_pending INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_members_tree ON members(tree_id);
                CREATE INDEX IF NOT EXISTS idx_members_email ON members(tree_id, email);
                -- A real account appears once per tree
                CREATE UNIQUE INDEX IF NOT EXISTS uq_members_tree_account
                    ON members(tree_id, account_id) WHERE account_id IS NOT NULL;

                CREATE TABLE IF NOT EXISTS relationships (
                    relationship_id TEXT PRIMARY KEY,
                    tree_id TEXT NOT NULL REFERENCES family_trees(tree_id) ON DELETE CASCADE,
                    from_member_id TEXT NOT NULL REFERENCES members(member_id) ON DELETE CASCADE,
                    to_member_id TEXT NOT NULL REFERENCES members(member_id) ON DELETE CASCADE,
                    relationship_type TEXT NOT NULL
                        CHECK (relationship_type IN ('parent', 'child', 'spouse')),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    CHECK (from_member_id <> to_member_id),
                    UNIQUE (tree_id, from_member_id, to_member_id, relationship_type)
                );
                CREATE INDEX IF NOT EXISTS idx_rel_from ON relationships(from_member_id);
                CREATE INDEX IF NOT EXISTS idx_rel_to ON relationships(to_member_id);

                CREATE TABLE IF NOT EXISTS tree_access (
                    tree_id TEXT NOT NULL REFERENCES family_trees(tree_id) ON DELETE CASCADE,
                    account_id TEXT NOT NULL,
                    role TEXT NOT NULL CHECK (role IN ('admin', 'editor', 'viewer')),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (tree_id, account_id)
                );
                CREATE INDEX IF NOT EXISTS idx_access_account ON tree_access(account_id);

                CREATE TABLE IF NOT EXISTS invitations (
                    invitation_id TEXT PRIMARY KEY,
                    tree_id TEXT NOT NULL REFERENCES family_trees(tree_id) ON DELETE CASCADE,
                    inviter_id TEXT NOT NULL,
                    invitee_email TEXT NOT NULL,
                    role TEXT NOT NULL CHECK (role IN ('admin', 'editor', 'viewer')),
                    status TEXT NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'accepted', 'rejected')),
                    expires_at TEXT NOT NULL,
                    prefill_json TEXT,
                    member_id TEXT REFERENCES members(member_id) ON DELETE SET NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_invitations_tree ON invitations(tree_id, invitee_email);
                """
            )

    # ------------------- Transaction API ----------------------------

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._get_conn() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    # --------------------------- Trees -------------------------------

    @staticmethod
    def _row_to_tree(row: sqlite3.Row) -> FamilyTree:
        return FamilyTree.model_validate(dict(row))

    def insert_tree(self, tree: FamilyTree, conn: sqlite3.Connection | None = None) -> FamilyTree:
        with self._use(conn) as c:
            c.execute(
                """
                INSERT INTO family_trees (
                    tree_id, name, description, owner_id, privacy_level, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(tree.tree_id),
                    tree.name,
                    tree.description,
                    tree.owner_id,
                    tree.privacy_level.value,
                    tree.created_at.isoformat(),
                    tree.updated_at.isoformat(),
                ),
            )
        return tree

    def get_tree(self, tree_id: UUID, conn: sqlite3.Connection | None = None) -> FamilyTree | None:
        with self._use(conn) as c:
            row = c.execute(
                "SELECT * FROM family_trees WHERE tree_id = ?", (str(tree_id),)
            ).fetchone()
            return self._row_to_tree(row) if row else None

    def list_trees_for_account(self, account_id: str) -> list[FamilyTree]:
        """Trees owned by the account or shared with it through access rows."""
        with self._get_conn() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT t.* FROM family_trees t
                LEFT JOIN tree_access a ON a.tree_id = t.tree_id
                WHERE t.owner_id = ? OR a.account_id = ?
                ORDER BY t.created_at
                """,
                (account_id, account_id),
            ).fetchall()
            return [self._row_to_tree(row) for row in rows]

    def delete_tree(self, tree_id: UUID, conn: sqlite3.Connection | None = None) -> bool:
        with self._use(conn) as c:
            cur = c.execute("DELETE FROM family_trees WHERE tree_id = ?", (str(tree_id),))
            return cur.rowcount > 0

    # -------------------------- Members ------------------------------

    @staticmethod
    def _row_to_member(row: sqlite3.Row) -> Member:
        data = {k: row[k] for k in _MEMBER_COLUMNS}
        data["is_pending"] = bool(data["is_pending"])
        return Member.model_validate(data)

    @staticmethod
    def _member_params(member: Member) -> tuple[Any, ...]:
        return (
            str(member.member_id),
            str(member.tree_id),
            member.account_id,
            member.first_name,
            member.last_name,
            member.display_name,
            member.date_of_birth.isoformat() if member.date_of_birth else None,
            member.date_of_death.isoformat() if member.date_of_death else None,
            member.gender.value,
            member.bio,
            member.image_url,
            member.phone_number,
            member.email,
            int(member.is_pending),
            member.created_at.isoformat(),
            member.updated_at.isoformat(),
        )

    def insert_member(self, member: Member, conn: sqlite3.Connection | None = None) -> Member:
        placeholders = ", ".join("?" for _ in _MEMBER_COLUMNS)
        with self._use(conn) as c:
            c.execute(
                f"INSERT INTO members ({', '.join(_MEMBER_COLUMNS)}) VALUES ({placeholders})",
                self._member_params(member),
            )
        return member

    def update_member(self, member: Member, conn: sqlite3.Connection | None = None) -> Member:
        """Rewrite every mutable column of an existing member row."""
        assignments = ", ".join(f"{col} = ?" for col in _MEMBER_COLUMNS[2:])
        params = self._member_params(member)
        with self._use(conn) as c:
            c.execute(
                f"UPDATE members SET {assignments} WHERE member_id = ?",
                (*params[2:], params[0]),
            )
        return member

    def get_member(self, member_id: UUID, conn: sqlite3.Connection | None = None) -> Member | None:
        with self._use(conn) as c:
            row = c.execute(
                "SELECT * FROM members WHERE member_id = ?", (str(member_id),)
            ).fetchone()
            return self._row_to_member(row) if row else None

    def list_members(self, tree_id: UUID, conn: sqlite3.Connection | None = None) -> list[Member]:
        with self._use(conn) as c:
            rows = c.execute(
                "SELECT * FROM members WHERE tree_id = ? ORDER BY member_id", (str(tree_id),)
            ).fetchall()
            return [self._row_to_member(row) for row in rows]

    def find_member_by_account(
        self, tree_id: UUID, account_id: str, conn: sqlite3.Connection | None = None
    ) -> Member | None:
        with self._use(conn) as c:
            row = c.execute(
                "SELECT * FROM members WHERE tree_id = ? AND account_id = ?",
                (str(tree_id), account_id),
            ).fetchone()
            return self._row_to_member(row) if row else None

    def find_pending_member_by_email(
        self, tree_id: UUID, email: str, conn: sqlite3.Connection | None = None
    ) -> Member | None:
        with self._use(conn) as c:
            row = c.execute(
                """
                SELECT * FROM members
                WHERE tree_id = ? AND is_pending = 1 AND lower(email) = lower(?)
                ORDER BY member_id
                LIMIT 1
                """,
                (str(tree_id), email),
            ).fetchone()
            return self._row_to_member(row) if row else None

    def delete_member(self, member_id: UUID, conn: sqlite3.Connection | None = None) -> bool:
        with self._use(conn) as c:
            cur = c.execute("DELETE FROM members WHERE member_id = ?", (str(member_id),))
            return cur.rowcount > 0

    # ----------------------- Relationships ---------------------------

    @staticmethod
    def _row_to_relationship(row: sqlite3.Row) -> Relationship:
        return Relationship.model_validate(dict(row))

    def insert_relationship(
        self, relationship: Relationship, conn: sqlite3.Connection | None = None
    ) -> Relationship:
        with self._use(conn) as c:
            c.execute(
                """
                INSERT INTO relationships (
                    relationship_id, tree_id, from_member_id, to_member_id,
                    relationship_type, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(relationship.relationship_id),
                    str(relationship.tree_id),
                    str(relationship.from_member_id),
                    str(relationship.to_member_id),
                    relationship.relationship_type.value,
                    relationship.created_at.isoformat(),
                    relationship.updated_at.isoformat(),
                ),
            )
        return relationship

    def get_relationship(
        self, relationship_id: UUID, conn: sqlite3.Connection | None = None
    ) -> Relationship | None:
        with self._use(conn) as c:
            row = c.execute(
                "SELECT * FROM relationships WHERE relationship_id = ?",
                (str(relationship_id),),
            ).fetchone()
            return self._row_to_relationship(row) if row else None

    def find_relationship(
        self,
        tree_id: UUID,
        from_member_id: UUID,
        to_member_id: UUID,
        relationship_type: RelationshipType,
        conn: sqlite3.Connection | None = None,
    ) -> Relationship | None:
        with self._use(conn) as c:
            row = c.execute(
                """
                SELECT * FROM relationships
                WHERE tree_id = ? AND from_member_id = ? AND to_member_id = ?
                  AND relationship_type = ?
                """,
                (str(tree_id), str(from_member_id), str(to_member_id), relationship_type.value),
            ).fetchone()
            return self._row_to_relationship(row) if row else None

    def list_relationships(
        self,
        tree_id: UUID,
        relationship_type: RelationshipType | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> list[Relationship]:
        """Single scan of a tree's edge table, optionally filtered by type."""
        query = "SELECT * FROM relationships WHERE tree_id = ?"
        params: list = [str(tree_id)]
        if relationship_type is not None:
            query += " AND relationship_type = ?"
            params.append(relationship_type.value)
        query += " ORDER BY from_member_id, to_member_id, relationship_type"
        with self._use(conn) as c:
            rows = c.execute(query, params).fetchall()
            return [self._row_to_relationship(row) for row in rows]

    def list_relationships_between(
        self,
        tree_id: UUID,
        member_a: UUID,
        member_b: UUID,
        conn: sqlite3.Connection | None = None,
    ) -> list[Relationship]:
        """Edges linking two members in either direction."""
        with self._use(conn) as c:
            rows = c.execute(
                """
                SELECT * FROM relationships
                WHERE tree_id = ?
                  AND ((from_member_id = ? AND to_member_id = ?)
                    OR (from_member_id = ? AND to_member_id = ?))
                """,
                (str(tree_id), str(member_a), str(member_b), str(member_b), str(member_a)),
            ).fetchall()
            return [self._row_to_relationship(row) for row in rows]

    def delete_relationship(
        self, relationship_id: UUID, conn: sqlite3.Connection | None = None
    ) -> bool:
        with self._use(conn) as c:
            cur = c.execute(
                "DELETE FROM relationships WHERE relationship_id = ?", (str(relationship_id),)
            )
            return cur.rowcount > 0

    def delete_relationships_for_member(
        self, member_id: UUID, conn: sqlite3.Connection | None = None
    ) -> int:
        with self._use(conn) as c:
            cur = c.execute(
                "DELETE FROM relationships WHERE from_member_id = ? OR to_member_id = ?",
                (str(member_id), str(member_id)),
            )
            return cur.rowcount

    # ------------------ Adjacency aggregation ------------------------

    def get_member_adjacency(
        self, tree_id: UUID, conn: sqlite3.Connection | None = None
    ) -> list[MemberAdjacency]:
        """Every member of the tree with the ids reached by its outgoing edges.

        One LEFT JOIN / GROUP BY pass over the edge table; no per-member
        queries.
        """
        with self._use(conn) as c:
            rows = c.execute(
                """
                SELECT
                    m.*,
                    group_concat(DISTINCT CASE WHEN r.relationship_type = 'child'
                                          THEN r.to_member_id END) AS parent_ids,
                    group_concat(DISTINCT CASE WHEN r.relationship_type = 'parent'
                                          THEN r.to_member_id END) AS child_ids,
                    group_concat(DISTINCT CASE WHEN r.relationship_type = 'spouse'
                                          THEN r.to_member_id END) AS spouse_ids
                FROM members m
                LEFT JOIN relationships r
                    ON r.from_member_id = m.member_id AND r.tree_id = m.tree_id
                WHERE m.tree_id = ?
                GROUP BY m.member_id
                ORDER BY m.member_id
                """,
                (str(tree_id),),
            ).fetchall()
            return [
                MemberAdjacency(
                    member=self._row_to_member(row),
                    parent_ids=_split_ids(row["parent_ids"]),
                    child_ids=_split_ids(row["child_ids"]),
                    spouse_ids=_split_ids(row["spouse_ids"]),
                )
                for row in rows
            ]

    # -------------------------- Access -------------------------------

    def upsert_access(self, access: Access, conn: sqlite3.Connection | None = None) -> Access:
        with self._use(conn) as c:
            c.execute(
                """
                INSERT INTO tree_access (tree_id, account_id, role, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(tree_id, account_id) DO UPDATE SET
                    role = excluded.role,
                    updated_at = excluded.updated_at
                """,
                (
                    str(access.tree_id),
                    access.account_id,
                    access.role.value,
                    access.created_at.isoformat(),
                    access.updated_at.isoformat(),
                ),
            )
        return access

    def get_access(
        self, tree_id: UUID, account_id: str, conn: sqlite3.Connection | None = None
    ) -> Access | None:
        with self._use(conn) as c:
            row = c.execute(
                "SELECT * FROM tree_access WHERE tree_id = ? AND account_id = ?",
                (str(tree_id), account_id),
            ).fetchone()
            return Access.model_validate(dict(row)) if row else None

    def list_access(self, tree_id: UUID) -> list[Access]:
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM tree_access WHERE tree_id = ? ORDER BY created_at",
                (str(tree_id),),
            ).fetchall()
            return [Access.model_validate(dict(row)) for row in rows]

    # ------------------------ Invitations ----------------------------

    @staticmethod
    def _row_to_invitation(row: sqlite3.Row) -> Invitation:
        data = dict(row)
        prefill_json = data.pop("prefill_json", None)
        data["prefill"] = MemberProfile.model_validate_json(prefill_json) if prefill_json else None
        return Invitation.model_validate(data)

    def _invitation_params(self, invitation: Invitation) -> tuple[Any, ...]:
        return (
            str(invitation.invitation_id),
            str(invitation.tree_id),
            invitation.inviter_id,
            invitation.invitee_email,
            invitation.role.value,
            invitation.status.value,
            invitation.expires_at.isoformat(),
            invitation.prefill.model_dump_json() if invitation.prefill else None,
            str(invitation.member_id) if invitation.member_id else None,
            invitation.created_at.isoformat(),
            invitation.updated_at.isoformat(),
        )

    def insert_invitation(
        self, invitation: Invitation, conn: sqlite3.Connection | None = None
    ) -> Invitation:
        with self._use(conn) as c:
            c.execute(
                """
                INSERT INTO invitations (
                    invitation_id, tree_id, inviter_id, invitee_email, role, status,
                    expires_at, prefill_json, member_id, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._invitation_params(invitation),
            )
        return invitation

    def update_invitation(
        self, invitation: Invitation, conn: sqlite3.Connection | None = None
    ) -> Invitation:
        with self._use(conn) as c:
            c.execute(
                """
                UPDATE invitations
                SET status = ?, member_id = ?, updated_at = ?
                WHERE invitation_id = ?
                """,
                (
                    invitation.status.value,
                    str(invitation.member_id) if invitation.member_id else None,
                    invitation.updated_at.isoformat(),
                    str(invitation.invitation_id),
                ),
            )
        return invitation

    def get_invitation(
        self, invitation_id: UUID, conn: sqlite3.Connection | None = None
    ) -> Invitation | None:
        with self._use(conn) as c:
            row = c.execute(
                "SELECT * FROM invitations WHERE invitation_id = ?", (str(invitation_id),)
            ).fetchone()
            return self._row_to_invitation(row) if row else None

    # --------------------------- Stats -------------------------------

    def get_statistics(self, tree_id: UUID) -> dict:
        with self._get_conn() as conn:
            stats: dict[str, Any] = {}
            stats["members"] = conn.execute(
                "SELECT COUNT(*) FROM members WHERE tree_id = ?", (str(tree_id),)
            ).fetchone()[0]
            stats["pending_members"] = conn.execute(
                "SELECT COUNT(*) FROM members WHERE tree_id = ? AND is_pending = 1",
                (str(tree_id),),
            ).fetchone()[0]
            rows = conn.execute(
                """
                SELECT relationship_type, COUNT(*) AS cnt
                FROM relationships
                WHERE tree_id = ?
                GROUP BY relationship_type
                """,
                (str(tree_id),),
            ).fetchall()
            stats["relationships"] = {row["relationship_type"]: row["cnt"] for row in rows}
            stats["total_relationships"] = sum(stats["relationships"].values())
            return stats
