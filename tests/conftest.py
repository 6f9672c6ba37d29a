"""Shared fixtures: a temporary store and a small family."""
from __future__ import annotations

import tempfile
from pathlib import Path
from types import SimpleNamespace

import pytest

from dynasty_tree.config import FamilyTreeConfig
from dynasty_tree.service import FamilyTreeService
from dynasty_tree.store import SQLiteFamilyStore


def edge_keys(store: SQLiteFamilyStore, tree_id) -> set[tuple[str, str, str]]:
    """Stored edges of a tree as (from, to, type) string triples."""
    return {
        (str(r.from_member_id), str(r.to_member_id), r.relationship_type.value)
        for r in store.list_relationships(tree_id)
    }


def assert_symmetric(store: SQLiteFamilyStore, tree_id) -> None:
    inverse = {"parent": "child", "child": "parent", "spouse": "spouse"}
    keys = edge_keys(store, tree_id)
    for a, b, kind in keys:
        assert (b, a, inverse[kind]) in keys, f"missing inverse of {(a, b, kind)}"


@pytest.fixture
def temp_store():
    """Create a temporary SQLite store for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield SQLiteFamilyStore(Path(tmpdir) / "family.db")


@pytest.fixture
def config():
    return FamilyTreeConfig(reject_cycles=True, invitation_ttl_days=7, default_depth=2)


@pytest.fixture
def service(temp_store, config):
    return FamilyTreeService(temp_store, config)


@pytest.fixture
def family(service):
    """Tree owned by Alice with pending members Bob and Carol (no edges yet)."""
    tree = service.create_tree(
        "Smith Family",
        "Test tree",
        "private",
        "acct-alice",
        {"first_name": "Alice", "last_name": "Smith", "gender": "female"},
    )
    alice = service.store.find_member_by_account(tree.tree_id, "acct-alice")
    bob = service.add_member(tree.tree_id, {"first_name": "Bob", "last_name": "Smith", "gender": "male"})
    carol = service.add_member(tree.tree_id, {"first_name": "Carol", "last_name": "Smith", "gender": "female"})
    return SimpleNamespace(tree=tree, alice=alice, bob=bob, carol=carol, service=service)
