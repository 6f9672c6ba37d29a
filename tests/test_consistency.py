"""Tests for the relationship consistency engine."""
from __future__ import annotations

import pytest

from dynasty_tree.config import FamilyTreeConfig
from dynasty_tree.exceptions import NotFoundError, StoreError, ValidationError
from dynasty_tree.graph import RelationshipEngine
from dynasty_tree.models import Relationship, RelationshipType

from conftest import assert_symmetric, edge_keys


@pytest.fixture
def engine(family):
    return family.service.engine


class TestAddRelationship:
    """Tests for paired inserts."""

    def test_parent_edge_stored_with_inverse(self, family, engine):
        t, alice, carol = family.tree.tree_id, family.alice, family.carol
        rel = engine.add_relationship(t, alice.member_id, carol.member_id, "parent")

        assert rel.relationship_type == RelationshipType.PARENT
        assert edge_keys(engine.store, t) == {
            (str(alice.member_id), str(carol.member_id), "parent"),
            (str(carol.member_id), str(alice.member_id), "child"),
        }

    def test_spouse_edge_stored_both_ways(self, family, engine):
        t, alice, bob = family.tree.tree_id, family.alice, family.bob
        engine.add_relationship(t, str(alice.member_id), str(bob.member_id), RelationshipType.SPOUSE)
        assert edge_keys(engine.store, t) == {
            (str(alice.member_id), str(bob.member_id), "spouse"),
            (str(bob.member_id), str(alice.member_id), "spouse"),
        }

    def test_child_type_is_accepted(self, family, engine):
        t = family.tree.tree_id
        engine.add_relationship(t, family.carol.member_id, family.bob.member_id, "CHILD")
        assert (str(family.bob.member_id), str(family.carol.member_id), "parent") in edge_keys(engine.store, t)

    @pytest.mark.parametrize("kind", ["parent", "child", "spouse"])
    def test_self_relationship_rejected(self, family, engine, kind):
        t, alice = family.tree.tree_id, family.alice
        with pytest.raises(ValidationError) as exc:
            engine.add_relationship(t, alice.member_id, alice.member_id, kind)
        assert exc.value.invariant == "self_relationship"
        assert engine.store.list_relationships(t) == []

    def test_unknown_type_rejected(self, family, engine):
        with pytest.raises(ValidationError) as exc:
            engine.add_relationship(family.tree.tree_id, family.alice.member_id, family.bob.member_id, "cousin")
        assert exc.value.invariant == "unknown_relationship_type"

    def test_malformed_id_rejected(self, family, engine):
        with pytest.raises(ValidationError) as exc:
            engine.add_relationship(family.tree.tree_id, "not-a-uuid", family.bob.member_id, "spouse")
        assert exc.value.invariant == "malformed_id"

    def test_unknown_member(self, family, engine):
        from dynasty_tree.models import uuid7

        with pytest.raises(NotFoundError):
            engine.add_relationship(family.tree.tree_id, family.alice.member_id, uuid7(), "spouse")

    def test_member_from_another_tree(self, family, engine):
        service = family.service
        other = service.create_tree(
            "Other", None, "private", "acct-zed", {"first_name": "Zed", "last_name": "Jones"}
        )
        zed = service.store.find_member_by_account(other.tree_id, "acct-zed")
        with pytest.raises(ValidationError) as exc:
            engine.add_relationship(family.tree.tree_id, family.alice.member_id, zed.member_id, "spouse")
        assert exc.value.invariant == "cross_tree"
        assert engine.store.list_relationships(family.tree.tree_id) == []


class TestIdempotentAdd:
    def test_duplicate_add_keeps_one_pair(self, family, engine):
        t = family.tree.tree_id
        first = engine.add_relationship(t, family.alice.member_id, family.carol.member_id, "parent")
        second = engine.add_relationship(t, family.alice.member_id, family.carol.member_id, "parent")
        assert first.relationship_id == second.relationship_id
        assert len(engine.store.list_relationships(t)) == 2

    def test_adding_the_inverse_form_is_a_duplicate(self, family, engine):
        t = family.tree.tree_id
        engine.add_relationship(t, family.alice.member_id, family.carol.member_id, "parent")
        rel = engine.add_relationship(t, family.carol.member_id, family.alice.member_id, "child")
        assert rel.key() == (family.carol.member_id, family.alice.member_id, RelationshipType.CHILD)
        assert len(engine.store.list_relationships(t)) == 2

    def test_duplicate_add_repairs_missing_inverse(self, family, engine):
        t = family.tree.tree_id
        rel = engine.add_relationship(t, family.alice.member_id, family.bob.member_id, "spouse")
        partner = engine.store.find_relationship(t, *rel.inverse_key())
        engine.store.delete_relationship(partner.relationship_id)
        assert len(engine.audit(t)) == 1

        again = engine.add_relationship(t, family.alice.member_id, family.bob.member_id, "spouse")
        assert again.relationship_id == rel.relationship_id
        assert engine.audit(t) == []
        assert_symmetric(engine.store, t)


class TestContradictionsAndCycles:
    def test_reverse_parent_rejected(self, family, engine):
        t = family.tree.tree_id
        engine.add_relationship(t, family.alice.member_id, family.carol.member_id, "parent")
        with pytest.raises(ValidationError) as exc:
            engine.add_relationship(t, family.carol.member_id, family.alice.member_id, "parent")
        assert exc.value.invariant == "type_contradiction"

    def test_spouse_between_parent_and_child_rejected(self, family, engine):
        t = family.tree.tree_id
        engine.add_relationship(t, family.alice.member_id, family.carol.member_id, "parent")
        with pytest.raises(ValidationError) as exc:
            engine.add_relationship(t, family.carol.member_id, family.alice.member_id, "spouse")
        assert exc.value.invariant == "type_contradiction"
        assert len(engine.store.list_relationships(t)) == 2

    def _chain(self, family):
        """Alice -> Carol -> Dave, returns Dave."""
        service = family.service
        t = family.tree.tree_id
        dave = service.add_member(t, {"first_name": "Dave", "last_name": "Smith"})
        service.add_relationship(t, family.alice.member_id, family.carol.member_id, "parent")
        service.add_relationship(t, family.carol.member_id, dave.member_id, "parent")
        return dave

    def test_ancestry_cycle_rejected(self, family, engine):
        dave = self._chain(family)
        t = family.tree.tree_id
        with pytest.raises(ValidationError) as exc:
            engine.add_relationship(t, dave.member_id, family.alice.member_id, "parent")
        assert exc.value.invariant == "ancestry_cycle"
        with pytest.raises(ValidationError):
            engine.add_relationship(t, family.alice.member_id, dave.member_id, "child")
        assert len(engine.store.list_relationships(t)) == 4

    def test_cycles_allowed_when_disabled(self, family):
        dave = self._chain(family)
        t = family.tree.tree_id
        lenient = RelationshipEngine(family.service.store, FamilyTreeConfig(reject_cycles=False))
        lenient.add_relationship(t, dave.member_id, family.alice.member_id, "parent")
        assert len(lenient.store.list_relationships(t)) == 6
        assert_symmetric(lenient.store, t)

    def test_descendant_may_marry_unrelated_branch(self, family, engine):
        dave = self._chain(family)
        t = family.tree.tree_id
        engine.add_relationship(t, dave.member_id, family.bob.member_id, "spouse")
        assert_symmetric(engine.store, t)


class TestAtomicity:
    def test_failed_inverse_insert_rolls_back_primary(self, family, engine, monkeypatch):
        store = engine.store
        original = store.insert_relationship
        calls = []

        def flaky(relationship: Relationship, conn=None):
            calls.append(relationship)
            if len(calls) == 2:
                raise StoreError("disk full")
            return original(relationship, conn=conn)

        monkeypatch.setattr(store, "insert_relationship", flaky)
        with pytest.raises(StoreError):
            engine.add_relationship(family.tree.tree_id, family.alice.member_id, family.bob.member_id, "spouse")
        monkeypatch.undo()

        assert len(calls) == 2
        assert store.list_relationships(family.tree.tree_id) == []


class TestRemoveRelationship:
    def test_removes_both_edges(self, family, engine):
        t = family.tree.tree_id
        rel = engine.add_relationship(t, family.alice.member_id, family.carol.member_id, "parent")
        result = engine.remove_relationship(rel.relationship_id)
        assert not result.partner_missing
        assert len(result.deleted_ids) == 2
        assert engine.store.list_relationships(t) == []

    def test_remove_by_inverse_id(self, family, engine):
        t = family.tree.tree_id
        rel = engine.add_relationship(t, family.alice.member_id, family.bob.member_id, "spouse")
        partner = engine.store.find_relationship(t, *rel.inverse_key())
        engine.remove_relationship(str(partner.relationship_id))
        assert engine.store.list_relationships(t) == []

    def test_missing_partner_is_reported_and_delete_proceeds(self, family, engine):
        t = family.tree.tree_id
        rel = engine.add_relationship(t, family.alice.member_id, family.carol.member_id, "parent")
        partner = engine.store.find_relationship(t, *rel.inverse_key())
        engine.store.delete_relationship(partner.relationship_id)

        result = engine.remove_relationship(rel.relationship_id)
        assert result.partner_missing
        assert result.deleted_ids == [rel.relationship_id]
        assert engine.store.list_relationships(t) == []

    def test_unknown_relationship(self, engine):
        from dynasty_tree.models import uuid7

        with pytest.raises(NotFoundError):
            engine.remove_relationship(uuid7())

    def test_symmetry_after_mixed_sequence(self, family, engine):
        service = family.service
        t = family.tree.tree_id
        dave = service.add_member(t, {"first_name": "Dave", "last_name": "Smith"})
        a, b, c, d = family.alice.member_id, family.bob.member_id, family.carol.member_id, dave.member_id

        engine.add_relationship(t, a, c, "parent")
        spouse = engine.add_relationship(t, a, b, "spouse")
        engine.add_relationship(t, b, c, "parent")
        engine.add_relationship(t, d, a, "child")
        engine.remove_relationship(spouse.relationship_id)
        engine.add_relationship(t, b, d, "parent")
        engine.remove_relationship(engine.store.find_relationship(t, c, b, RelationshipType.CHILD).relationship_id)

        assert_symmetric(engine.store, t)
        assert engine.audit(t) == []
        assert len(engine.store.list_relationships(t)) == 6


class TestCascadeAndAudit:
    def test_cascade_removes_every_edge_touching_member(self, family, engine):
        service = family.service
        t = family.tree.tree_id
        engine.add_relationship(t, family.alice.member_id, family.carol.member_id, "parent")
        engine.add_relationship(t, family.bob.member_id, family.carol.member_id, "parent")
        engine.add_relationship(t, family.alice.member_id, family.bob.member_id, "spouse")

        removed = service.delete_member(family.carol.member_id)

        assert removed == 4
        carol = str(family.carol.member_id)
        assert all(carol not in (a, b) for a, b, _ in edge_keys(engine.store, t))
        assert engine.store.get_member(family.carol.member_id) is None
        assert_symmetric(engine.store, t)

    def test_cascade_inside_callers_transaction(self, family, engine):
        t = family.tree.tree_id
        engine.add_relationship(t, family.alice.member_id, family.bob.member_id, "spouse")
        with pytest.raises(RuntimeError):
            with engine.store.transaction() as conn:
                engine.cascade_on_member_delete(family.bob.member_id, conn=conn)
                raise RuntimeError("abort")
        assert len(engine.store.list_relationships(t)) == 2

    def test_audit_reports_one_sided_edge(self, family, engine):
        t = family.tree.tree_id
        engine.store.insert_relationship(
            Relationship(
                tree_id=t,
                from_member_id=family.carol.member_id,
                to_member_id=family.bob.member_id,
                relationship_type="child",
            )
        )
        violations = engine.audit(t)
        assert len(violations) == 1
        assert violations[0].invariant == "inverse_missing"
        assert violations[0].ids["from_member_id"] == family.carol.member_id
