"""
Tests for the constraint graph.

Tests:
- Deterministic requires-cycle breaking
- Transitive propagation of requirements
- Derived register exclusions and syntactic restrictions
- Assignment validation
"""
import math

import pytest

from engines.constraints import (
    Collocation,
    Condition,
    ConstraintGraph,
    Enables,
    Excludes,
    Modifies,
    Prefers,
    Requires,
    Restricts,
    apply_preferences,
    apply_restrictions,
    relation_from_dict,
    relation_to_dict,
)
from tests.conftest import make_object


@pytest.fixture
def abc():
    return [make_object("a"), make_object("b"), make_object("c"), make_object("d")]


class TestCycleBreaking:
    def test_weakest_edge_is_dropped(self, abc):
        relations = [Requires("a", "b", 1.0), Requires("b", "c", 0.5), Requires("c", "a", 0.5)]
        graph = ConstraintGraph.build(abc, relations)
        assert graph.broken_edges == [Requires("c", "a", 0.5)]
        assert graph.find_requires_cycle() is None
        assert graph.edges_between("c", "a") == []

    def test_breaking_is_order_independent(self, abc):
        relations = [Requires("a", "b", 0.7), Requires("b", "a", 0.7)]
        first = ConstraintGraph.build(abc, relations).broken_edges
        second = ConstraintGraph.build(list(reversed(abc)), list(reversed(relations))).broken_edges
        assert first == second == [Requires("b", "a", 0.7)]

    def test_acyclic_graph_is_untouched(self, abc):
        graph = ConstraintGraph.build(abc, [Requires("a", "b"), Requires("b", "c")])
        assert graph.broken_edges == []
        assert graph.edge_count == 2

    def test_edges_from_unknown_sources_are_ignored(self, abc):
        graph = ConstraintGraph.build(abc, [Requires("zzz", "a")])
        assert graph.edge_count == 0


class TestPropagation:
    def test_requirements_are_transitive(self, abc):
        graph = ConstraintGraph.build(abc, [Requires("a", "b"), Requires("b", "c")])
        prop = graph.propagate("a")
        assert prop.required == ["b", "c"]

    def test_assigned_objects_satisfy_requirements(self, abc):
        graph = ConstraintGraph.build(abc, [Requires("a", "b"), Requires("b", "c")])
        assert graph.propagate("a", assigned_ids={"b"}).required == ["c"]

    def test_relation_kinds_collect(self, abc):
        relations = [
            Excludes("a", "d"),
            Prefers("a", "b", 0.8),
            Enables("a", "c", 0.4),
            Modifies("a", "b", adjustment=0.3),
        ]
        prop = ConstraintGraph.build(abc, relations).propagate("a")
        assert prop.excluded == {"d"}
        assert prop.preferences["b"] == pytest.approx(0.4)
        assert prop.preferences["c"] == pytest.approx(0.1)
        assert prop.enabled == {"c"}
        assert prop.modifications[0].adjustment == pytest.approx(0.3)

    def test_condition_gates_edge(self):
        objects = [make_object("a", metadata={"tense": "past"}), make_object("b")]
        gated = Requires("a", "b", condition=Condition("tense", "equals", "present"))
        assert ConstraintGraph.build(objects, [gated]).propagate("a").required == []

    def test_apply_preferences_and_restrictions(self, abc):
        graph = ConstraintGraph.build(abc, [Prefers("a", "b", 1.0), Excludes("a", "c")])
        prop = graph.propagate("a")
        scores = apply_preferences({"b": 0.1, "c": 0.9}, prop)
        assert scores["b"] == pytest.approx(0.6)
        assert scores["c"] == -math.inf

        prop.restrictions["LEX"] = frozenset({"b"})
        kept = apply_restrictions(abc, prop)
        assert [o.id for o in kept] == ["b"]


class TestDerivedRelations:
    def test_register_clash_excludes(self):
        objects = [
            make_object("prag-formal", "PRAG", metadata={"register": "formal"}),
            make_object("prag-casual", "PRAG", metadata={"register": "casual"}),
            make_object("prag-consult", "PRAG", metadata={"register": "consultative"}),
        ]
        graph = ConstraintGraph.build(objects)
        assert graph.propagate("prag-formal").excluded == {"prag-casual"}
        assert graph.validate(["prag-formal", "prag-consult"]).valid

    def test_passive_frame_restricts_to_transitive(self):
        objects = [
            make_object("synt-passive", "SYNT", metadata={"frame": "passive"}),
            make_object("lex-treat", "LEX", metadata={"transitivity": "transitive"}),
            make_object("lex-arrive", "LEX", metadata={"transitivity": "intransitive"}),
        ]
        graph = ConstraintGraph.build(objects)
        prop = graph.propagate("synt-passive")
        assert prop.restrictions["LEX"] == frozenset({"lex-treat"})

        result = graph.validate(["synt-passive", "lex-arrive"])
        assert not result.valid
        assert "lex-arrive" in result.violations[0]

    def test_collocations_become_mutual_preferences(self, abc):
        graph = ConstraintGraph.build(abc, collocations=[Collocation("a", "b", 0.5)])
        assert graph.propagate("b").preferences["a"] == pytest.approx(0.375)


class TestValidation:
    def test_missing_requirement_is_a_violation(self, abc):
        graph = ConstraintGraph.build(abc, [Requires("a", "b")])
        assert not graph.validate(["a"]).valid
        assert graph.validate(["a", "b"]).valid

    def test_preferences_never_invalidate(self, abc):
        graph = ConstraintGraph.build(abc, [Prefers("a", "b")])
        assert graph.validate(["a"]).valid


class TestSerialization:
    def test_restricts_round_trip(self):
        rel = Restricts("s", "component:LEX", frozenset({"x", "y"}), reason="passive")
        assert relation_from_dict(relation_to_dict(rel)) == rel

    def test_condition_round_trip(self):
        rel = Requires("a", "b", 0.4, Condition("tense", "in", ["past", "present"]))
        restored = relation_from_dict(relation_to_dict(rel))
        assert restored.condition.evaluate(make_object("a", metadata={"tense": "past"}))

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            relation_from_dict({"kind": "loves", "source_id": "a", "target_id": "b"})
