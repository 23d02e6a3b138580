"""
Tests for usage-space tracking and context selection.

Tests:
- Event idempotency by event id
- Coverage never decreases
- Expansion candidates ranked by similarity
- Context choice follows the expansion preference
- Progress summary per component
"""
from datetime import timedelta

import pytest

from engines.types import UsageEvent, UsageSpaceRecord
from engines.usage_space import (
    ObjectUsageSpace,
    context_similarity,
    coverage,
    record_event,
    select_context,
    target_contexts,
    usage_progress,
)
from tests.conftest import LEARNER, NOW, make_object

CONSULT = "medical-spoken-consultative"
COLLEGIAL = "medical-spoken-collegial"
CHART = "medical-written-technical"


def make_space(object_id: str = "lex-patient", **records: tuple[int, int]) -> ObjectUsageSpace:
    space = ObjectUsageSpace(LEARNER, object_id, "LEX", target_contexts("medical"))
    for context_id, (attempts, successes) in records.items():
        space.records[context_id] = UsageSpaceRecord(
            LEARNER, object_id, context_id, attempts, successes, float(successes)
        )
    return space


def event(event_id: str, context_id: str = CONSULT, success: bool = True, score: float = 0.9, **kw) -> UsageEvent:
    return UsageEvent(
        event_id=event_id,
        learner_id=LEARNER,
        object_id=kw.get("object_id", "lex-patient"),
        context_id=context_id,
        success=success,
        score=score,
        task_type="production",
        occurred_at=kw.get("occurred_at", NOW),
    )


class TestRecordEvent:
    def test_first_success_expands_coverage(self):
        space = make_space()
        result = record_event(space, event("e1"))
        assert result.recorded
        assert result.expansion is not None
        assert result.expansion.previous_coverage == 0.0
        assert result.expansion.new_coverage == pytest.approx(0.25)
        assert result.expansion.context_name == "Patient Interaction"

    def test_replayed_event_is_ignored(self):
        space = make_space()
        record_event(space, event("e1"))
        replay = record_event(space, event("e1"))
        assert not replay.recorded
        assert replay.expansion is None
        assert space.records[CONSULT].attempts == 1

    def test_low_score_is_not_success(self):
        space = make_space()
        result = record_event(space, event("e1", score=0.5))
        assert result.expansion is None
        assert space.records[CONSULT].attempts == 1
        assert space.coverage == 0.0

    def test_second_success_in_same_context_is_not_an_expansion(self):
        space = make_space()
        record_event(space, event("e1"))
        assert record_event(space, event("e2")).expansion is None

    def test_non_target_context_never_expands(self):
        space = make_space()
        result = record_event(space, event("e1", context_id="academic-written-formal"))
        assert result.expansion is None
        assert space.coverage == 0.0

    def test_coverage_is_monotone(self):
        space = make_space()
        sequence = [
            ("e1", CONSULT, True, 0.9),
            ("e2", CONSULT, False, 0.1),
            ("e3", CHART, False, 0.2),
            ("e4", CHART, True, 0.7),
            ("e5", CONSULT, False, 0.0),
            ("e6", COLLEGIAL, True, 0.8),
            ("e7", CHART, False, 0.0),
        ]
        seen = [space.coverage]
        for i, (eid, ctx, ok, score) in enumerate(sequence):
            record_event(space, event(eid, ctx, ok, score, occurred_at=NOW + timedelta(minutes=i)))
            seen.append(space.coverage)
        assert all(a <= b for a, b in zip(seen, seen[1:]))
        assert seen[-1] == pytest.approx(0.75)


class TestCoverage:
    def test_no_targets_is_fully_covered(self):
        assert coverage([], []) == 1.0

    def test_unknown_domain_uses_default_targets(self):
        assert target_contexts("astronomy") == target_contexts(None)
        assert len(target_contexts("medical")) == 4

    def test_similarity(self):
        assert context_similarity(CONSULT, CONSULT) == pytest.approx(1.0)
        assert context_similarity(CONSULT, CHART) == pytest.approx(0.2)
        assert context_similarity(CONSULT, "nowhere") == 0.0

    def test_expansion_candidates_rank_by_closeness(self):
        space = make_space(**{CONSULT: (3, 3)})
        candidates = space.expansion_candidates()
        assert candidates[0].context_id == COLLEGIAL
        assert candidates[0].readiness == pytest.approx(1.0)
        assert candidates[0].prerequisites == (CONSULT,)
        assert CONSULT not in {c.context_id for c in candidates}


class TestSelectContext:
    def test_high_preference_expands(self):
        space = make_space(**{CONSULT: (3, 3)})
        decision = select_context([space], "production", expansion_preference=0.9)
        assert decision.context_id == COLLEGIAL
        assert decision.mode == "expansion"

    def test_low_preference_consolidates_weak_context(self):
        space = make_space(**{CONSULT: (5, 1)})
        decision = select_context([space], "production", expansion_preference=0.0)
        assert decision.context_id == CONSULT
        assert decision.mode == "consolidation"

    def test_explicit_target_wins(self):
        space = make_space()
        decision = select_context([space], "recognition", target_context_id=CHART)
        assert decision.context_id == CHART
        assert decision.mode == "expansion"

    def test_unknown_task_type_falls_back(self):
        decision = select_context([make_space()], "nonsense")
        assert decision.context_id == "personal-spoken-informal"
        assert decision.mode == "consolidation"


class TestUsageProgress:
    def test_component_summary(self):
        targets = target_contexts("medical")
        full = make_space("lex-a", **{t: (1, 1) for t in targets})
        objects = [make_object("lex-a"), make_object("lex-b")]
        progress = usage_progress("goal-med", objects, {"lex-a": full}, domain="medical")

        lex = progress.components["LEX"]
        assert lex.total_objects == 2
        assert lex.full_coverage == 1
        assert lex.average_coverage == pytest.approx(0.5)
        assert [g.object_id for g in lex.critical_gaps] == ["lex-b"]
        assert progress.overall_readiness == pytest.approx(0.5 * 0.35)
        assert progress.recommendations[0].component == "LEX"
        assert progress.recommendations[0].priority == 1
