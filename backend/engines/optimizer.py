"""Candidate Economic Optimizer

Chooses a bounded pool of learning objects that maximises expected learning
value for a cognitive-cost budget. The problem is a 0/1 knapsack; a greedy
value/cost pass compared against the single best item gives a
2-approximation and keeps selection deterministic.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Mapping

from core.errors import AppError, Ok, Result, no_candidates, out_of_range
from core.logging import engine_logger
from engines.ability import ItemParameters, fisher_information
from engines.mastery import is_resting
from engines.types import AbilityProfile, LearningObject, MasteryState, utcnow

log = engine_logger()

MASTERY_FACTORS: dict[int, float] = {0: 1.0, 1: 0.9, 2: 0.7, 3: 0.5, 4: 0.3}
MIN_POOL_CAP, MAX_POOL_CAP = 1, 100


@dataclass(frozen=True, slots=True)
class Candidate:
    obj: LearningObject
    mastery: MasteryState | None
    priority: float
    gain: float
    value: float
    cost: float

    @property
    def id(self) -> str:
        return self.obj.id

    @property
    def stage(self) -> int:
        return self.mastery.stage if self.mastery else 0

    @property
    def ratio(self) -> float:
        return self.value / self.cost if self.cost > 0 else float("inf")


@dataclass(frozen=True, slots=True)
class CandidatePool:
    candidates: list[Candidate]
    total_value: float
    total_cost: float
    considered: int

    @property
    def ids(self) -> list[str]:
        return [c.id for c in self.candidates]


def review_urgency(mastery: MasteryState | None, now: datetime) -> float:
    if mastery is None or mastery.due_at is None:
        return 0.5
    hours = (mastery.due_at - now).total_seconds() / 3600
    if hours < 0:
        return min(1.0, 0.7 + 0.01 * -hours)
    if hours <= 24:
        return 0.5
    if hours <= 72:
        return 0.3
    return 0.1


def learning_priority(
    obj: LearningObject, mastery: MasteryState | None, now: datetime
) -> float:
    stage = mastery.stage if mastery else 0
    return (
        0.3 * MASTERY_FACTORS.get(stage, 0.3)
        + 0.3 * review_urgency(mastery, now)
        + 0.25 * obj.priority
        + 0.15 * (obj.frequency * 0.5)
    )


def expected_ability_gain(obj: LearningObject, profile: AbilityProfile) -> float:
    """Fisher information at the learner's ability, relative to its 2PL peak."""
    a = obj.discrimination
    if a <= 0:
        return 0.0
    item = ItemParameters(obj.id, obj.base_difficulty, a, obj.guessing)
    info = fisher_information(profile.theta_for(obj.component), item)
    return min(1.0, info / (a * a / 4))


def cognitive_cost(obj: LearningObject) -> float:
    normalized = min(1.0, max(0.05, (obj.base_difficulty + 3) / 6))
    return normalized * obj.discrimination


def build_candidate(
    obj: LearningObject,
    mastery: MasteryState | None,
    profile: AbilityProfile,
    now: datetime,
) -> Candidate:
    priority = learning_priority(obj, mastery, now)
    gain = expected_ability_gain(obj, profile)
    return Candidate(
        obj=obj,
        mastery=mastery,
        priority=priority,
        gain=gain,
        value=priority * gain,
        cost=max(cognitive_cost(obj), 1e-6),
    )


class CandidateOptimizer:
    """Greedy knapsack over eligible objects."""

    __slots__ = ("pool_cap", "budget")

    def __init__(self, pool_cap: int = 25, budget: float = 12.0):
        self.pool_cap = pool_cap
        self.budget = budget

    def select(
        self,
        goal_id: str,
        objects: Iterable[LearningObject],
        mastery: Mapping[str, MasteryState],
        profile: AbilityProfile,
        now: datetime | None = None,
        pool_cap: int | None = None,
        budget: float | None = None,
    ) -> Result[CandidatePool, AppError]:
        now = now or utcnow()
        cap = self.pool_cap if pool_cap is None else pool_cap
        limit = self.budget if budget is None else budget
        if not MIN_POOL_CAP <= cap <= MAX_POOL_CAP:
            return out_of_range("pool_cap", cap, MIN_POOL_CAP, MAX_POOL_CAP, origin="optimizer")

        eligible = [
            build_candidate(obj, mastery.get(obj.id), profile, now)
            for obj in objects
            if not is_resting(mastery.get(obj.id), now)
        ]
        if not eligible:
            return no_candidates(goal_id)

        ranked = sorted(eligible, key=lambda c: (-c.ratio, -c.value, c.id))
        chosen: list[Candidate] = []
        spent = 0.0
        for cand in ranked:
            if len(chosen) >= cap:
                break
            if spent + cand.cost <= limit:
                chosen.append(cand)
                spent += cand.cost

        greedy_value = sum(c.value for c in chosen)
        fitting = [c for c in eligible if c.cost <= limit]
        if fitting:
            best_single = min(fitting, key=lambda c: (-c.value, c.id))
            if best_single.value > greedy_value:
                chosen, greedy_value, spent = [best_single], best_single.value, best_single.cost

        if not chosen:
            return no_candidates(goal_id, origin="optimizer.budget")

        log.debug(
            "candidate_pool_selected",
            goal_id=goal_id,
            considered=len(eligible),
            selected=len(chosen),
            total_value=round(greedy_value, 4),
            total_cost=round(spent, 4),
        )
        return Ok(CandidatePool(chosen, greedy_value, spent, len(eligible)))
