"""Usage-Space Tracker

Tracks in which usage contexts (domain, register, modality, genre) a learner
has used each object successfully, how much of the goal's target space is
covered, and which context the next task should be set in.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Literal, Mapping

from core.logging import engine_logger
from engines.types import (
    COMPONENT_WEIGHTS,
    COMPONENTS,
    LearningObject,
    UsageEvent,
    UsageSpaceRecord,
)

log = engine_logger()

SUCCESS_SCORE = 0.6
NEAR_SUCCESS_SCORE = 0.4
EXPANSION_READINESS = 0.6
CONSOLIDATION_TARGET = 0.8
CRITICAL_COVERAGE = 0.5
MAX_GAPS = 5
MAX_RECOMMENDATIONS = 5

ContextMode = Literal["expansion", "consolidation"]


@dataclass(frozen=True, slots=True)
class UsageContext:
    context_id: str
    name: str
    domain: str
    register: str
    modality: str
    genre: str
    task_types: tuple[str, ...] = ()

    @property
    def features(self) -> frozenset[str]:
        return frozenset(
            (f"domain:{self.domain}", f"register:{self.register}", f"modality:{self.modality}")
        )

    def to_dict(self) -> dict:
        return {
            "context_id": self.context_id,
            "name": self.name,
            "domain": self.domain,
            "register": self.register,
            "modality": self.modality,
            "genre": self.genre,
        }


STANDARD_CONTEXTS: tuple[UsageContext, ...] = (
    UsageContext("personal-spoken-informal", "Casual Conversation", "personal", "informal",
                 "spoken", "conversation", ("production", "recall_free", "discourse_completion")),
    UsageContext("personal-written-informal", "Personal Messages", "personal", "informal",
                 "written", "messaging", ("sentence_writing", "production", "word_formation")),
    UsageContext("professional-spoken-formal", "Professional Meetings", "professional", "formal",
                 "spoken", "meeting", ("production", "register_shift", "discourse_completion")),
    UsageContext("professional-written-formal", "Business Correspondence", "professional", "formal",
                 "written", "email", ("sentence_writing", "production", "register_shift")),
    UsageContext("professional-written-technical", "Technical Documentation", "professional",
                 "technical", "written", "documentation", ("sentence_writing", "translation")),
    UsageContext("medical-spoken-consultative", "Patient Interaction", "medical", "consultative",
                 "spoken", "consultation", ("production", "recall_free", "discourse_completion")),
    UsageContext("medical-written-technical", "Medical Documentation", "medical", "technical",
                 "written", "chart", ("sentence_writing", "production", "word_formation")),
    UsageContext("medical-spoken-collegial", "Colleague Communication", "medical", "consultative",
                 "spoken", "handoff", ("production", "register_shift")),
    UsageContext("academic-written-formal", "Academic Writing", "academic", "formal",
                 "written", "essay", ("sentence_writing", "sentence_combining", "word_formation")),
    UsageContext("academic-spoken-formal", "Academic Presentation", "academic", "formal",
                 "spoken", "presentation", ("production",)),
)

_BY_ID = {ctx.context_id: ctx for ctx in STANDARD_CONTEXTS}
_ORDER = {ctx.context_id: i for i, ctx in enumerate(STANDARD_CONTEXTS)}

DOMAIN_TARGETS: dict[str, tuple[str, ...]] = {
    "medical": (
        "medical-spoken-consultative",
        "medical-written-technical",
        "medical-spoken-collegial",
        "professional-spoken-formal",
    ),
    "academic": (
        "academic-written-formal",
        "academic-spoken-formal",
        "professional-written-formal",
    ),
    "professional": (
        "professional-spoken-formal",
        "professional-written-formal",
        "professional-written-technical",
    ),
}
DEFAULT_TARGETS = (
    "personal-spoken-informal",
    "personal-written-informal",
    "professional-spoken-formal",
)


def context_by_id(context_id: str) -> UsageContext | None:
    return _BY_ID.get(context_id)


def target_contexts(domain: str | None) -> tuple[str, ...]:
    return DOMAIN_TARGETS.get((domain or "").lower(), DEFAULT_TARGETS)


def context_similarity(a: str, b: str) -> float:
    """Jaccard similarity of two contexts' domain/register/modality features."""
    ca, cb = _BY_ID.get(a), _BY_ID.get(b)
    if ca is None or cb is None:
        return 0.0
    union = ca.features | cb.features
    return len(ca.features & cb.features) / len(union) if union else 0.0


@dataclass(frozen=True, slots=True)
class ExpansionCandidate:
    context_id: str
    readiness: float
    prerequisites: tuple[str, ...] = ()


@dataclass(slots=True)
class ObjectUsageSpace:
    """One object's usage records for a learner, against the goal's targets."""
    learner_id: str
    object_id: str
    component: str
    targets: tuple[str, ...]
    records: dict[str, UsageSpaceRecord] = field(default_factory=dict)
    event_ids: set[str] = field(default_factory=set)

    @property
    def covered_ids(self) -> list[str]:
        return [cid for cid, rec in self.records.items() if rec.covered]

    @property
    def coverage(self) -> float:
        return coverage(self.records.values(), self.targets)

    @property
    def missing_targets(self) -> list[str]:
        covered = set(self.covered_ids)
        return [t for t in self.targets if t not in covered]

    def expansion_candidates(self) -> list[ExpansionCandidate]:
        return expansion_candidates(self.records.values(), self.targets)


def coverage(records: Iterable[UsageSpaceRecord], targets: Iterable[str]) -> float:
    targets = list(targets)
    if not targets:
        return 1.0
    covered = {r.context_id for r in records if r.covered}
    return sum(1 for t in targets if t in covered) / len(targets)


def expansion_candidates(
    records: Iterable[UsageSpaceRecord], targets: Iterable[str]
) -> list[ExpansionCandidate]:
    """Uncovered targets ranked by how close they are to contexts already covered."""
    by_context = {r.context_id: r for r in records}
    covered = sorted(cid for cid, r in by_context.items() if r.covered)

    candidates = []
    for target in targets:
        if target in covered:
            continue
        similarities = sorted(
            ((context_similarity(target, cid), cid) for cid in covered),
            key=lambda pair: (-pair[0], _ORDER.get(pair[1], 0)),
        )
        readiness = similarities[0][0] if similarities else 0.0
        attempted = by_context.get(target)
        if attempted is not None and attempted.attempts and attempted.mean_score >= NEAR_SUCCESS_SCORE:
            readiness = min(1.0, readiness + 0.2)
        prerequisites = tuple(cid for sim, cid in similarities if sim >= 0.5)[:2]
        candidates.append(ExpansionCandidate(target, readiness, prerequisites))

    return sorted(candidates, key=lambda c: (-c.readiness, _ORDER.get(c.context_id, 0)))


@dataclass(frozen=True, slots=True)
class ContextDecision:
    context: UsageContext
    mode: ContextMode
    score: float

    @property
    def context_id(self) -> str:
        return self.context.context_id


def select_context(
    spaces: Iterable[ObjectUsageSpace],
    task_type: str,
    expansion_preference: float = 0.7,
    target_context_id: str | None = None,
) -> ContextDecision:
    """Pick the usage context for the next task.

    A preference ``w`` near 1 pushes toward new contexts that the learner is
    ready for; near 0 it pushes back toward covered contexts whose success
    rate is still below 0.8.
    """
    spaces = list(spaces)
    w = min(1.0, max(0.0, expansion_preference))

    if target_context_id and target_context_id in _BY_ID:
        uncovered = any(
            target_context_id in s.targets and target_context_id not in s.covered_ids
            for s in spaces
        )
        return ContextDecision(
            _BY_ID[target_context_id], "expansion" if uncovered else "consolidation", 0.0
        )

    applicable = [ctx for ctx in STANDARD_CONTEXTS if task_type in ctx.task_types]
    if not applicable:
        return ContextDecision(STANDARD_CONTEXTS[0], "consolidation", 0.0)

    candidates_by_space = [
        {c.context_id: c for c in space.expansion_candidates()} for space in spaces
    ]

    best: tuple[float, int, UsageContext, ContextMode] | None = None
    for ctx in applicable:
        expansion = 0.0
        consolidation = 0.0
        for space, candidates in zip(spaces, candidates_by_space):
            if ctx.context_id not in space.targets:
                continue
            record = space.records.get(ctx.context_id)
            if record is not None and record.covered:
                consolidation += 0.2 + (1 - w) * 2 * max(
                    0.0, CONSOLIDATION_TARGET - record.success_rate
                )
                continue
            candidate = candidates.get(ctx.context_id)
            if candidate is None:
                expansion += 0.3
            elif w >= 0.5 and candidate.readiness >= EXPANSION_READINESS:
                expansion += 1.0 + candidate.readiness
            else:
                expansion += 0.5 + 0.5 * candidate.readiness

        score = expansion + consolidation
        mode: ContextMode = "expansion" if expansion > consolidation else "consolidation"
        key = (score, -_ORDER[ctx.context_id], ctx, mode)
        if best is None or key[:2] > best[:2]:
            best = key

    score, _, chosen, mode = best
    log.debug(
        "usage_context_selected",
        task_type=task_type,
        context_id=chosen.context_id,
        mode=mode,
        score=round(score, 3),
    )
    return ContextDecision(chosen, mode, score)


@dataclass(frozen=True, slots=True)
class UsageExpansion:
    object_id: str
    context_id: str
    event_id: str
    previous_coverage: float
    new_coverage: float
    occurred_at: datetime

    @property
    def context_name(self) -> str:
        ctx = _BY_ID.get(self.context_id)
        return ctx.name if ctx else self.context_id


@dataclass(frozen=True, slots=True)
class UsageRecordResult:
    recorded: bool
    record: UsageSpaceRecord | None
    expansion: UsageExpansion | None
    coverage: float


def record_event(space: ObjectUsageSpace, event: UsageEvent) -> UsageRecordResult:
    """Fold one usage event into ``space``. Replayed event ids change nothing."""
    if event.event_id in space.event_ids:
        return UsageRecordResult(False, space.records.get(event.context_id), None, space.coverage)

    previous = space.coverage
    record = space.records.get(event.context_id)
    was_covered = record is not None and record.covered
    if record is None:
        record = UsageSpaceRecord(event.learner_id, event.object_id, event.context_id)
        space.records[event.context_id] = record

    successful = event.success and event.score >= SUCCESS_SCORE
    record.attempts += 1
    record.successes += int(successful)
    record.score_sum += min(1.0, max(0.0, event.score))
    record.last_used_at = event.occurred_at
    space.event_ids.add(event.event_id)

    current = space.coverage
    expansion = None
    if successful and not was_covered and event.context_id in space.targets:
        expansion = UsageExpansion(
            object_id=event.object_id,
            context_id=event.context_id,
            event_id=event.event_id,
            previous_coverage=previous,
            new_coverage=current,
            occurred_at=event.occurred_at,
        )
        log.info(
            "usage_space_expanded",
            object_id=event.object_id,
            context_id=event.context_id,
            coverage=round(current, 3),
        )
    return UsageRecordResult(True, record, expansion, current)


@dataclass(frozen=True, slots=True)
class CoverageGap:
    object_id: str
    missing_contexts: tuple[str, ...]


@dataclass(slots=True)
class ComponentCoverage:
    total_objects: int = 0
    full_coverage: int = 0
    average_coverage: float = 0.0
    critical_gaps: list[CoverageGap] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class Recommendation:
    priority: int
    component: str
    object_ids: tuple[str, ...]
    target_contexts: tuple[str, ...]
    reason: str


@dataclass(frozen=True, slots=True)
class UsageProgress:
    goal_id: str
    components: dict[str, ComponentCoverage]
    overall_readiness: float
    recommendations: list[Recommendation]


def usage_progress(
    goal_id: str,
    objects: Iterable[LearningObject],
    spaces: Mapping[str, ObjectUsageSpace],
    domain: str | None = None,
) -> UsageProgress:
    """Coverage per component, weighted readiness and where to focus next."""
    targets = target_contexts(domain)
    components = {code: ComponentCoverage() for code in COMPONENTS}
    totals = {code: 0.0 for code in COMPONENTS}
    gaps: dict[str, list[CoverageGap]] = {code: [] for code in COMPONENTS}

    for obj in objects:
        space = spaces.get(obj.id) or ObjectUsageSpace("", obj.id, obj.component, targets)
        comp = components[obj.component]
        comp.total_objects += 1
        ratio = space.coverage
        totals[obj.component] += ratio
        if ratio >= 1.0:
            comp.full_coverage += 1
        elif ratio < CRITICAL_COVERAGE:
            gaps[obj.component].append(CoverageGap(obj.id, tuple(space.missing_targets)))

    for code, comp in components.items():
        comp.average_coverage = totals[code] / comp.total_objects if comp.total_objects else 0.0
        comp.critical_gaps = gaps[code][:MAX_GAPS]

    readiness = sum(
        components[code].average_coverage * weight for code, weight in COMPONENT_WEIGHTS.items()
    )

    recommendations: list[Recommendation] = []
    for code, comp in sorted(components.items(), key=lambda kv: kv[1].average_coverage):
        if not comp.critical_gaps:
            continue
        missing: list[str] = []
        for gap in comp.critical_gaps:
            missing.extend(c for c in gap.missing_contexts if c not in missing)
        recommendations.append(
            Recommendation(
                priority=len(recommendations) + 1,
                component=code,
                object_ids=tuple(g.object_id for g in comp.critical_gaps),
                target_contexts=tuple(missing[:3]),
                reason=f"Low coverage ({comp.average_coverage:.0%}) in {code}",
            )
        )

    return UsageProgress(goal_id, components, readiness, recommendations[:MAX_RECOMMENDATIONS])
