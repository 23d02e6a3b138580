"""Task Composer

Fills the slots of a task template with learning objects from the candidate
pool. Templates live in ``data/task_templates.yaml``; each slot accepts some
components and gives its object a role (assessment, practice, reinforcement,
incidental) and a cognitive process.

Template syntax:
  {{slot-id}}   - replaced with the content of the object assigned to the slot
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Literal, Sequence
from uuid import uuid4

import yaml

from core.errors import (
    AppError,
    Ok,
    Result,
    constraint_unsatisfiable,
    no_suitable_template,
)
from core.logging import engine_logger
from engines.calibration import CalibrationTarget, QRow, build_q_rows
from engines.constraints import ConstraintGraph, Prefers, Propagation
from engines.difficulty import contextual_difficulty, g2p_layer
from engines.optimizer import Candidate, review_urgency
from engines.types import (
    PROCESS_MULTIPLIERS,
    ROLE_CONFIGS,
    LearningObject,
    MasteryState,
    utcnow,
)
from engines.usage_space import UsageContext

log = engine_logger()

SLOT_PATTERN = re.compile(r"\{\{([\w-]+)\}\}")
TEMPLATES_PATH = Path(__file__).parent / "data" / "task_templates.yaml"

DIFFICULTY_RANGE = (-3.0, 3.0)
MAX_MATCHES_COUNTED = 3
LEGACY_MATCH_CAP = 5
COST_PENALTY = 0.5

ContentSource = Literal["template", "generated"]


def _ensure_list(value) -> list:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


@dataclass(frozen=True, slots=True)
class SlotConstraints:
    min_stage: int | None = None
    max_stage: int | None = None
    min_automaticity: float | None = None
    min_priority: float | None = None
    related_to_slot: str | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> SlotConstraints:
        data = data or {}
        return cls(
            min_stage=data.get("min_stage"),
            max_stage=data.get("max_stage"),
            min_automaticity=data.get("min_automaticity"),
            min_priority=data.get("min_priority"),
            related_to_slot=data.get("related_to_slot"),
        )


@dataclass(frozen=True, slots=True)
class TemplateSlot:
    id: str
    components: tuple[str, ...]
    role: str
    weight: float
    process: str
    required: bool = True
    constraints: SlotConstraints = field(default_factory=SlotConstraints)

    @classmethod
    def from_dict(cls, data: dict) -> TemplateSlot:
        return cls(
            id=data["id"],
            components=tuple(_ensure_list(data.get("components"))),
            role=data.get("role", "assessment"),
            weight=float(data.get("weight", 1.0)),
            process=data.get("process", "recall"),
            required=bool(data.get("required", True)),
            constraints=SlotConstraints.from_dict(data.get("constraints")),
        )

    def accepts(self, obj: LearningObject) -> bool:
        return obj.component in self.components


@dataclass(frozen=True, slots=True)
class TaskTemplate:
    id: str
    name: str
    task_type: str
    format: str
    modality: str
    content: str
    slots: tuple[TemplateSlot, ...]
    timed: bool = False
    generative: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> TaskTemplate:
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            task_type=data["task_type"],
            format=data.get("format", "freeform"),
            modality=data.get("modality", "reading"),
            content=data.get("content", ""),
            slots=tuple(TemplateSlot.from_dict(s) for s in data.get("slots", [])),
            timed=bool(data.get("timed", False)),
            generative=bool(data.get("generative", False)),
        )


@lru_cache
def load_templates(path: Path = TEMPLATES_PATH) -> tuple[TaskTemplate, ...]:
    with open(path, encoding="utf-8") as f:
        raw = yaml.safe_load(f) or []
    templates = tuple(TaskTemplate.from_dict(entry) for entry in raw)
    log.debug("task_templates_loaded", count=len(templates))
    return templates


_VOWELS = frozenset("aeiou")


def derive_form(base: LearningObject, affix: LearningObject) -> str:
    """The word formed by attaching ``affix`` to ``base``.

    ``derived_forms`` in the base's metadata (keyed by affix id or affix
    content) wins; otherwise English spelling rules apply: ``-y`` becomes
    ``-i`` after a consonant, and a final ``e`` drops before a vowel suffix.
    """
    overrides = base.metadata.get("derived_forms") or {}
    known = overrides.get(affix.id) or overrides.get(affix.content)
    if known:
        return known
    stem = base.content.strip()
    marker = affix.content.strip()
    if marker.endswith("-") and not marker.startswith("-"):
        return marker.rstrip("-") + stem
    suffix = marker.lstrip("-")
    if not stem or not suffix:
        return stem + suffix
    lowered = stem.lower()
    if lowered.endswith("y") and len(stem) > 1 and lowered[-2] not in _VOWELS and suffix[0] != "i":
        return stem[:-1] + "i" + suffix
    if lowered.endswith("e") and suffix[0].lower() in _VOWELS:
        return stem[:-1] + suffix
    return stem + suffix


# -- template selection ----------------------------------------------------

def _matching(slot: TemplateSlot, pool: Sequence[Candidate]) -> int:
    return sum(1 for c in pool if slot.accepts(c.obj))


def fill_quality(template: TaskTemplate, pool: Sequence[Candidate]) -> float:
    """Weight-averaged share of slots the pool can fill; 0 if a required slot cannot."""
    total = 0.0
    weights = 0.0
    for slot in template.slots:
        n = _matching(slot, pool)
        if slot.required and n == 0:
            return 0.0
        total += slot.weight * min(1.0, n / MAX_MATCHES_COUNTED)
        weights += slot.weight
    return total / weights if weights else 0.0


def legacy_score(template: TaskTemplate, pool: Sequence[Candidate]) -> int:
    return sum(
        min(_matching(slot, pool), LEGACY_MATCH_CAP) + (2 if slot.role == "assessment" else 0)
        for slot in template.slots
    )


def rank_templates(
    templates: Iterable[TaskTemplate],
    pool: Sequence[Candidate],
    preferred_task_types: Sequence[str] | None = None,
    min_quality: float = 0.5,
) -> list[tuple[TaskTemplate, float]]:
    """Templates the pool can fill, best first. Quality ties fall to the legacy score, then id."""
    allowed = set(preferred_task_types or ())
    scored = [
        (t, fill_quality(t, pool), legacy_score(t, pool))
        for t in templates
        if not allowed or t.task_type in allowed
    ]
    scored.sort(key=lambda s: (-s[1], -s[2], s[0].id))
    return [(t, q) for t, q, _ in scored if q >= min_quality]


# -- composed task ---------------------------------------------------------

@dataclass(frozen=True, slots=True)
class SlotAssignment:
    slot_id: str
    object_id: str
    component: str
    content: str
    role: str
    weight: float
    process: str
    stage: int = 0
    difficulty: float = 0.0

    def to_dict(self) -> dict:
        return {
            "slot_id": self.slot_id,
            "object_id": self.object_id,
            "component": self.component,
            "content": self.content,
            "role": self.role,
            "weight": self.weight,
            "process": self.process,
            "stage": self.stage,
            "difficulty": self.difficulty,
        }

    @classmethod
    def from_dict(cls, data: dict) -> SlotAssignment:
        return cls(
            slot_id=data["slot_id"],
            object_id=data["object_id"],
            component=data["component"],
            content=data.get("content", ""),
            role=data.get("role", "assessment"),
            weight=float(data.get("weight", 1.0)),
            process=data.get("process", "recall"),
            stage=int(data.get("stage", 0)),
            difficulty=float(data.get("difficulty", 0.0)),
        )


@dataclass(frozen=True, slots=True)
class ComposedTask:
    task_id: str
    template_id: str
    task_type: str
    format: str
    modality: str
    assignments: tuple[SlotAssignment, ...]
    context: dict
    calibration: tuple[QRow, ...]
    prompt: str
    expected_answer: str
    composite_difficulty: float
    cognitive_load: float
    content_source: ContentSource = "template"
    timed: bool = False
    layer: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def object_ids(self) -> list[str]:
        return [a.object_id for a in self.assignments]

    @property
    def evaluated_assignments(self) -> list[SlotAssignment]:
        return [a for a in self.assignments if a.role in ("assessment", "practice")]

    def to_dict(self) -> dict:
        return {
            "kind": "composed",
            "task_id": self.task_id,
            "template_id": self.template_id,
            "task_type": self.task_type,
            "format": self.format,
            "modality": self.modality,
            "assignments": [a.to_dict() for a in self.assignments],
            "context": dict(self.context),
            "calibration": [row.to_dict() for row in self.calibration],
            "prompt": self.prompt,
            "expected_answer": self.expected_answer,
            "composite_difficulty": self.composite_difficulty,
            "cognitive_load": self.cognitive_load,
            "content_source": self.content_source,
            "timed": self.timed,
            "layer": self.layer,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> ComposedTask:
        return cls(
            task_id=data["task_id"],
            template_id=data["template_id"],
            task_type=data["task_type"],
            format=data.get("format", "freeform"),
            modality=data.get("modality", "reading"),
            assignments=tuple(SlotAssignment.from_dict(a) for a in data.get("assignments", [])),
            context=dict(data.get("context") or {}),
            calibration=tuple(QRow.from_dict(r) for r in data.get("calibration", [])),
            prompt=data.get("prompt", ""),
            expected_answer=data.get("expected_answer", ""),
            composite_difficulty=float(data.get("composite_difficulty", 0.0)),
            cognitive_load=float(data.get("cognitive_load", 0.0)),
            content_source=data.get("content_source", "template"),
            timed=bool(data.get("timed", False)),
            layer=data.get("layer"),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else utcnow(),
        )


# -- scoring ---------------------------------------------------------------

def automaticity(mastery: MasteryState | None) -> float:
    return mastery.automaticity if mastery else 0.0


def role_affinity(role: str, stage: int, auto: float) -> float:
    if role == "assessment":
        return 0.8 if stage <= 3 else 0.5
    if role == "practice":
        return 0.9
    if role == "reinforcement":
        return 0.8 if 3 <= stage <= 5 else 0.3
    if auto > 0.7:
        return 0.9
    return 0.5 if auto > 0.4 else 0.2


def composition_cost(obj: LearningObject, mastery: MasteryState | None) -> float:
    """Cognitive cost of handling an object in a composed task."""
    n = mastery.exposure_count if mastery else 0
    return (
        0.4 * (obj.base_difficulty + 3) / 6
        + 0.3 * (1 - n / (n + 10))
        + 0.3 * (1 - automaticity(mastery))
    )


def exposure_balance(mastery: MasteryState | None) -> float:
    n = mastery.exposure_count if mastery else 0
    return 1 - n / (n + 10)


def _task_category(process: str):
    if process == "recognition":
        return "recognition"
    if process in ("production", "transformation"):
        return "production"
    return None


@dataclass(slots=True)
class _Fill:
    slot: TemplateSlot
    candidate: Candidate
    value: float
    cost: float


@dataclass(slots=True)
class _Composition:
    fills: dict[str, _Fill] = field(default_factory=dict)
    used: set[str] = field(default_factory=set)
    load: float = 0.0
    propagations: list[Propagation] = field(default_factory=list)

    def add(self, fill: _Fill, graph: ConstraintGraph) -> None:
        self.fills[fill.slot.id] = fill
        self.used.add(fill.candidate.id)
        self.load += fill.cost
        self.propagations.append(graph.propagate(fill.candidate.id, self.used))

    def excluded(self) -> set[str]:
        out: set[str] = set()
        for p in self.propagations:
            out |= p.excluded
        return out

    def restricted_away(self, obj: LearningObject) -> bool:
        for p in self.propagations:
            allowed = p.restrictions.get(obj.component)
            if allowed is not None and obj.id not in allowed:
                return True
        return False

    def preference(self, object_id: str) -> float:
        return sum(p.preferences.get(object_id, 0.0) for p in self.propagations)


class TaskComposer:
    """Chooses a template and fills it from a candidate pool."""

    __slots__ = ("templates", "min_fill_quality", "max_cognitive_load")

    def __init__(
        self,
        templates: Sequence[TaskTemplate] | None = None,
        min_fill_quality: float = 0.5,
        max_cognitive_load: float = 2.5,
    ):
        self.templates = tuple(templates) if templates is not None else load_templates()
        self.min_fill_quality = min_fill_quality
        self.max_cognitive_load = max_cognitive_load

    def template(self, template_id: str) -> TaskTemplate | None:
        return next((t for t in self.templates if t.id == template_id), None)

    def _eligible(
        self, slot: TemplateSlot, candidate: Candidate, state: _Composition, graph: ConstraintGraph
    ) -> bool:
        obj = candidate.obj
        c = slot.constraints
        if not slot.accepts(obj) or candidate.id in state.used:
            return False
        if c.min_stage is not None and candidate.stage < c.min_stage:
            return False
        if c.max_stage is not None and candidate.stage > c.max_stage:
            return False
        if c.min_automaticity is not None and automaticity(candidate.mastery) < c.min_automaticity:
            return False
        if c.min_priority is not None and obj.priority < c.min_priority:
            return False
        if c.related_to_slot and c.related_to_slot in state.fills:
            anchor = state.fills[c.related_to_slot].candidate.id
            if self._synergy(graph, obj.id, anchor) <= 0:
                return False
        if obj.id in state.excluded() or state.restricted_away(obj):
            return False
        return True

    @staticmethod
    def _synergy(graph: ConstraintGraph, a: str, b: str) -> float:
        strengths = [
            r.strength
            for r in graph.edges_between(a, b) + graph.edges_between(b, a)
            if isinstance(r, Prefers)
        ]
        return sum(strengths) / 2 if strengths else 0.0

    def _best_fill(
        self,
        slot: TemplateSlot,
        pool: Sequence[Candidate],
        state: _Composition,
        graph: ConstraintGraph,
        now: datetime,
    ) -> _Fill | None:
        role = ROLE_CONFIGS[slot.role]
        process = PROCESS_MULTIPLIERS.get(slot.process, 1.0)
        best: tuple[float, str, _Fill] | None = None
        for cand in pool:
            if not self._eligible(slot, cand, state, graph):
                continue
            auto = automaticity(cand.mastery)
            value = cand.priority * slot.weight * role.theta_multiplier * role_affinity(
                slot.role, cand.stage, auto
            )
            cost = composition_cost(cand.obj, cand.mastery) * process * slot.weight
            synergy = sum(self._synergy(graph, cand.id, f.candidate.id) for f in state.fills.values())
            score = (
                value
                + synergy
                + review_urgency(cand.mastery, now) * slot.weight
                + exposure_balance(cand.mastery) * slot.weight
                - COST_PENALTY * cost
                + state.preference(cand.id)
            )
            if best is None or score > best[0] or (score == best[0] and cand.id < best[1]):
                best = (score, cand.id, _Fill(slot, cand, value, cost))
        return best[2] if best else None

    def _fill_requirements(
        self,
        template: TaskTemplate,
        state: _Composition,
        pool_by_id: dict[str, Candidate],
    ) -> None:
        for propagation in list(state.propagations):
            for target_id in propagation.required:
                if target_id in state.used or target_id not in pool_by_id:
                    continue
                cand = pool_by_id[target_id]
                free = next(
                    (s for s in template.slots
                     if not s.required and s.id not in state.fills and s.accepts(cand.obj)),
                    None,
                )
                if free is None:
                    continue
                cost = composition_cost(cand.obj, cand.mastery) * PROCESS_MULTIPLIERS.get(
                    free.process, 1.0
                ) * free.weight
                state.fills[free.id] = _Fill(free, cand, 0.0, cost)
                state.used.add(cand.id)
                state.load += cost

    def _try_template(
        self,
        template: TaskTemplate,
        pool: Sequence[Candidate],
        graph: ConstraintGraph,
        now: datetime,
    ) -> tuple[_Composition | None, list[str]]:
        state = _Composition()
        for slot in (s for s in template.slots if s.required):
            fill = self._best_fill(slot, pool, state, graph, now)
            if fill is None:
                return None, [f"{template.id}: no eligible object for slot {slot.id}"]
            state.add(fill, graph)

        for slot in (s for s in template.slots if not s.required):
            if state.load >= self.max_cognitive_load:
                break
            fill = self._best_fill(slot, pool, state, graph, now)
            if fill is not None and state.load + fill.cost <= self.max_cognitive_load:
                state.add(fill, graph)

        self._fill_requirements(template, state, {c.id: c for c in pool})
        validation = graph.validate(state.used)
        if not validation.valid:
            return None, validation.violations
        return state, []

    def compose(
        self,
        pool: Sequence[Candidate],
        graph: ConstraintGraph,
        context: UsageContext | None = None,
        *,
        preferred_task_types: Sequence[str] | None = None,
        modality: str | None = None,
        timed: bool | None = None,
        l1: str | None = None,
        context_mode: str = "consolidation",
        now: datetime | None = None,
    ) -> Result[ComposedTask, AppError]:
        now = now or utcnow()
        ranked = rank_templates(self.templates, pool, preferred_task_types, self.min_fill_quality)
        if not ranked:
            best = max((fill_quality(t, pool) for t in self.templates), default=0.0)
            return no_suitable_template(len(pool), best)

        violations: list[str] = []
        for template, quality in ranked:
            state, problems = self._try_template(template, pool, graph, now)
            if state is None:
                violations.extend(problems)
                log.debug("template_rejected", template_id=template.id, problems=problems)
                continue
            task = self._build(template, state, context, context_mode, modality, timed, l1, now)
            log.info(
                "task_composed",
                template_id=template.id,
                fill_quality=round(quality, 3),
                slots=len(task.assignments),
                cognitive_load=round(task.cognitive_load, 3),
                difficulty=round(task.composite_difficulty, 3),
            )
            return Ok(task)

        return constraint_unsatisfiable(violations)

    def _build(
        self,
        template: TaskTemplate,
        state: _Composition,
        context: UsageContext | None,
        context_mode: str,
        modality: str | None,
        timed: bool | None,
        l1: str | None,
        now: datetime,
    ) -> ComposedTask:
        modality = modality or template.modality
        is_timed = template.timed if timed is None else timed
        fills = [state.fills[s.id] for s in template.slots if s.id in state.fills]
        layer = task_layer(fills)

        assignments = []
        difficulties = []
        for f in fills:
            obj = f.candidate.obj
            b = contextual_difficulty(
                obj.base_difficulty,
                modality=modality,
                task_type=_task_category(f.slot.process),
                timed=is_timed,
                layer=g2p_layer(obj.metadata),
                l1=l1,
                pattern=obj.metadata.get("phonological_pattern"),
                item_l1_offsets=obj.metadata.get("l1_offsets"),
            )
            difficulties.append(b)
            assignments.append(SlotAssignment(
                slot_id=f.slot.id,
                object_id=obj.id,
                component=obj.component,
                content=obj.content,
                role=f.slot.role,
                weight=f.slot.weight,
                process=f.slot.process,
                stage=f.candidate.stage,
                difficulty=b,
            ))

        total_weight = sum(a.weight for a in assignments)
        composite = (
            sum(a.weight * b * PROCESS_MULTIPLIERS.get(a.process, 1.0)
                for a, b in zip(assignments, difficulties)) / total_weight
            if total_weight else 0.0
        )
        composite = max(DIFFICULTY_RANGE[0], min(DIFFICULTY_RANGE[1], composite))

        rows = build_q_rows(
            [CalibrationTarget(f.candidate.obj, f.slot.role == "assessment", f.slot.process) for f in fills],
            [f.slot.role for f in fills],
            difficulties,
            template.task_type,
        )

        by_slot = {a.slot_id: a.content for a in assignments}
        prompt = SLOT_PATTERN.sub(lambda m: by_slot.get(m.group(1), m.group(0)), template.content)
        context_dict = context.to_dict() if context else {}
        if context:
            context_dict["mode"] = context_mode

        return ComposedTask(
            task_id=uuid4().hex,
            template_id=template.id,
            task_type=template.task_type,
            format=template.format,
            modality=modality,
            assignments=tuple(assignments),
            context=context_dict,
            calibration=tuple(rows),
            prompt=prompt,
            expected_answer=_expected_answer(template, fills),
            composite_difficulty=composite,
            cognitive_load=state.load,
            timed=is_timed,
            layer=layer,
            created_at=now,
        )


def task_layer(fills: Sequence[_Fill]) -> str | None:
    """Grapheme-phoneme layer a task exercises: the first assessed object's, else any object's."""
    ordered = sorted(fills, key=lambda f: f.slot.role != "assessment")
    layers = (g2p_layer(f.candidate.obj.metadata) for f in ordered)
    return next((layer for layer in layers if layer is not None), None)


def _expected_answer(template: TaskTemplate, fills: Sequence[_Fill]) -> str:
    if template.task_type == "word_formation":
        base = next((f.candidate.obj for f in fills if f.candidate.obj.component == "LEX"), None)
        affix = next((f.candidate.obj for f in fills if f.candidate.obj.component == "MORPH"), None)
        if base is not None and affix is not None:
            return derive_form(base, affix)
    return " ".join(f.candidate.obj.content for f in fills)
