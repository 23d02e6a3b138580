"""Single-object task generator.

Used when composition cannot produce a multi-object task: picks the most
informative item for the learner's current ability and asks about it in a
task type matching its mastery stage.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Sequence
from uuid import uuid4

from core.logging import engine_logger
from engines.ability import ItemParameters, select_optimal_item
from engines.calibration import CalibrationTarget, QRow, build_q_rows
from engines.difficulty import contextual_difficulty, g2p_layer
from engines.types import AbilityProfile, Goal, LearningObject, MasteryState, utcnow
from engines.usage_space import STANDARD_CONTEXTS, context_by_id, target_contexts

log = engine_logger()

STAGE_TASK_TYPES = {
    0: "recognition",
    1: "recognition",
    2: "recall_cued",
    3: "recall_free",
    4: "production",
}

TASK_PROCESSES = {
    "recognition": "recognition",
    "recall_cued": "recall",
    "recall_free": "recall",
    "production": "production",
}

DIFFICULTY_CATEGORIES = {
    "recognition": "recognition",
    "production": "production",
}

PROMPTS = {
    "recognition": 'Select the correct meaning of "{content}"',
    "recall_cued": 'Recall the item that begins with "{cue}"',
    "recall_free": "Write the {component} item you practised for: {hint}",
    "production": 'Use "{content}" in a sentence of your own.',
}

FREE_PRACTICE_PROMPT = "Write a few sentences about {topic}."


@dataclass(frozen=True, slots=True)
class LegacyTask:
    task_id: str
    object_id: str | None
    task_type: str
    prompt: str
    expected_answer: str
    context: dict
    component: str | None = None
    modality: str = "reading"
    composite_difficulty: float = 0.0
    calibration: tuple[QRow, ...] = ()
    layer: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def object_ids(self) -> list[str]:
        return [self.object_id] if self.object_id else []

    @property
    def free_practice(self) -> bool:
        return self.object_id is None

    def to_dict(self) -> dict:
        return {
            "kind": "legacy",
            "task_id": self.task_id,
            "object_id": self.object_id,
            "task_type": self.task_type,
            "prompt": self.prompt,
            "expected_answer": self.expected_answer,
            "context": dict(self.context),
            "component": self.component,
            "modality": self.modality,
            "composite_difficulty": self.composite_difficulty,
            "calibration": [row.to_dict() for row in self.calibration],
            "layer": self.layer,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> LegacyTask:
        return cls(
            task_id=data["task_id"],
            object_id=data.get("object_id"),
            task_type=data.get("task_type", "recognition"),
            prompt=data.get("prompt", ""),
            expected_answer=data.get("expected_answer", ""),
            context=dict(data.get("context") or {}),
            component=data.get("component"),
            modality=data.get("modality", "reading"),
            composite_difficulty=float(data.get("composite_difficulty", 0.0)),
            calibration=tuple(QRow.from_dict(r) for r in data.get("calibration", [])),
            layer=data.get("layer"),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else utcnow(),
        )


def _goal_context(goal: Goal | None) -> dict:
    targets = target_contexts(goal.domain if goal else None)
    ctx = context_by_id(targets[0]) if targets else None
    ctx = ctx or STANDARD_CONTEXTS[0]
    data = ctx.to_dict()
    data["mode"] = "consolidation"
    return data


def _prompt(task_type: str, obj: LearningObject) -> str:
    hint = obj.metadata.get("gloss") or obj.metadata.get("definition") or obj.content[:1] + "..."
    return PROMPTS[task_type].format(
        content=obj.content,
        cue=obj.content[:2],
        component=obj.component,
        hint=hint,
    )


def generate_legacy_task(
    objects: Sequence[LearningObject],
    profile: AbilityProfile,
    mastery: Mapping[str, MasteryState] | None = None,
    goal: Goal | None = None,
    *,
    modality: str = "reading",
    l1: str | None = None,
    now: datetime | None = None,
) -> LegacyTask:
    """Build a one-object task; with no objects at all, a free-practice task."""
    now = now or utcnow()
    mastery = mastery or {}
    context = _goal_context(goal)

    by_id = {obj.id: obj for obj in objects}
    item = select_optimal_item(
        profile.theta(),
        [ItemParameters(o.id, o.base_difficulty, o.discrimination, o.guessing) for o in objects],
    )
    if item is None:
        topic = context.get("name", "your day").lower()
        log.info("legacy_task_generated", object_id=None, task_type="production", free_practice=True)
        return LegacyTask(
            task_id=uuid4().hex,
            object_id=None,
            task_type="production",
            prompt=FREE_PRACTICE_PROMPT.format(topic=topic),
            expected_answer="",
            context=context,
            modality=modality,
            created_at=now,
        )

    obj = by_id[item.id]
    state = mastery.get(obj.id)
    task_type = STAGE_TASK_TYPES.get(state.stage if state else 0, "recognition")
    layer = g2p_layer(obj.metadata)
    difficulty = contextual_difficulty(
        obj.base_difficulty,
        modality=modality,
        task_type=DIFFICULTY_CATEGORIES.get(task_type),
        layer=layer,
        l1=l1,
        pattern=obj.metadata.get("phonological_pattern"),
        item_l1_offsets=obj.metadata.get("l1_offsets"),
    )
    rows = build_q_rows(
        [CalibrationTarget(obj, True, TASK_PROCESSES[task_type])],
        ["assessment"],
        [difficulty],
        task_type,
    )
    log.info("legacy_task_generated", object_id=obj.id, task_type=task_type, free_practice=False)
    return LegacyTask(
        task_id=uuid4().hex,
        object_id=obj.id,
        task_type=task_type,
        prompt=_prompt(task_type, obj),
        expected_answer=obj.content,
        context=context,
        component=obj.component,
        modality=modality,
        composite_difficulty=difficulty,
        calibration=tuple(rows),
        layer=layer,
        created_at=now,
    )
