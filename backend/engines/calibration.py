"""Multi-Object Calibrator

Turns one evaluated multi-object response into ability updates. A Q-matrix
says how much each task type loads on each linguistic component; objects in
a task get normalised weights from it, and the per-object prediction errors
are folded into each touched ability dimension.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Literal, Sequence

from core.errors import AppError, Ok, Result, calibration_failed
from core.logging import calibration_logger
from engines.ability import probability
from engines.timing import PatternReport
from engines.types import (
    COMPONENT_WEIGHTS,
    COMPONENTS,
    DEFAULT_SE,
    GLOBAL_DIMENSION,
    PROCESS_MULTIPLIERS,
    ROLE_CONFIGS,
    THETA_MAX,
    THETA_MIN,
    AbilityEstimate,
    AbilityProfile,
    LearningObject,
    layer_dimension,
    modality_dimension,
    utcnow,
)

if TYPE_CHECKING:
    from engines.evaluation import BatchEvaluation

log = calibration_logger()

InteractionModel = Literal["compensatory", "conjunctive", "disjunctive"]

DEFAULT_LEARNING_RATE = 0.1
DEGRADED_RELIABILITY = 0.5
MIN_RELIABILITY = 0.1
PRIMARY_BONUS = 1.5
MIN_PRIMARY_SHARE = 0.5
SLIP_RATE = 0.1
GUESS_RATE = 0.2


@dataclass(frozen=True, slots=True)
class QMatrixEntry:
    components: dict[str, float]
    interaction: InteractionModel = "compensatory"


DEFAULT_Q_MATRIX: dict[str, QMatrixEntry] = {
    "recognition": QMatrixEntry({"LEX": 0.7, "PHON": 0.15, "MORPH": 0.15}),
    "definition_match": QMatrixEntry({"LEX": 0.8, "MORPH": 0.1, "PRAG": 0.1}),
    "recall_cued": QMatrixEntry({"LEX": 0.6, "MORPH": 0.2, "PHON": 0.2}),
    "recall_free": QMatrixEntry({"LEX": 0.6, "MORPH": 0.2, "SYNT": 0.2}),
    "fill_blank": QMatrixEntry({"LEX": 0.4, "SYNT": 0.4, "MORPH": 0.2}),
    "collocation": QMatrixEntry({"LEX": 0.6, "SYNT": 0.2, "PRAG": 0.2}),
    "word_formation": QMatrixEntry({"MORPH": 0.6, "LEX": 0.3, "PHON": 0.1}, "conjunctive"),
    "sentence_writing": QMatrixEntry({"LEX": 0.4, "SYNT": 0.4, "MORPH": 0.2}),
    "sentence_combining": QMatrixEntry({"SYNT": 0.6, "LEX": 0.2, "PRAG": 0.2}),
    "error_correction": QMatrixEntry({"SYNT": 0.4, "MORPH": 0.4, "LEX": 0.2}, "disjunctive"),
    "register_shift": QMatrixEntry({"PRAG": 0.6, "LEX": 0.3, "SYNT": 0.1}),
    "discourse_completion": QMatrixEntry({"PRAG": 0.5, "LEX": 0.3, "SYNT": 0.2}, "conjunctive"),
    "production": QMatrixEntry({"LEX": 0.35, "SYNT": 0.3, "PRAG": 0.2, "MORPH": 0.15}),
    "translation": QMatrixEntry({"LEX": 0.4, "SYNT": 0.3, "MORPH": 0.2, "PRAG": 0.1}),
    "reading_comprehension": QMatrixEntry({"LEX": 0.4, "SYNT": 0.3, "PRAG": 0.3}),
    "rapid_response": QMatrixEntry({"LEX": 0.6, "PHON": 0.3, "MORPH": 0.1}),
}


def q_matrix_entry(task_type: str) -> QMatrixEntry:
    return DEFAULT_Q_MATRIX.get(task_type, DEFAULT_Q_MATRIX["recognition"])


def object_loadings(obj: LearningObject) -> dict[str, float]:
    """Share of the object's signal per component, summing to 1.

    ``metadata["q_loadings"]`` overrides the default of loading entirely on the
    object's own component.
    """
    override = obj.metadata.get("q_loadings")
    if isinstance(override, dict):
        clean = {
            str(k): float(v) for k, v in override.items() if k in COMPONENTS and float(v) > 0
        }
        total = sum(clean.values())
        if total > 0:
            return {k: v / total for k, v in clean.items()}
    return {obj.component: 1.0}


@dataclass(frozen=True, slots=True)
class CalibrationTarget:
    obj: LearningObject
    primary: bool
    process: str = "recall"


def allocate_q_weights(targets: Sequence[CalibrationTarget], task_type: str) -> list[float]:
    """Normalised weight per target, aligned with ``targets``.

    Primary targets get a 1.5x bonus and together never less than half of
    the total.
    """
    if not targets:
        return []
    entry = q_matrix_entry(task_type)
    raw = [
        entry.components.get(t.obj.component, 0.1)
        * (PRIMARY_BONUS if t.primary else 1.0)
        / PROCESS_MULTIPLIERS.get(t.process, 1.0)
        for t in targets
    ]
    total = sum(raw)
    weights = [w / total if total > 0 else 1 / len(targets) for w in raw]

    primary_share = sum(w for w, t in zip(weights, targets) if t.primary)
    has_primary = any(t.primary for t in targets)
    if has_primary and primary_share < MIN_PRIMARY_SHARE:
        boost = MIN_PRIMARY_SHARE / primary_share if primary_share > 0 else 0.0
        secondary_total = sum(w for w, t in zip(weights, targets) if not t.primary)
        secondary_count = sum(1 for t in targets if not t.primary)
        primary_count = len(targets) - secondary_count
        rebalanced = []
        for w, t in zip(weights, targets):
            if t.primary:
                rebalanced.append(w * boost if boost else MIN_PRIMARY_SHARE / primary_count)
            elif secondary_total > 0:
                rebalanced.append(w * (1 - MIN_PRIMARY_SHARE) / secondary_total)
            else:
                rebalanced.append((1 - MIN_PRIMARY_SHARE) / secondary_count)
        weights = rebalanced
    return weights


@dataclass(frozen=True, slots=True)
class QRow:
    """Calibration row for one object in a composed task."""
    object_id: str
    component: str
    role: str
    weight: float
    loadings: dict[str, float]
    discrimination: float
    difficulty: float
    guessing: float = 0.0
    primary: bool = False

    def to_dict(self) -> dict:
        return {
            "object_id": self.object_id,
            "component": self.component,
            "role": self.role,
            "weight": self.weight,
            "loadings": dict(self.loadings),
            "discrimination": self.discrimination,
            "difficulty": self.difficulty,
            "guessing": self.guessing,
            "primary": self.primary,
        }

    @classmethod
    def from_dict(cls, data: dict) -> QRow:
        return cls(
            object_id=data["object_id"],
            component=data["component"],
            role=data.get("role", "assessment"),
            weight=float(data.get("weight", 1.0)),
            loadings={k: float(v) for k, v in (data.get("loadings") or {}).items()},
            discrimination=float(data.get("discrimination", 1.0)),
            difficulty=float(data.get("difficulty", 0.0)),
            guessing=float(data.get("guessing", 0.0)),
            primary=bool(data.get("primary", False)),
        )


def build_q_rows(
    targets: Sequence[CalibrationTarget],
    roles: Sequence[str],
    difficulties: Sequence[float],
    task_type: str,
) -> list[QRow]:
    weights = allocate_q_weights(targets, task_type)
    return [
        QRow(
            object_id=t.obj.id,
            component=t.obj.component,
            role=role,
            weight=w,
            loadings={dim: share * w for dim, share in object_loadings(t.obj).items()},
            discrimination=t.obj.discrimination,
            difficulty=b,
            guessing=t.obj.guessing,
            primary=t.primary,
        )
        for t, role, b, w in zip(targets, roles, difficulties, weights)
    ]


def blended_theta(profile: AbilityProfile, loadings: dict[str, float]) -> float:
    total = sum(loadings.values())
    if total <= 0:
        return profile.theta()
    return sum(profile.theta(dim) * q for dim, q in loadings.items()) / total


def compensatory_probability(
    profile: AbilityProfile, rows: Iterable[QRow], composite_difficulty: float
) -> float:
    logit = sum(
        r.discrimination * r.weight * blended_theta(profile, r.loadings) for r in rows
    ) - composite_difficulty
    return probability(logit, 0.0)


def conjunctive_probability(
    profile: AbilityProfile, rows: Iterable[QRow], slip: float = SLIP_RATE, guess: float = GUESS_RATE
) -> float:
    mastered = all(blended_theta(profile, r.loadings) >= r.difficulty for r in rows)
    return 1 - slip if mastered else guess


def disjunctive_probability(
    profile: AbilityProfile, rows: Iterable[QRow], slip: float = SLIP_RATE, guess: float = GUESS_RATE
) -> float:
    mastered = any(blended_theta(profile, r.loadings) >= r.difficulty for r in rows)
    return 1 - slip if mastered else guess


def expected_probability(
    profile: AbilityProfile,
    rows: Sequence[QRow],
    task_type: str,
    composite_difficulty: float,
    model: InteractionModel | None = None,
) -> float:
    """Probability of an overall-correct response under the task's interaction model."""
    model = model or q_matrix_entry(task_type).interaction
    if model == "conjunctive":
        return conjunctive_probability(profile, rows)
    if model == "disjunctive":
        return disjunctive_probability(profile, rows)
    return compensatory_probability(profile, rows, composite_difficulty)


def reliability_for(report: PatternReport | None) -> float:
    """Down-weight updates when the recent response pattern looks gamed."""
    if report is None or not report.suspicious:
        return 1.0
    return max(MIN_RELIABILITY, 1.0 - report.max_confidence)


def standard_error(response_count: int) -> float:
    return DEFAULT_SE / math.sqrt(1 + response_count)


@dataclass(frozen=True, slots=True)
class DimensionDelta:
    before: float
    after: float
    se_before: float
    se_after: float

    @property
    def change(self) -> float:
        return self.after - self.before


@dataclass(slots=True)
class CalibrationDelta:
    dimensions: dict[str, DimensionDelta] = field(default_factory=dict)
    confidence: Literal["normal", "low"] = "normal"
    reliability: float = 1.0
    expected: float | None = None

    @property
    def changed(self) -> bool:
        return any(abs(d.change) > 0 for d in self.dimensions.values())

    def to_dict(self) -> dict:
        return {
            "confidence": self.confidence,
            "reliability": self.reliability,
            "expected": self.expected,
            "dimensions": {
                dim: {"before": d.before, "after": d.after, "change": d.change, "se": d.se_after}
                for dim, d in self.dimensions.items()
            },
        }


def _apply(
    profile: AbilityProfile,
    delta: CalibrationDelta,
    dimension: str,
    step: float,
) -> None:
    current = profile.estimate(dimension)
    theta = min(THETA_MAX, max(THETA_MIN, current.theta + step))
    if not math.isfinite(theta):
        raise ArithmeticError(f"non-finite theta for {dimension}")
    count = current.response_count + 1
    updated = AbilityEstimate(theta, standard_error(count), count)
    profile.set_estimate(dimension, updated)
    previous = delta.dimensions.get(dimension)
    before = previous.before if previous else current.theta
    se_before = previous.se_before if previous else current.standard_error
    delta.dimensions[dimension] = DimensionDelta(before, theta, se_before, updated.standard_error)


def _update_global(profile: AbilityProfile, delta: CalibrationDelta) -> None:
    current = profile.estimate(GLOBAL_DIMENSION)
    theta = sum(profile.theta(code) * w for code, w in COMPONENT_WEIGHTS.items())
    count = current.response_count + 1
    updated = AbilityEstimate(theta, standard_error(count), count)
    profile.set_estimate(GLOBAL_DIMENSION, updated)
    delta.dimensions[GLOBAL_DIMENSION] = DimensionDelta(
        current.theta, theta, current.standard_error, updated.standard_error
    )


def calibrate(
    profile: AbilityProfile,
    task,
    evaluation: BatchEvaluation,
    learning_rate: float = DEFAULT_LEARNING_RATE,
    reliability: float = 1.0,
) -> Result[CalibrationDelta, AppError]:
    """Update ``profile`` in place from one evaluated response.

    ``task`` supplies ``calibration`` (Q rows), ``modality``, ``layer``,
    ``task_type`` and ``composite_difficulty``.
    """
    rows = {row.object_id: row for row in task.calibration}
    delta = CalibrationDelta(
        confidence="normal" if reliability >= 1.0 else "low",
        reliability=reliability,
    )

    try:
        observations = []
        for result in evaluation.object_results:
            row = rows.get(result.object_id)
            if row is None:
                continue
            role = ROLE_CONFIGS.get(row.role, ROLE_CONFIGS["incidental"])
            theta_i = blended_theta(profile, row.loadings)
            p = probability(theta_i, row.difficulty, row.discrimination, row.guessing)
            observations.append((row, role.theta_multiplier, float(result.score), p))

        if observations:
            delta.expected = expected_probability(
                profile, [r for r, *_ in observations], task.task_type, task.composite_difficulty
            )

        per_dimension: dict[str, tuple[float, float, float]] = {}
        for row, multiplier, score, p in observations:
            for dim, q in row.loadings.items():
                w = q * multiplier
                if w <= 0:
                    continue
                err, disc, total = per_dimension.get(dim, (0.0, 0.0, 0.0))
                per_dimension[dim] = (err + w * (score - p), disc + w * row.discrimination, total + w)

        for dim in sorted(per_dimension):
            err, disc, total = per_dimension[dim]
            step = learning_rate * reliability * (err / total) * (disc / total)
            _apply(profile, delta, dim, step)

        if per_dimension:
            total_w = sum(r.weight for r, *_ in observations) or 1.0
            mean_a = sum(r.weight * r.discrimination for r, *_ in observations) / total_w
            composite = float(evaluation.composite_score)
            context_dims = [modality_dimension(task.modality)] if task.modality else []
            if getattr(task, "layer", None):
                context_dims.append(layer_dimension(task.layer))
            for dim in context_dims:
                p = probability(profile.theta(dim), task.composite_difficulty, mean_a)
                _apply(profile, delta, dim, learning_rate * reliability * (composite - p) * mean_a)
            _update_global(profile, delta)
            profile.updated_at = utcnow()
    except (ArithmeticError, ValueError, TypeError) as exc:
        return calibration_failed(str(exc), origin="calibration", cause=exc)

    log.info(
        "ability_calibrated",
        learner_id=profile.learner_id,
        dimensions=len(delta.dimensions),
        reliability=round(reliability, 3),
        confidence=delta.confidence,
    )
    return Ok(delta)
