"""Shared domain records for the task generation and calibration engines."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

from engines.difficulty import G2PLayer, Modality, difficulty_from_linguistic_score

ComponentCode = Literal["PHON", "MORPH", "LEX", "SYNT", "PRAG"]
SlotRole = Literal["assessment", "practice", "reinforcement", "incidental"]
CognitiveProcess = Literal["recognition", "recall", "comprehension", "transformation", "production"]

COMPONENTS: tuple[ComponentCode, ...] = ("PHON", "MORPH", "LEX", "SYNT", "PRAG")

# Share of each component in the global ability blend and readiness scores
COMPONENT_WEIGHTS: dict[str, float] = {
    "LEX": 0.35,
    "SYNT": 0.25,
    "PRAG": 0.20,
    "MORPH": 0.12,
    "PHON": 0.08,
}

GLOBAL_DIMENSION = "global"
DEFAULT_THETA = 0.0
DEFAULT_SE = 1.5
THETA_MIN, THETA_MAX = -4.0, 4.0
RECENT_RESPONSE_WINDOW = 20


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def modality_dimension(modality: Modality) -> str:
    return f"modality:{modality}"


def layer_dimension(layer: G2PLayer) -> str:
    return f"layer:{layer}"


@dataclass(frozen=True, slots=True)
class RoleConfig:
    """How strongly a slot role feeds calibration and scheduling."""
    theta_multiplier: float
    exposure_weight: float
    track_accuracy: bool
    update_fsrs: bool


ROLE_CONFIGS: dict[str, RoleConfig] = {
    "assessment": RoleConfig(1.0, 1.0, True, True),
    "practice": RoleConfig(0.5, 1.0, True, True),
    "reinforcement": RoleConfig(0.2, 0.5, False, False),
    "incidental": RoleConfig(0.0, 0.2, False, False),
}

PROCESS_MULTIPLIERS: dict[str, float] = {
    "recognition": 0.8,
    "recall": 1.0,
    "comprehension": 1.1,
    "transformation": 1.2,
    "production": 1.3,
}


@dataclass(frozen=True, slots=True)
class LearningObject:
    """An atomic unit of linguistic knowledge. Immutable, referenced by id."""
    id: str
    component: ComponentCode
    content: str
    linguistic_difficulty: float = 0.5
    discrimination: float = 1.0
    guessing: float = 0.0
    priority: float = 0.5
    frequency: float = 0.5
    goal_id: str = ""
    irt_difficulty: float | None = None
    metadata: dict = field(default_factory=dict)

    @property
    def base_difficulty(self) -> float:
        """Logit difficulty; a calibrated value wins over the linguistic estimate."""
        if self.irt_difficulty is not None:
            return self.irt_difficulty
        return difficulty_from_linguistic_score(self.linguistic_difficulty)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "component": self.component,
            "content": self.content,
            "linguistic_difficulty": self.linguistic_difficulty,
            "discrimination": self.discrimination,
            "guessing": self.guessing,
            "priority": self.priority,
            "frequency": self.frequency,
            "goal_id": self.goal_id,
            "irt_difficulty": self.irt_difficulty,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> LearningObject:
        return cls(
            id=data["id"],
            component=data["component"],
            content=data["content"],
            linguistic_difficulty=data.get("linguistic_difficulty", 0.5),
            discrimination=data.get("discrimination", 1.0),
            guessing=data.get("guessing", 0.0),
            priority=data.get("priority", 0.5),
            frequency=data.get("frequency", 0.5),
            goal_id=data.get("goal_id", ""),
            irt_difficulty=data.get("irt_difficulty"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True, slots=True)
class Goal:
    id: str
    domain: str = "general"
    l1: str | None = None
    target_language: str = "en"


@dataclass(frozen=True, slots=True)
class AbilityEstimate:
    theta: float = DEFAULT_THETA
    standard_error: float = DEFAULT_SE
    response_count: int = 0


@dataclass(slots=True)
class AbilityProfile:
    """Multidimensional ability for one (learner, goal).

    Dimensions are keyed ``global``, the component codes, ``modality:<m>`` and
    ``layer:<l>``. Missing dimensions read as the prior.
    """
    learner_id: str
    goal_id: str
    dimensions: dict[str, AbilityEstimate] = field(default_factory=dict)
    recent_responses: list[tuple[int, bool]] = field(default_factory=list)
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def estimate(self, dimension: str) -> AbilityEstimate:
        return self.dimensions.get(dimension, AbilityEstimate())

    def theta(self, dimension: str = GLOBAL_DIMENSION) -> float:
        return self.estimate(dimension).theta

    def theta_for(
        self,
        component: str,
        modality: Modality | None = None,
        layer: G2PLayer | None = None,
    ) -> float:
        """Component ability, blended with modality and layer abilities when known."""
        theta = self.theta(component)
        if modality is not None:
            theta = 0.6 * theta + 0.4 * self.theta(modality_dimension(modality))
        if layer is not None:
            theta = 0.7 * theta + 0.3 * self.theta(layer_dimension(layer))
        return theta

    def set_estimate(self, dimension: str, estimate: AbilityEstimate) -> None:
        self.dimensions[dimension] = estimate

    def record_response(self, time_ms: int, correct: bool) -> None:
        self.recent_responses.append((int(time_ms), bool(correct)))
        if len(self.recent_responses) > RECENT_RESPONSE_WINDOW:
            del self.recent_responses[: len(self.recent_responses) - RECENT_RESPONSE_WINDOW]

    def to_dict(self) -> dict:
        return {
            "learner_id": self.learner_id,
            "goal_id": self.goal_id,
            "dimensions": {
                k: {"theta": v.theta, "standard_error": v.standard_error, "response_count": v.response_count}
                for k, v in self.dimensions.items()
            },
            "recent_responses": [list(r) for r in self.recent_responses],
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> AbilityProfile:
        return cls(
            learner_id=data["learner_id"],
            goal_id=data["goal_id"],
            dimensions={k: AbilityEstimate(**v) for k, v in (data.get("dimensions") or {}).items()},
            recent_responses=[(int(t), bool(c)) for t, c in data.get("recent_responses") or []],
            version=data.get("version", 0),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else utcnow(),
            updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else utcnow(),
        )


@dataclass(slots=True)
class MasteryState:
    """Per-object mastery: stage machine counters plus FSRS memory state."""
    learner_id: str
    object_id: str
    stage: int = 0
    stability: float = 0.0
    difficulty: float = 0.0
    card: dict | None = None
    last_reviewed_at: datetime | None = None
    due_at: datetime | None = None
    exposure_count: int = 0
    correct_count: int = 0
    cue_free_correct: int = 0
    cue_free_attempts: int = 0
    cue_assisted_correct: int = 0
    cue_assisted_attempts: int = 0
    consecutive_incorrect: int = 0
    recent_times_ms: list[int] = field(default_factory=list)
    recent_automatic: list[bool] = field(default_factory=list)

    @property
    def cue_free_accuracy(self) -> float:
        if self.cue_free_attempts == 0:
            return 0.0
        return self.cue_free_correct / self.cue_free_attempts

    @property
    def cue_assisted_accuracy(self) -> float:
        if self.cue_assisted_attempts == 0:
            return 0.0
        return self.cue_assisted_correct / self.cue_assisted_attempts

    @property
    def scaffolding_gap(self) -> float:
        return max(0.0, self.cue_assisted_accuracy - self.cue_free_accuracy)

    @property
    def automaticity(self) -> float:
        n = self.exposure_count
        return (
            0.5 * self.cue_free_accuracy
            + 0.25 * min(1.0, n / 20)
            + 0.25 * min(1.0, self.stability / 30)
        )

    def to_dict(self) -> dict:
        return {
            "learner_id": self.learner_id,
            "object_id": self.object_id,
            "stage": self.stage,
            "stability": self.stability,
            "difficulty": self.difficulty,
            "card": self.card,
            "last_reviewed_at": self.last_reviewed_at.isoformat() if self.last_reviewed_at else None,
            "due_at": self.due_at.isoformat() if self.due_at else None,
            "exposure_count": self.exposure_count,
            "correct_count": self.correct_count,
            "cue_free_correct": self.cue_free_correct,
            "cue_free_attempts": self.cue_free_attempts,
            "cue_assisted_correct": self.cue_assisted_correct,
            "cue_assisted_attempts": self.cue_assisted_attempts,
            "consecutive_incorrect": self.consecutive_incorrect,
            "recent_times_ms": list(self.recent_times_ms),
            "recent_automatic": list(self.recent_automatic),
        }

    @classmethod
    def from_dict(cls, data: dict) -> MasteryState:
        def _dt(value):
            return datetime.fromisoformat(value) if value else None

        return cls(
            learner_id=data["learner_id"],
            object_id=data["object_id"],
            stage=data.get("stage", 0),
            stability=data.get("stability", 0.0),
            difficulty=data.get("difficulty", 0.0),
            card=data.get("card"),
            last_reviewed_at=_dt(data.get("last_reviewed_at")),
            due_at=_dt(data.get("due_at")),
            exposure_count=data.get("exposure_count", 0),
            correct_count=data.get("correct_count", 0),
            cue_free_correct=data.get("cue_free_correct", 0),
            cue_free_attempts=data.get("cue_free_attempts", 0),
            cue_assisted_correct=data.get("cue_assisted_correct", 0),
            cue_assisted_attempts=data.get("cue_assisted_attempts", 0),
            consecutive_incorrect=data.get("consecutive_incorrect", 0),
            recent_times_ms=list(data.get("recent_times_ms") or []),
            recent_automatic=list(data.get("recent_automatic") or []),
        )


@dataclass(frozen=True, slots=True)
class UsageEvent:
    event_id: str
    learner_id: str
    object_id: str
    context_id: str
    success: bool
    score: float
    task_type: str
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class UsageSpaceRecord:
    """Attempts and successes of one object in one usage context."""
    learner_id: str
    object_id: str
    context_id: str
    attempts: int = 0
    successes: int = 0
    score_sum: float = 0.0
    last_used_at: datetime | None = None

    @property
    def success_rate(self) -> float:
        return self.successes / self.attempts if self.attempts else 0.0

    @property
    def mean_score(self) -> float:
        return self.score_sum / self.attempts if self.attempts else 0.0

    @property
    def covered(self) -> bool:
        return self.successes > 0
