"""Mastery Scheduler

Five-stage mastery machine (0 Unknown .. 4 Automatic) driven by correctness
and response timing, with FSRS memory scheduling through the ``fsrs``
library. Stage threshold presets and A/B assignment support reporting and
experimentation; the per-response rule in ``MasteryScheduler.record_response``
is what moves stages.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime

from fsrs import Card, Rating, Scheduler

from core.errors import AppError, Ok, Result, validation_error
from core.logging import mastery_logger
from engines.timing import (
    TimingResult,
    analyze_response_time,
    coefficient_of_variation,
    fsrs_rating,
)
from engines.types import ROLE_CONFIGS, MasteryState, utcnow

log = mastery_logger()

MAX_STAGE = 4
AUTOMATIC_STREAK = 3
MAX_AUTOMATIC_CV = 0.35
REGRESSION_STREAK = 2
RECENT_WINDOW = 10

STAGE_NAMES = {0: "unknown", 1: "recognition", 2: "recall", 3: "controlled", 4: "automatic"}


@dataclass(frozen=True, slots=True)
class StageThresholds:
    stage4_cue_free_accuracy: float
    stage4_stability: float
    stage4_max_gap: float
    stage3_cue_free_accuracy: float
    stage3_stability: float
    stage2_cue_free_accuracy: float
    stage2_cue_assisted_accuracy: float
    stage1_cue_assisted_accuracy: float


THRESHOLD_PRESETS: dict[str, StageThresholds] = {
    "default": StageThresholds(0.90, 30, 0.10, 0.75, 7, 0.60, 0.80, 0.50),
    "conservative": StageThresholds(0.95, 45, 0.05, 0.85, 14, 0.70, 0.85, 0.60),
    "aggressive": StageThresholds(0.85, 21, 0.15, 0.65, 5, 0.50, 0.70, 0.40),
    "research": StageThresholds(0.95, 60, 0.05, 0.85, 21, 0.75, 0.90, 0.65),
}


def validate_thresholds(t: StageThresholds) -> Result[StageThresholds, AppError]:
    errors: list[str] = []
    for name in (
        "stage4_cue_free_accuracy",
        "stage3_cue_free_accuracy",
        "stage2_cue_free_accuracy",
        "stage2_cue_assisted_accuracy",
        "stage1_cue_assisted_accuracy",
        "stage4_max_gap",
    ):
        value = getattr(t, name)
        if not 0.0 <= value <= 1.0:
            errors.append(f"{name} must be between 0 and 1")
    if t.stage4_stability <= 0 or t.stage3_stability <= 0:
        errors.append("stability thresholds must be positive")
    if t.stage4_cue_free_accuracy < t.stage3_cue_free_accuracy:
        errors.append("stage4_cue_free_accuracy must be >= stage3_cue_free_accuracy")
    if t.stage3_cue_free_accuracy < t.stage2_cue_free_accuracy:
        errors.append("stage3_cue_free_accuracy must be >= stage2_cue_free_accuracy")
    if errors:
        return validation_error(
            "Invalid stage thresholds", origin="mastery", errors=errors
        )
    return Ok(t)


def get_thresholds(preset: str) -> StageThresholds:
    return THRESHOLD_PRESETS.get(preset, THRESHOLD_PRESETS["default"])


def assign_ab_group(learner_id: str, test_id: str, groups: list[str]) -> str:
    """Deterministic bucket for a learner in an A/B test."""
    if not groups:
        raise ValueError("at least one group is required")
    digest = hashlib.sha256(f"{test_id}:{learner_id}".encode()).hexdigest()
    return groups[int(digest[:8], 16) % len(groups)]


@dataclass(frozen=True, slots=True)
class StageProgress:
    progress: float
    blockers: list[str]


def stage_progress(state: MasteryState, t: StageThresholds) -> StageProgress:
    """Share of next-stage requirements met, with the unmet ones listed."""
    if state.stage >= MAX_STAGE:
        return StageProgress(1.0, [])

    cfa = state.cue_free_accuracy
    caa = state.cue_assisted_accuracy
    gap = caa - cfa
    requirements: list[tuple[bool, str]]
    if state.stage == 0:
        requirements = [
            (caa >= t.stage1_cue_assisted_accuracy,
             f"cue-assisted accuracy {caa:.0%} (need {t.stage1_cue_assisted_accuracy:.0%})"),
            (state.exposure_count >= 1, f"exposures {state.exposure_count} (need 1)"),
        ]
    elif state.stage == 1:
        requirements = [
            (cfa >= t.stage2_cue_free_accuracy or caa >= t.stage2_cue_assisted_accuracy,
             f"cue-free accuracy {cfa:.0%} (need {t.stage2_cue_free_accuracy:.0%})"),
            (state.exposure_count >= 3, f"exposures {state.exposure_count} (need 3)"),
        ]
    elif state.stage == 2:
        requirements = [
            (cfa >= t.stage3_cue_free_accuracy,
             f"cue-free accuracy {cfa:.0%} (need {t.stage3_cue_free_accuracy:.0%})"),
            (state.stability >= t.stage3_stability,
             f"stability {state.stability:.1f}d (need {t.stage3_stability}d)"),
        ]
    else:
        requirements = [
            (cfa >= t.stage4_cue_free_accuracy,
             f"cue-free accuracy {cfa:.0%} (need {t.stage4_cue_free_accuracy:.0%})"),
            (state.stability >= t.stage4_stability,
             f"stability {state.stability:.1f}d (need {t.stage4_stability}d)"),
            (gap <= t.stage4_max_gap,
             f"scaffolding gap {gap:.0%} (need <= {t.stage4_max_gap:.0%})"),
        ]

    met = sum(1 for ok, _ in requirements if ok)
    return StageProgress(met / len(requirements), [label for ok, label in requirements if not ok])


def recommended_cue_level(
    cue_free_accuracy: float, cue_assisted_accuracy: float, exposure_count: int
) -> int:
    gap = cue_assisted_accuracy - cue_free_accuracy
    if gap < 0.1 and exposure_count > 5:
        return 0
    if gap < 0.2 and exposure_count > 3:
        return 1
    if gap < 0.3:
        return 2
    return 3


@dataclass(frozen=True, slots=True)
class MasteryUpdate:
    object_id: str
    previous_stage: int
    new_stage: int
    timing: str
    rating: int | None = None
    due_at: datetime | None = None
    possible_guess: bool = False
    reason: str = ""
    next_stage_progress: float = 0.0
    blockers: tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return self.previous_stage != self.new_stage

    def to_dict(self) -> dict:
        return {
            "object_id": self.object_id,
            "previous_stage": self.previous_stage,
            "new_stage": self.new_stage,
            "timing": self.timing,
            "rating": self.rating,
            "due_at": self.due_at.isoformat() if self.due_at else None,
            "possible_guess": self.possible_guess,
            "reason": self.reason,
            "next_stage_progress": round(self.next_stage_progress, 3),
            "blockers": list(self.blockers),
        }


def new_fsrs_scheduler() -> Scheduler:
    return Scheduler(enable_fuzzing=False)


def is_resting(state: MasteryState | None, now: datetime) -> bool:
    """Automatic objects that are not yet due for review sit out of selection."""
    return (
        state is not None
        and state.stage >= MAX_STAGE
        and state.due_at is not None
        and state.due_at > now
    )


@dataclass(slots=True)
class MasteryScheduler:
    """Applies one response to an object's mastery state."""
    scheduler: Scheduler = field(default_factory=new_fsrs_scheduler)
    thresholds: StageThresholds = field(default_factory=lambda: THRESHOLD_PRESETS["default"])

    def _review(self, state: MasteryState, rating: int, now: datetime) -> None:
        card = Card.from_dict(state.card) if state.card else Card()
        card, _ = self.scheduler.review_card(card, Rating(rating), review_datetime=now)
        state.card = card.to_dict()
        state.stability = float(card.stability or 0.0)
        state.difficulty = float(card.difficulty or 0.0)
        state.due_at = card.due
        state.last_reviewed_at = now

    @staticmethod
    def _ready_for_automatic(state: MasteryState, timing: TimingResult) -> bool:
        recent = state.recent_automatic[-AUTOMATIC_STREAK:]
        times = state.recent_times_ms[-AUTOMATIC_STREAK:]
        return (
            timing.is_automatic
            and len(recent) == AUTOMATIC_STREAK
            and all(recent)
            and coefficient_of_variation(times) <= MAX_AUTOMATIC_CV
        )

    def record_response(
        self,
        state: MasteryState,
        *,
        correct: bool,
        response_time_ms: int,
        task_type: str,
        content: str = "",
        role: str = "assessment",
        cue_level: int = 0,
        now: datetime | None = None,
    ) -> MasteryUpdate:
        """Update ``state`` in place and describe what changed.

        Stages move by at most one per response. A correct but slow answer
        never regresses; two incorrect answers in a row drop one stage.
        """
        now = now or utcnow()
        role_config = ROLE_CONFIGS.get(role, ROLE_CONFIGS["incidental"])
        previous = state.stage
        timing = analyze_response_time(response_time_ms, task_type, previous, content, correct)
        state.exposure_count += 1

        if not role_config.track_accuracy:
            return MasteryUpdate(
                state.object_id, previous, previous, timing.category,
                due_at=state.due_at, reason="exposure only",
            )

        if cue_level == 0:
            state.cue_free_attempts += 1
            state.cue_free_correct += int(correct)
        else:
            state.cue_assisted_attempts += 1
            state.cue_assisted_correct += int(correct)

        if correct:
            state.correct_count += 1
            state.consecutive_incorrect = 0
            state.recent_times_ms = (state.recent_times_ms + [timing.response_time_ms])[-RECENT_WINDOW:]
            state.recent_automatic = (state.recent_automatic + [timing.is_automatic])[-RECENT_WINDOW:]
        else:
            state.consecutive_incorrect += 1

        rating = None
        if role_config.update_fsrs:
            rating = fsrs_rating(correct, timing, previous)
            self._review(state, rating, now)

        reason = "no change"
        if correct and not timing.possible_guess and timing.category in ("fast", "good"):
            if previous < MAX_STAGE - 1:
                state.stage = previous + 1
                reason = f"{timing.category} correct response"
            elif previous == MAX_STAGE - 1:
                if self._ready_for_automatic(state, timing):
                    state.stage = MAX_STAGE
                    reason = "automatic retrieval sustained"
                else:
                    reason = "awaiting automaticity"
        elif not correct and state.consecutive_incorrect >= REGRESSION_STREAK and previous > 0:
            state.stage = previous - 1
            state.consecutive_incorrect = 0
            reason = "repeated errors"

        if state.stage != previous:
            log.info(
                "stage_transition",
                object_id=state.object_id,
                from_stage=STAGE_NAMES[previous],
                to_stage=STAGE_NAMES[state.stage],
                reason=reason,
            )

        progress = stage_progress(state, self.thresholds)
        return MasteryUpdate(
            object_id=state.object_id,
            previous_stage=previous,
            new_stage=state.stage,
            timing=timing.category,
            rating=rating,
            due_at=state.due_at,
            possible_guess=timing.possible_guess,
            reason=reason,
            next_stage_progress=progress.progress,
            blockers=tuple(progress.blockers),
        )
