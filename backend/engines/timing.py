"""Response timing analysis.

Classifies response latency against stage- and length-scaled thresholds,
flags likely guesses, summarises fluency and spots response patterns that
look automated or random.
"""
import math
import statistics
from dataclasses import dataclass, field
from typing import Literal, Sequence

TimingClass = Literal["too_fast", "fast", "good", "slow", "very_slow"]
TaskCategory = Literal["recognition", "recall", "production", "timed"]


@dataclass(frozen=True, slots=True)
class TimingThresholds:
    fast: float
    good: float
    slow: float
    very_slow: float

    def scaled(self, factor: float) -> "TimingThresholds":
        return TimingThresholds(
            self.fast * factor,
            self.good * factor,
            self.slow * factor,
            self.very_slow * factor,
        )


BASE_THRESHOLDS: dict[str, TimingThresholds] = {
    "recognition": TimingThresholds(500, 1200, 3000, 6000),
    "recall": TimingThresholds(800, 2000, 5000, 10000),
    "production": TimingThresholds(1500, 4000, 8000, 15000),
    "timed": TimingThresholds(300, 800, 1500, 3000),
}

# Early stages get more time before a response counts as slow
STAGE_MULTIPLIERS: dict[int, float] = {0: 2.0, 1: 1.5, 2: 1.2, 3: 1.0, 4: 0.8}

AUTOMATICITY_THRESHOLDS: dict[str, float] = {
    "recognition": 1000,
    "recall": 2000,
    "production": 4000,
    "timed": 800,
}

TASK_CATEGORIES: dict[str, TaskCategory] = {
    "recognition": "recognition",
    "definition_match": "recognition",
    "recall_cued": "recall",
    "recall_free": "recall",
    "fill_blank": "recall",
    "reading_comprehension": "recall",
    "error_correction": "recall",
    "collocation": "recall",
    "clause_selection": "recall",
    "production": "production",
    "translation": "production",
    "sentence_writing": "production",
    "word_formation": "production",
    "register_shift": "production",
    "sentence_combining": "production",
    "discourse_completion": "production",
    "timed": "timed",
    "rapid_response": "timed",
}


def task_category(task_type: str) -> TaskCategory:
    return TASK_CATEGORIES.get(task_type, "recall")


def length_factor(content: str) -> float:
    n = len(content)
    if n <= 5:
        return 1.0
    if n <= 10:
        return 1.2
    if n <= 15:
        return 1.5
    return 2.0


def thresholds_for(task_type: str, stage: int, content: str = "") -> TimingThresholds:
    base = BASE_THRESHOLDS[task_category(task_type)]
    return base.scaled(STAGE_MULTIPLIERS.get(stage, 1.0) * length_factor(content))


@dataclass(frozen=True, slots=True)
class TimingResult:
    category: TimingClass
    response_time_ms: int
    task_category: TaskCategory
    thresholds: TimingThresholds
    confidence: float
    is_automatic: bool
    possible_guess: bool


def analyze_response_time(
    response_time_ms: int,
    task_type: str,
    stage: int,
    content: str = "",
    correct: bool = True,
) -> TimingResult:
    t = thresholds_for(task_type, stage, content)
    cat = task_category(task_type)
    rt = max(0, int(response_time_ms))

    if rt < t.fast:
        category: TimingClass = "too_fast"
    elif rt < t.good:
        category = "fast"
    elif rt < t.slow:
        category = "good"
    elif rt < t.very_slow:
        category = "slow"
    else:
        category = "very_slow"

    nearest = min(abs(rt - bound) for bound in (t.fast, t.good, t.slow, t.very_slow))
    confidence = min(1.0, 0.5 + nearest / 1000 * 0.5)

    return TimingResult(
        category=category,
        response_time_ms=rt,
        task_category=cat,
        thresholds=t,
        confidence=confidence,
        is_automatic=correct and rt < AUTOMATICITY_THRESHOLDS[cat],
        possible_guess=category == "too_fast" and (cat == "recognition" or not correct),
    )


def fsrs_rating(correct: bool, timing: TimingResult, stage: int) -> int:
    """Map correctness plus latency onto FSRS ratings 1 (Again) .. 4 (Easy)."""
    if not correct:
        return 1 if timing.category == "very_slow" else 2
    if timing.category in ("slow", "very_slow"):
        return 2
    if timing.possible_guess:
        return 2
    if timing.category == "fast":
        return 4
    if timing.category == "good":
        return 3
    return 4 if stage >= 3 else 2


@dataclass(frozen=True, slots=True)
class FluencyMetrics:
    mean_ms: float
    std_ms: float
    coefficient_of_variation: float
    automaticity_ratio: float
    fluency_score: float


def fluency_metrics(times_ms: Sequence[int], task_type: str = "recall") -> FluencyMetrics:
    if not times_ms:
        return FluencyMetrics(0.0, 0.0, 0.0, 0.0, 0.0)
    base = BASE_THRESHOLDS[task_category(task_type)]
    mean = statistics.fmean(times_ms)
    std = statistics.pstdev(times_ms) if len(times_ms) > 1 else 0.0
    cv = std / mean if mean > 0 else 0.0
    ratio = sum(1 for t in times_ms if t < base.good) / len(times_ms)
    mean_score = min(1.0, max(0.0, 1 - mean / base.very_slow))
    score = 0.4 * mean_score + 0.2 * max(0.0, 1 - cv) + 0.4 * ratio
    return FluencyMetrics(mean, std, cv, ratio, score)


def coefficient_of_variation(times_ms: Sequence[int]) -> float:
    if len(times_ms) < 2:
        return 0.0
    mean = statistics.fmean(times_ms)
    return statistics.pstdev(times_ms) / mean if mean > 0 else math.inf


@dataclass(frozen=True, slots=True)
class SuspiciousPattern:
    kind: Literal["bot_pattern", "robotic_timing", "random_clicking"]
    confidence: float
    detail: str = ""


@dataclass(slots=True)
class PatternReport:
    patterns: list[SuspiciousPattern] = field(default_factory=list)

    @property
    def suspicious(self) -> bool:
        return bool(self.patterns)

    @property
    def max_confidence(self) -> float:
        return max((p.confidence for p in self.patterns), default=0.0)


def detect_suspicious_patterns(responses: Sequence[tuple[int, bool]]) -> PatternReport:
    """Look for automated or random answering in recent (time_ms, correct) pairs."""
    report = PatternReport()
    if len(responses) < 5:
        return report

    times = [t for t, _ in responses]
    accuracy = sum(1 for _, c in responses if c) / len(responses)

    if all(t < 500 for t in times) and accuracy > 0.9:
        report.patterns.append(
            SuspiciousPattern("bot_pattern", 0.8, "uniformly sub-500ms with near-perfect accuracy")
        )
    if len(times) >= 10 and len({round(t / 100) for t in times}) <= 2:
        report.patterns.append(
            SuspiciousPattern("robotic_timing", 0.7, "response times vary by less than 100ms")
        )
    if all(t < 300 for t in times) and accuracy < 0.3:
        report.patterns.append(
            SuspiciousPattern("random_clicking", 0.9, "sub-300ms responses with low accuracy")
        )
    return report
