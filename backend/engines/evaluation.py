"""Multi-Layer Evaluator

Scores a learner response against each evaluated object of a task. Every
object carries its own criteria: binary, partial credit (weighted layers such
as spelling, form and register), range based (exact, variant and pattern
matches) or rubric based.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Literal, Sequence, Union, assert_never

from core.errors import AppError, Ok, Result, evaluation_failed
from core.logging import engine_logger

log = engine_logger()

Strictness = Literal["lenient", "normal", "strict"]
ErrorType = Literal["omission", "substitution", "addition", "ordering", "form", "usage"]
MatchType = Literal["exact", "variant", "partial", "none"]

MAX_RESPONSE_LENGTH = 10_000
MAX_PATTERN_LENGTH = 200
MAX_REGEX_INPUT_LENGTH = 1_000

STRICTNESS_THRESHOLDS: dict[str, float] = {"lenient": 0.5, "normal": 0.6, "strict": 0.8}
EVALUATED_ROLES = frozenset({"assessment", "practice"})

FORMAL_MARKERS = ("therefore", "consequently", "furthermore", "however")
INFORMAL_MARKERS = ("gonna", "wanna", "kinda", "yeah", "ok")

# Nested or alternated quantifiers that can backtrack catastrophically
DANGEROUS_PATTERNS = (
    re.compile(r"\([^)]*[+*][^)]*\)[+*]"),
    re.compile(r"\([^)]*\|[^)]*\)[+*]"),
    re.compile(r"\.\*\.\*"),
    re.compile(r"(\([^)]*[+*]\)){2,}"),
)

_WS = re.compile(r"\s+")
_QUOTES = str.maketrans({"‘": "'", "’": "'", "“": '"', "”": '"'})


# -- criteria --------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class EvaluationLayer:
    layer_id: str
    name: str
    weight: float
    levels: tuple[float, ...] = (1.0, 0.7, 0.4, 0.0)


@dataclass(frozen=True, slots=True)
class BinaryCriteria:
    kind: Literal["binary"] = "binary"


@dataclass(frozen=True, slots=True)
class PartialCreditCriteria:
    layers: tuple[EvaluationLayer, ...] = ()
    kind: Literal["partial_credit"] = "partial_credit"


@dataclass(frozen=True, slots=True)
class PartialPattern:
    pattern: str
    score: float = 0.6
    feedback: str = "Partially correct"


@dataclass(frozen=True, slots=True)
class RangeCriteria:
    exact: tuple[str, ...]
    variants: tuple[str, ...] = ()
    patterns: tuple[PartialPattern, ...] = ()
    kind: Literal["range_based"] = "range_based"


@dataclass(frozen=True, slots=True)
class RubricCriterion:
    criterion_id: str
    name: str
    weight: float
    levels: tuple[tuple[float, str], ...] = (
        (1.0, "Meets expectations"),
        (0.7, "Mostly meets expectations"),
        (0.4, "Partially meets expectations"),
        (0.0, "Below expectations"),
    )


@dataclass(frozen=True, slots=True)
class RubricCriteria:
    criteria: tuple[RubricCriterion, ...]
    kind: Literal["rubric_based"] = "rubric_based"


Criteria = Union[BinaryCriteria, PartialCreditCriteria, RangeCriteria, RubricCriteria]


DEFAULT_LAYERS: dict[str, tuple[EvaluationLayer, ...]] = {
    "LEX": (
        EvaluationLayer("spelling", "Spelling", 0.3),
        EvaluationLayer("semantic_accuracy", "Meaning", 0.5),
        EvaluationLayer("contextual_appropriateness", "Context", 0.2),
    ),
    "MORPH": (
        EvaluationLayer("form_accuracy", "Form", 0.6),
        EvaluationLayer("spelling", "Spelling", 0.4),
    ),
    "SYNT": (
        EvaluationLayer("structure", "Structure", 0.5),
        EvaluationLayer("agreement", "Agreement", 0.3),
        EvaluationLayer("word_order", "Word Order", 0.2),
    ),
    "PRAG": (
        EvaluationLayer("appropriateness", "Appropriateness", 0.4),
        EvaluationLayer("register_match", "Register", 0.3),
        EvaluationLayer("politeness", "Politeness", 0.3),
    ),
    "PHON": (
        EvaluationLayer("accuracy", "Accuracy", 0.7),
        EvaluationLayer("intelligibility", "Intelligibility", 0.3),
    ),
}


def default_layers(component: str) -> tuple[EvaluationLayer, ...]:
    return DEFAULT_LAYERS.get(component, (EvaluationLayer("accuracy", "Accuracy", 1.0),))


# -- inputs and results ----------------------------------------------------

@dataclass(frozen=True, slots=True)
class EvaluationInput:
    object_id: str
    component: str
    response: str
    expected: tuple[str, ...]
    criteria: Criteria = field(default_factory=PartialCreditCriteria)
    role: str = "assessment"
    weight: float = 1.0
    register: str | None = None
    task_type: str = ""


@dataclass(frozen=True, slots=True)
class CriterionScore:
    criterion_id: str
    name: str
    score: float
    weight: float
    feedback: str = ""


@dataclass(frozen=True, slots=True)
class ObjectEvaluation:
    object_id: str
    component: str
    role: str
    weight: float
    score: float
    correct: bool
    criteria: tuple[CriterionScore, ...] = ()
    error_type: ErrorType | None = None
    feedback: str = ""
    confidence: float = 1.0
    correction: str | None = None
    match_type: MatchType | None = None

    def to_dict(self) -> dict:
        return {
            "object_id": self.object_id,
            "component": self.component,
            "role": self.role,
            "weight": self.weight,
            "score": self.score,
            "correct": self.correct,
            "criteria": [
                {"id": c.criterion_id, "name": c.name, "score": c.score, "weight": c.weight}
                for c in self.criteria
            ],
            "error_type": self.error_type,
            "feedback": self.feedback,
            "confidence": self.confidence,
            "correction": self.correction,
        }


@dataclass(frozen=True, slots=True)
class BatchEvaluation:
    object_results: list[ObjectEvaluation]
    composite_score: float
    correct: bool
    feedback: str
    confidence: float
    strictness: Strictness = "normal"
    degraded: bool = False

    def for_object(self, object_id: str) -> ObjectEvaluation | None:
        return next((r for r in self.object_results if r.object_id == object_id), None)

    def to_dict(self) -> dict:
        return {
            "composite_score": self.composite_score,
            "correct": self.correct,
            "feedback": self.feedback,
            "confidence": self.confidence,
            "strictness": self.strictness,
            "degraded": self.degraded,
            "objects": [r.to_dict() for r in self.object_results],
        }


# -- text helpers ----------------------------------------------------------

def normalize_text(text: str) -> str:
    return _WS.sub(" ", text.strip()).translate(_QUOTES)


def tokens(text: str) -> list[str]:
    normalized = normalize_text(text).lower()
    return normalized.split(" ") if normalized else []


def levenshtein(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """1 - normalised edit distance, case-insensitive."""
    na, nb = normalize_text(a).lower(), normalize_text(b).lower()
    if na == nb:
        return 1.0
    longest = max(len(na), len(nb))
    return 1 - levenshtein(na, nb) / longest if longest else 0.0


def best_segment(response: str, expected: str) -> str:
    """Window of response tokens, the length of ``expected``, most similar to it."""
    resp = normalize_text(response).split(" ")
    size = max(1, len(normalize_text(expected).split(" ")))
    if len(resp) <= size:
        return normalize_text(response)
    windows = (" ".join(resp[i:i + size]) for i in range(len(resp) - size + 1))
    return max(windows, key=lambda w: similarity(w, expected))


def _lcs_length(a: Sequence[str], b: Sequence[str]) -> int:
    table = [0] * (len(b) + 1)
    for x in a:
        prev = 0
        for j, y in enumerate(b, 1):
            current = table[j]
            table[j] = prev + 1 if x == y else max(table[j], table[j - 1])
            prev = current
    return table[-1]


def safe_regex_match(pattern: str, text: str) -> bool | None:
    """Case-insensitive search, or None when the pattern is refused or invalid."""
    if len(pattern) > MAX_PATTERN_LENGTH:
        log.warning("regex_pattern_too_long", length=len(pattern))
        return None
    if any(d.search(pattern) for d in DANGEROUS_PATTERNS):
        log.warning("regex_pattern_rejected", pattern=pattern)
        return None
    try:
        compiled = re.compile(pattern, re.IGNORECASE)
    except re.error:
        return None
    return compiled.search(text[:MAX_REGEX_INPUT_LENGTH]) is not None


def classify_error(response: str, expected: str) -> ErrorType:
    resp = normalize_text(response).lower()
    exp = normalize_text(expected).lower()
    if not resp or len(resp) < len(exp) * 0.5:
        return "omission"
    if len(resp) > len(exp) * 1.5:
        return "addition"
    if sorted(resp) == sorted(exp):
        return "ordering"
    expected_words = exp.split(" ")
    response_words = resp.split(" ")
    stems = [w[: max(3, math.ceil(len(w) * 0.6))] for w in expected_words]
    matched = sum(1 for s in stems if any(r.startswith(s) for r in response_words))
    if expected_words and matched / len(expected_words) >= 0.6:
        return "form"
    return "substitution"


# -- layer scorers ---------------------------------------------------------

def _form_accuracy(response: str, expected: str) -> tuple[float, str]:
    if normalize_text(response) == normalize_text(expected):
        return 1.0, "Form is correct"
    sim = similarity(response, expected)
    if sim >= 0.8:
        return 0.7, "Minor form error"
    if sim >= 0.5:
        return 0.4, "Significant form error"
    return 0.0, "Incorrect form"


def _spelling(response: str, expected: str) -> tuple[float, str]:
    distance = levenshtein(response.lower(), expected.lower())
    if distance == 0:
        return 1.0, "Spelling correct"
    if distance == 1:
        return 0.8, "One spelling error"
    if distance == 2:
        return 0.5, "Two spelling errors"
    return 0.2, "Multiple spelling errors"


def _contextual_appropriateness(response: str, expected: str) -> tuple[float, str]:
    if normalize_text(response) == normalize_text(expected):
        return 1.0, "Contextually appropriate"
    exp_words = tokens(expected)
    resp_words = set(tokens(response))
    overlap = sum(1 for w in exp_words if w in resp_words) / len(exp_words) if exp_words else 0.0
    if overlap >= 0.8:
        return 0.8, "Mostly appropriate"
    if overlap >= 0.5:
        return 0.5, "Partially appropriate"
    return 0.2, "May not fit context"


def _semantic_accuracy(response: str, expected: str) -> tuple[float, str]:
    a, b = set(tokens(response)), set(tokens(expected))
    union = a | b
    jaccard = len(a & b) / len(union) if union else 0.0
    if jaccard >= 0.8:
        return 1.0, "Semantically accurate"
    if jaccard >= 0.5:
        return 0.7, "Partially captures meaning"
    if jaccard >= 0.2:
        return 0.4, "Some relevant content"
    return 0.1, "Meaning unclear or incorrect"


def _register_match(response: str, register: str | None) -> tuple[float, str]:
    if not register:
        return 0.8, "Register not specified"
    words = set(tokens(response))
    has_formal = any(m in words for m in FORMAL_MARKERS)
    has_informal = any(m in words for m in INFORMAL_MARKERS)
    if register == "formal" and has_informal:
        return 0.3, "Too informal"
    if register == "informal" and has_formal and not has_informal:
        return 0.5, "Too formal"
    return 0.9, "Appropriate register"


def _word_order(response: str, expected: str) -> tuple[float, str]:
    exp = tokens(expected)
    if not exp:
        return 0.0, "Nothing to compare"
    ratio = _lcs_length(tokens(response), exp) / len(exp)
    return ratio, "Correct order" if ratio >= 1.0 else "Word order differs"


def _generic(response: str, expected: str, layer: EvaluationLayer) -> tuple[float, str]:
    sim = similarity(response, expected)
    for level in sorted(layer.levels, reverse=True):
        if sim >= level:
            return level, f"{layer.name}: {level:.0%}"
    return 0.0, f"{layer.name}: incorrect"


def score_layer(
    layer: EvaluationLayer, response: str, expected: str, register: str | None = None
) -> tuple[float, str]:
    match layer.layer_id:
        case "form_accuracy":
            return _form_accuracy(response, expected)
        case "spelling":
            return _spelling(response, expected)
        case "contextual_appropriateness":
            return _contextual_appropriateness(response, expected)
        case "semantic_accuracy":
            return _semantic_accuracy(response, expected)
        case "register_match":
            return _register_match(response, register)
        case "word_order":
            return _word_order(response, expected)
        case _:
            return _generic(response, expected, layer)


_LAYER_ERRORS: dict[str, ErrorType] = {
    "form_accuracy": "form",
    "spelling": "form",
    "contextual_appropriateness": "usage",
    "register_match": "usage",
    "appropriateness": "usage",
    "word_order": "ordering",
    "structure": "ordering",
}


# -- modes -----------------------------------------------------------------

def _binary(inp: EvaluationInput) -> ObjectEvaluation:
    response = normalize_text(inp.response)
    expected = [normalize_text(e) for e in inp.expected]
    if response in expected:
        score = 1.0
    elif response.lower() in (e.lower() for e in expected):
        score = 0.9
    else:
        score = 0.0
    correct = score >= 0.5
    target = inp.expected[0] if inp.expected else ""
    return ObjectEvaluation(
        inp.object_id, inp.component, inp.role, inp.weight, score, correct,
        error_type=None if correct else classify_error(response, target),
        feedback="Correct!" if correct else f"Expected: {target}",
        confidence=1.0,
        correction=None if correct else target,
    )


def _partial_credit(inp: EvaluationInput, criteria: PartialCreditCriteria) -> ObjectEvaluation:
    layers = criteria.layers or default_layers(inp.component)
    expected = inp.expected[0] if inp.expected else ""
    segment = best_segment(inp.response, expected) if expected else normalize_text(inp.response)

    scores = []
    for layer in layers:
        value, feedback = score_layer(layer, segment, expected, inp.register)
        scores.append(CriterionScore(layer.layer_id, layer.name, value, layer.weight, feedback))
    total = sum(s.weight for s in scores)
    score = sum(s.score * s.weight for s in scores) / total if total else 0.0
    correct = score >= 0.6

    if correct:
        perfect = [s.name for s in scores if s.score == 1.0]
        feedback = "Perfect!" if len(perfect) == len(scores) else f"Good! {', '.join(perfect)} correct."
        error_type = None
    else:
        weak = sorted((s for s in scores if s.score < 0.6), key=lambda s: s.score)
        feedback = f"Focus on: {', '.join(s.name for s in weak)}" if weak else "Almost there!"
        weakest = min(scores, key=lambda s: s.score)
        error_type = _LAYER_ERRORS.get(weakest.criterion_id, "substitution")

    return ObjectEvaluation(
        inp.object_id, inp.component, inp.role, inp.weight, score, correct,
        criteria=tuple(scores),
        error_type=error_type,
        feedback=feedback,
        confidence=0.85,
        correction=None if correct else expected,
    )


def _range_based(inp: EvaluationInput, criteria: RangeCriteria) -> ObjectEvaluation:
    response = normalize_text(inp.response).lower()

    def result(score, match_type, feedback, confidence, correction=None, error_type=None):
        return ObjectEvaluation(
            inp.object_id, inp.component, inp.role, inp.weight, score, score >= 0.5,
            error_type=error_type, feedback=feedback, confidence=confidence,
            correction=correction, match_type=match_type,
        )

    if any(normalize_text(e).lower() == response for e in criteria.exact):
        return result(1.0, "exact", "Exact match!", 1.0)
    if any(normalize_text(v).lower() == response for v in criteria.variants):
        return result(0.9, "variant", "Acceptable answer", 0.95)
    for pattern in criteria.patterns:
        if safe_regex_match(pattern.pattern, response):
            return result(pattern.score, "partial", pattern.feedback, 0.8)
    target = criteria.exact[0] if criteria.exact else ""
    return result(
        0.0, "none", f"Expected: {target}", 0.9,
        correction=target, error_type=classify_error(response, target),
    )


def _rubric_based(inp: EvaluationInput, criteria: RubricCriteria) -> ObjectEvaluation:
    expected = inp.expected[0] if inp.expected else ""
    sim = similarity(inp.response, expected)
    scores = []
    for criterion in criteria.criteria:
        levels = sorted(criterion.levels, key=lambda lv: lv[0], reverse=True)
        value, descriptor = next(
            ((s, d) for s, d in levels if sim >= s), levels[-1] if levels else (0.0, "")
        )
        scores.append(CriterionScore(criterion.criterion_id, criterion.name, value, criterion.weight, descriptor))
    total = sum(s.weight for s in scores)
    score = sum(s.score * s.weight for s in scores) / total if total else 0.0

    if score >= 0.9:
        feedback = "Excellent work!"
    elif score >= 0.7:
        feedback = "Good work with minor areas for improvement."
    elif score >= 0.5:
        feedback = "Acceptable but needs improvement."
    else:
        lowest = min(scores, key=lambda s: s.score) if scores else None
        feedback = f"Focus on improving: {lowest.name if lowest else 'identified areas'}"

    return ObjectEvaluation(
        inp.object_id, inp.component, inp.role, inp.weight, score, score >= 0.6,
        criteria=tuple(scores), feedback=feedback, confidence=0.75,
    )


def evaluate_object(inp: EvaluationInput) -> ObjectEvaluation:
    if len(inp.response) > MAX_RESPONSE_LENGTH:
        return ObjectEvaluation(
            inp.object_id, inp.component, inp.role, inp.weight, 0.0, False,
            feedback="Response exceeds maximum allowed length", confidence=1.0,
        )
    criteria = inp.criteria
    match criteria:
        case BinaryCriteria():
            return _binary(inp)
        case PartialCreditCriteria():
            return _partial_credit(inp, criteria)
        case RangeCriteria():
            return _range_based(inp, criteria)
        case RubricCriteria():
            return _rubric_based(inp, criteria)
        case _:
            assert_never(criteria)


def _aggregate_feedback(results: list[ObjectEvaluation], correct: bool) -> str:
    if correct:
        perfect = sum(1 for r in results if r.score == 1.0)
        if perfect == len(results):
            return "All correct! Excellent work!"
        return f"Good job! {perfect}/{len(results)} perfect."
    wrong = [r for r in results if not r.correct]
    if len(wrong) == 1:
        return f"Almost! Check: {wrong[0].feedback}"
    return f"Review {len(wrong)} items that need attention."


def _summarize(
    results: list[ObjectEvaluation], strictness: Strictness, degraded: bool = False
) -> BatchEvaluation:
    total = sum(r.weight for r in results)
    composite = sum(r.score * r.weight for r in results) / total if total else 0.0
    correct = bool(results) and composite >= STRICTNESS_THRESHOLDS.get(strictness, 0.6)
    confidence = sum(r.confidence for r in results) / len(results) if results else 0.0
    return BatchEvaluation(
        object_results=results,
        composite_score=composite,
        correct=correct,
        feedback=_aggregate_feedback(results, correct) if results else "Nothing to evaluate.",
        confidence=confidence,
        strictness=strictness,
        degraded=degraded,
    )


def evaluate_batch(
    inputs: Sequence[EvaluationInput], strictness: Strictness = "normal"
) -> Result[BatchEvaluation, AppError]:
    """Evaluate the assessment and practice objects of one response."""
    try:
        results = [evaluate_object(inp) for inp in inputs if inp.role in EVALUATED_ROLES]
    except (ValueError, TypeError, re.error) as exc:
        return evaluation_failed(str(exc), origin="evaluator", cause=exc)

    batch = _summarize(results, strictness)
    log.debug(
        "response_evaluated",
        objects=len(results),
        composite=round(batch.composite_score, 3),
        correct=batch.correct,
        strictness=strictness,
    )
    return Ok(batch)


def raw_correctness(
    inputs: Sequence[EvaluationInput], strictness: Strictness = "normal"
) -> BatchEvaluation:
    """Fallback scoring: normalised exact match per object, low confidence."""
    results = []
    for inp in inputs:
        if inp.role not in EVALUATED_ROLES:
            continue
        response = normalize_text(inp.response).lower()
        hit = any(normalize_text(e).lower() == response for e in inp.expected)
        results.append(ObjectEvaluation(
            inp.object_id, inp.component, inp.role, inp.weight, 1.0 if hit else 0.0, hit,
            feedback="Correct!" if hit else "Not quite.", confidence=0.3,
        ))
    batch = _summarize(results, strictness, degraded=True)
    return BatchEvaluation(
        batch.object_results, batch.composite_score, batch.correct,
        batch.feedback, 0.3, strictness, True,
    )
