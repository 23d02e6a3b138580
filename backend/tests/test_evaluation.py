"""
Tests for the multi-layer evaluator.
"""
import pytest

from engines.evaluation import (
    BinaryCriteria,
    EvaluationInput,
    EvaluationLayer,
    PartialCreditCriteria,
    PartialPattern,
    RangeCriteria,
    RubricCriteria,
    RubricCriterion,
    classify_error,
    evaluate_batch,
    evaluate_object,
    levenshtein,
    raw_correctness,
    safe_regex_match,
    score_layer,
    similarity,
)


def inp(response: str, expected: str = "patient", criteria=None, **kw) -> EvaluationInput:
    return EvaluationInput(
        object_id=kw.pop("object_id", "lex-patient"),
        component=kw.pop("component", "LEX"),
        response=response,
        expected=(expected,),
        criteria=criteria if criteria is not None else PartialCreditCriteria(),
        **kw,
    )


class TestTextHelpers:
    def test_levenshtein(self):
        assert levenshtein("kitten", "sitting") == 3
        assert levenshtein("", "abc") == 3

    def test_similarity_ignores_case_and_spacing(self):
        assert similarity("  The  Patient ", "the patient") == 1.0
        assert similarity("abc", "xyz") == 0.0

    def test_classify_error(self):
        assert classify_error("", "patient") == "omission"
        assert classify_error("a patient with many chronic conditions", "patient") == "addition"
        assert classify_error("tac", "cat") == "ordering"
        assert classify_error("dog", "cat") == "substitution"


class TestSafeRegex:
    def test_plain_pattern(self):
        assert safe_regex_match(r"^pati", "Patient") is True
        assert safe_regex_match(r"xyz", "patient") is False

    def test_nested_quantifiers_are_refused(self):
        assert safe_regex_match(r"(a+)+b", "aaaa") is None
        assert safe_regex_match(r"(a|aa)*c", "aaaa") is None

    def test_invalid_or_long_pattern(self):
        assert safe_regex_match(r"([unclosed", "x") is None
        assert safe_regex_match("a" * 300, "a") is None


class TestBinary:
    def test_exact_and_case_insensitive(self):
        assert evaluate_object(inp("patient", criteria=BinaryCriteria())).score == 1.0
        assert evaluate_object(inp("Patient", criteria=BinaryCriteria())).score == 0.9

    def test_wrong_answer_carries_correction(self):
        result = evaluate_object(inp("doctor", criteria=BinaryCriteria()))
        assert result.score == 0.0
        assert not result.correct
        assert result.correction == "patient"
        assert result.error_type is not None


class TestRangeBased:
    CRITERIA = RangeCriteria(
        exact=("diagnosis",),
        variants=("diagnoses",),
        patterns=(PartialPattern(r"^diagn", 0.6, "Right stem"),),
    )

    def test_match_levels(self):
        assert evaluate_object(inp("Diagnosis", "diagnosis", self.CRITERIA)).match_type == "exact"
        variant = evaluate_object(inp("diagnoses", "diagnosis", self.CRITERIA))
        assert variant.score == pytest.approx(0.9)
        partial = evaluate_object(inp("diagnostic", "diagnosis", self.CRITERIA))
        assert partial.score == pytest.approx(0.6)
        assert partial.feedback == "Right stem"
        miss = evaluate_object(inp("symptom", "diagnosis", self.CRITERIA))
        assert miss.match_type == "none"
        assert miss.correction == "diagnosis"


class TestPartialCredit:
    def test_perfect_answer(self):
        result = evaluate_object(inp("patient"))
        assert result.score == pytest.approx(1.0)
        assert result.feedback == "Perfect!"

    def test_target_found_inside_sentence(self):
        result = evaluate_object(inp("The patient was admitted overnight"))
        assert result.score == pytest.approx(1.0)

    def test_misspelling_is_partial(self):
        result = evaluate_object(inp("patiant"))
        spelling = next(c for c in result.criteria if c.criterion_id == "spelling")
        assert spelling.score == pytest.approx(0.8)
        assert 0.0 < result.score < 0.6
        assert result.correction == "patient"

    def test_register_layer(self):
        layer = EvaluationLayer("register_match", "Register", 1.0)
        assert score_layer(layer, "yeah gonna do it", "", "formal")[0] == pytest.approx(0.3)
        assert score_layer(layer, "therefore we proceed", "", "formal")[0] == pytest.approx(0.9)
        assert score_layer(layer, "anything", "", None)[0] == pytest.approx(0.8)

    def test_word_order_layer(self):
        layer = EvaluationLayer("word_order", "Word Order", 1.0)
        assert score_layer(layer, "the patient is stable", "the patient is stable")[0] == 1.0
        assert score_layer(layer, "stable is the patient", "the patient is stable")[0] < 1.0


class TestRubric:
    def test_close_answer_scores_high(self):
        criteria = RubricCriteria((RubricCriterion("content", "Content", 1.0),))
        good = evaluate_object(inp("patient", criteria=criteria))
        poor = evaluate_object(inp("zzzzzzz", criteria=criteria))
        assert good.score == pytest.approx(1.0)
        assert good.feedback == "Excellent work!"
        assert poor.score == 0.0
        assert poor.feedback == "Focus on improving: Content"


class TestBatch:
    def _mixed(self):
        return [
            inp("patient", criteria=BinaryCriteria(), weight=0.7),
            inp("wrong", "symptom", BinaryCriteria(), object_id="lex-symptom", weight=0.3),
            inp("", "chronic", BinaryCriteria(), object_id="lex-chronic", role="incidental"),
        ]

    def test_only_evaluated_roles_count(self):
        batch = evaluate_batch(self._mixed()).unwrap()
        assert {r.object_id for r in batch.object_results} == {"lex-patient", "lex-symptom"}
        assert batch.composite_score == pytest.approx(0.7)

    def test_strictness_moves_the_bar(self):
        assert evaluate_batch(self._mixed(), "lenient").unwrap().correct
        assert evaluate_batch(self._mixed(), "normal").unwrap().correct
        assert not evaluate_batch(self._mixed(), "strict").unwrap().correct

    def test_empty_batch(self):
        batch = evaluate_batch([]).unwrap()
        assert not batch.correct
        assert batch.feedback == "Nothing to evaluate."

    def test_oversized_response(self):
        result = evaluate_object(inp("x" * 10_001))
        assert result.score == 0.0
        assert "maximum" in result.feedback

    def test_raw_correctness_is_degraded(self):
        batch = raw_correctness(self._mixed())
        assert batch.degraded
        assert batch.confidence == pytest.approx(0.3)
        assert batch.for_object("lex-patient").correct
        assert not batch.for_object("lex-symptom").correct
