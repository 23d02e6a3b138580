"""
Tests for the task composer.

Tests:
- Derived word forms for word-formation tasks
- Grapheme-phoneme layer carried from object metadata
- Template lookup by id
"""
import pytest

from engines.composer import TaskComposer, derive_form
from engines.constraints import ConstraintGraph
from engines.difficulty import LAYER_OFFSETS
from engines.optimizer import CandidateOptimizer
from tests.conftest import GOAL, make_mastery, make_object


def compose(objects, profile, now, mastery=None, preferred=("recognition",)):
    pool = CandidateOptimizer().select(GOAL, objects, mastery or {}, profile, now).unwrap()
    composer = TaskComposer(min_fill_quality=0.0)
    return composer.compose(
        pool.candidates, ConstraintGraph.build(objects), now=now, preferred_task_types=preferred
    ).unwrap()


class TestDeriveForm:
    @pytest.mark.parametrize("base, affix, expected", [
        ("happy", "-ness", "happiness"),
        ("care", "-ful", "careful"),
        ("diagnose", "-ing", "diagnosing"),
        ("play", "-er", "player"),
        ("kind", "un-", "unkind"),
        ("copy", "-ing", "copying"),
    ])
    def test_spelling_rules(self, base, affix, expected):
        assert derive_form(make_object("lex-b", "LEX", base), make_object("morph-a", "MORPH", affix)) == expected

    def test_listed_form_wins(self):
        base = make_object("lex-pay", "LEX", "pay", metadata={"derived_forms": {"morph-ment": "payment"}})
        assert derive_form(base, make_object("morph-ment", "MORPH", "-ment")) == "payment"


class TestComposedTask:
    def test_word_formation_answer_is_the_formed_word(self, profile, now):
        objects = [make_object("lex-happy", "LEX", "happy"), make_object("morph-ness", "MORPH", "-ness")]
        task = compose(
            objects, profile, now,
            mastery={"lex-happy": make_mastery("lex-happy", 1)},
            preferred=("word_formation",),
        )
        assert task.format == "fill_blank"
        assert task.expected_answer == "happiness"
        assert task.prompt == 'Form a new word from "happy" using -ness.'

    def test_layer_shifts_difficulty(self, profile, now):
        plain = compose([make_object("lex-fever", "LEX", "fever")], profile, now)
        layered = compose(
            [make_object("lex-fever", "LEX", "fever", metadata={"g2p_layer": "word"})], profile, now
        )
        assert plain.layer is None
        assert layered.layer == "word"
        shift = layered.assignments[0].difficulty - plain.assignments[0].difficulty
        assert shift == pytest.approx(LAYER_OFFSETS["word"])

    def test_unknown_layer_is_ignored(self, profile, now):
        task = compose([make_object("lex-fever", "LEX", "fever", metadata={"g2p_layer": "morpheme"})], profile, now)
        assert task.layer is None

    def test_template_lookup(self):
        composer = TaskComposer()
        assert composer.template("word-formation-basic").task_type == "word_formation"
        assert composer.template("missing") is None
