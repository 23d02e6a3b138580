"""
Tests for the single-object fallback generator.
"""
import pytest

from engines.legacy import LegacyTask, generate_legacy_task
from engines.pipeline import task_from_dict
from tests.conftest import make_mastery


class TestGenerateLegacyTask:
    def test_empty_corpus_gives_free_practice(self, profile, goal, now):
        task = generate_legacy_task([], profile, goal=goal, now=now)
        assert task.free_practice
        assert task.object_ids == []
        assert task.task_type == "production"
        assert task.prompt == "Write a few sentences about patient interaction."
        assert task.context["context_id"] == "medical-spoken-consultative"
        assert task.calibration == ()

    def test_picks_most_informative_item(self, corpus, profile, goal, now):
        # lex-chronic, prag-formal and morph-ness all sit at b = 0; the smallest id wins
        task = generate_legacy_task(corpus, profile, goal=goal, now=now)
        assert task.object_id == "lex-chronic"
        assert task.task_type == "recognition"
        assert task.expected_answer == "chronic"
        assert task.calibration[0].primary
        assert task.calibration[0].weight == pytest.approx(1.0)

    def test_task_type_follows_stage(self, corpus, profile, now):
        task = generate_legacy_task(corpus, profile, {"lex-chronic": make_mastery("lex-chronic", 2)}, now=now)
        assert task.task_type == "recall_cued"
        assert task.prompt == 'Recall the item that begins with "ch"'

        task = generate_legacy_task(corpus, profile, {"lex-chronic": make_mastery("lex-chronic", 4)}, now=now)
        assert task.task_type == "production"
        assert task.composite_difficulty == pytest.approx(0.5)

    def test_modality_raises_difficulty(self, corpus, profile, now):
        task = generate_legacy_task(corpus, profile, modality="speaking", now=now)
        assert task.composite_difficulty == pytest.approx(0.6)
        assert task.modality == "speaking"

    def test_no_goal_uses_default_context(self, corpus, profile, now):
        task = generate_legacy_task(corpus, profile, now=now)
        assert task.context["context_id"] == "personal-spoken-informal"
        assert task.context["mode"] == "consolidation"

    def test_serialized_task_dispatches_back(self, corpus, profile, now):
        task = generate_legacy_task(corpus, profile, now=now)
        data = task.to_dict()
        assert data["kind"] == "legacy"
        restored = task_from_dict(data)
        assert isinstance(restored, LegacyTask)
        assert restored.object_id == task.object_id
        assert restored.created_at == now
