"""
Tests for the pipeline orchestrator.

Tests:
- Multi-object generation for a fresh learner
- Legacy fallback on an empty corpus (end-to-end scenario 3)
- Content generation and its graceful degradation
- Response processing: calibration, usage expansion, mastery
- Word formation: the derived answer and its scoring
- Degraded evaluation, all-or-nothing persistence and cancelled callers
- Serialized updates per learner
"""
import asyncio

import pytest

from core.config import EngineConfig
from core.errors import ErrorCode, Ok, evaluation_failed, external_service_unavailable, persistence_failed
from engines.composer import ComposedTask, TaskComposer, TaskTemplate
from engines.content import ContentGenerator, GeneratedContent
from engines.evaluation import BinaryCriteria, PartialCreditCriteria, RangeCriteria
from engines.legacy import LegacyTask
from engines.pipeline import GenerationOptions, ResponseContext, TaskPipeline, criteria_for, task_from_dict
from engines.types import Goal
from engines.usage_space import context_by_id
from stores.memory import InMemoryContentRepository, InMemoryProfileStore
from tests.conftest import GOAL, LEARNER, NOW, make_mastery, make_object

DISCOURSE = GenerationOptions(
    preferred_task_types=("discourse_completion",),
    target_context_id="medical-spoken-consultative",
)


class StubGenerator(ContentGenerator):
    def __init__(self, result):
        self.result = result
        self.requests = []

    async def generate(self, request):
        self.requests.append(request)
        return self.result


class FailingProfileStore(InMemoryProfileStore):
    failing = True

    async def save_response(self, write):
        if self.failing:
            return persistence_failed("save_response", "disk full")
        return await super().save_response(write)


class RecordingLogger:
    def __init__(self):
        self.events = []

    def __getattr__(self, level):
        return lambda event, **kw: self.events.append((level, event, kw))


async def word_formation_pipeline(store, **config) -> TaskPipeline:
    """A learner who knows "happy" and can now be asked to derive from it."""
    objects = [
        make_object("lex-happy", "LEX", "happy", linguistic_difficulty=0.3),
        make_object("morph-ness", "MORPH", "-ness", linguistic_difficulty=0.5),
    ]
    await store.save_mastery_state(make_mastery("lex-happy", 1))
    repository = InMemoryContentRepository(objects, goals=[Goal(GOAL, domain="medical")])
    return TaskPipeline(
        repository, store, config=EngineConfig(min_fill_quality=0.3, **config), clock=lambda: NOW
    )


WORD_FORMATION = GenerationOptions(preferred_task_types=("word_formation",))


def ctx(**kw) -> ResponseContext:
    return ResponseContext(learner_id=LEARNER, goal_id=GOAL, **kw)


class TestGenerateTask:
    @pytest.mark.asyncio
    async def test_fresh_learner_gets_composed_task(self, pipeline):
        result = (await pipeline.generate_task(LEARNER, GOAL)).unwrap()
        assert not result.used_legacy_fallback
        assert isinstance(result.task, ComposedTask)
        assert result.task.template_id == "vocab-recognition-basic"
        assert result.task.assignments[0].component == "LEX"
        assert result.metadata.candidates_considered == 8
        assert result.context["context_id"]

    @pytest.mark.asyncio
    async def test_preferred_task_type_is_honoured(self, pipeline):
        task = (await pipeline.generate_task(LEARNER, GOAL, DISCOURSE)).unwrap().task
        assert task.task_type == "discourse_completion"
        assert task.context["name"] == "Patient Interaction"
        assert task.context["mode"] == "expansion"
        assert {a.component for a in task.assignments} >= {"PRAG"}

    @pytest.mark.asyncio
    async def test_empty_corpus_falls_back(self, store, goal):
        pipeline = TaskPipeline(InMemoryContentRepository(goals=[goal]), store, clock=lambda: NOW)
        result = await pipeline.generate_task(LEARNER, GOAL)
        generated = result.unwrap()
        assert generated.used_legacy_fallback
        assert isinstance(generated.task, LegacyTask)
        assert generated.task.free_practice
        assert generated.metadata.fallback_reason == "E5100_NO_CANDIDATES"

    @pytest.mark.asyncio
    async def test_fallback_can_be_disabled(self, store, goal):
        pipeline = TaskPipeline(InMemoryContentRepository(goals=[goal]), store, clock=lambda: NOW)
        result = await pipeline.generate_task(LEARNER, GOAL, GenerationOptions(allow_legacy_fallback=False))
        assert result.unwrap_err().code is ErrorCode.E5100_NO_CANDIDATES

    @pytest.mark.asyncio
    async def test_unfillable_template_falls_back_to_single_object(self, pipeline):
        options = GenerationOptions(preferred_task_types=("word_formation",))
        # word formation needs a base word at stage 1 or above; a fresh learner has none
        result = (await pipeline.generate_task(LEARNER, GOAL, options)).unwrap()
        assert result.used_legacy_fallback
        assert result.task.object_id is not None

    @pytest.mark.asyncio
    async def test_word_formation_expects_the_derived_word(self, store):
        pipeline = await word_formation_pipeline(store)
        result = (await pipeline.generate_task(LEARNER, GOAL, WORD_FORMATION)).unwrap()
        assert not result.used_legacy_fallback
        assert result.task.template_id == "word-formation-basic"
        assert result.task.expected_answer == "happiness"

    @pytest.mark.asyncio
    async def test_context_follows_the_composed_template(self, repository, store, config):
        # Ranks first on coverage but no object reaches stage 5, so composition moves on
        unfillable = TaskTemplate.from_dict({
            "id": "shift-advanced",
            "task_type": "register_shift",
            "content": "Rewrite {{phrase}} formally.",
            "slots": [{"id": "phrase", "components": ["LEX", "SYNT", "PRAG", "MORPH"],
                       "constraints": {"min_stage": 5}}],
        })
        writing = TaskTemplate.from_dict({
            "id": "writing-simple",
            "task_type": "sentence_writing",
            "content": "Write a sentence with {{word}}.",
            "slots": [{"id": "word", "components": ["LEX"]}],
        })
        composer = TaskComposer([unfillable, writing])
        pipeline = TaskPipeline(repository, store, config=config, composer=composer, clock=lambda: NOW)
        result = (await pipeline.generate_task(LEARNER, GOAL)).unwrap()

        assert result.task.template_id == "writing-simple"
        context = context_by_id(result.task.context["context_id"])
        assert "sentence_writing" in context.task_types
        assert result.context == result.task.context

    @pytest.mark.asyncio
    async def test_layer_comes_from_object_metadata(self, store):
        objects = [
            make_object(f"lex-{word}", "LEX", word, metadata={"g2p_layer": "syllable"})
            for word in ("fever", "tablet", "nurse")
        ]
        pipeline = TaskPipeline(InMemoryContentRepository(objects, goals=[Goal(GOAL)]), store, clock=lambda: NOW)
        task = (await pipeline.generate_task(LEARNER, GOAL)).unwrap().task
        assert task.layer == "syllable"
        assert task_from_dict(task.to_dict()).layer == "syllable"

    @pytest.mark.asyncio
    async def test_generated_content_replaces_template_text(self, repository, store, config):
        generator = StubGenerator(Ok(GeneratedContent("Reassure a worried patient.", "Could you please sit down.")))
        pipeline = TaskPipeline(repository, store, generator, config=config, clock=lambda: NOW)
        task = (await pipeline.generate_task(LEARNER, GOAL, DISCOURSE)).unwrap().task
        assert task.content_source == "generated"
        assert task.prompt == "Reassure a worried patient."
        assert generator.requests[0].context["name"] == "Patient Interaction"

    @pytest.mark.asyncio
    async def test_content_failure_keeps_template_text(self, repository, store, config):
        generator = StubGenerator(external_service_unavailable("openai", "down"))
        pipeline = TaskPipeline(repository, store, generator, config=config, clock=lambda: NOW)
        result = (await pipeline.generate_task(LEARNER, GOAL, DISCOURSE)).unwrap()
        assert not result.used_legacy_fallback
        assert result.task.content_source == "template"
        assert result.task.prompt.startswith("Complete the following dialogue")

    @pytest.mark.asyncio
    async def test_non_generative_templates_skip_the_generator(self, repository, store, config):
        generator = StubGenerator(Ok(GeneratedContent("x", "y")))
        pipeline = TaskPipeline(repository, store, generator, config=config, clock=lambda: NOW)
        await pipeline.generate_task(LEARNER, GOAL)
        assert generator.requests == []


class TestProcessResponse:
    @pytest.mark.asyncio
    async def test_correct_recognition_updates_everything(self, pipeline, store):
        task = (await pipeline.generate_task(LEARNER, GOAL)).unwrap().task
        target = task.assignments[0]
        outcome = (await pipeline.process_response(task, target.content, 2000, context=ctx())).unwrap()

        assert outcome.evaluation.correct
        assert outcome.calibration_delta.dimensions[target.component].change > 0
        assert not outcome.degraded
        assert outcome.mastery_updates[0].new_stage == 1

        profile = (await store.load_ability_profile(LEARNER, GOAL)).unwrap()
        assert profile.version == 1
        assert profile.theta(target.component) > 0
        state = (await store.load_mastery_state(LEARNER, target.object_id)).unwrap()
        assert state.stage == 1

    @pytest.mark.asyncio
    async def test_success_in_new_context_reports_expansion(self, pipeline):
        task = (await pipeline.generate_task(LEARNER, GOAL, DISCOURSE)).unwrap().task
        outcome = (await pipeline.process_response(task, task.expected_answer, 6000, context=ctx())).unwrap()

        assert outcome.usage_expansions
        assert all(e.context_id == "medical-spoken-consultative" for e in outcome.usage_expansions)
        assert "in a new context: Patient Interaction" in outcome.feedback_text
        first = task.evaluated_assignments[0]
        assert f"You used {first.content}" in outcome.feedback_text

    @pytest.mark.asyncio
    async def test_replayed_event_records_usage_once(self, pipeline, store):
        task = (await pipeline.generate_task(LEARNER, GOAL, DISCOURSE)).unwrap().task
        context = ctx(event_id="evt-1")
        await pipeline.process_response(task, task.expected_answer, 6000, context=context)
        replay = (await pipeline.process_response(task, task.expected_answer, 6000, context=context)).unwrap()

        assert replay.usage_expansions == []
        object_id = task.evaluated_assignments[0].object_id
        records = (await store.load_usage_space(LEARNER, object_id)).unwrap()
        assert [r.attempts for r in records] == [1]

    @pytest.mark.asyncio
    async def test_evaluation_failure_degrades(self, pipeline, monkeypatch):
        monkeypatch.setattr(
            "engines.pipeline.evaluate_batch",
            lambda inputs, strictness: evaluation_failed("scorer crashed"),
        )
        task = (await pipeline.generate_task(LEARNER, GOAL)).unwrap().task
        outcome = (await pipeline.process_response(task, task.assignments[0].content, 2000, context=ctx())).unwrap()

        assert outcome.degraded
        assert "evaluation_degraded" in outcome.flags
        assert outcome.evaluation.confidence == pytest.approx(0.3)
        assert outcome.calibration_delta.confidence == "low"
        assert outcome.calibration_delta.reliability == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_persistence_failure_is_returned(self, repository, config):
        pipeline = TaskPipeline(repository, FailingProfileStore(), config=config, clock=lambda: NOW)
        task = (await pipeline.generate_task(LEARNER, GOAL)).unwrap().task
        result = await pipeline.process_response(task, "anything", 2000, context=ctx())
        assert result.unwrap_err().code is ErrorCode.E4000_DATABASE_GENERIC

    @pytest.mark.asyncio
    async def test_failed_write_persists_nothing(self, repository, config):
        store = FailingProfileStore()
        pipeline = TaskPipeline(repository, store, config=config, clock=lambda: NOW)
        task = (await pipeline.generate_task(LEARNER, GOAL, DISCOURSE)).unwrap().task
        context = ctx(event_id="evt-retry")

        result = await pipeline.process_response(task, task.expected_answer, 6000, context=context)
        assert result.is_err()
        assert store.profiles == {}
        assert store.mastery == {}
        assert store.events == {}
        assert store.usage == {}

        # Nothing was logged, so the retry counts as the first observation
        store.failing = False
        outcome = (await pipeline.process_response(task, task.expected_answer, 6000, context=context)).unwrap()
        assert outcome.usage_expansions
        assert (await store.load_ability_profile(LEARNER, GOAL)).unwrap().version == 1

    @pytest.mark.asyncio
    async def test_cancelled_caller_still_reports_failure(self, repository, monkeypatch):
        recorder = RecordingLogger()
        monkeypatch.setattr("engines.pipeline.log", recorder)
        reached, release = asyncio.Event(), asyncio.Event()

        class StalledStore(InMemoryProfileStore):
            async def save_response(self, write):
                reached.set()
                await release.wait()
                raise RuntimeError("connection reset")

        pipeline = TaskPipeline(repository, StalledStore(), clock=lambda: NOW)
        task = (await pipeline.generate_task(LEARNER, GOAL)).unwrap().task
        caller = asyncio.create_task(pipeline.process_response(task, "patient", 2000, context=ctx()))
        await reached.wait()
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        release.set()
        for _ in range(10):
            await asyncio.sleep(0)
        failures = [kw for level, event, kw in recorder.events if event == "response_processing_failed"]
        assert len(failures) == 1
        assert failures[0]["error"] == "connection reset"
        assert isinstance(failures[0]["exc_info"], RuntimeError)

    @pytest.mark.asyncio
    async def test_correct_word_formation_scores_full_credit(self, store):
        pipeline = await word_formation_pipeline(store)
        task = (await pipeline.generate_task(LEARNER, GOAL, WORD_FORMATION)).unwrap().task
        outcome = (await pipeline.process_response(task, "happiness", 4000, context=ctx())).unwrap()

        assert outcome.evaluation.correct
        assert [r.score for r in outcome.evaluation.object_results] == [1.0, 1.0]
        assert outcome.calibration_delta.dimensions["MORPH"].change > 0

    @pytest.mark.asyncio
    async def test_misspelt_derivation_gets_partial_credit(self, store):
        pipeline = await word_formation_pipeline(store)
        task = (await pipeline.generate_task(LEARNER, GOAL, WORD_FORMATION)).unwrap().task
        outcome = (await pipeline.process_response(task, "happyness", 4000, context=ctx())).unwrap()

        assert not outcome.evaluation.correct
        for result in outcome.evaluation.object_results:
            assert result.score == pytest.approx(0.4)
            assert not result.correct

    @pytest.mark.asyncio
    async def test_layer_dimension_is_calibrated(self, store):
        objects = [
            make_object(f"lex-{word}", "LEX", word, metadata={"g2p_layer": "syllable"})
            for word in ("fever", "tablet", "nurse")
        ]
        pipeline = TaskPipeline(InMemoryContentRepository(objects, goals=[Goal(GOAL)]), store, clock=lambda: NOW)
        task = (await pipeline.generate_task(LEARNER, GOAL)).unwrap().task
        outcome = (await pipeline.process_response(task, task.assignments[0].content, 2000, context=ctx())).unwrap()

        assert outcome.calibration_delta.dimensions["layer:syllable"].change > 0
        profile = (await store.load_ability_profile(LEARNER, GOAL)).unwrap()
        assert profile.theta("layer:syllable") > 0

    @pytest.mark.asyncio
    async def test_free_practice_response(self, store, goal):
        pipeline = TaskPipeline(InMemoryContentRepository(goals=[goal]), store, clock=lambda: NOW)
        task = (await pipeline.generate_task(LEARNER, GOAL)).unwrap().task
        outcome = (await pipeline.process_response(task, "I met a patient today.", 30000, context=ctx())).unwrap()
        assert outcome.mastery_updates == []
        assert outcome.usage_expansions == []
        assert outcome.feedback_text == "Nothing to evaluate."

    @pytest.mark.asyncio
    async def test_gaming_pattern_is_flagged(self, pipeline):
        task = (await pipeline.generate_task(LEARNER, GOAL)).unwrap().task
        answer = task.assignments[0].content
        outcome = None
        for i in range(6):
            outcome = (await pipeline.process_response(
                task, answer, 200 + i, context=ctx(event_id=f"fast-{i}")
            )).unwrap()
        assert "bot_pattern" in outcome.flags
        assert outcome.calibration_delta.confidence == "low"
        assert "unusually fast" in outcome.feedback_text

    @pytest.mark.asyncio
    async def test_concurrent_responses_are_serialized(self, pipeline, store):
        task = (await pipeline.generate_task(LEARNER, GOAL)).unwrap().task
        answer = task.assignments[0].content
        results = await asyncio.gather(
            pipeline.process_response(task, answer, 2000, context=ctx(event_id="a")),
            pipeline.process_response(task, answer, 2100, context=ctx(event_id="b")),
        )
        assert all(r.is_ok() for r in results)
        profile = (await store.load_ability_profile(LEARNER, GOAL)).unwrap()
        assert profile.version == 2


class TestTaskPayloads:
    @pytest.mark.asyncio
    async def test_composed_task_survives_serialization(self, pipeline):
        task = (await pipeline.generate_task(LEARNER, GOAL, DISCOURSE)).unwrap().task
        restored = task_from_dict(task.to_dict())
        assert isinstance(restored, ComposedTask)
        assert restored.object_ids == task.object_ids
        assert restored.calibration == task.calibration

    @pytest.mark.asyncio
    async def test_criteria_follow_task_type(self, pipeline):
        task = (await pipeline.generate_task(LEARNER, GOAL)).unwrap().task
        item = type("Item", (), {"content": "patient"})()
        assert isinstance(criteria_for(task, item), BinaryCriteria)
        discourse = (await pipeline.generate_task(LEARNER, GOAL, DISCOURSE)).unwrap().task
        assert isinstance(criteria_for(discourse, item), PartialCreditCriteria)

    @pytest.mark.asyncio
    async def test_fill_blank_objects_are_judged_against_the_formed_word(self):
        pipeline = await word_formation_pipeline(InMemoryProfileStore())
        task = (await pipeline.generate_task(LEARNER, GOAL, WORD_FORMATION)).unwrap().task
        item = type("Item", (), {"content": "-ness"})()
        criteria = criteria_for(task, item)
        assert isinstance(criteria, RangeCriteria)
        assert criteria.exact == ("happiness",)
        assert criteria.patterns[0].pattern == "ness"
