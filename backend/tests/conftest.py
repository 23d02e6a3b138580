"""Shared fixtures: a small medical-English corpus, in-memory stores and a
frozen clock."""
from datetime import datetime, timezone

import pytest

from core.config import EngineConfig
from engines.pipeline import TaskPipeline
from engines.types import AbilityProfile, Goal, LearningObject, MasteryState
from stores.memory import InMemoryContentRepository, InMemoryProfileStore

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
LEARNER = "learner-1"
GOAL = "goal-med"


def make_object(object_id: str, component: str = "LEX", content: str | None = None, **kwargs) -> LearningObject:
    return LearningObject(
        id=object_id,
        component=component,
        content=content or object_id.split("-", 1)[-1],
        goal_id=kwargs.pop("goal_id", GOAL),
        **kwargs,
    )


def make_mastery(object_id: str, stage: int, learner_id: str = LEARNER, **kwargs) -> MasteryState:
    return MasteryState(learner_id=learner_id, object_id=object_id, stage=stage, **kwargs)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def corpus() -> list[LearningObject]:
    return [
        make_object("lex-patient", "LEX", "patient", linguistic_difficulty=0.3, priority=0.8, frequency=0.9),
        make_object("lex-symptom", "LEX", "symptom", linguistic_difficulty=0.4, priority=0.7, frequency=0.7),
        make_object("lex-diagnosis", "LEX", "diagnosis", linguistic_difficulty=0.6, priority=0.6, frequency=0.5),
        make_object("lex-chronic", "LEX", "chronic", linguistic_difficulty=0.5, priority=0.5, frequency=0.4),
        make_object("synt-passive", "SYNT", "passive voice", linguistic_difficulty=0.6, priority=0.6),
        make_object("prag-request", "PRAG", "could you please", linguistic_difficulty=0.4, priority=0.6),
        make_object("prag-formal", "PRAG", "I would appreciate", linguistic_difficulty=0.5, priority=0.5),
        make_object("morph-ness", "MORPH", "-ness", linguistic_difficulty=0.5, priority=0.4),
    ]


@pytest.fixture
def goal() -> Goal:
    return Goal(GOAL, domain="medical", l1="es")


@pytest.fixture
def profile() -> AbilityProfile:
    return AbilityProfile(LEARNER, GOAL)


@pytest.fixture
def repository(corpus, goal) -> InMemoryContentRepository:
    return InMemoryContentRepository(corpus, goals=[goal])


@pytest.fixture
def store() -> InMemoryProfileStore:
    return InMemoryProfileStore()


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def pipeline(repository, store, config) -> TaskPipeline:
    return TaskPipeline(repository, store, config=config, clock=lambda: NOW)
