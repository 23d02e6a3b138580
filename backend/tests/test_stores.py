"""
Tests for the in-memory and SQLAlchemy stores.

The SQL stores run against a throwaway aiosqlite file per test.
"""
import pytest
import pytest_asyncio

from core.config import Settings
from core.database import build_engine, build_session_factory, create_tables, session_scope
from core.errors import ErrorCode
from engines.constraints import Condition, Requires, Restricts
from engines.types import AbilityEstimate, AbilityProfile, UsageEvent, UsageSpaceRecord
from models import GoalRecord, LearningObjectRecord
from stores.base import ResponseWrite
from stores.memory import InMemoryProfileStore
from stores.sql import SqlContentRepository, SqlProfileStore, relation_record
from tests.conftest import GOAL, LEARNER, NOW, make_mastery


def usage_event(event_id: str = "evt-1") -> UsageEvent:
    return UsageEvent(event_id, LEARNER, "lex-patient", "medical-spoken-consultative", True, 0.9, "recognition", NOW)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    settings = Settings(DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'tessera.db'}")
    engine = build_engine(settings)
    await create_tables(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def seeded(session_factory):
    async with session_scope(session_factory) as session:
        session.add(GoalRecord(id=GOAL, domain="medical", l1="es"))
        session.add_all([
            LearningObjectRecord(id="lex-patient", goal_id=GOAL, component="LEX", content="patient",
                                 linguistic_difficulty=0.3, extra_data={"register": "neutral"}),
            LearningObjectRecord(id="synt-passive", goal_id=GOAL, component="SYNT", content="passive voice"),
            LearningObjectRecord(id="lex-other", goal_id="goal-other", component="LEX", content="ledger"),
        ])
        await session.flush()
        session.add_all([
            relation_record(Requires("synt-passive", "lex-patient", 0.8,
                                     Condition("component", "equals", "SYNT"))),
            relation_record(Restricts("lex-patient", "synt-passive", frozenset({"synt-passive"}), reason="formal")),
        ])
    return session_factory


class TestInMemoryProfileStore:
    @pytest.mark.asyncio
    async def test_save_bumps_version(self):
        store = InMemoryProfileStore()
        profile = AbilityProfile(LEARNER, GOAL)
        saved = (await store.save_ability_profile(profile)).unwrap()
        assert saved.version == 1
        loaded = (await store.load_ability_profile(LEARNER, GOAL)).unwrap()
        assert loaded is not profile
        assert loaded.version == 1

    @pytest.mark.asyncio
    async def test_stale_profile_conflicts(self):
        store = InMemoryProfileStore()
        await store.save_ability_profile(AbilityProfile(LEARNER, GOAL))
        stale = AbilityProfile(LEARNER, GOAL)
        result = await store.save_ability_profile(stale)
        assert result.unwrap_err().code is ErrorCode.E5002_STATE_CONFLICT

    @pytest.mark.asyncio
    async def test_duplicate_event_is_not_appended(self):
        store = InMemoryProfileStore()
        assert (await store.append_usage_event(usage_event())).unwrap() is True
        assert (await store.append_usage_event(usage_event())).unwrap() is False

    @pytest.mark.asyncio
    async def test_unknown_learner(self):
        store = InMemoryProfileStore()
        assert (await store.load_ability_profile("nobody", GOAL)).unwrap() is None
        assert (await store.load_mastery_states("nobody", ["lex-patient"])).unwrap() == {}

    @pytest.mark.asyncio
    async def test_response_write_applies_everything(self):
        store = InMemoryProfileStore()
        record = UsageSpaceRecord(LEARNER, "lex-patient", "medical-spoken-consultative", 1, 1, 0.9, NOW)
        write = ResponseWrite(
            AbilityProfile(LEARNER, GOAL), [make_mastery("lex-patient", 1)], [usage_event()], [record]
        )
        assert (await store.save_response(write)).unwrap().version == 1
        assert (await store.find_usage_events(["evt-1", "evt-2"])).unwrap() == {"evt-1"}
        assert (await store.load_mastery_state(LEARNER, "lex-patient")).unwrap().stage == 1
        assert len((await store.load_usage_space(LEARNER, "lex-patient")).unwrap()) == 1

    @pytest.mark.asyncio
    async def test_stale_response_write_changes_nothing(self):
        store = InMemoryProfileStore()
        await store.save_ability_profile(AbilityProfile(LEARNER, GOAL))
        write = ResponseWrite(AbilityProfile(LEARNER, GOAL), [make_mastery("lex-patient", 1)], [usage_event()])
        result = await store.save_response(write)
        assert result.unwrap_err().code is ErrorCode.E5002_STATE_CONFLICT
        assert store.mastery == {}
        assert store.events == {}

    @pytest.mark.asyncio
    async def test_logged_event_rejects_the_whole_write(self):
        store = InMemoryProfileStore()
        await store.append_usage_event(usage_event())
        write = ResponseWrite(AbilityProfile(LEARNER, GOAL), [make_mastery("lex-patient", 1)], [usage_event()])
        result = await store.save_response(write)
        assert result.unwrap_err().code is ErrorCode.E4011_DUPLICATE_KEY
        assert store.profiles == {}
        assert store.mastery == {}


class TestSqlContentRepository:
    @pytest.mark.asyncio
    async def test_goal_and_objects(self, seeded):
        repo = SqlContentRepository(seeded)
        goal = (await repo.get_goal(GOAL)).unwrap()
        assert goal.domain == "medical"
        assert goal.l1 == "es"
        assert (await repo.get_goal("missing")).unwrap() is None

        objects = (await repo.get_eligible_objects(GOAL)).unwrap()
        assert [o.id for o in objects] == ["lex-patient", "synt-passive"]
        assert objects[0].metadata == {"register": "neutral"}
        assert objects[1].linguistic_difficulty == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_relations_round_trip(self, seeded):
        repo = SqlContentRepository(seeded)
        relations = (await repo.get_relations(["lex-patient", "synt-passive"])).unwrap()
        by_kind = {r.kind: r for r in relations}
        assert by_kind["requires"].condition == Condition("component", "equals", "SYNT")
        assert by_kind["requires"].strength == pytest.approx(0.8)
        assert by_kind["restricts"].allowed_ids == frozenset({"synt-passive"})
        assert (await repo.get_relations([])).unwrap() == []


class TestSqlProfileStore:
    @pytest.mark.asyncio
    async def test_profile_round_trip_and_conflict(self, session_factory):
        store = SqlProfileStore(session_factory)
        profile = AbilityProfile(LEARNER, GOAL)
        profile.set_estimate("LEX", AbilityEstimate(0.4, 0.8, 3))
        assert (await store.save_ability_profile(profile)).unwrap().version == 1

        loaded = (await store.load_ability_profile(LEARNER, GOAL)).unwrap()
        assert loaded.version == 1
        assert loaded.estimate("LEX") == AbilityEstimate(0.4, 0.8, 3)

        stale = AbilityProfile(LEARNER, GOAL)
        result = await store.save_ability_profile(stale)
        assert result.unwrap_err().code is ErrorCode.E5002_STATE_CONFLICT

    @pytest.mark.asyncio
    async def test_mastery_round_trip(self, session_factory):
        store = SqlProfileStore(session_factory)
        state = make_mastery("lex-patient", 2, due_at=NOW, exposure_count=4)
        await store.save_mastery_state(state)
        state.stage = 3
        await store.save_mastery_state(state)

        loaded = (await store.load_mastery_state(LEARNER, "lex-patient")).unwrap()
        assert loaded.stage == 3
        assert loaded.exposure_count == 4
        states = (await store.load_mastery_states(LEARNER, ["lex-patient", "lex-unknown"])).unwrap()
        assert list(states) == ["lex-patient"]

    @pytest.mark.asyncio
    async def test_usage_events_and_records(self, session_factory):
        store = SqlProfileStore(session_factory)
        assert (await store.append_usage_event(usage_event())).unwrap() is True
        assert (await store.append_usage_event(usage_event())).unwrap() is False

        record = UsageSpaceRecord(LEARNER, "lex-patient", "medical-spoken-consultative", 1, 1, 0.9, NOW)
        await store.save_usage_record(record)
        record.attempts, record.successes = 2, 1
        await store.save_usage_record(record)

        records = (await store.load_usage_space(LEARNER, "lex-patient")).unwrap()
        assert len(records) == 1
        assert records[0].attempts == 2
        assert records[0].last_used_at == NOW

    @pytest.mark.asyncio
    async def test_response_write_is_one_transaction(self, session_factory):
        store = SqlProfileStore(session_factory)
        record = UsageSpaceRecord(LEARNER, "lex-patient", "medical-spoken-consultative", 1, 1, 0.9, NOW)
        profile = AbilityProfile(LEARNER, GOAL)
        write = ResponseWrite(profile, [make_mastery("lex-patient", 1)], [usage_event()], [record])
        assert (await store.save_response(write)).unwrap().version == 1
        assert profile.version == 1

        assert (await store.find_usage_events(["evt-1", "evt-2"])).unwrap() == {"evt-1"}
        assert (await store.load_mastery_state(LEARNER, "lex-patient")).unwrap().stage == 1
        assert (await store.load_usage_space(LEARNER, "lex-patient")).unwrap()[0].attempts == 1

    @pytest.mark.asyncio
    async def test_failed_write_rolls_back_the_profile(self, session_factory):
        store = SqlProfileStore(session_factory)
        await store.append_usage_event(usage_event())
        profile = AbilityProfile(LEARNER, GOAL)
        write = ResponseWrite(profile, [make_mastery("lex-patient", 1)], [usage_event()])

        result = await store.save_response(write)
        assert result.unwrap_err().code is ErrorCode.E4011_DUPLICATE_KEY
        assert profile.version == 0
        assert (await store.load_ability_profile(LEARNER, GOAL)).unwrap() is None
        assert (await store.load_mastery_state(LEARNER, "lex-patient")).unwrap() is None

    @pytest.mark.asyncio
    async def test_stale_write_changes_nothing(self, session_factory):
        store = SqlProfileStore(session_factory)
        await store.save_ability_profile(AbilityProfile(LEARNER, GOAL))
        write = ResponseWrite(AbilityProfile(LEARNER, GOAL), [make_mastery("lex-patient", 1)], [usage_event()])

        result = await store.save_response(write)
        assert result.unwrap_err().code is ErrorCode.E5002_STATE_CONFLICT
        assert (await store.find_usage_events(["evt-1"])).unwrap() == set()
        assert (await store.load_mastery_state(LEARNER, "lex-patient")).unwrap() is None
