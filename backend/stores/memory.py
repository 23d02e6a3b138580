"""In-memory stores for tests and single-process use.

State is copied in and out through ``to_dict``/``from_dict`` so callers never
share mutable objects with the store.
"""
from dataclasses import replace
from typing import Iterable, Sequence

from core.errors import AppError, ErrorCode, Ok, Result, persistence_failed, version_conflict
from core.logging import db_logger
from engines.constraints import Collocation, Relation
from engines.types import (
    AbilityProfile,
    Goal,
    LearningObject,
    MasteryState,
    UsageEvent,
    UsageSpaceRecord,
    utcnow,
)
from stores.base import ContentRepository, ProfileStore, ResponseWrite

log = db_logger()


class InMemoryContentRepository(ContentRepository):
    def __init__(
        self,
        objects: Iterable[LearningObject] = (),
        relations: Iterable[Relation] = (),
        goals: Iterable[Goal] = (),
        collocations: Iterable[Collocation] = (),
    ):
        self.objects: dict[str, LearningObject] = {o.id: o for o in objects}
        self.relations: list[Relation] = list(relations)
        self.goals: dict[str, Goal] = {g.id: g for g in goals}
        self.collocations: list[Collocation] = list(collocations)

    async def get_goal(self, goal_id: str) -> Result[Goal | None, AppError]:
        return Ok(self.goals.get(goal_id))

    async def get_eligible_objects(self, goal_id: str) -> Result[list[LearningObject], AppError]:
        return Ok(sorted(
            (o for o in self.objects.values() if not o.goal_id or o.goal_id == goal_id),
            key=lambda o: o.id,
        ))

    async def get_relations(self, object_ids: Sequence[str]) -> Result[list[Relation], AppError]:
        ids = set(object_ids)
        return Ok([r for r in self.relations if r.source_id in ids])

    async def get_collocations(self, object_ids: Sequence[str]) -> Result[list[Collocation], AppError]:
        ids = set(object_ids)
        return Ok([c for c in self.collocations if c.source_id in ids and c.target_id in ids])


class InMemoryProfileStore(ProfileStore):
    def __init__(self):
        self.profiles: dict[tuple[str, str], dict] = {}
        self.mastery: dict[tuple[str, str], dict] = {}
        self.usage: dict[tuple[str, str, str], UsageSpaceRecord] = {}
        self.events: dict[str, UsageEvent] = {}

    async def load_ability_profile(
        self, learner_id: str, goal_id: str
    ) -> Result[AbilityProfile | None, AppError]:
        data = self.profiles.get((learner_id, goal_id))
        return Ok(AbilityProfile.from_dict(data) if data else None)

    async def save_ability_profile(self, profile: AbilityProfile) -> Result[AbilityProfile, AppError]:
        key = (profile.learner_id, profile.goal_id)
        stored = self.profiles.get(key)
        if stored is not None and stored["version"] != profile.version:
            return version_conflict("AbilityProfile", profile.version, stored["version"], origin="memory_store")
        self._put_profile(profile)
        log.debug("ability_profile_saved", learner_id=profile.learner_id, version=profile.version)
        return Ok(profile)

    def _put_profile(self, profile: AbilityProfile) -> None:
        profile.version += 1
        profile.updated_at = utcnow()
        self.profiles[(profile.learner_id, profile.goal_id)] = profile.to_dict()

    async def load_mastery_state(
        self, learner_id: str, object_id: str
    ) -> Result[MasteryState | None, AppError]:
        data = self.mastery.get((learner_id, object_id))
        return Ok(MasteryState.from_dict(data) if data else None)

    async def load_mastery_states(
        self, learner_id: str, object_ids: Sequence[str]
    ) -> Result[dict[str, MasteryState], AppError]:
        return Ok({
            oid: MasteryState.from_dict(self.mastery[(learner_id, oid)])
            for oid in object_ids
            if (learner_id, oid) in self.mastery
        })

    async def save_mastery_state(self, state: MasteryState) -> Result[MasteryState, AppError]:
        self.mastery[(state.learner_id, state.object_id)] = state.to_dict()
        return Ok(state)

    async def load_usage_space(
        self, learner_id: str, object_id: str
    ) -> Result[list[UsageSpaceRecord], AppError]:
        return Ok([
            replace(rec)
            for (lid, oid, _), rec in sorted(self.usage.items())
            if lid == learner_id and oid == object_id
        ])

    async def append_usage_event(self, event: UsageEvent) -> Result[bool, AppError]:
        if event.event_id in self.events:
            log.debug("usage_event_duplicate", event_id=event.event_id)
            return Ok(False)
        self.events[event.event_id] = event
        return Ok(True)

    async def save_usage_record(self, record: UsageSpaceRecord) -> Result[UsageSpaceRecord, AppError]:
        self.usage[(record.learner_id, record.object_id, record.context_id)] = replace(record)
        return Ok(record)

    async def find_usage_events(self, event_ids: Sequence[str]) -> Result[set[str], AppError]:
        return Ok({eid for eid in event_ids if eid in self.events})

    async def save_response(self, write: ResponseWrite) -> Result[AbilityProfile, AppError]:
        profile = write.profile
        stored = self.profiles.get((profile.learner_id, profile.goal_id))
        if stored is not None and stored["version"] != profile.version:
            return version_conflict("AbilityProfile", profile.version, stored["version"], origin="memory_store")
        seen = [e.event_id for e in write.usage_events if e.event_id in self.events]
        if seen:
            return persistence_failed(
                "save_response", f"usage event {seen[0]} already logged",
                code=ErrorCode.E4011_DUPLICATE_KEY, origin="memory_store",
            )

        self._put_profile(profile)
        for event in write.usage_events:
            self.events[event.event_id] = event
        for record in write.usage_records:
            self.usage[(record.learner_id, record.object_id, record.context_id)] = replace(record)
        for state in write.mastery_states:
            self.mastery[(state.learner_id, state.object_id)] = state.to_dict()
        log.debug(
            "response_saved",
            learner_id=profile.learner_id,
            version=profile.version,
            events=len(write.usage_events),
            mastery=len(write.mastery_states),
        )
        return Ok(profile)
