"""Collaborator interfaces for content and learner state.

The pipeline only talks to these. Every method is async and returns a
``Result``; storage trouble comes back as an E4xxx ``AppError``.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Sequence

from core.errors import AppError, Ok, Result
from engines.constraints import Collocation, Relation
from engines.types import (
    AbilityProfile,
    Goal,
    LearningObject,
    MasteryState,
    UsageEvent,
    UsageSpaceRecord,
)


@dataclass(slots=True)
class ResponseWrite:
    """Everything one response changes. Stores persist it all or nothing."""
    profile: AbilityProfile
    mastery_states: list[MasteryState] = field(default_factory=list)
    usage_events: list[UsageEvent] = field(default_factory=list)
    usage_records: list[UsageSpaceRecord] = field(default_factory=list)


class ContentRepository(ABC):
    """Read-only access to learning objects, their relations and goals."""

    @abstractmethod
    async def get_goal(self, goal_id: str) -> Result[Goal | None, AppError]:
        ...

    @abstractmethod
    async def get_eligible_objects(self, goal_id: str) -> Result[list[LearningObject], AppError]:
        ...

    @abstractmethod
    async def get_relations(self, object_ids: Sequence[str]) -> Result[list[Relation], AppError]:
        """Relations whose source is one of ``object_ids``."""

    async def get_collocations(self, object_ids: Sequence[str]) -> Result[list[Collocation], AppError]:
        return Ok([])


class ProfileStore(ABC):
    """Learner state: ability profiles, mastery and usage space."""

    @abstractmethod
    async def load_ability_profile(
        self, learner_id: str, goal_id: str
    ) -> Result[AbilityProfile | None, AppError]:
        ...

    @abstractmethod
    async def save_ability_profile(self, profile: AbilityProfile) -> Result[AbilityProfile, AppError]:
        """Persist and bump ``version``. A stale version is a conflict."""

    @abstractmethod
    async def load_mastery_state(
        self, learner_id: str, object_id: str
    ) -> Result[MasteryState | None, AppError]:
        ...

    @abstractmethod
    async def load_mastery_states(
        self, learner_id: str, object_ids: Sequence[str]
    ) -> Result[dict[str, MasteryState], AppError]:
        ...

    @abstractmethod
    async def save_mastery_state(self, state: MasteryState) -> Result[MasteryState, AppError]:
        ...

    @abstractmethod
    async def load_usage_space(
        self, learner_id: str, object_id: str
    ) -> Result[list[UsageSpaceRecord], AppError]:
        ...

    @abstractmethod
    async def append_usage_event(self, event: UsageEvent) -> Result[bool, AppError]:
        """Append to the usage log. ``Ok(False)`` when the event id was seen before."""

    @abstractmethod
    async def save_usage_record(self, record: UsageSpaceRecord) -> Result[UsageSpaceRecord, AppError]:
        ...

    @abstractmethod
    async def find_usage_events(self, event_ids: Sequence[str]) -> Result[set[str], AppError]:
        """The subset of ``event_ids`` already in the usage log."""

    @abstractmethod
    async def save_response(self, write: ResponseWrite) -> Result[AbilityProfile, AppError]:
        """Persist a whole response in one transaction.

        The profile's version is checked first; a conflict, a duplicate event
        or any storage failure leaves every entity as it was.
        """
