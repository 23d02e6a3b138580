"""SQLAlchemy async stores over the tables in ``models``.

Each call runs in its own session scope. Driver exceptions are mapped to
persistence errors by ``DatabaseErrorMapper``; nothing raises past here.
"""
from datetime import datetime, timezone
from typing import Awaitable, Callable, Sequence, TypeVar
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.database import session_scope
from core.errors import (
    AppError,
    DatabaseErrorMapper,
    Err,
    ErrorCode,
    Ok,
    Result,
    version_conflict,
)
from core.logging import db_logger
from engines.constraints import Relation, relation_from_dict, relation_to_dict
from engines.types import (
    AbilityProfile,
    Goal,
    LearningObject,
    MasteryState,
    UsageEvent,
    UsageSpaceRecord,
)
from models import (
    AbilityProfileRecord,
    GoalRecord,
    LearningObjectRecord,
    MasteryStateRecord,
    ObjectRelationRecord,
    UsageEventRecord,
    UsageSpaceRecordRow,
)
from stores.base import ContentRepository, ProfileStore, ResponseWrite

log = db_logger()

T = TypeVar("T")


def _naive(value: datetime | None) -> datetime | None:
    """UTC without tzinfo, as SQLite stores it."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class _SqlStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], origin: str):
        self._factory = session_factory
        self._mapper = DatabaseErrorMapper(origin=origin)

    async def _run(
        self,
        operation: str,
        fn: Callable[[AsyncSession], Awaitable[Result[T, AppError]]],
    ) -> Result[T, AppError]:
        try:
            async with session_scope(self._factory) as session:
                return await fn(session)
        except SQLAlchemyError as exc:
            error = self._mapper.map_exception(exc, operation)
            log.error("store_operation_failed", operation=operation, code=error.code.name, error=error.message)
            return Err(error)


def object_from_record(row: LearningObjectRecord) -> LearningObject:
    return LearningObject(
        id=row.id,
        component=row.component,
        content=row.content,
        linguistic_difficulty=row.linguistic_difficulty if row.linguistic_difficulty is not None else 0.5,
        discrimination=row.discrimination if row.discrimination is not None else 1.0,
        guessing=row.guessing or 0.0,
        priority=row.priority if row.priority is not None else 0.5,
        frequency=row.frequency if row.frequency is not None else 0.5,
        goal_id=row.goal_id or "",
        irt_difficulty=row.irt_difficulty,
        metadata=dict(row.extra_data or {}),
    )


def relation_record(rel: Relation) -> ObjectRelationRecord:
    data = relation_to_dict(rel)
    return ObjectRelationRecord(
        id=str(uuid4()),
        kind=data.pop("kind"),
        source_id=data.pop("source_id"),
        target_id=data.pop("target_id"),
        strength=data.pop("strength"),
        payload=data,
    )


async def _write_profile(session: AsyncSession, profile: AbilityProfile) -> Result[int, AppError]:
    """Stage the profile row; checks the version before touching anything."""
    row = await session.get(AbilityProfileRecord, (profile.learner_id, profile.goal_id))
    if row is None:
        row = AbilityProfileRecord(
            learner_id=profile.learner_id,
            goal_id=profile.goal_id,
            created_at=_naive(profile.created_at),
        )
        session.add(row)
    elif row.version != profile.version:
        return version_conflict("AbilityProfile", profile.version, row.version, origin="profile_store")
    data = profile.to_dict()
    row.dimensions = data["dimensions"]
    row.recent_responses = data["recent_responses"]
    row.version = profile.version + 1
    row.updated_at = _naive(profile.updated_at)
    return Ok(row.version)


async def _write_mastery(session: AsyncSession, state: MasteryState) -> None:
    row = await session.get(MasteryStateRecord, (state.learner_id, state.object_id))
    if row is None:
        row = MasteryStateRecord(learner_id=state.learner_id, object_id=state.object_id)
        session.add(row)
    row.stage = state.stage
    row.stability = state.stability
    row.difficulty = state.difficulty
    row.due_at = _naive(state.due_at)
    row.last_reviewed_at = _naive(state.last_reviewed_at)
    row.state = state.to_dict()


async def _write_usage_record(session: AsyncSession, record: UsageSpaceRecord) -> None:
    result = await session.execute(
        select(UsageSpaceRecordRow).where(
            UsageSpaceRecordRow.learner_id == record.learner_id,
            UsageSpaceRecordRow.object_id == record.object_id,
            UsageSpaceRecordRow.context_id == record.context_id,
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = UsageSpaceRecordRow(
            learner_id=record.learner_id,
            object_id=record.object_id,
            context_id=record.context_id,
        )
        session.add(row)
    row.attempts = record.attempts
    row.successes = record.successes
    row.score_sum = record.score_sum
    row.last_used_at = _naive(record.last_used_at)


def event_record(event: UsageEvent) -> UsageEventRecord:
    return UsageEventRecord(
        event_id=event.event_id,
        learner_id=event.learner_id,
        object_id=event.object_id,
        context_id=event.context_id,
        success=event.success,
        score=event.score,
        task_type=event.task_type,
        occurred_at=_naive(event.occurred_at),
    )


class SqlContentRepository(_SqlStore, ContentRepository):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        super().__init__(session_factory, origin="content_repository")

    async def get_goal(self, goal_id: str) -> Result[Goal | None, AppError]:
        async def fn(session: AsyncSession):
            row = await session.get(GoalRecord, goal_id)
            if row is None:
                return Ok(None)
            return Ok(Goal(row.id, row.domain or "general", row.l1, row.target_language or "en"))

        return await self._run("get_goal", fn)

    async def get_eligible_objects(self, goal_id: str) -> Result[list[LearningObject], AppError]:
        async def fn(session: AsyncSession):
            result = await session.execute(
                select(LearningObjectRecord)
                .where(LearningObjectRecord.goal_id == goal_id)
                .order_by(LearningObjectRecord.id)
            )
            return Ok([object_from_record(row) for row in result.scalars().all()])

        return await self._run("get_eligible_objects", fn)

    async def get_relations(self, object_ids: Sequence[str]) -> Result[list[Relation], AppError]:
        if not object_ids:
            return Ok([])

        async def fn(session: AsyncSession):
            result = await session.execute(
                select(ObjectRelationRecord)
                .where(ObjectRelationRecord.source_id.in_(list(object_ids)))
                .order_by(ObjectRelationRecord.source_id, ObjectRelationRecord.target_id)
            )
            relations = []
            for row in result.scalars().all():
                try:
                    relations.append(relation_from_dict({
                        "kind": row.kind,
                        "source_id": row.source_id,
                        "target_id": row.target_id,
                        "strength": row.strength,
                        **(row.payload or {}),
                    }))
                except (TypeError, ValueError) as exc:
                    log.warning("relation_skipped", relation_id=row.id, error=str(exc))
            return Ok(relations)

        return await self._run("get_relations", fn)


class SqlProfileStore(_SqlStore, ProfileStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        super().__init__(session_factory, origin="profile_store")

    async def load_ability_profile(
        self, learner_id: str, goal_id: str
    ) -> Result[AbilityProfile | None, AppError]:
        async def fn(session: AsyncSession):
            row = await session.get(AbilityProfileRecord, (learner_id, goal_id))
            if row is None:
                return Ok(None)
            return Ok(AbilityProfile.from_dict({
                "learner_id": row.learner_id,
                "goal_id": row.goal_id,
                "dimensions": row.dimensions,
                "recent_responses": row.recent_responses,
                "version": row.version,
                "created_at": _aware(row.created_at).isoformat() if row.created_at else None,
                "updated_at": _aware(row.updated_at).isoformat() if row.updated_at else None,
            }))

        return await self._run("load_ability_profile", fn)

    async def save_ability_profile(self, profile: AbilityProfile) -> Result[AbilityProfile, AppError]:
        async def fn(session: AsyncSession):
            return await _write_profile(session, profile)

        result = await self._run("save_ability_profile", fn)
        match result:
            case Ok(version):
                profile.version = version
                log.debug("ability_profile_saved", learner_id=profile.learner_id, version=version)
                return Ok(profile)
            case Err(_):
                return result

    async def load_mastery_state(
        self, learner_id: str, object_id: str
    ) -> Result[MasteryState | None, AppError]:
        async def fn(session: AsyncSession):
            row = await session.get(MasteryStateRecord, (learner_id, object_id))
            return Ok(MasteryState.from_dict(row.state) if row else None)

        return await self._run("load_mastery_state", fn)

    async def load_mastery_states(
        self, learner_id: str, object_ids: Sequence[str]
    ) -> Result[dict[str, MasteryState], AppError]:
        if not object_ids:
            return Ok({})

        async def fn(session: AsyncSession):
            result = await session.execute(
                select(MasteryStateRecord).where(
                    MasteryStateRecord.learner_id == learner_id,
                    MasteryStateRecord.object_id.in_(list(object_ids)),
                )
            )
            return Ok({row.object_id: MasteryState.from_dict(row.state) for row in result.scalars().all()})

        return await self._run("load_mastery_states", fn)

    async def save_mastery_state(self, state: MasteryState) -> Result[MasteryState, AppError]:
        async def fn(session: AsyncSession):
            await _write_mastery(session, state)
            return Ok(state)

        return await self._run("save_mastery_state", fn)

    async def load_usage_space(
        self, learner_id: str, object_id: str
    ) -> Result[list[UsageSpaceRecord], AppError]:
        async def fn(session: AsyncSession):
            result = await session.execute(
                select(UsageSpaceRecordRow)
                .where(
                    UsageSpaceRecordRow.learner_id == learner_id,
                    UsageSpaceRecordRow.object_id == object_id,
                )
                .order_by(UsageSpaceRecordRow.context_id)
            )
            return Ok([
                UsageSpaceRecord(
                    learner_id=row.learner_id,
                    object_id=row.object_id,
                    context_id=row.context_id,
                    attempts=row.attempts,
                    successes=row.successes,
                    score_sum=row.score_sum or 0.0,
                    last_used_at=_aware(row.last_used_at),
                )
                for row in result.scalars().all()
            ])

        return await self._run("load_usage_space", fn)

    async def append_usage_event(self, event: UsageEvent) -> Result[bool, AppError]:
        async def fn(session: AsyncSession):
            if await session.get(UsageEventRecord, event.event_id) is not None:
                return Ok(False)
            session.add(event_record(event))
            await session.flush()
            return Ok(True)

        result = await self._run("append_usage_event", fn)
        match result:
            case Err(error) if error.code is ErrorCode.E4011_DUPLICATE_KEY:
                # Same event id appended concurrently by another process
                log.debug("usage_event_duplicate", event_id=event.event_id)
                return Ok(False)
            case _:
                return result

    async def save_usage_record(self, record: UsageSpaceRecord) -> Result[UsageSpaceRecord, AppError]:
        async def fn(session: AsyncSession):
            await _write_usage_record(session, record)
            return Ok(record)

        return await self._run("save_usage_record", fn)

    async def find_usage_events(self, event_ids: Sequence[str]) -> Result[set[str], AppError]:
        if not event_ids:
            return Ok(set())

        async def fn(session: AsyncSession):
            result = await session.execute(
                select(UsageEventRecord.event_id).where(UsageEventRecord.event_id.in_(list(event_ids)))
            )
            return Ok(set(result.scalars().all()))

        return await self._run("find_usage_events", fn)

    async def save_response(self, write: ResponseWrite) -> Result[AbilityProfile, AppError]:
        profile = write.profile

        async def fn(session: AsyncSession):
            match await _write_profile(session, profile):
                case Ok(version):
                    pass
                case Err(_) as err:
                    return err
            for event in write.usage_events:
                session.add(event_record(event))
            for record in write.usage_records:
                await _write_usage_record(session, record)
            for state in write.mastery_states:
                await _write_mastery(session, state)
            await session.flush()
            return Ok(version)

        result = await self._run("save_response", fn)
        match result:
            case Ok(version):
                profile.version = version
                log.debug(
                    "response_saved",
                    learner_id=profile.learner_id,
                    version=version,
                    events=len(write.usage_events),
                    mastery=len(write.mastery_states),
                )
                return Ok(profile)
            case Err(_):
                return result
