"""Pipeline Orchestrator

Generation:  candidates -> constraint graph -> usage context -> composition,
             falling back to a single-object task when any stage comes up
             empty.
Response:    evaluate -> calibrate -> usage space -> mastery, then one
             store write for all of it, under the learner's lock. Only
             persistence errors reach the caller; every other failure
             degrades the update.
"""
from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Sequence, Union
from uuid import uuid4

from core.config import EngineConfig
from core.errors import AppError, Err, Ok, Result
from core.locks import LearnerLocks
from core.logging import bind_context, pipeline_logger
from engines.calibration import (
    DEGRADED_RELIABILITY,
    CalibrationDelta,
    calibrate,
    reliability_for,
)
from engines.composer import ComposedTask, TaskComposer, rank_templates
from engines.constraints import ConstraintGraph
from engines.content import ContentGenerator, ContentRequest
from engines.evaluation import (
    BatchEvaluation,
    BinaryCriteria,
    Criteria,
    EvaluationInput,
    PartialCreditCriteria,
    PartialPattern,
    RangeCriteria,
    evaluate_batch,
    raw_correctness,
)
from engines.legacy import LegacyTask, generate_legacy_task
from engines.mastery import MasteryScheduler, MasteryUpdate, get_thresholds
from engines.optimizer import CandidateOptimizer
from engines.timing import detect_suspicious_patterns
from engines.types import (
    AbilityProfile,
    Goal,
    MasteryState,
    UsageEvent,
    UsageSpaceRecord,
    utcnow,
)
from engines.usage_space import (
    ObjectUsageSpace,
    UsageExpansion,
    context_by_id,
    record_event,
    select_context,
    target_contexts,
)
from stores.base import ContentRepository, ProfileStore, ResponseWrite

log = pipeline_logger()

Task = Union[ComposedTask, LegacyTask]

BINARY_TASK_TYPES = frozenset({"recognition", "definition_match"})
FORM_PRESENT_SCORE = 0.4
GAMING_WARNING = "Your recent answers look unusually fast or uniform. Take your time with each task."


def task_from_dict(data: dict) -> Task:
    if data.get("kind") == "legacy":
        return LegacyTask.from_dict(data)
    return ComposedTask.from_dict(data)


@dataclass(frozen=True, slots=True)
class GenerationOptions:
    preferred_task_types: tuple[str, ...] = ()
    pool_cap: int | None = None
    cost_budget: float | None = None
    expansion_preference: float | None = None
    prefer_expansion: bool | None = None
    target_context_id: str | None = None
    modality: str | None = None
    timed: bool | None = None
    l1: str | None = None
    allow_legacy_fallback: bool | None = None

    def resolved_expansion(self, default: float) -> float:
        if self.expansion_preference is not None:
            return self.expansion_preference
        if self.prefer_expansion is not None:
            return 1.0 if self.prefer_expansion else 0.0
        return default


@dataclass(frozen=True, slots=True)
class ResponseContext:
    learner_id: str
    goal_id: str
    event_id: str = field(default_factory=lambda: uuid4().hex)
    cue_level: int = 0
    strictness: str | None = None
    responded_at: datetime | None = None


@dataclass(slots=True)
class GenerationMetadata:
    candidates_considered: int = 0
    constraints_evaluated: int = 0
    broken_cycles: int = 0
    generation_time_ms: float = 0.0
    fallback_reason: str | None = None

    def to_dict(self) -> dict:
        return {
            "candidates_considered": self.candidates_considered,
            "constraints_evaluated": self.constraints_evaluated,
            "broken_cycles": self.broken_cycles,
            "generation_time_ms": round(self.generation_time_ms, 2),
            "fallback_reason": self.fallback_reason,
        }


@dataclass(slots=True)
class TaskGenerationResult:
    task: Task
    used_legacy_fallback: bool
    context: dict
    metadata: GenerationMetadata

    def to_dict(self) -> dict:
        return {
            "task": self.task.to_dict(),
            "used_legacy_fallback": self.used_legacy_fallback,
            "context": dict(self.context),
            "metadata": self.metadata.to_dict(),
        }


@dataclass(slots=True)
class ResponseOutcome:
    evaluation: BatchEvaluation
    calibration_delta: CalibrationDelta
    usage_expansions: list[UsageExpansion]
    feedback_text: str
    mastery_updates: list[MasteryUpdate]
    flags: list[str] = field(default_factory=list)
    degraded: bool = False

    def to_dict(self) -> dict:
        return {
            "evaluation": self.evaluation.to_dict(),
            "calibration": self.calibration_delta.to_dict(),
            "usage_expansions": [
                {
                    "object_id": e.object_id,
                    "context_id": e.context_id,
                    "context_name": e.context_name,
                    "previous_coverage": e.previous_coverage,
                    "new_coverage": e.new_coverage,
                }
                for e in self.usage_expansions
            ],
            "feedback": self.feedback_text,
            "mastery_updates": [u.to_dict() for u in self.mastery_updates],
            "flags": list(self.flags),
            "degraded": self.degraded,
        }


@dataclass(frozen=True, slots=True)
class _TaskObject:
    """One object of a task, as the response side sees it."""
    object_id: str
    component: str
    content: str
    role: str
    weight: float


def _task_objects(task: Task) -> list[_TaskObject]:
    if isinstance(task, LegacyTask):
        if task.object_id is None:
            return []
        return [_TaskObject(task.object_id, task.component or "LEX", task.expected_answer, "assessment", 1.0)]
    return [_TaskObject(a.object_id, a.component, a.content, a.role, a.weight) for a in task.assignments]


def expected_for(task: Task, item: _TaskObject) -> str:
    """What a response must contain to get ``item`` right.

    A fill-in-the-blank task has one answer for the whole blank (the word
    formed from its objects), so every object is judged against it.
    """
    if getattr(task, "format", None) == "fill_blank" and task.expected_answer:
        return task.expected_answer
    return item.content


def criteria_for(task: Task, item: _TaskObject) -> Criteria:
    if task.task_type in BINARY_TASK_TYPES:
        return BinaryCriteria()
    if getattr(task, "format", None) == "fill_blank":
        # The object's own form inside a wrong answer earns partial credit, not a pass
        own = item.content.strip().strip("-")
        patterns = ()
        if own:
            patterns = (PartialPattern(re.escape(own), FORM_PRESENT_SCORE, f'Check how "{own}" attaches'),)
        return RangeCriteria(exact=(expected_for(task, item),), patterns=patterns)
    return PartialCreditCriteria()


class TaskPipeline:
    """Generates tasks and folds responses back into learner state.

    Collaborators are passed in; the pipeline holds no global state.
    """

    __slots__ = (
        "repository", "store", "generator", "locks", "config",
        "composer", "optimizer", "scheduler", "clock",
    )

    def __init__(
        self,
        repository: ContentRepository,
        store: ProfileStore,
        generator: ContentGenerator | None = None,
        locks: LearnerLocks | None = None,
        config: EngineConfig | None = None,
        composer: TaskComposer | None = None,
        clock=utcnow,
    ):
        self.repository = repository
        self.store = store
        self.generator = generator
        self.locks = locks or LearnerLocks()
        self.config = config or EngineConfig()
        self.composer = composer or TaskComposer(
            min_fill_quality=self.config.min_fill_quality,
            max_cognitive_load=self.config.max_cognitive_load,
        )
        self.optimizer = CandidateOptimizer(self.config.pool_cap, self.config.cost_budget)
        self.scheduler = MasteryScheduler(thresholds=get_thresholds(self.config.stage_preset))
        self.clock = clock

    # -- shared loading ----------------------------------------------------

    async def _load_goal(self, goal_id: str) -> Result[Goal, AppError]:
        match await self.repository.get_goal(goal_id):
            case Ok(goal):
                return Ok(goal or Goal(goal_id))
            case Err(_) as err:
                return err

    async def _load_profile(self, learner_id: str, goal_id: str) -> Result[AbilityProfile, AppError]:
        match await self.store.load_ability_profile(learner_id, goal_id):
            case Ok(profile):
                return Ok(profile or AbilityProfile(learner_id, goal_id))
            case Err(_) as err:
                return err

    async def _load_spaces(
        self, learner_id: str, objects, targets: tuple[str, ...]
    ) -> Result[list[ObjectUsageSpace], AppError]:
        spaces = []
        for obj_id, component in objects:
            match await self.store.load_usage_space(learner_id, obj_id):
                case Ok(records):
                    spaces.append(ObjectUsageSpace(
                        learner_id, obj_id, component, targets,
                        records={r.context_id: r for r in records},
                    ))
                case Err(_) as err:
                    return err
        return Ok(spaces)

    # -- generation ----------------------------------------------------------

    async def generate_task(
        self,
        learner_id: str,
        goal_id: str,
        options: GenerationOptions | None = None,
    ) -> Result[TaskGenerationResult, AppError]:
        options = options or GenerationOptions()
        bind_context(learner_id=learner_id)
        started = time.perf_counter()
        now = self.clock()
        meta = GenerationMetadata()

        match await self._load_goal(goal_id):
            case Ok(goal):
                pass
            case Err(_) as err:
                return err
        match await self.repository.get_eligible_objects(goal_id):
            case Ok(objects):
                pass
            case Err(_) as err:
                return err
        match await self._load_profile(learner_id, goal_id):
            case Ok(profile):
                pass
            case Err(_) as err:
                return err
        match await self.store.load_mastery_states(learner_id, [o.id for o in objects]):
            case Ok(mastery):
                pass
            case Err(_) as err:
                return err

        l1 = options.l1 or goal.l1
        allow_fallback = (
            self.config.allow_legacy_fallback
            if options.allow_legacy_fallback is None
            else options.allow_legacy_fallback
        )

        def fallback(error: AppError) -> Result[TaskGenerationResult, AppError]:
            if not allow_fallback:
                log.info("generation_failed", code=error.code.name, reason=error.message)
                return Err(error)
            task = generate_legacy_task(
                objects, profile, mastery, goal,
                modality=options.modality or "reading", l1=l1, now=now,
            )
            meta.fallback_reason = error.code.name
            meta.generation_time_ms = (time.perf_counter() - started) * 1000
            log.info(
                "legacy_fallback_used",
                goal_id=goal_id,
                reason=error.code.name,
                object_id=task.object_id,
            )
            return Ok(TaskGenerationResult(task, True, dict(task.context), meta))

        # Candidates
        match self.optimizer.select(
            goal_id, objects, mastery, profile, now,
            pool_cap=options.pool_cap, budget=options.cost_budget,
        ):
            case Ok(pool):
                meta.candidates_considered = pool.considered
            case Err(error):
                return fallback(error)

        # Constraints
        match await self.repository.get_relations(pool.ids):
            case Ok(relations):
                pass
            case Err(_) as err:
                return err
        match await self.repository.get_collocations(pool.ids):
            case Ok(collocations):
                pass
            case Err(_) as err:
                return err
        graph = ConstraintGraph.build([c.obj for c in pool.candidates], relations, collocations)
        meta.constraints_evaluated = graph.edge_count
        meta.broken_cycles = len(graph.broken_edges)

        # Usage context
        targets = target_contexts(goal.domain)
        match await self._load_spaces(
            learner_id, [(c.id, c.obj.component) for c in pool.candidates], targets
        ):
            case Ok(spaces):
                pass
            case Err(_) as err:
                return err
        ranked = rank_templates(
            self.composer.templates, pool.candidates,
            options.preferred_task_types or None, self.composer.min_fill_quality,
        )
        if ranked:
            task_type = ranked[0][0].task_type
        else:
            task_type = options.preferred_task_types[0] if options.preferred_task_types else "production"
        expansion = options.resolved_expansion(self.config.expansion_preference)
        decision = select_context(spaces, task_type, expansion, options.target_context_id)

        # Composition
        match self.composer.compose(
            pool.candidates,
            graph,
            decision.context,
            preferred_task_types=options.preferred_task_types or None,
            modality=options.modality,
            timed=options.timed,
            l1=l1,
            context_mode=decision.mode,
            now=now,
        ):
            case Ok(task):
                pass
            case Err(error):
                return fallback(error)

        # A lower-ranked template may have been used; its type decides the context
        if (
            not options.target_context_id
            and task.task_type != task_type
            and task.task_type not in decision.context.task_types
        ):
            decision = select_context(spaces, task.task_type, expansion)
            log.debug("context_reselected", task_type=task.task_type, context_id=decision.context_id)
            task = replace(task, context={**decision.context.to_dict(), "mode": decision.mode})

        task = await self._generate_content(task)
        meta.generation_time_ms = (time.perf_counter() - started) * 1000
        log.info(
            "task_generated",
            task_id=task.task_id,
            template_id=task.template_id,
            context_id=decision.context_id,
            mode=decision.mode,
            candidates=meta.candidates_considered,
            duration_ms=round(meta.generation_time_ms, 2),
        )
        return Ok(TaskGenerationResult(task, False, dict(task.context), meta))

    async def _generate_content(self, task: ComposedTask) -> ComposedTask:
        template = self.composer.template(task.template_id)
        if self.generator is None or template is None or not template.generative:
            return task
        request = ContentRequest(
            template_id=task.template_id,
            task_type=task.task_type,
            prompt=task.prompt,
            contents=tuple(a.content for a in task.assignments),
            context=dict(task.context),
            modality=task.modality,
        )
        match await self.generator.generate(request):
            case Ok(content):
                return replace(
                    task,
                    prompt=content.prompt,
                    expected_answer=content.expected_answer,
                    content_source="generated",
                )
            case Err(error):
                log.warning(
                    "content_generation_degraded",
                    template_id=task.template_id,
                    code=error.code.name,
                    reason=error.message,
                )
                return task

    # -- response ------------------------------------------------------------

    async def process_response(
        self,
        task: Task,
        response_text: str,
        timing_ms: int,
        hints_used: int = 0,
        *,
        context: ResponseContext,
    ) -> Result[ResponseOutcome, AppError]:
        """Apply one response. Once started, the update runs to completion
        even if the caller is cancelled."""
        work = asyncio.ensure_future(self._process(task, response_text, timing_ms, hints_used, context))
        try:
            return await asyncio.shield(work)
        except asyncio.CancelledError:
            work.add_done_callback(_report_detached)
            raise

    def _evaluate(
        self, task: Task, items: Sequence[_TaskObject], response_text: str, strictness: str
    ) -> tuple[BatchEvaluation, bool]:
        register = task.context.get("register")
        inputs = [
            EvaluationInput(
                object_id=item.object_id,
                component=item.component,
                response=response_text,
                expected=(expected_for(task, item),),
                criteria=criteria_for(task, item),
                role=item.role,
                weight=item.weight,
                register=register,
                task_type=task.task_type,
            )
            for item in items
        ]
        match evaluate_batch(inputs, strictness):
            case Ok(evaluation):
                return evaluation, False
            case Err(error):
                log.warning("evaluation_degraded", task_id=task.task_id, reason=error.message)
                return raw_correctness(inputs, strictness), True

    async def _plan_usage(
        self,
        task: Task,
        evaluation: BatchEvaluation,
        ctx: ResponseContext,
        goal: Goal,
        now: datetime,
    ) -> Result[_UsagePlan, AppError]:
        """Fold the response into the usage space without writing anything.

        Events already in the log are skipped, so a replay records nothing.
        """
        plan = _UsagePlan()
        context_id = task.context.get("context_id")
        if not context_id or context_by_id(context_id) is None:
            return Ok(plan)
        events = [
            UsageEvent(
                event_id=f"{ctx.event_id}:{result.object_id}",
                learner_id=ctx.learner_id,
                object_id=result.object_id,
                context_id=context_id,
                success=result.correct,
                score=result.score,
                task_type=task.task_type,
                occurred_at=now,
            )
            for result in evaluation.object_results
        ]
        match await self.store.find_usage_events([e.event_id for e in events]):
            case Ok(seen):
                pass
            case Err(_) as err:
                return err
        fresh = [e for e in events if e.event_id not in seen]
        if len(fresh) < len(events):
            log.debug("usage_events_replayed", event_id=ctx.event_id, skipped=len(events) - len(fresh))

        components = {r.object_id: r.component for r in evaluation.object_results}
        match await self._load_spaces(
            ctx.learner_id,
            [(e.object_id, components[e.object_id]) for e in fresh],
            target_contexts(goal.domain),
        ):
            case Ok(spaces):
                pass
            case Err(_) as err:
                return err
        for event, space in zip(fresh, spaces):
            recorded = record_event(space, event)
            plan.events.append(event)
            if recorded.record is not None:
                plan.records.append(recorded.record)
            if recorded.expansion is not None:
                plan.expansions.append(recorded.expansion)
        return Ok(plan)

    async def _plan_mastery(
        self,
        task: Task,
        items: Sequence[_TaskObject],
        evaluation: BatchEvaluation,
        ctx: ResponseContext,
        timing_ms: int,
        cue_level: int,
        now: datetime,
    ) -> Result[tuple[list[MasteryUpdate], list[MasteryState]], AppError]:
        match await self.store.load_mastery_states(ctx.learner_id, [i.object_id for i in items]):
            case Ok(stored):
                pass
            case Err(_) as err:
                return err
        updates = []
        states = []
        for item in items:
            state = stored.get(item.object_id) or MasteryState(ctx.learner_id, item.object_id)
            result = evaluation.for_object(item.object_id)
            updates.append(self.scheduler.record_response(
                state,
                correct=result.correct if result else evaluation.correct,
                response_time_ms=timing_ms,
                task_type=task.task_type,
                content=item.content,
                role=item.role,
                cue_level=cue_level,
                now=now,
            ))
            states.append(state)
        return Ok((updates, states))

    async def _process(
        self,
        task: Task,
        response_text: str,
        timing_ms: int,
        hints_used: int,
        ctx: ResponseContext,
    ) -> Result[ResponseOutcome, AppError]:
        async with self.locks.hold(ctx.learner_id):
            bind_context(learner_id=ctx.learner_id)
            now = ctx.responded_at or self.clock()
            strictness = ctx.strictness or self.config.strictness
            cue_level = max(0, min(3, max(ctx.cue_level, hints_used)))
            items = _task_objects(task)
            flags: list[str] = []

            match await self._load_goal(ctx.goal_id):
                case Ok(goal):
                    pass
                case Err(_) as err:
                    return err
            match await self._load_profile(ctx.learner_id, ctx.goal_id):
                case Ok(profile):
                    pass
                case Err(_) as err:
                    return err

            # Evaluate
            evaluation, degraded = self._evaluate(task, items, response_text, strictness)
            if degraded:
                flags.append("evaluation_degraded")

            # Calibrate
            if items:
                profile.record_response(timing_ms, evaluation.correct)
            report = detect_suspicious_patterns(profile.recent_responses)
            flags.extend(p.kind for p in report.patterns)
            reliability = reliability_for(report)
            if degraded:
                reliability = min(reliability, DEGRADED_RELIABILITY)
            match calibrate(profile, task, evaluation, self.config.learning_rate, reliability):
                case Ok(delta):
                    pass
                case Err(error):
                    log.warning("calibration_degraded", task_id=task.task_id, reason=error.message)
                    flags.append("calibration_failed")
                    delta = CalibrationDelta(confidence="low", reliability=reliability)

            # Usage space
            match await self._plan_usage(task, evaluation, ctx, goal, now):
                case Ok(usage):
                    pass
                case Err(_) as err:
                    return err

            # Mastery
            match await self._plan_mastery(task, items, evaluation, ctx, timing_ms, cue_level, now):
                case Ok((updates, states)):
                    pass
                case Err(_) as err:
                    return err
            if any(u.possible_guess for u in updates):
                flags.append("possible_guess")

            # Persist everything together
            write = ResponseWrite(profile, states, usage.events, usage.records)
            match await self.store.save_response(write):
                case Err(_) as err:
                    return err
                case _:
                    pass

            expansions = usage.expansions
            contents = {i.object_id: i.content for i in items}
            lines = [evaluation.feedback]
            lines.extend(
                f"You used {contents.get(e.object_id, e.object_id)} in a new context: {e.context_name}"
                for e in expansions
            )
            if report.suspicious:
                lines.append(GAMING_WARNING)

            log.info(
                "response_processed",
                task_id=task.task_id,
                composite=round(evaluation.composite_score, 3),
                correct=evaluation.correct,
                expansions=len(expansions),
                stage_changes=sum(1 for u in updates if u.changed),
                flags=flags,
            )
            return Ok(ResponseOutcome(
                evaluation=evaluation,
                calibration_delta=delta,
                usage_expansions=expansions,
                feedback_text="\n".join(lines),
                mastery_updates=updates,
                flags=flags,
                degraded=degraded or "calibration_failed" in flags,
            ))


@dataclass(slots=True)
class _UsagePlan:
    events: list[UsageEvent] = field(default_factory=list)
    records: list[UsageSpaceRecord] = field(default_factory=list)
    expansions: list[UsageExpansion] = field(default_factory=list)


def _report_detached(work: asyncio.Future) -> None:
    """Log how a response update ended after its caller went away."""
    if work.cancelled():
        log.warning("response_processing_cancelled")
        return
    exc = work.exception()
    if exc is not None:
        log.error("response_processing_failed", error=str(exc), exc_info=exc)
        return
    match work.result():
        case Err(error):
            log.error("response_processing_failed", code=error.code.name, error=error.message)
        case _:
            log.debug("response_processed_detached")
