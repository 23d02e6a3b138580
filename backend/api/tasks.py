"""Task API

Generates the next task for a learner and processes responses to it. The
pipeline is built once in the application lifespan and read from app state.
"""
from datetime import datetime, timezone
from typing import Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from core.errors import raise_result, validation_error
from core.logging import api_logger
from engines.pipeline import (
    GenerationOptions,
    ResponseContext,
    TaskPipeline,
    task_from_dict,
)

router = APIRouter()
log = api_logger()


def get_pipeline(request: Request) -> TaskPipeline:
    return request.app.state.pipeline


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class GenerateTaskRequest(BaseModel):
    learner_id: str
    goal_id: str
    preferred_task_types: list[str] = Field(default_factory=list)
    pool_cap: int | None = Field(default=None, ge=1, le=200)
    cost_budget: float | None = Field(default=None, gt=0)
    expansion_preference: float | None = Field(default=None, ge=0, le=1)
    prefer_expansion: bool | None = None
    target_context_id: str | None = None
    modality: Literal["reading", "listening", "speaking", "writing"] | None = None
    timed: bool | None = None
    l1: str | None = None
    allow_legacy_fallback: bool | None = None


class TaskEnvelope(BaseModel):
    task: dict
    used_legacy_fallback: bool
    context: dict
    metadata: dict


class RespondRequest(BaseModel):
    learner_id: str
    goal_id: str
    task: dict
    response: str = Field(max_length=20_000)
    timing_ms: int = Field(ge=0)
    hints_used: int = Field(default=0, ge=0)
    event_id: str | None = None
    cue_level: int = Field(default=0, ge=0, le=3)
    strictness: Literal["lenient", "normal", "strict"] | None = None
    responded_at: datetime | None = None


class ResponseEnvelope(BaseModel):
    evaluation: dict
    calibration: dict
    usage_expansions: list[dict]
    feedback: str
    mastery_updates: list[dict]
    flags: list[str]
    degraded: bool


@router.post("/generate", response_model=TaskEnvelope)
async def generate_task(body: GenerateTaskRequest, pipeline: TaskPipeline = Depends(get_pipeline)):
    """Compose the next task for a learner and goal."""
    options = GenerationOptions(
        preferred_task_types=tuple(body.preferred_task_types),
        pool_cap=body.pool_cap,
        cost_budget=body.cost_budget,
        expansion_preference=body.expansion_preference,
        prefer_expansion=body.prefer_expansion,
        target_context_id=body.target_context_id,
        modality=body.modality,
        timed=body.timed,
        l1=body.l1,
        allow_legacy_fallback=body.allow_legacy_fallback,
    )
    result = await pipeline.generate_task(body.learner_id, body.goal_id, options)
    raise_result(result)
    return TaskEnvelope(**result.unwrap().to_dict())


@router.post("/respond", response_model=ResponseEnvelope)
async def respond(body: RespondRequest, pipeline: TaskPipeline = Depends(get_pipeline)):
    """Evaluate a response and update ability, usage and mastery."""
    try:
        task = task_from_dict(body.task)
    except (KeyError, TypeError, ValueError) as exc:
        log.warning("task_payload_invalid", error=str(exc))
        raise_result(validation_error(f"Invalid task payload: {exc}", field="task", origin="api.tasks"))

    extra = {"event_id": body.event_id} if body.event_id else {}
    context = ResponseContext(
        learner_id=body.learner_id,
        goal_id=body.goal_id,
        cue_level=body.cue_level,
        strictness=body.strictness,
        responded_at=_as_utc(body.responded_at),
        **extra,
    )
    result = await pipeline.process_response(
        task, body.response, body.timing_ms, body.hints_used, context=context
    )
    raise_result(result)
    return ResponseEnvelope(**result.unwrap().to_dict())
