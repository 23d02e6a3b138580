from engines.composer import ComposedTask, TaskComposer
from engines.content import ContentGenerator, OpenAIContentGenerator
from engines.legacy import LegacyTask, generate_legacy_task
from engines.mastery import MasteryScheduler
from engines.optimizer import CandidateOptimizer
from engines.pipeline import (
    GenerationOptions,
    ResponseContext,
    ResponseOutcome,
    TaskGenerationResult,
    TaskPipeline,
    task_from_dict,
)

__all__ = [
    "ComposedTask",
    "TaskComposer",
    "ContentGenerator",
    "OpenAIContentGenerator",
    "LegacyTask",
    "generate_legacy_task",
    "MasteryScheduler",
    "CandidateOptimizer",
    "GenerationOptions",
    "ResponseContext",
    "ResponseOutcome",
    "TaskGenerationResult",
    "TaskPipeline",
    "task_from_dict",
]
