"""AI content collaborator.

Generative templates ask a language model for a natural prompt and model
answer built around the assigned objects. Calls are bounded by a timeout,
retried once on transient network errors and guarded by a circuit breaker;
every failure comes back as ``Err`` so the caller can keep template content.
"""
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from openai import APIConnectionError, APIError, AsyncOpenAI, RateLimitError

from core.config import Settings, get_settings
from core.errors import (
    AppError,
    ErrorCode,
    Ok,
    Result,
    external_service_unavailable,
    network_error,
)
from core.logging import engine_logger
from core.resilience import CircuitBreaker, CircuitBreakerConfig, CombinedPolicy, RetryConfig

log = engine_logger()

SERVICE_NAME = "openai-content"

CONTENT_PROMPT = """You write practice tasks for language learners.
Task type: {task_type}
Setting: {context}
Draft prompt: {prompt}
Words and structures that must appear: {contents}

Rewrite the draft as one natural task prompt set in this context, and give a
model answer that uses every listed item.
Return only JSON: {{"prompt": "...", "expected_answer": "..."}}"""


@dataclass(frozen=True, slots=True)
class ContentRequest:
    template_id: str
    task_type: str
    prompt: str
    contents: tuple[str, ...]
    context: dict = field(default_factory=dict)
    modality: str = "reading"


@dataclass(frozen=True, slots=True)
class GeneratedContent:
    prompt: str
    expected_answer: str
    model: str = ""


class ContentGenerator(ABC):
    @abstractmethod
    async def generate(self, request: ContentRequest) -> Result[GeneratedContent, AppError]:
        ...


def parse_content(raw: str) -> GeneratedContent | None:
    """Read the model's JSON reply, tolerating a fenced code block."""
    text = raw.strip().strip("`")
    if text.startswith("json"):
        text = text[4:]
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    prompt = str(data.get("prompt") or "").strip()
    answer = str(data.get("expected_answer") or "").strip()
    if not prompt or not answer:
        return None
    return GeneratedContent(prompt, answer)


class OpenAIContentGenerator(ContentGenerator):
    """Content generation through the OpenAI chat completions API."""

    __slots__ = ("_client", "_model", "_max_tokens", "_policy", "_breaker")

    def __init__(self, settings: Settings | None = None, client: AsyncOpenAI | None = None):
        settings = settings or get_settings()
        if client is None and settings.OPENAI_API_KEY:
            client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
        self._client = client
        self._model = settings.OPENAI_MODEL
        self._max_tokens = settings.CONTENT_MAX_TOKENS
        self._policy = CombinedPolicy[GeneratedContent](
            settings.CONTENT_TIMEOUT_SECONDS,
            RetryConfig(max_attempts=2),
            operation_name="content_generation",
        )
        self._breaker = CircuitBreaker[GeneratedContent](
            SERVICE_NAME,
            CircuitBreakerConfig(failure_threshold=settings.CONTENT_FAILURE_THRESHOLD),
        )
        log.debug("content_generator_initialized", model=self._model, has_key=self._client is not None)

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def generate(self, request: ContentRequest) -> Result[GeneratedContent, AppError]:
        if self._client is None:
            return external_service_unavailable("openai", "API key not configured", origin="content")
        return await self._breaker.call(lambda: self._policy.execute(lambda: self._complete(request)))

    async def _complete(self, request: ContentRequest) -> Result[GeneratedContent, AppError]:
        message = CONTENT_PROMPT.format(
            task_type=request.task_type,
            context=request.context.get("name") or "general",
            prompt=request.prompt,
            contents=", ".join(request.contents),
        )
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[{"role": "user", "content": message}],
                max_tokens=self._max_tokens,
                temperature=0.7,
            )
        except RateLimitError as e:
            return network_error(str(e), code=ErrorCode.E1013_RATE_LIMITED, origin="content", cause=e)
        except APIConnectionError as e:
            return network_error(str(e), origin="content", cause=e)
        except APIError as e:
            return network_error(
                str(e), code=ErrorCode.E1011_EXTERNAL_SERVICE_ERROR, origin="content", cause=e
            )

        raw = response.choices[0].message.content or ""
        content = parse_content(raw)
        if content is None:
            return external_service_unavailable("openai", "unparseable content", origin="content")
        log.debug(
            "content_generated",
            template_id=request.template_id,
            tokens=response.usage.total_tokens if response.usage else 0,
        )
        return Ok(GeneratedContent(content.prompt, content.expected_answer, self._model))
