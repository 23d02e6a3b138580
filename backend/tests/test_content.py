"""
Tests for the AI content collaborator.

The OpenAI client is replaced with a small fake exposing
``chat.completions.create``.
"""
import asyncio
import json
from types import SimpleNamespace

import pytest

from core.config import Settings
from core.errors import ErrorCode
from core.resilience import CircuitState
from engines.content import ContentRequest, OpenAIContentGenerator, parse_content

REQUEST = ContentRequest(
    template_id="sentence-writing-multi",
    task_type="sentence_writing",
    prompt='Write a sentence using "patient" with the passive voice structure.',
    contents=("patient", "passive voice"),
    context={"name": "Patient Interaction"},
)


def reply(content: str):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(total_tokens=42),
    )


class FakeClient:
    def __init__(self, content: str = "", delay: float = 0.0):
        self.content = content
        self.delay = delay
        self.calls = 0
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    async def _create(self, **kwargs):
        self.calls += 1
        self.last_kwargs = kwargs
        if self.delay:
            await asyncio.sleep(self.delay)
        return reply(self.content)


def settings(**overrides) -> Settings:
    values = {"OPENAI_API_KEY": "", "CONTENT_TIMEOUT_SECONDS": 2.0, "CONTENT_FAILURE_THRESHOLD": 2}
    values.update(overrides)
    return Settings(**values)


GOOD = json.dumps({"prompt": "Describe how the patient was treated.", "expected_answer": "The patient was treated."})


class TestParseContent:
    def test_plain_json(self):
        content = parse_content(GOOD)
        assert content.expected_answer == "The patient was treated."

    def test_fenced_json(self):
        assert parse_content(f"```json\n{GOOD}\n```") is not None

    def test_rejects_incomplete_replies(self):
        assert parse_content("not json") is None
        assert parse_content('["a list"]') is None
        assert parse_content('{"prompt": "only a prompt"}') is None


class TestOpenAIContentGenerator:
    @pytest.mark.asyncio
    async def test_without_key_is_unavailable(self):
        generator = OpenAIContentGenerator(settings())
        result = await generator.generate(REQUEST)
        assert result.unwrap_err().code is ErrorCode.E1010_EXTERNAL_SERVICE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_successful_generation(self):
        client = FakeClient(GOOD)
        generator = OpenAIContentGenerator(settings(OPENAI_MODEL="test-model"), client=client)
        content = (await generator.generate(REQUEST)).unwrap()
        assert content.prompt == "Describe how the patient was treated."
        assert content.model == "test-model"
        message = client.last_kwargs["messages"][0]["content"]
        assert "patient, passive voice" in message
        assert "Patient Interaction" in message

    @pytest.mark.asyncio
    async def test_slow_call_times_out_without_retry(self):
        client = FakeClient(GOOD, delay=1.0)
        generator = OpenAIContentGenerator(settings(CONTENT_TIMEOUT_SECONDS=0.05), client=client)
        result = await generator.generate(REQUEST)
        assert result.unwrap_err().code is ErrorCode.E1002_TIMEOUT
        assert client.calls == 1

    @pytest.mark.asyncio
    async def test_unparseable_reply_is_an_error(self):
        generator = OpenAIContentGenerator(settings(), client=FakeClient("sorry, I cannot"))
        result = await generator.generate(REQUEST)
        assert result.is_err()

    @pytest.mark.asyncio
    async def test_repeated_failures_open_the_circuit(self):
        client = FakeClient("garbage")
        generator = OpenAIContentGenerator(settings(), client=client)
        for _ in range(2):
            await generator.generate(REQUEST)
        assert generator.breaker.state is CircuitState.OPEN

        result = await generator.generate(REQUEST)
        assert result.unwrap_err().code is ErrorCode.E1012_CIRCUIT_OPEN
        assert client.calls == 2

        generator.breaker.reset()
        client.content = GOOD
        assert (await generator.generate(REQUEST)).is_ok()
