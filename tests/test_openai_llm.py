"""Tests for the OpenAI-compatible gateway against a stub client."""

from types import SimpleNamespace

import httpx
import openai
import pytest

from conversation_tree.errors import UpstreamError
from conversation_tree.llms.base import ContentPart, ImageURL, LLMMessage, Roles
from conversation_tree.llms.openai import OpenAILLM

PROMPT = [LLMMessage(role=Roles.USER, content="Hi")]


def _api_error() -> openai.APIConnectionError:
    return openai.APIConnectionError(request=httpx.Request("POST", "https://llm.invalid/v1/chat/completions"))


def _response(content: str | None) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


async def _stream(*items: str | Exception):
    for item in items:
        if isinstance(item, Exception):
            raise item
        yield SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=item))])


class StubCompletions:
    def __init__(self, outcomes: list) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _llm(outcomes: list, models: list[str] | None = None) -> tuple[OpenAILLM, StubCompletions]:
    completions = StubCompletions(outcomes)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return OpenAILLM(models=models or ["primary", "fallback"], client=client), completions  # type: ignore[arg-type]


class TestGenerate:
    @pytest.mark.asyncio
    async def test_returns_first_model_answer(self) -> None:
        llm, completions = _llm([_response("Hello!")])

        answer = await llm.generate(PROMPT)

        assert answer.content == "Hello!"
        assert answer.role == Roles.ASSISTANT
        assert answer.model == "primary"
        assert completions.calls[0]["messages"] == [{"content": "Hi", "role": "user"}]
        assert completions.calls[0]["temperature"] == 0.7

    @pytest.mark.asyncio
    async def test_falls_back_to_next_model(self) -> None:
        llm, completions = _llm([_api_error(), _response("From fallback")])

        answer = await llm.generate(PROMPT)

        assert answer.content == "From fallback"
        assert answer.model == "fallback"
        assert llm.model_name == "primary"
        assert [call["model"] for call in completions.calls] == ["primary", "fallback"]

    @pytest.mark.asyncio
    async def test_empty_answer_counts_as_failure(self) -> None:
        llm, _ = _llm([_response(None), _response("Second try")])

        assert (await llm.generate(PROMPT)).content == "Second try"

    @pytest.mark.asyncio
    async def test_all_models_failing_raises_upstream_error(self) -> None:
        llm, _ = _llm([_api_error(), _api_error()])

        with pytest.raises(UpstreamError) as exc_info:
            await llm.generate(PROMPT)

        assert exc_info.value.model == "fallback"

    @pytest.mark.asyncio
    async def test_multimodal_message_is_sent_as_parts(self) -> None:
        llm, completions = _llm([_response("A chart")])
        message = LLMMessage(
            role=Roles.USER,
            content=[
                ContentPart(type="text", text="What is this?"),
                ContentPart(type="image_url", image_url=ImageURL(url="https://files/chart.png")),
            ],
        )

        await llm.generate([message])

        assert completions.calls[0]["messages"][0]["content"] == [
            {"type": "text", "text": "What is this?"},
            {"type": "image_url", "image_url": {"url": "https://files/chart.png", "detail": "high"}},
        ]

    def test_model_list_is_required(self) -> None:
        with pytest.raises(ValueError):
            OpenAILLM(models=[], client=SimpleNamespace())  # type: ignore[arg-type]


class TestGenerateStream:
    @pytest.mark.asyncio
    async def test_yields_deltas(self) -> None:
        llm, completions = _llm([_stream("Hel", "lo")])

        chunks = [chunk.content async for chunk in llm.generate_stream(PROMPT)]

        assert chunks == ["Hel", "lo"]
        assert completions.calls[0]["stream"] is True

    @pytest.mark.asyncio
    async def test_falls_back_before_first_chunk(self) -> None:
        llm, _ = _llm([_api_error(), _stream("ok")])

        chunks = [chunk async for chunk in llm.generate_stream(PROMPT)]

        assert [chunk.content for chunk in chunks] == ["ok"]
        assert [chunk.model for chunk in chunks] == ["fallback"]
        assert llm.model_name == "primary"

    @pytest.mark.asyncio
    async def test_failure_after_first_chunk_is_not_retried(self) -> None:
        llm, completions = _llm([_stream("partial", _api_error()), _stream("never")])
        received = []

        with pytest.raises(UpstreamError):
            async for chunk in llm.generate_stream(PROMPT):
                received.append(chunk.content)

        assert received == ["partial"]
        assert len(completions.calls) == 1


class TestReportedModel:
    @pytest.mark.asyncio
    async def test_model_is_not_sent_upstream(self) -> None:
        llm, completions = _llm([_response("Sure")])
        history = [LLMMessage(role=Roles.ASSISTANT, content="Earlier", model="primary"), *PROMPT]

        await llm.generate(history)

        assert completions.calls[0]["messages"] == [
            {"content": "Earlier", "role": "assistant"},
            {"content": "Hi", "role": "user"},
        ]

    @pytest.mark.asyncio
    async def test_each_answer_reports_its_own_model(self) -> None:
        llm, _ = _llm([_api_error(), _response("From fallback")])
        fallback_answer = await llm.generate(PROMPT)
        completions = StubCompletions([_response("From primary")])
        llm.client = SimpleNamespace(chat=SimpleNamespace(completions=completions))  # type: ignore[assignment]

        primary_answer = await llm.generate(PROMPT)

        assert fallback_answer.model == "fallback"
        assert primary_answer.model == "primary"
