"""
OpenAI-compatible completion gateway.

'OpenAILLM' talks to any server implementing the chat completions API (OpenAI,
OpenRouter, vLLM, Ollama's OpenAI endpoint) through 'openai.AsyncOpenAI'. It
holds an ordered list of models: each call tries the first model and falls back
to the next one when the API fails. When every model has failed the last error
is raised as 'UpstreamError'.

A streaming call only falls back while nothing has been yielded yet. Once the
caller has received part of a reply, switching models would splice two answers
together, so a mid-stream failure is raised immediately.
"""

from collections.abc import AsyncGenerator
from typing import Any

import openai
from loguru import logger
from openai import AsyncOpenAI

from conversation_tree.errors import UpstreamError
from conversation_tree.llms.base import LLM, LLMMessage, Roles


class OpenAILLM(LLM):
    """
    LLM backend for OpenAI-compatible chat completion APIs.

    Attributes:
        models: Model identifiers in order of preference.
        temperature: Sampling temperature passed on every request.
        max_tokens: Optional cap on the reply length.
    """

    def __init__(
        self,
        models: list[str],
        api_key: str | None = None,
        base_url: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        if not models:
            raise ValueError("At least one model is required")
        self.models = list(models)
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.model_name = self.models[0]
        self.client = client or AsyncOpenAI(api_key=api_key or "not-needed", base_url=base_url)

    @staticmethod
    def _to_openai_messages(conversation: list[LLMMessage]) -> list[dict[str, Any]]:
        return [message.model_dump(mode="json", exclude_none=True, exclude={"model"}) for message in conversation]

    def _request_kwargs(self, model: str, conversation: list[LLMMessage]) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": self._to_openai_messages(conversation),
            "temperature": self.temperature,
        }
        if self.max_tokens is not None:
            kwargs["max_tokens"] = self.max_tokens
        return kwargs

    async def generate(self, conversation: list[LLMMessage]) -> LLMMessage:
        last_error: Exception | None = None
        for model in self.models:
            try:
                response = await self.client.chat.completions.create(**self._request_kwargs(model, conversation))
            except openai.APIError as exc:
                logger.warning(f"Model {model!r} failed, trying next model: {exc}")
                last_error = exc
                continue

            if not response.choices or response.choices[0].message.content is None:
                logger.warning(f"Model {model!r} returned an empty response, trying next model")
                last_error = UpstreamError(f"Empty response from model {model!r}", model=model)
                continue

            return LLMMessage(role=Roles.ASSISTANT, content=response.choices[0].message.content, model=model)

        raise UpstreamError(f"All models failed: {last_error}", model=self.models[-1]) from last_error

    async def generate_stream(self, conversation: list[LLMMessage]) -> AsyncGenerator[LLMMessage, None]:
        last_error: Exception | None = None
        for model in self.models:
            yielded = False
            try:
                stream = await self.client.chat.completions.create(
                    **self._request_kwargs(model, conversation), stream=True
                )
                async for chunk in stream:
                    if chunk.choices and chunk.choices[0].delta.content:
                        yielded = True
                        yield LLMMessage(role=Roles.ASSISTANT, content=chunk.choices[0].delta.content, model=model)
                return
            except openai.APIError as exc:
                if yielded:
                    raise UpstreamError(f"Stream from model {model!r} broke off: {exc}", model=model) from exc
                logger.warning(f"Model {model!r} failed before streaming, trying next model: {exc}")
                last_error = exc

        raise UpstreamError(f"All models failed: {last_error}", model=self.models[-1]) from last_error
