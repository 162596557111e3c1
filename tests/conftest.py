import asyncio
from collections.abc import AsyncGenerator

import pytest

from conversation_tree.conversation_database.controller import ConversationTreeController
from conversation_tree.conversation_database.data_models.message import Message
from conversation_tree.conversation_database.in_memory import InMemoryConversationDatabase, InMemoryMessageDatabase
from conversation_tree.llms.base import LLM, LLMMessage, Roles

USER_ID = "user-1"


class FakeLLM(LLM):
    """
    Scripted completion backend.

    Replies are taken from 'replies' in order ("Reply N" once exhausted) and
    streamed word by word. Set 'error' to fail ('fail_after_chunks' words into a
    stream), or 'release' to an unset event to hold the call until it is set.
    """

    def __init__(self, replies: list[str] | None = None, model_name: str = "fake-model") -> None:
        self.replies = list(replies or [])
        self.model_name = model_name
        self.prompts: list[list[LLMMessage]] = []
        self.error: Exception | None = None
        self.fail_after_chunks = 0
        self.started = asyncio.Event()
        self.release: asyncio.Event | None = None
        self._calls = 0

    def _next_reply(self) -> str:
        self._calls += 1
        if self.replies:
            return self.replies.pop(0)
        return f"Reply {self._calls}"

    async def generate(self, conversation: list[LLMMessage]) -> LLMMessage:
        self.prompts.append(conversation)
        self.started.set()
        if self.release is not None:
            await self.release.wait()
        if self.error is not None:
            raise self.error
        return LLMMessage(role=Roles.ASSISTANT, content=self._next_reply(), model=self.model_name)

    async def generate_stream(self, conversation: list[LLMMessage]) -> AsyncGenerator[LLMMessage, None]:
        self.prompts.append(conversation)
        self.started.set()
        for index, word in enumerate(self._next_reply().split(" ")):
            if self.error is not None and index >= self.fail_after_chunks:
                raise self.error
            if self.release is not None and index > 0:
                await self.release.wait()
            yield LLMMessage(
                role=Roles.ASSISTANT, content=word if index == 0 else f" {word}", model=self.model_name
            )


def make_message(
    message_id: str,
    parent_id: str | None,
    depth: int,
    timestamp: int,
    role: Roles = Roles.USER,
    content: str | None = None,
    conversation_id: str = "conv-1",
) -> Message:
    """A stored-looking message for tests that work on raw message sets."""
    return Message(
        id=message_id,
        conversation_id=conversation_id,
        content=content if content is not None else f"content of {message_id}",
        role=role,
        create_timestamp=timestamp,
        parent_id=parent_id,
        branch_index=depth,
    )


@pytest.fixture
def message_db() -> InMemoryMessageDatabase:
    return InMemoryMessageDatabase()


@pytest.fixture
def conversation_db() -> InMemoryConversationDatabase:
    return InMemoryConversationDatabase()


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def controller(
    conversation_db: InMemoryConversationDatabase, message_db: InMemoryMessageDatabase, fake_llm: FakeLLM
) -> ConversationTreeController:
    return ConversationTreeController(conversation_db, message_db, fake_llm)
