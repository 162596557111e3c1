"""
Completion gateway abstractions and message data models.

All concrete LLM backends (currently 'OpenAILLM') implement the 'LLM' ABC. The
shared message format ('LLMMessage') is backend-agnostic so the context
assembler and the controller never need to know which LLM is in use.

The gateway is a black box from the conversation tree's point of view:
'generate' returns the full reply, 'generate_stream' yields reply deltas. Both
raise 'UpstreamError' on failure; retry and model fallback live inside the
concrete backend.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel


class Roles(StrEnum):
    """Conversation roles as used by the OpenAI chat completions API."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ImageURL(BaseModel):
    url: str
    detail: Literal["low", "high", "auto"] = "high"


class ContentPart(BaseModel):
    """One part of a multimodal message: either text or an image reference."""

    type: Literal["text", "image_url"]
    text: str | None = None
    image_url: ImageURL | None = None


class LLMMessage(BaseModel):
    """
    A single message in a conversation sent to or received from an LLM.

    'content' is a plain string for text-only messages and a list of
    'ContentPart' when attachments are inlined (images as 'image_url' parts,
    extracted file text as extra 'text' parts).
    """

    content: str | list[ContentPart] = ""
    role: Roles = Roles.ASSISTANT
    # Model that produced a received message; never sent upstream.
    model: str | None = None

    @property
    def text(self) -> str:
        """The textual content, with the text parts of a multimodal message joined by blank lines."""
        if isinstance(self.content, str):
            return self.content
        return "\n\n".join(part.text for part in self.content if part.type == "text" and part.text)


class LLM(ABC):
    """
    Abstract base class for language model backends.

    Concrete implementations adapt a specific API client to a common
    interface. 'model_name' names the preferred model. The model that actually
    answered is reported per call on the returned 'LLMMessage.model', so one
    instance can serve concurrent requests.
    """

    model_name: str | None = None

    @abstractmethod
    async def generate(self, conversation: list[LLMMessage]) -> LLMMessage:
        """Return a single complete response for the given conversation."""
        pass

    @abstractmethod
    def generate_stream(self, conversation: list[LLMMessage]) -> AsyncGenerator[LLMMessage, None]:
        """Yield response deltas as they arrive from the model."""
        pass
