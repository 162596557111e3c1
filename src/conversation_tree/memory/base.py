"""
Long-term user memory.

A 'MemoryStore' keeps short facts per user across conversations. Before a reply
is generated the controller searches the store with the question being answered
and hands the matches to the model as context; after a reply is finalized it is
added to the store. The store is optional and best-effort: the controller logs
its failures and carries on without it.
"""

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field


class Memory(BaseModel):
    id: str
    user_id: str
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    create_timestamp: int = 0


class MemoryStore(ABC):
    @abstractmethod
    async def add(self, user_id: str, content: str, metadata: dict[str, Any] | None = None) -> Memory:
        """Store 'content' for 'user_id' and return the stored memory."""
        pass

    @abstractmethod
    async def search(self, user_id: str, query: str, limit: int = 3) -> list[Memory]:
        """Return at most 'limit' of the user's memories relevant to 'query', best match first."""
        pass
