import re
from typing import Any

from conversation_tree.memory.base import Memory, MemoryStore
from conversation_tree.utils.database import generate_uid
from conversation_tree.utils.time import get_current_timestamp

_WORD = re.compile(r"\w+")


def _words(text: str) -> set[str]:
    return {word.lower() for word in _WORD.findall(text)}


class InMemoryMemoryStore(MemoryStore):
    """
    Keyword-matching memory store kept in a dict.

    A memory matches when it shares at least one word with the query (case
    insensitive). Matches are ranked by the number of shared words, newest first
    on ties.
    """

    def __init__(self) -> None:
        self.memories: dict[str, list[Memory]] = {}

    async def add(self, user_id: str, content: str, metadata: dict[str, Any] | None = None) -> Memory:
        memory = Memory(
            id=generate_uid(),
            user_id=user_id,
            content=content,
            metadata=dict(metadata or {}),
            create_timestamp=get_current_timestamp(),
        )
        self.memories.setdefault(user_id, []).append(memory)
        return memory.model_copy(deep=True)

    async def search(self, user_id: str, query: str, limit: int = 3) -> list[Memory]:
        query_words = _words(query)
        scored = [
            (len(query_words & _words(memory.content)), memory)
            for memory in self.memories.get(user_id, [])
        ]
        matches = sorted(
            ((score, memory) for score, memory in scored if score > 0),
            key=lambda item: (item[0], item[1].create_timestamp),
            reverse=True,
        )
        return [memory.model_copy(deep=True) for _, memory in matches[:limit]]
