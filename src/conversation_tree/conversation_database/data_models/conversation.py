"""
Conversation data model and storage interface.

Besides its title, a conversation holds the 'active_path': the ordered message
ids, root to leaf, of the thread that is currently displayed and that new
replies continue from. It is what the UI resumes on reload.

The 'ConversationDatabase' ABC is the pluggable storage backend for
conversation records. Concrete implementations ('InMemoryConversationDatabase',
'SQLConversationDatabase') are interchangeable at construction time. The
repository persists 'active_path' as given; the parent-chain check lives in
'ActivePathController.update_active_path', which needs the message set.
"""

from abc import ABC, abstractmethod

from pydantic import BaseModel, Field


class Conversation(BaseModel):
    """A single conversation session owned by a user."""

    id: str
    user_id: str
    create_timestamp: int
    update_timestamp: int
    title: str
    active_path: list[str] = Field(default_factory=list)


class ConversationDatabase(ABC):
    """Abstract repository for 'Conversation' records."""

    @abstractmethod
    async def create_conversation(self, conversation: Conversation) -> Conversation:
        pass

    @abstractmethod
    async def get_conversations_by_user_id(self, user_id: str) -> list[Conversation]:
        """Return the user's conversations, most recently updated first."""
        pass

    @abstractmethod
    async def get_conversation_by_id(self, conversation_id: str) -> Conversation:
        """Return the conversation or raise 'ConversationNotFoundError'."""
        pass

    @abstractmethod
    async def update_title(self, conversation_id: str, title: str) -> Conversation:
        pass

    @abstractmethod
    async def update_active_path(self, conversation_id: str, active_path: list[str]) -> Conversation:
        """Persist 'active_path' and bump 'update_timestamp'."""
        pass

    @abstractmethod
    async def touch(self, conversation_id: str) -> Conversation:
        """Bump 'update_timestamp' without changing anything else."""
        pass

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> bool:
        pass
