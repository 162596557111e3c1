"""
In-memory repositories.

Dict-backed implementations of 'MessageDatabase' and 'ConversationDatabase' for
tests, demos and single-process deployments. Records are copied on the way in
and out so callers can never mutate stored state by holding on to a returned
model, which keeps the semantics identical to a real document store.

'InMemoryMessageDatabase' relies on the two-phase 'set_active_flags' default of
the ABC.
"""

from collections.abc import Sequence
from typing import Any

from conversation_tree.conversation_database.data_models.conversation import Conversation, ConversationDatabase
from conversation_tree.conversation_database.data_models.message import (
    Attachment,
    Message,
    MessageDatabase,
    apply_content_edit,
    apply_content_overwrite,
    apply_version_selection,
    prepare_new_message,
)
from conversation_tree.errors import ConversationNotFoundError, MessageNotFoundError
from conversation_tree.utils.time import get_current_timestamp


class InMemoryMessageDatabase(MessageDatabase):
    def __init__(self) -> None:
        self._messages: dict[str, Message] = {}

    def _get(self, message_id: str) -> Message:
        message = self._messages.get(message_id)
        if message is None:
            raise MessageNotFoundError(message_id)
        return message

    async def create_message(self, message: Message) -> Message:
        parent = self._messages.get(message.parent_id) if message.parent_id else None
        stored = prepare_new_message(message, parent)
        self._messages[stored.id] = stored  # type: ignore[index]
        return stored.model_copy(deep=True)

    async def get_messages_by_conversation_id(self, conversation_id: str) -> list[Message]:
        return [
            message.model_copy(deep=True)
            for message in self._messages.values()
            if message.conversation_id == conversation_id
        ]

    async def get_message_by_id(self, message_id: str) -> Message:
        return self._get(message_id).model_copy(deep=True)

    async def update_message(
        self,
        message_id: str,
        content: str | None = None,
        files: list[Attachment] | None = None,
        metadata: dict[str, Any] | None = None,
        track_version: bool = True,
    ) -> Message:
        message = self._get(message_id)
        if content is not None:
            if track_version:
                message = apply_content_edit(message, content)
            else:
                message = apply_content_overwrite(message, content)
        if files is not None:
            message = message.model_copy(update={"files": list(files)})
        if metadata is not None:
            message = message.model_copy(update={"metadata": {**message.metadata, **metadata}})
        self._messages[message_id] = message.model_copy(deep=True)
        return message.model_copy(deep=True)

    async def select_version(self, message_id: str, index: int) -> Message:
        message = apply_version_selection(self._get(message_id), index)
        self._messages[message_id] = message.model_copy(deep=True)
        return message

    async def delete_message(self, message_id: str) -> bool:
        return self._messages.pop(message_id, None) is not None

    async def activate_messages(self, conversation_id: str, message_ids: Sequence[str]) -> None:
        for message_id in message_ids:
            message = self._messages.get(message_id)
            if message is not None and message.conversation_id == conversation_id:
                message.is_active = True

    async def deactivate_messages_except(self, conversation_id: str, message_ids: Sequence[str]) -> None:
        keep = set(message_ids)
        for message in self._messages.values():
            if message.conversation_id == conversation_id and message.id not in keep:
                message.is_active = False


class InMemoryConversationDatabase(ConversationDatabase):
    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}

    def _get(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def _save(self, conversation: Conversation) -> Conversation:
        self._conversations[conversation.id] = conversation.model_copy(deep=True)
        return conversation.model_copy(deep=True)

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        return self._save(conversation)

    async def get_conversations_by_user_id(self, user_id: str) -> list[Conversation]:
        conversations = [c for c in self._conversations.values() if c.user_id == user_id]
        return [
            c.model_copy(deep=True) for c in sorted(conversations, key=lambda c: c.update_timestamp, reverse=True)
        ]

    async def get_conversation_by_id(self, conversation_id: str) -> Conversation:
        return self._get(conversation_id).model_copy(deep=True)

    async def update_title(self, conversation_id: str, title: str) -> Conversation:
        conversation = self._get(conversation_id)
        return self._save(conversation.model_copy(update={"title": title, "update_timestamp": get_current_timestamp()}))

    async def update_active_path(self, conversation_id: str, active_path: list[str]) -> Conversation:
        conversation = self._get(conversation_id)
        return self._save(
            conversation.model_copy(
                update={"active_path": list(active_path), "update_timestamp": get_current_timestamp()}
            )
        )

    async def touch(self, conversation_id: str) -> Conversation:
        conversation = self._get(conversation_id)
        return self._save(conversation.model_copy(update={"update_timestamp": get_current_timestamp()}))

    async def delete_conversation(self, conversation_id: str) -> bool:
        return self._conversations.pop(conversation_id, None) is not None
