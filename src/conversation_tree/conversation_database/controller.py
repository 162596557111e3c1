"""
Conversation tree controller (Facade).

'ConversationTreeController' is the single entry point for application logic.
It coordinates the message and conversation repositories, the active-path
controller, the context assembler and the LLM to handle every user action:

    'process_new_message[_stream]' - send a user message and answer it.
    'regenerate[_stream]'          - answer the same user message again as a
                                     sibling branch; the old answer is kept.
    'edit_message[_stream]'        - change a user message in place (new
                                     version) and answer it on a new branch.
    'switch_path'                  - display another branch.
    'select_message_version'       - content-level undo / redo.

Every generation follows the same lifecycle: the prompt is assembled from the
active path, an empty assistant placeholder is appended to the path, the reply
is buffered while it streams, and the placeholder is finalized once the stream
ends. A failed generation keeps the turn with a visible error text. An aborted
one (task cancelled or stream closed early) deletes the placeholder and restores
the previous active path. With a 'MemoryStore', the user's memories matching the
question are passed to the model and every finished reply is stored as a memory.

'ClientMessage' extends 'Message' with the sibling ids the UI needs to page
between branches at that position.
"""

import asyncio
import json
from collections.abc import AsyncGenerator, Sequence
from contextlib import aclosing
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field

from conversation_tree.conversation_database.active_path import ActivePathController
from conversation_tree.conversation_database.context import ContextAssembler
from conversation_tree.conversation_database.data_models.conversation import Conversation, ConversationDatabase
from conversation_tree.conversation_database.data_models.message import Attachment, Message, MessageDatabase
from conversation_tree.conversation_database.paths import Branch, MessageTree, build_branches
from conversation_tree.errors import AccessDeniedError, MessageNotFoundError, UpstreamError, ValidationError
from conversation_tree.llms.base import LLM, LLMMessage, Roles
from conversation_tree.memory.base import MemoryStore
from conversation_tree.utils.database import generate_uid
from conversation_tree.utils.time import get_current_timestamp


class MessageInput(BaseModel):
    content: str
    conversation_id: str | None = None
    files: list[Attachment] = Field(default_factory=list)


class ConversationInput(BaseModel):
    title: str


class ClientMessage(Message):
    sibling_ids: list[str] = Field(default_factory=list)

    def encode(self, charset: str = "utf-8") -> bytes:
        return json.dumps(self.model_dump(mode="json")).encode(charset)


class ClientConversation(Conversation):
    messages: list[ClientMessage]
    branches: list[Branch]


DEFAULT_CONVERSATION_TITLE = "New Chat"
TITLE_LENGTH = 50
PENDING = "pending"
COMPLETE = "complete"
FAILED = "failed"
DEFAULT_MEMORY_SEARCH_LIMIT = 3


def title_from_message(content: str) -> str:
    content = content.strip()
    return content[:TITLE_LENGTH] + ("..." if len(content) > TITLE_LENGTH else "")


class _Generation(BaseModel):
    """A started generation: the placeholder and the path to restore if it is aborted."""

    conversation_id: str
    user_id: str
    question: str
    placeholder: Message
    sibling_ids: list[str]
    previous_path: list[str]
    prompt: list[LLMMessage]


class ConversationTreeController:
    def __init__(
        self,
        conversation_db: ConversationDatabase,
        message_db: MessageDatabase,
        llm: LLM,
        context_assembler: ContextAssembler | None = None,
        flag_write_retries: int = 1,
        default_title: str = DEFAULT_CONVERSATION_TITLE,
        memory_store: MemoryStore | None = None,
        memory_search_limit: int = DEFAULT_MEMORY_SEARCH_LIMIT,
    ):
        self.conversation_db = conversation_db
        self.message_db = message_db
        self.llm = llm
        self.context_assembler = context_assembler or ContextAssembler()
        self.active_paths = ActivePathController(conversation_db, message_db, flag_write_retries)
        self.default_title = default_title
        self.memory_store = memory_store
        self.memory_search_limit = memory_search_limit

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------
    async def _get_owned_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        conversation = await self.conversation_db.get_conversation_by_id(conversation_id)
        if conversation.user_id != user_id:
            raise AccessDeniedError(user_id, conversation_id)
        return conversation

    async def create_conversation(
        self, user_id: str, title: str | None = None, system_prompt: str | None = None
    ) -> Conversation:
        create_time = get_current_timestamp()
        conversation = await self.conversation_db.create_conversation(
            Conversation(
                id=generate_uid(),
                user_id=user_id,
                create_timestamp=create_time,
                update_timestamp=create_time,
                title=title or self.default_title,
            )
        )
        if system_prompt:
            system_message = await self.message_db.create_message(
                Message(
                    user_id=user_id,
                    conversation_id=conversation.id,
                    content=system_prompt,
                    role=Roles.SYSTEM,
                )
            )
            conversation = await self.active_paths.update_active_path(conversation.id, [system_message.id])  # type: ignore[list-item]
        logger.info(f"Created conversation {conversation.id} for user {user_id}")
        return conversation

    async def get_conversations_by_user_id(self, user_id: str) -> list[Conversation]:
        return await self.conversation_db.get_conversations_by_user_id(user_id)

    async def get_conversation_by_id(self, conversation_id: str, user_id: str) -> ClientConversation:
        """Return the conversation with the messages of its active path, in order, and every branch."""
        conversation = await self._get_owned_conversation(conversation_id, user_id)
        messages = await self.message_db.get_messages_by_conversation_id(conversation_id)
        tree = MessageTree(messages)
        return ClientConversation(
            **conversation.model_dump(),
            messages=[
                self._to_client_message(tree, tree.by_id[mid]) for mid in conversation.active_path if mid in tree.by_id
            ],
            branches=build_branches(messages, conversation.active_path),
        )

    async def update_conversation(
        self, conversation_id: str, user_id: str, conversation_updates: ConversationInput
    ) -> Conversation:
        await self._get_owned_conversation(conversation_id, user_id)
        return await self.conversation_db.update_title(conversation_id, conversation_updates.title)

    async def delete_conversation(self, conversation_id: str, user_id: str) -> bool:
        await self._get_owned_conversation(conversation_id, user_id)
        messages = await self.message_db.get_messages_by_conversation_id(conversation_id)
        for message in messages:
            await self.message_db.delete_message(message.id)  # type: ignore[arg-type]
        logger.info(f"Deleted conversation {conversation_id} with {len(messages)} messages")
        return await self.conversation_db.delete_conversation(conversation_id)

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------
    async def get_branches(self, conversation_id: str, user_id: str) -> list[Branch]:
        await self._get_owned_conversation(conversation_id, user_id)
        return await self.active_paths.get_branches(conversation_id)

    async def switch_path(
        self,
        conversation_id: str,
        user_id: str,
        path_id: str | None = None,
        message_ids: Sequence[str] | None = None,
    ) -> ClientConversation:
        await self._get_owned_conversation(conversation_id, user_id)
        await self.active_paths.switch_to(conversation_id, path_id=path_id, message_ids=message_ids)
        return await self.get_conversation_by_id(conversation_id, user_id)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------
    async def _append_user_message(self, user_input: MessageInput, user_id: str) -> tuple[Conversation, Message]:
        if not user_input.content.strip() and not user_input.files:
            raise ValidationError("Message content is required")

        if user_input.conversation_id is None:
            conversation = await self.create_conversation(user_id, title=title_from_message(user_input.content))
        else:
            conversation = await self._get_owned_conversation(user_input.conversation_id, user_id)

        parent_id = conversation.active_path[-1] if conversation.active_path else None
        user_message = await self.message_db.create_message(
            Message(
                user_id=user_id,
                conversation_id=conversation.id,
                content=user_input.content,
                role=Roles.USER,
                parent_id=parent_id,
                files=user_input.files,
            )
        )
        conversation = await self.active_paths.update_active_path(
            conversation.id, [*conversation.active_path, user_message.id]  # type: ignore[list-item]
        )
        return conversation, user_message

    async def process_new_message(self, user_input: MessageInput, user_id: str) -> ClientMessage:
        conversation, user_message = await self._append_user_message(user_input, user_id)
        generation = await self._start_generation(conversation.id, user_message)
        return await self._run(generation)

    async def process_new_message_stream(
        self, user_input: MessageInput, user_id: str
    ) -> AsyncGenerator[ClientMessage, Any]:
        conversation, user_message = await self._append_user_message(user_input, user_id)
        generation = await self._start_generation(conversation.id, user_message)
        async with aclosing(self._run_stream(generation)) as stream:
            async for message in stream:
                yield message

    # ------------------------------------------------------------------
    # Regeneration and editing
    # ------------------------------------------------------------------
    async def _resolve_regeneration_parent(
        self, conversation: Conversation, message_id: str | None
    ) -> Message:
        messages = await self.message_db.get_messages_by_conversation_id(conversation.id)
        by_id = {message.id: message for message in messages}

        if message_id is not None:
            target = by_id.get(message_id)
            if target is None:
                raise ValidationError(f"Message {message_id} is not part of conversation {conversation.id}")
            if target.role == Roles.ASSISTANT:
                target = by_id.get(target.parent_id) if target.parent_id else None
            if target is None or target.role != Roles.USER:
                raise ValidationError(f"Message {message_id} has no user message to regenerate from")
            return target

        for active_id in reversed(conversation.active_path):
            candidate = by_id.get(active_id)
            if candidate is not None and candidate.role == Roles.USER:
                return candidate
        raise ValidationError("No user message found to regenerate from")

    async def _prepare_regeneration(
        self, conversation_id: str, user_id: str, message_id: str | None
    ) -> _Generation:
        conversation = await self._get_owned_conversation(conversation_id, user_id)
        parent = await self._resolve_regeneration_parent(conversation, message_id)
        logger.info(f"Regenerating reply to message {parent.id} in conversation {conversation_id}")
        return await self._start_generation(conversation_id, parent)

    async def regenerate(self, conversation_id: str, user_id: str, message_id: str | None = None) -> ClientMessage:
        """
        Answer a user message again on a new branch.

        'message_id' may be the user message or one of its assistant replies;
        by default the last user message of the active path is used. The new
        reply becomes a sibling of the existing ones and the active path is
        moved onto it. Earlier replies stay stored and reachable as branches.
        """
        generation = await self._prepare_regeneration(conversation_id, user_id, message_id)
        return await self._run(generation)

    async def regenerate_stream(
        self, conversation_id: str, user_id: str, message_id: str | None = None
    ) -> AsyncGenerator[ClientMessage, Any]:
        generation = await self._prepare_regeneration(conversation_id, user_id, message_id)
        async with aclosing(self._run_stream(generation)) as stream:
            async for message in stream:
                yield message

    async def _apply_edit(self, message_id: str, user_id: str, content: str) -> Message:
        if not content.strip():
            raise ValidationError("Message content is required")
        message = await self.message_db.get_message_by_id(message_id)
        await self._get_owned_conversation(message.conversation_id, user_id)
        edited = await self.message_db.update_message(message_id, content=content)
        logger.info(f"Edited message {message_id} (version {edited.current_version_index + 1}/{len(edited.versions)})")
        return edited

    async def edit_message(
        self, message_id: str, user_id: str, content: str, regenerate: bool = True
    ) -> ClientMessage:
        """
        Change a message's content in place, recording the edit as a new version.

        For a user message with 'regenerate=True', a new reply is generated as
        a sibling of the existing replies and returned; otherwise the edited
        message itself is returned.
        """
        edited = await self._apply_edit(message_id, user_id, content)
        if regenerate and edited.role == Roles.USER:
            generation = await self._start_generation(edited.conversation_id, edited)
            return await self._run(generation)
        return await self._client_message(edited)

    async def edit_message_stream(
        self, message_id: str, user_id: str, content: str
    ) -> AsyncGenerator[ClientMessage, Any]:
        edited = await self._apply_edit(message_id, user_id, content)
        if edited.role != Roles.USER:
            raise ValidationError("Only user messages can be answered again after an edit")
        generation = await self._start_generation(edited.conversation_id, edited)
        async with aclosing(self._run_stream(generation)) as stream:
            async for message in stream:
                yield message

    async def select_message_version(self, message_id: str, user_id: str, index: int) -> ClientMessage:
        message = await self.message_db.get_message_by_id(message_id)
        await self._get_owned_conversation(message.conversation_id, user_id)
        return await self._client_message(await self.message_db.select_version(message_id, index))

    # ------------------------------------------------------------------
    # Generation lifecycle
    # ------------------------------------------------------------------
    async def _start_generation(self, conversation_id: str, parent: Message) -> _Generation:
        """
        Assemble the prompt for answering 'parent' and append a placeholder reply.

        The active path becomes root -> parent -> placeholder, whatever branch
        was displayed before. The prompt is built before anything is written,
        so a 'NoValidMessagesError' leaves the conversation untouched. Memories
        matching the question are put in front of the prompt as context.
        """
        conversation = await self.conversation_db.get_conversation_by_id(conversation_id)
        messages = await self.message_db.get_messages_by_conversation_id(conversation_id)
        tree = MessageTree(messages)
        base_path = tree.ancestry(parent.id)  # type: ignore[arg-type]
        prompt = self.context_assembler.assemble([tree.by_id[mid] for mid in base_path])

        memory_context = await self._recall(conversation.user_id, parent.content or "")
        if memory_context:
            prompt = [LLMMessage(role=Roles.SYSTEM, content=f"Context: {memory_context}"), *prompt]

        placeholder = await self.message_db.create_message(
            Message(
                user_id=None,
                conversation_id=conversation_id,
                content="",
                role=Roles.ASSISTANT,
                parent_id=parent.id,
                metadata={"status": PENDING},
            )
        )
        await self.active_paths.update_active_path(conversation_id, [*base_path, placeholder.id])  # type: ignore[list-item]
        logger.debug(f"Started generation {placeholder.id} with {len(prompt)} prompt messages")
        return _Generation(
            conversation_id=conversation_id,
            user_id=conversation.user_id,
            question=parent.content or "",
            placeholder=placeholder,
            sibling_ids=[*(s.id for s in tree.children_of.get(parent.id, [])), placeholder.id],  # type: ignore[arg-type]
            previous_path=list(conversation.active_path),
            prompt=prompt,
        )

    async def _recall(self, user_id: str, question: str) -> str:
        if self.memory_store is None or not question.strip():
            return ""
        try:
            memories = await self.memory_store.search(user_id, question, self.memory_search_limit)
        except Exception as exc:
            logger.warning(f"Memory retrieval failed for user {user_id}: {exc}")
            return ""
        return "\n".join(memory.content for memory in memories)

    async def _remember(self, generation: _Generation, message: Message) -> None:
        if self.memory_store is None or not (message.content or "").strip():
            return
        try:
            await self.memory_store.add(
                generation.user_id,
                message.content or "",
                {
                    "conversation_id": generation.conversation_id,
                    "message_id": message.id,
                    "user_message": generation.question,
                },
            )
        except Exception as exc:
            logger.warning(f"Memory storage failed for user {generation.user_id}: {exc}")

    async def _finalize(self, generation: _Generation, content: str, model: str | None = None) -> ClientMessage:
        message = await self.message_db.update_message(
            generation.placeholder.id,  # type: ignore[arg-type]
            content=content,
            metadata={"status": COMPLETE, "model": model or self.llm.model_name},
            track_version=False,
        )
        await self.conversation_db.touch(generation.conversation_id)
        logger.info(f"Finalized reply {message.id} ({len(content)} characters)")
        await self._remember(generation, message)
        return await self._client_message(message)

    async def _fail(self, generation: _Generation, error: UpstreamError, partial: str = "") -> None:
        error_text = f"Failed to generate response: {error}"
        content = f"{partial}\n\n[{error_text}]" if partial else error_text
        await self.message_db.update_message(
            generation.placeholder.id,  # type: ignore[arg-type]
            content=content,
            metadata={"status": FAILED, "error": True, "model": error.model or self.llm.model_name},
            track_version=False,
        )
        await self.conversation_db.touch(generation.conversation_id)
        logger.error(f"Generation {generation.placeholder.id} failed: {error}")

    async def _abort(self, conversation_id: str, placeholder_id: str, previous_path: Sequence[str]) -> None:
        await self.active_paths.update_active_path(conversation_id, previous_path)
        await self.message_db.delete_message(placeholder_id)
        logger.info(f"Aborted generation {placeholder_id} in conversation {conversation_id}")

    async def abort_generation(
        self, conversation_id: str, user_id: str, placeholder_id: str, previous_path: Sequence[str]
    ) -> None:
        """
        Drop an unfinished reply and restore the active path it replaced.

        Only a pending assistant placeholder without children can be dropped,
        and 'previous_path' must not run through it.
        """
        await self._get_owned_conversation(conversation_id, user_id)
        messages = await self.message_db.get_messages_by_conversation_id(conversation_id)
        tree = MessageTree(messages)
        placeholder = tree.by_id.get(placeholder_id)
        if placeholder is None:
            raise MessageNotFoundError(placeholder_id)
        if placeholder.role != Roles.ASSISTANT or placeholder.metadata.get("status") != PENDING:
            raise ValidationError(f"Message {placeholder_id} is not a reply in progress")
        if tree.children_of.get(placeholder_id):
            raise ValidationError(f"Message {placeholder_id} already has replies")
        if placeholder_id in previous_path:
            raise ValidationError(f"Path to restore runs through message {placeholder_id}")
        await self._abort(conversation_id, placeholder_id, previous_path)

    async def _run(self, generation: _Generation) -> ClientMessage:
        try:
            answer = await self.llm.generate(generation.prompt)
            return await self._finalize(generation, answer.text, answer.model)
        except UpstreamError as exc:
            await self._fail(generation, exc)
            raise
        except asyncio.CancelledError:
            await self._abort(
                generation.conversation_id, generation.placeholder.id, generation.previous_path  # type: ignore[arg-type]
            )
            raise
        except Exception as exc:
            error = UpstreamError(str(exc) or type(exc).__name__)
            await self._fail(generation, error)
            raise error from exc

    async def _run_stream(self, generation: _Generation) -> AsyncGenerator[ClientMessage, Any]:
        content = ""
        model: str | None = None
        try:
            async with aclosing(self.llm.generate_stream(generation.prompt)) as chunks:
                async for chunk in chunks:
                    model = chunk.model or model
                    if chunk.text:
                        content += chunk.text
                        yield ClientMessage(
                            **generation.placeholder.model_dump(exclude={"content", "metadata"}),
                            content=content,
                            metadata={"status": PENDING},
                            sibling_ids=generation.sibling_ids,
                        )
            final = await self._finalize(generation, content, model)
        except UpstreamError as exc:
            await self._fail(generation, exc, partial=content)
            raise
        except (asyncio.CancelledError, GeneratorExit):
            await self._abort(
                generation.conversation_id, generation.placeholder.id, generation.previous_path  # type: ignore[arg-type]
            )
            raise
        except Exception as exc:
            error = UpstreamError(str(exc) or type(exc).__name__, model=model)
            await self._fail(generation, error, partial=content)
            raise error from exc

        yield final

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _to_client_message(tree: MessageTree, message: Message) -> ClientMessage:
        siblings = (
            tree.children_of.get(message.parent_id, []) if message.parent_id is not None else tree.roots
        )
        return ClientMessage(**message.model_dump(), sibling_ids=[s.id for s in siblings])  # type: ignore[misc]

    async def _client_message(self, message: Message) -> ClientMessage:
        messages = await self.message_db.get_messages_by_conversation_id(message.conversation_id)
        return self._to_client_message(MessageTree(messages), message)
