"""
Message data model and storage interface.

Messages form a tree within a conversation via 'parent_id'. Regenerating an
assistant reply creates a new sibling under the same parent user message
instead of overwriting the old one, so every answer ever produced stays
reachable. 'branch_index' is the depth of the message in the tree
(parent + 1, 0 for the root) and 'is_active' mirrors membership in the
conversation's active path.

Content edits are tracked independently of the tree: each edit appends a
'MessageVersion' so the content can be stepped back and forth (undo / redo)
without creating a branch.

The 'MessageDatabase' ABC is the pluggable storage backend. Concrete
implementations: 'InMemoryMessageDatabase', 'SQLMessageDatabase'.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field

from conversation_tree.errors import MessageNotFoundError, ValidationError
from conversation_tree.llms.base import Roles
from conversation_tree.utils.database import generate_uid
from conversation_tree.utils.time import get_current_timestamp


class AttachmentAnalysis(BaseModel):
    """Output of the external attachment analyzer (OCR, text extraction, summarisation)."""

    text: str | None = None
    extracted_text: str | None = None
    summary: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Attachment(BaseModel):
    """
    A file attached to a message. Opaque to the tree itself.

    'type' is the MIME type. Images are passed to the model as image parts;
    for other files only the analyzer's text is sent.
    """

    id: str
    name: str
    type: str
    size: int = 0
    url: str
    analysis: AttachmentAnalysis | None = None

    @property
    def is_image(self) -> bool:
        return self.type.startswith("image/")


class MessageVersion(BaseModel):
    """A historical content snapshot of a message."""

    content: str
    timestamp: int
    is_current: bool = False


class Message(BaseModel):
    """
    A single message within a conversation.

    'user_id' is None for assistant messages (the LLM has no user identity).
    'parent_id' links the message to the previous turn; the root of a
    conversation has none. 'branch_index' is None until the store assigns it
    from the parent.
    """

    id: str | None = None
    user_id: str | None = None
    conversation_id: str
    content: str | None
    role: Roles | None
    create_timestamp: int | None = None
    parent_id: str | None = None
    branch_index: int | None = None
    is_active: bool = False
    edited: bool = False
    versions: list[MessageVersion] = Field(default_factory=list)
    current_version_index: int = 0
    files: list[Attachment] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


def prepare_new_message(message: Message, parent: Message | None) -> Message:
    """
    Validate a message about to be created and fill in the store-assigned fields.

    Shared by every 'MessageDatabase' backend so they agree on id and timestamp
    assignment, the initial version entry and the 'branch_index' rule. 'parent'
    is the already-loaded parent record, or None when the message is a root or
    the parent could not be found.
    """
    if message.role is None:
        raise ValidationError("Message role is required")
    if message.content is None:
        raise ValidationError("Message content is required")
    if not message.conversation_id:
        raise ValidationError("Message conversation_id is required")

    if message.parent_id is not None:
        if parent is None:
            raise ValidationError(f"Parent message {message.parent_id} does not exist")
        if parent.conversation_id != message.conversation_id:
            raise ValidationError(
                f"Parent message {parent.id} belongs to conversation {parent.conversation_id}, "
                f"not {message.conversation_id}"
            )

    expected_branch_index = (parent.branch_index or 0) + 1 if parent is not None else 0
    if message.branch_index is not None and message.branch_index != expected_branch_index:
        raise ValidationError(
            f"Message branch_index {message.branch_index} does not match parent depth (expected {expected_branch_index})"
        )

    timestamp = message.create_timestamp or get_current_timestamp()
    return message.model_copy(
        update={
            "id": message.id or generate_uid(),
            "create_timestamp": timestamp,
            "branch_index": expected_branch_index,
            "versions": message.versions
            or [MessageVersion(content=message.content, timestamp=timestamp, is_current=True)],
            "current_version_index": message.current_version_index if message.versions else 0,
        },
        deep=True,
    )


def apply_content_edit(message: Message, content: str) -> Message:
    """Return 'message' with 'content' recorded as a new current version."""
    versions = [version.model_copy(update={"is_current": False}) for version in message.versions]
    versions.append(MessageVersion(content=content, timestamp=get_current_timestamp(), is_current=True))
    return message.model_copy(
        update={
            "content": content,
            "edited": True,
            "versions": versions,
            "current_version_index": len(versions) - 1,
        }
    )


def apply_content_overwrite(message: Message, content: str) -> Message:
    """Return 'message' with its current version replaced by 'content', without recording an edit."""
    versions = [
        version.model_copy(update={"content": content}) if i == message.current_version_index else version
        for i, version in enumerate(message.versions)
    ]
    return message.model_copy(update={"content": content, "versions": versions})


def apply_version_selection(message: Message, index: int) -> Message:
    """Return 'message' showing the content of version 'index'."""
    if not 0 <= index < len(message.versions):
        raise ValidationError(f"Message {message.id} has no version {index} ({len(message.versions)} versions)")
    versions = [version.model_copy(update={"is_current": i == index}) for i, version in enumerate(message.versions)]
    return message.model_copy(
        update={"content": versions[index].content, "versions": versions, "current_version_index": index}
    )


class MessageDatabase(ABC):
    """Abstract repository for 'Message' records."""

    @abstractmethod
    async def create_message(self, message: Message) -> Message:
        """Validate and persist 'message', returning the stored record with its assigned id."""
        pass

    @abstractmethod
    async def get_messages_by_conversation_id(self, conversation_id: str) -> list[Message]:
        """Return every message of the conversation. No ordering is guaranteed."""
        pass

    @abstractmethod
    async def get_message_by_id(self, message_id: str) -> Message:
        """Return the message or raise 'MessageNotFoundError'."""
        pass

    @abstractmethod
    async def update_message(
        self,
        message_id: str,
        content: str | None = None,
        files: list[Attachment] | None = None,
        metadata: dict[str, Any] | None = None,
        track_version: bool = True,
    ) -> Message:
        """
        Patch a message.

        A content change with 'track_version=True' is an edit: it is appended to
        'versions' and sets 'edited'. 'track_version=False' overwrites the
        content silently, which is how generation placeholders are finalized.
        'metadata' is merged into the existing metadata.
        """
        pass

    @abstractmethod
    async def select_version(self, message_id: str, index: int) -> Message:
        """Make version 'index' the current content of the message."""
        pass

    @abstractmethod
    async def delete_message(self, message_id: str) -> bool:
        pass

    @abstractmethod
    async def activate_messages(self, conversation_id: str, message_ids: Sequence[str]) -> None:
        """Set 'is_active=True' on the given messages of the conversation."""
        pass

    @abstractmethod
    async def deactivate_messages_except(self, conversation_id: str, message_ids: Sequence[str]) -> None:
        """Set 'is_active=False' on every message of the conversation not in 'message_ids'."""
        pass

    async def set_active_flags(self, conversation_id: str, active_ids: Sequence[str]) -> None:
        """
        Flag exactly 'active_ids' as active within the conversation.

        Backends without multi-document transactions use this two-phase
        default: the new path is activated before the rest is deactivated, so
        a concurrent reader may briefly see too many active messages but never
        none. Transactional backends override it with a single atomic update.
        """
        await self.activate_messages(conversation_id, active_ids)
        await self.deactivate_messages_except(conversation_id, active_ids)
        logger.debug(f"Active flags of conversation {conversation_id} set on {len(active_ids)} messages")


async def get_message_or_none(message_db: MessageDatabase, message_id: str) -> Message | None:
    try:
        return await message_db.get_message_by_id(message_id)
    except MessageNotFoundError:
        return None
