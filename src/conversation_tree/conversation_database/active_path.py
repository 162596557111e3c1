"""
Active-path switching.

A conversation's active path is stored twice: authoritatively as
'Conversation.active_path' and denormalised as the 'is_active' flag of every
message. 'ActivePathController' is the only writer of both. Every update goes
through the same sequence:

1. resolve the target ids (a branch id from 'build_branches' or an explicit list),
2. validate them against the parent-chain invariant,
3. write 'Conversation.active_path',
4. sync the message flags.

Step 4 is retried when it fails. If it still fails, the conversation already
points at the new path while the flags lag behind, which is reported as
'RecoverableInconsistency': repeating the same call repairs it.
"""

from collections.abc import Sequence

from loguru import logger

from conversation_tree.conversation_database.data_models.conversation import Conversation, ConversationDatabase
from conversation_tree.conversation_database.data_models.message import MessageDatabase
from conversation_tree.conversation_database.paths import Branch, build_branches, find_branch, validate_path
from conversation_tree.errors import PathNotFoundError, RecoverableInconsistency, ValidationError


class ActivePathController:
    """
    Selects and switches the displayed branch of a conversation.

    Attributes:
        flag_write_retries: How many times a failed 'set_active_flags' call is
            repeated before 'RecoverableInconsistency' is raised.
    """

    def __init__(
        self,
        conversation_db: ConversationDatabase,
        message_db: MessageDatabase,
        flag_write_retries: int = 1,
    ) -> None:
        self.conversation_db = conversation_db
        self.message_db = message_db
        self.flag_write_retries = flag_write_retries

    async def get_branches(self, conversation_id: str) -> list[Branch]:
        conversation = await self.conversation_db.get_conversation_by_id(conversation_id)
        messages = await self.message_db.get_messages_by_conversation_id(conversation_id)
        return build_branches(messages, conversation.active_path)

    async def switch_to(
        self,
        conversation_id: str,
        path_id: str | None = None,
        message_ids: Sequence[str] | None = None,
    ) -> Conversation:
        """
        Make a branch the conversation's active path.

        Pass either 'path_id' (an id from the current 'get_branches'
        enumeration) or 'message_ids' (an explicit root-to-leaf id list, e.g.
        right after creating a new branch).

        Raises:
            PathNotFoundError: 'path_id' is not in the current enumeration.
            InvalidPathError: the resolved ids are not a connected parent chain.
            RecoverableInconsistency: the path was stored but the flags could not be synced.
        """
        if (path_id is None) == (message_ids is None):
            raise ValidationError("Exactly one of path_id or message_ids is required")

        if path_id is not None:
            branches = await self.get_branches(conversation_id)
            branch = find_branch(branches, path_id)
            if branch is None:
                raise PathNotFoundError(path_id, [b.id for b in branches])
            target = branch.message_ids
            logger.info(f"Switching conversation {conversation_id} to {path_id} ({len(target)} messages)")
        else:
            target = list(message_ids or [])
            logger.info(f"Switching conversation {conversation_id} to explicit path ({len(target)} messages)")

        return await self.update_active_path(conversation_id, target)

    async def update_active_path(self, conversation_id: str, active_path: Sequence[str]) -> Conversation:
        """Validate 'active_path', store it on the conversation and sync the message flags."""
        path = list(active_path)
        messages = await self.message_db.get_messages_by_conversation_id(conversation_id)
        validate_path(path, messages, conversation_id)

        conversation = await self.conversation_db.update_active_path(conversation_id, path)
        await self._sync_flags(conversation_id, path)
        return conversation

    async def _sync_flags(self, conversation_id: str, path: list[str]) -> None:
        attempts = self.flag_write_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                await self.message_db.set_active_flags(conversation_id, path)
                return
            except Exception as exc:
                if attempt == attempts:
                    logger.error(f"Giving up syncing active flags of conversation {conversation_id}: {exc}")
                    raise RecoverableInconsistency(conversation_id, path) from exc
                logger.warning(
                    f"Syncing active flags of conversation {conversation_id} failed "
                    f"(attempt {attempt}/{attempts}), retrying: {exc}"
                )
