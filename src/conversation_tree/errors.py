"""
Exception taxonomy for the conversation tree.

Validation and path errors ('ValidationError', 'InvalidPathError',
'PathNotFoundError') signal a logic or data-integrity bug on the caller's side
and are never retried. 'UpstreamError' wraps completion-service failures and is
surfaced as-is. 'RecoverableInconsistency' means the conversation's active path
and the per-message 'is_active' flags diverged after a failed flag write; the
caller may retry the same operation.
"""


class ConversationTreeError(Exception):
    """Base class for every error raised by the toolkit."""


class ValidationError(ConversationTreeError):
    """Malformed input to a message or conversation write."""


class InvalidPathError(ConversationTreeError):
    """An active path that is not a connected parent chain of existing messages."""

    def __init__(self, message: str, path: list[str] | None = None) -> None:
        super().__init__(message)
        self.path = list(path or [])


class PathNotFoundError(ConversationTreeError):
    """A branch id that is not part of the current branch enumeration."""

    def __init__(self, path_id: str, available: list[str] | None = None) -> None:
        super().__init__(f"Path {path_id!r} not found (available: {available or []})")
        self.path_id = path_id
        self.available = list(available or [])


class NoValidMessagesError(ConversationTreeError):
    """Context assembly found nothing to send to the completion service."""


class UpstreamError(ConversationTreeError):
    """The completion service failed (rate limit, network, invalid response)."""

    def __init__(self, message: str, model: str | None = None) -> None:
        super().__init__(message)
        self.model = model


class RecoverableInconsistency(ConversationTreeError):
    """The active path was written but the 'is_active' flags could not be synced."""

    def __init__(self, conversation_id: str, active_path: list[str]) -> None:
        super().__init__(f"Active flags of conversation {conversation_id} are out of sync with its active path")
        self.conversation_id = conversation_id
        self.active_path = list(active_path)


class ConversationNotFoundError(ConversationTreeError, LookupError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation with id {conversation_id} not found")
        self.conversation_id = conversation_id


class MessageNotFoundError(ConversationTreeError, LookupError):
    def __init__(self, message_id: str) -> None:
        super().__init__(f"Message with id {message_id} not found")
        self.message_id = message_id


class AccessDeniedError(ConversationTreeError):
    def __init__(self, user_id: str, conversation_id: str) -> None:
        super().__init__(f"User {user_id} does not have access to conversation {conversation_id}")
        self.user_id = user_id
        self.conversation_id = conversation_id
