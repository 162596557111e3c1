"""
Branch discovery over a conversation's message tree.

Messages only store a back-reference to their parent. 'build_branches' indexes
the full message set of a conversation (an id map plus a reverse
parent -> children map, built per call) and enumerates every distinct
root-to-leaf branch:

1. Fork points are messages with more than one child. Regenerating an answer
   gives a user message several assistant children; sending a new message after
   switching to an older branch gives an assistant message several user
   children. Both are treated the same way.
2. For every fork point, in the order the fork points were created, each child
   (oldest first) yields the path root -> fork point -> child, extended forward
   through the child whose 'branch_index' is one deeper. When the walk meets
   another fork it recurses into every child, so each emitted path is maximal.
3. Identical paths reached from several fork points are reported once.
4. A conversation without forks has one branch: the walk from its root.

Branch ids ('path_0', 'path_1', ...) follow emission order, which is stable for
as long as no message is added. 'validate_path' checks the parent-chain
invariant of an active path against the same message set.
"""

from collections.abc import Iterable, Sequence

from loguru import logger
from pydantic import BaseModel

from conversation_tree.conversation_database.data_models.message import Message
from conversation_tree.errors import InvalidPathError


class Branch(BaseModel):
    """A root-to-leaf path through the conversation tree. Derived, never stored."""

    id: str
    message_ids: list[str]
    is_active: bool = False


def _creation_key(message: Message) -> tuple[int, int, str]:
    return (message.create_timestamp or 0, message.branch_index or 0, message.id or "")


def _sibling_key(message: Message) -> tuple[int, int, str]:
    return (message.branch_index or 0, message.create_timestamp or 0, message.id or "")


class MessageTree:
    """
    Arena and index over one conversation's messages.

    'by_id' maps ids to messages; 'children_of' maps a parent id to its children
    in creation order. Both are rebuilt from scratch for every query.
    """

    def __init__(self, messages: Iterable[Message]) -> None:
        ordered = sorted(messages, key=_creation_key)
        self.by_id: dict[str, Message] = {message.id: message for message in ordered if message.id}
        self.children_of: dict[str, list[Message]] = {}
        self.roots: list[Message] = []
        for message in ordered:
            if message.parent_id is None:
                self.roots.append(message)
            else:
                self.children_of.setdefault(message.parent_id, []).append(message)

    def ancestry(self, message_id: str) -> list[str]:
        """Return the ids from the root down to and including 'message_id'."""
        chain: list[str] = []
        seen: set[str] = set()
        current = self.by_id.get(message_id)
        while current is not None and current.id not in seen:
            seen.add(current.id)  # type: ignore[arg-type]
            chain.append(current.id)  # type: ignore[arg-type]
            current = self.by_id.get(current.parent_id) if current.parent_id else None
        chain.reverse()
        return chain

    def next_steps(self, message: Message) -> list[Message]:
        """Children one level deeper than 'message', oldest first."""
        depth = (message.branch_index or 0) + 1
        return sorted(
            (child for child in self.children_of.get(message.id or "", []) if child.branch_index == depth),
            key=_sibling_key,
        )

    def fork_points(self) -> list[str]:
        return [parent_id for parent_id, children in self.children_of.items() if len(children) > 1]

    def continuations(self, message: Message, visited: frozenset[str] = frozenset()) -> list[list[str]]:
        """
        Every maximal forward path starting below 'message'.

        Returns '[[]]' for a leaf. A single eligible child is followed
        linearly; several eligible children each start their own continuation.
        """
        steps = [child for child in self.next_steps(message) if child.id not in visited]
        if not steps:
            return [[]]
        paths: list[list[str]] = []
        for child in steps:
            for rest in self.continuations(child, visited | {child.id}):  # type: ignore[operator]
                paths.append([child.id, *rest])  # type: ignore[list-item]
        return paths


def build_branches(messages: Sequence[Message], active_path: Sequence[str] = ()) -> list[Branch]:
    """
    Enumerate every root-to-leaf branch of a conversation.

    Args:
        messages: The full, unordered message set of one conversation.
        active_path: The conversation's current active path, used to tag the
            branch that is displayed.

    Returns:
        The branches in a stable order; '[]' for an empty conversation.
    """
    if not messages:
        return []

    tree = MessageTree(messages)
    active = list(active_path)
    seen: set[tuple[str, ...]] = set()
    paths: list[list[str]] = []

    def emit(path: list[str]) -> None:
        key = tuple(path)
        if key not in seen:
            seen.add(key)
            paths.append(path)

    fork_points = tree.fork_points()
    for parent_id in fork_points:
        if parent_id not in tree.by_id:
            logger.warning(f"Fork point {parent_id} references a missing message, skipping")
            continue
        common_history = tree.ancestry(parent_id)
        visited = frozenset(common_history)
        for child in sorted(tree.children_of[parent_id], key=_sibling_key):
            if child.id in visited:
                continue
            for rest in tree.continuations(child, visited | {child.id}):  # type: ignore[operator]
                emit([*common_history, child.id, *rest])  # type: ignore[list-item]

    if not paths:
        if not tree.roots:
            logger.warning("Conversation has messages but no root message, no branch can be built")
            return []
        if len(tree.roots) > 1:
            logger.warning(f"Conversation has {len(tree.roots)} root messages, walking from the earliest")
        root = tree.roots[0]
        for rest in tree.continuations(root, frozenset({root.id})):  # type: ignore[arg-type]
            emit([root.id, *rest])  # type: ignore[list-item]

    logger.debug(f"Built {len(paths)} branches from {len(messages)} messages ({len(fork_points)} fork points)")
    return [
        Branch(id=f"path_{index}", message_ids=path, is_active=path == active) for index, path in enumerate(paths)
    ]


def find_branch(branches: Sequence[Branch], path_id: str) -> Branch | None:
    return next((branch for branch in branches if branch.id == path_id), None)


def validate_path(path: Sequence[str], messages: Sequence[Message], conversation_id: str) -> None:
    """
    Check that 'path' is empty or a connected parent chain of the conversation's messages.

    The chain must start at a root and every entry must be a child of the
    previous one. Raises 'InvalidPathError' otherwise.
    """
    if not path:
        return

    by_id = {message.id: message for message in messages}
    previous_id: str | None = None
    for position, message_id in enumerate(path):
        message = by_id.get(message_id)
        if message is None or message.conversation_id != conversation_id:
            raise InvalidPathError(
                f"Message {message_id} at position {position} is not part of conversation {conversation_id}",
                list(path),
            )
        if message.parent_id != previous_id:
            raise InvalidPathError(
                f"Message {message_id} at position {position} has parent {message.parent_id}, expected {previous_id}",
                list(path),
            )
        previous_id = message_id
