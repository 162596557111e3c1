"""Tests for branch discovery and active-path validation over raw message sets."""

import pytest

from conftest import make_message
from conversation_tree.conversation_database.paths import MessageTree, build_branches, find_branch, validate_path
from conversation_tree.errors import InvalidPathError
from conversation_tree.llms.base import Roles


def _ids(branches) -> list[list[str]]:
    return [branch.message_ids for branch in branches]


class TestBuildBranches:
    def test_empty_conversation_has_no_branches(self) -> None:
        assert build_branches([]) == []

    def test_linear_conversation_has_single_branch(self) -> None:
        messages = [
            make_message("u1", None, 0, 1),
            make_message("a1", "u1", 1, 2, Roles.ASSISTANT),
            make_message("u2", "a1", 2, 3),
            make_message("a2", "u2", 3, 4, Roles.ASSISTANT),
        ]

        branches = build_branches(messages, ["u1", "a1", "u2", "a2"])

        assert len(branches) == 1
        assert branches[0].id == "path_0"
        assert branches[0].message_ids == ["u1", "a1", "u2", "a2"]
        assert branches[0].is_active is True

    def test_message_order_in_input_does_not_matter(self) -> None:
        messages = [
            make_message("a1", "u1", 1, 2, Roles.ASSISTANT),
            make_message("u1", None, 0, 1),
            make_message("a2", "u1", 1, 3, Roles.ASSISTANT),
        ]

        assert _ids(build_branches(messages)) == [["u1", "a1"], ["u1", "a2"]]

    def test_regenerated_reply_creates_sibling_branch(self) -> None:
        """A user message with two assistant children yields one branch per child, oldest first."""
        messages = [
            make_message("u1", None, 0, 1),
            make_message("a1", "u1", 1, 2, Roles.ASSISTANT),
            make_message("a2", "u1", 1, 3, Roles.ASSISTANT),
        ]

        branches = build_branches(messages, ["u1", "a2"])

        assert _ids(branches) == [["u1", "a1"], ["u1", "a2"]]
        assert [b.id for b in branches] == ["path_0", "path_1"]
        assert [b.is_active for b in branches] == [False, True]

    def test_branch_continues_past_fork_child(self) -> None:
        messages = [
            make_message("u1", None, 0, 1),
            make_message("a1", "u1", 1, 2, Roles.ASSISTANT),
            make_message("u2", "a1", 2, 3),
            make_message("a2", "u2", 3, 4, Roles.ASSISTANT),
            make_message("a3", "u1", 1, 5, Roles.ASSISTANT),
        ]

        assert _ids(build_branches(messages)) == [["u1", "a1", "u2", "a2"], ["u1", "a3"]]

    def test_nested_forks_yield_every_maximal_path_once(self) -> None:
        messages = [
            make_message("u1", None, 0, 1),
            make_message("a1", "u1", 1, 2, Roles.ASSISTANT),
            make_message("u2", "a1", 2, 3),
            make_message("a2", "u2", 3, 4, Roles.ASSISTANT),
            make_message("a3", "u1", 1, 5, Roles.ASSISTANT),
            make_message("a4", "u2", 3, 6, Roles.ASSISTANT),
        ]

        assert _ids(build_branches(messages)) == [
            ["u1", "a1", "u2", "a2"],
            ["u1", "a1", "u2", "a4"],
            ["u1", "a3"],
        ]

    def test_fork_at_assistant_message(self) -> None:
        """Sending after switching to an older branch gives an assistant message two user children."""
        messages = [
            make_message("u1", None, 0, 1),
            make_message("a1", "u1", 1, 2, Roles.ASSISTANT),
            make_message("u2", "a1", 2, 3),
            make_message("a2", "u2", 3, 4, Roles.ASSISTANT),
            make_message("u3", "a1", 2, 5),
            make_message("a3", "u3", 3, 6, Roles.ASSISTANT),
        ]

        assert _ids(build_branches(messages)) == [["u1", "a1", "u2", "a2"], ["u1", "a1", "u3", "a3"]]

    def test_inactive_messages_remain_reachable(self) -> None:
        messages = [
            make_message("u1", None, 0, 1),
            make_message("a1", "u1", 1, 2, Roles.ASSISTANT),
            make_message("a2", "u1", 1, 3, Roles.ASSISTANT),
        ]
        for message in messages:
            message.is_active = message.id != "a1"

        assert ["u1", "a1"] in _ids(build_branches(messages, ["u1", "a2"]))

    def test_branch_ids_are_stable_between_calls(self) -> None:
        messages = [
            make_message("u1", None, 0, 1),
            make_message("a1", "u1", 1, 2, Roles.ASSISTANT),
            make_message("a2", "u1", 1, 3, Roles.ASSISTANT),
        ]

        first = build_branches(messages)
        second = build_branches(list(reversed(messages)))

        assert [(b.id, b.message_ids) for b in first] == [(b.id, b.message_ids) for b in second]

    def test_active_flag_requires_exact_match(self) -> None:
        messages = [
            make_message("u1", None, 0, 1),
            make_message("a1", "u1", 1, 2, Roles.ASSISTANT),
            make_message("u2", "a1", 2, 3),
        ]

        branches = build_branches(messages, ["u1", "a1"])

        assert [b.is_active for b in branches] == [False]

    def test_system_root_is_part_of_every_branch(self) -> None:
        messages = [
            make_message("s", None, 0, 1, Roles.SYSTEM),
            make_message("u1", "s", 1, 2),
            make_message("a1", "u1", 2, 3, Roles.ASSISTANT),
            make_message("a2", "u1", 2, 4, Roles.ASSISTANT),
        ]

        assert _ids(build_branches(messages)) == [["s", "u1", "a1"], ["s", "u1", "a2"]]

    def test_messages_without_root_yield_no_branch(self) -> None:
        messages = [make_message("a1", "missing", 1, 1, Roles.ASSISTANT)]

        assert build_branches(messages) == []

    def test_find_branch(self) -> None:
        branches = build_branches([make_message("u1", None, 0, 1)])

        assert find_branch(branches, "path_0") is branches[0]
        assert find_branch(branches, "path_9") is None


class TestMessageTree:
    def test_ancestry_walks_up_to_the_root(self) -> None:
        tree = MessageTree(
            [
                make_message("u1", None, 0, 1),
                make_message("a1", "u1", 1, 2, Roles.ASSISTANT),
                make_message("u2", "a1", 2, 3),
            ]
        )

        assert tree.ancestry("u2") == ["u1", "a1", "u2"]
        assert tree.ancestry("u1") == ["u1"]
        assert tree.ancestry("unknown") == []

    def test_children_are_kept_in_creation_order(self) -> None:
        tree = MessageTree(
            [
                make_message("a2", "u1", 1, 3, Roles.ASSISTANT),
                make_message("u1", None, 0, 1),
                make_message("a1", "u1", 1, 2, Roles.ASSISTANT),
            ]
        )

        assert [child.id for child in tree.children_of["u1"]] == ["a1", "a2"]
        assert tree.fork_points() == ["u1"]


class TestValidatePath:
    messages = [
        make_message("u1", None, 0, 1),
        make_message("a1", "u1", 1, 2, Roles.ASSISTANT),
        make_message("u2", "a1", 2, 3),
        make_message("a2", "u1", 1, 4, Roles.ASSISTANT),
    ]

    def test_connected_chain_is_valid(self) -> None:
        validate_path(["u1", "a1", "u2"], self.messages, "conv-1")
        validate_path(["u1", "a2"], self.messages, "conv-1")

    def test_empty_path_is_valid(self) -> None:
        validate_path([], self.messages, "conv-1")

    def test_gap_in_chain_is_rejected(self) -> None:
        with pytest.raises(InvalidPathError) as exc_info:
            validate_path(["u1", "u2"], self.messages, "conv-1")

        assert exc_info.value.path == ["u1", "u2"]

    def test_path_must_start_at_root(self) -> None:
        with pytest.raises(InvalidPathError):
            validate_path(["a1", "u2"], self.messages, "conv-1")

    def test_siblings_cannot_follow_each_other(self) -> None:
        with pytest.raises(InvalidPathError):
            validate_path(["u1", "a1", "a2"], self.messages, "conv-1")

    def test_unknown_or_foreign_message_is_rejected(self) -> None:
        foreign = make_message("x1", None, 0, 5, conversation_id="conv-2")

        with pytest.raises(InvalidPathError):
            validate_path(["u1", "missing"], self.messages, "conv-1")
        with pytest.raises(InvalidPathError):
            validate_path(["x1"], [*self.messages, foreign], "conv-1")
