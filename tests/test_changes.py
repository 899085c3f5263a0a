"""Tests for field merging and change sets."""

from deedflow.changes import compute_changes, merge_fields
from deedflow.types import ChangeKind


class TestMergeFields:

    def test_patch_replaces_whole_keys(self):
        current = {"seller": {"name": "A", "address": "X"}, "price": 1}
        merged = merge_fields(current, {"seller": {"name": "B"}})
        assert merged == {"seller": {"name": "B"}, "price": 1}
        assert current["seller"]["address"] == "X"


class TestComputeChanges:
    """Change sets name the innermost differing key."""

    def test_no_changes(self):
        assert compute_changes({"a": 1}, {"a": 1}) == []

    def test_kinds(self):
        changes = compute_changes({"a": 1, "b": 2}, {"b": 3, "c": 4})
        assert [(c.path, c.kind) for c in changes] == [
            ("a", ChangeKind.REMOVED),
            ("b", ChangeKind.MODIFIED),
            ("c", ChangeKind.ADDED),
        ]
        assert changes[1].old == 2
        assert changes[1].new == 3

    def test_nested_paths(self):
        original = {"seller": {"name": "R. Iyer", "address": "12 Lake Road"}}
        edited = {"seller": {"name": "R. K. Iyer", "address": "12 Lake Road"}}
        changes = compute_changes(original, edited)
        assert [c.to_dict() for c in changes] == [
            {"path": "seller.name", "kind": "modified", "old": "R. Iyer", "new": "R. K. Iyer"},
        ]

    def test_lists_compare_whole(self):
        changes = compute_changes({"heirs": ["A", "B"]}, {"heirs": ["A", "C"]})
        assert [c.path for c in changes] == ["heirs"]

    def test_dict_replaced_by_scalar(self):
        changes = compute_changes({"seller": {"name": "A"}}, {"seller": "A"})
        assert changes[0].kind == ChangeKind.MODIFIED
        assert changes[0].path == "seller"
