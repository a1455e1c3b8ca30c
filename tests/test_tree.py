"""Tests for persistent tree operations and row assembly."""

from __future__ import annotations

from dataclasses import replace as dc_replace

import pytest

from taskboard.task_engine.errors import TreeIntegrityError
from taskboard.task_engine.model import BranchTask, LeafTask, RootTask, TaskStatus
from taskboard.task_engine.tree import (
    build_tree,
    find_by_id,
    find_path,
    flatten,
    insert,
    levels_consistent,
    parent_of,
    remove,
    replace,
    to_rows,
)


@pytest.fixture
def forest() -> tuple[RootTask, ...]:
    b1 = BranchTask(
        id="b1",
        name="Branch one",
        parent_id="r1",
        subtasks=(
            LeafTask(id="l1", name="Leaf one", parent_id="b1"),
            LeafTask(id="l2", name="Leaf two", parent_id="b1"),
        ),
    )
    b2 = BranchTask(id="b2", name="Branch two", parent_id="r1")
    return (
        RootTask(id="r1", name="Root one", subtasks=(b1, b2)),
        RootTask(id="r2", name="Root two"),
    )


class TestTraversal:
    def test_flatten_is_pre_order(self, forest: tuple[RootTask, ...]) -> None:
        assert [t.id for t in flatten(forest)] == ["r1", "b1", "l1", "l2", "b2", "r2"]

    def test_find_by_id(self, forest: tuple[RootTask, ...]) -> None:
        assert find_by_id(forest, "l2").name == "Leaf two"
        assert find_by_id(forest, "missing") is None

    def test_find_path_and_parent(self, forest: tuple[RootTask, ...]) -> None:
        assert [t.id for t in find_path(forest, "l1")] == ["r1", "b1", "l1"]
        assert find_path(forest, "nope") == ()
        assert parent_of(forest, "l1").id == "b1"
        assert parent_of(forest, "r2") is None

    def test_single_task_is_a_tree(self, forest: tuple[RootTask, ...]) -> None:
        assert [t.id for t in flatten(forest[0])] == ["r1", "b1", "l1", "l2", "b2"]


class TestReplace:
    def test_rebuilds_only_the_path(self, forest: tuple[RootTask, ...]) -> None:
        updated = replace(forest, "l1", lambda t: dc_replace(t, status=TaskStatus.COMPLETED))

        assert updated is not forest
        assert find_by_id(updated, "l1").status == TaskStatus.COMPLETED
        # Untouched siblings and roots are shared, not copied.
        assert updated[1] is forest[1]
        assert find_by_id(updated, "b2") is find_by_id(forest, "b2")
        assert find_by_id(updated, "l2") is find_by_id(forest, "l2")
        # The input is left as it was.
        assert find_by_id(forest, "l1").status == TaskStatus.NOT_STARTED

    def test_unknown_id_returns_same_object(self, forest: tuple[RootTask, ...]) -> None:
        assert replace(forest, "missing", lambda t: dc_replace(t, name="x")) is forest

    def test_identity_updater_returns_same_object(self, forest: tuple[RootTask, ...]) -> None:
        assert replace(forest, "b1", lambda t: t) is forest

    def test_variant_change_rejected(self, forest: tuple[RootTask, ...]) -> None:
        with pytest.raises(TreeIntegrityError, match="changed task"):
            replace(forest, "l1", lambda t: BranchTask(id=t.id, name=t.name))

    def test_id_change_rejected(self, forest: tuple[RootTask, ...]) -> None:
        with pytest.raises(TreeIntegrityError, match="id"):
            replace(forest, "r2", lambda t: dc_replace(t, id="r9"))

    def test_list_input_stays_a_list(self, forest: tuple[RootTask, ...]) -> None:
        updated = replace(list(forest), "r2", lambda t: dc_replace(t, name="Renamed"))
        assert isinstance(updated, list)
        assert updated[1].name == "Renamed"


class TestRemove:
    def test_removes_whole_subtree(self, forest: tuple[RootTask, ...]) -> None:
        updated = remove(forest, "b1")
        assert [t.id for t in flatten(updated)] == ["r1", "b2", "r2"]
        assert updated[1] is forest[1]

    def test_removes_root(self, forest: tuple[RootTask, ...]) -> None:
        assert [t.id for t in remove(forest, "r1")] == ["r2"]

    def test_unknown_id_returns_same_object(self, forest: tuple[RootTask, ...]) -> None:
        assert remove(forest, "missing") is forest


class TestInsert:
    def test_insert_root(self, forest: tuple[RootTask, ...]) -> None:
        updated = insert(forest, None, RootTask(id="r3", name="Root three"))
        assert [t.id for t in updated] == ["r1", "r2", "r3"]

    def test_insert_retypes_to_depth(self, forest: tuple[RootTask, ...]) -> None:
        updated = insert(forest, "b2", RootTask(id="n1", name="New leaf"))
        node = find_by_id(updated, "n1")
        assert isinstance(node, LeafTask)
        assert node.parent_id == "b2"
        assert levels_consistent(updated)

    def test_insert_under_leaf_rejected(self, forest: tuple[RootTask, ...]) -> None:
        with pytest.raises(TreeIntegrityError):
            insert(forest, "l1", LeafTask(id="n1", name="Too deep"))

    def test_insert_subtree_that_would_be_too_deep(self, forest: tuple[RootTask, ...]) -> None:
        deep = BranchTask(id="n1", name="Branch", subtasks=(LeafTask(id="n2", name="Leaf"),))
        with pytest.raises(TreeIntegrityError, match="maximum depth"):
            insert(forest, "b1", deep)

    def test_unknown_parent_is_noop(self, forest: tuple[RootTask, ...]) -> None:
        assert insert(forest, "missing", LeafTask(id="n1", name="Lost")) is forest

    def test_insert_root_into_single_task_rejected(self, forest: tuple[RootTask, ...]) -> None:
        with pytest.raises(TreeIntegrityError):
            insert(forest[0], None, RootTask(id="r3", name="Root three"))


class TestBuildTree:
    def test_assembles_levels_from_parent_links(self) -> None:
        rows = [
            {"id": "l1", "name": "Leaf", "parent_id": "b1"},
            {"id": "r1", "name": "Root"},
            {"id": "b1", "name": "Branch", "parent_id": "r1"},
        ]
        forest = build_tree(rows)
        assert [t.id for t in forest] == ["r1"]
        assert isinstance(find_by_id(forest, "b1"), BranchTask)
        assert isinstance(find_by_id(forest, "l1"), LeafTask)
        assert levels_consistent(forest)

    def test_orphans_become_roots(self) -> None:
        forest = build_tree([{"id": "b1", "name": "Orphan", "parent_id": "gone"}])
        assert isinstance(forest[0], RootTask)
        assert forest[0].parent_id is None

    def test_too_deep_rejected(self) -> None:
        rows = [
            {"id": "a", "name": "A"},
            {"id": "b", "name": "B", "parent_id": "a"},
            {"id": "c", "name": "C", "parent_id": "b"},
            {"id": "d", "name": "D", "parent_id": "c"},
        ]
        with pytest.raises(TreeIntegrityError, match="nested below"):
            build_tree(rows)

    def test_cycle_rejected(self) -> None:
        rows = [
            {"id": "a", "name": "A", "parent_id": "b"},
            {"id": "b", "name": "B", "parent_id": "a"},
        ]
        with pytest.raises(TreeIntegrityError, match="cycle"):
            build_tree(rows)

    def test_duplicate_id_rejected(self) -> None:
        with pytest.raises(TreeIntegrityError, match="Duplicate"):
            build_tree([{"id": "a", "name": "A"}, {"id": "a", "name": "Again"}])

    def test_rows_round_trip(self, forest: tuple[RootTask, ...]) -> None:
        assert build_tree(to_rows(forest)) == forest
