"""Tests for the file-backed reference store."""

from __future__ import annotations

import asyncio
import threading
from datetime import date
from pathlib import Path

import pytest
import yaml

from taskboard.task_engine.errors import RemoteError
from taskboard.task_engine.filtering import FilterSpec, SortSpec
from taskboard.task_engine.model import BranchTask, LeafTask, RootTask, TaskStatus
from taskboard.task_engine.remote import TaskRemote
from taskboard.task_engine.store import TaskStore
from taskboard.task_engine.tree import find_by_id, flatten

TODAY = date(2024, 5, 1)


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    d = tmp_path / ".taskboard"
    d.mkdir()
    return d


@pytest.fixture
def store(state_dir: Path) -> TaskStore:
    return TaskStore(state_dir, clock=lambda: TODAY)


def _create(store: TaskStore, **payload) -> str:
    return asyncio.run(store.create_task(payload))


def _list(store: TaskStore, filters=None, sort=None) -> list[RootTask]:
    return asyncio.run(store.list_tasks(FilterSpec.parse(filters), SortSpec.parse(sort)))


class TestTransactions:
    def test_empty_read(self, store: TaskStore) -> None:
        assert store.read_rows() == []
        assert not store.path.exists()

    def test_add_rows_persists_yaml(self, store: TaskStore) -> None:
        store.add_rows([{"id": "t1", "name": "First"}, {"id": "t2", "name": "Second"}])

        data = yaml.safe_load(store.path.read_text(encoding="utf-8"))
        assert data["version"] == 1
        assert [r["id"] for r in data["tasks"]] == ["t1", "t2"]

    def test_duplicate_add_raises(self, store: TaskStore) -> None:
        with store.transaction() as tx:
            tx.add({"id": "t1", "name": "First"})
            with pytest.raises(ValueError, match="already exists"):
                tx.add({"id": "t1", "name": "Duplicate"})

    def test_untouched_transaction_does_not_write(self, store: TaskStore) -> None:
        with store.transaction() as tx:
            assert tx.live_rows() == []
        assert not store.path.exists()

    def test_concurrent_writers(self, store: TaskStore) -> None:
        def _writer(prefix: str) -> None:
            for i in range(10):
                store.add_rows([{"id": f"{prefix}-{i}", "name": f"Task {prefix} {i}"}])

        threads = [threading.Thread(target=_writer, args=(p,)) for p in ("a", "b", "c")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(store.read_rows()) == 30


class TestRemoteProtocol:
    def test_store_is_a_task_remote(self, store: TaskStore) -> None:
        assert isinstance(store, TaskRemote)


class TestCreate:
    def test_create_root_and_nested(self, store: TaskStore) -> None:
        root = _create(store, name="Launch")
        branch = _create(store, name="Copy", parent_id=root)
        leaf = _create(store, name="Draft", parent_id=branch, status="in-review")

        forest = _list(store)
        assert [t.id for t in forest] == [root]
        assert isinstance(find_by_id(forest, branch), BranchTask)
        created = find_by_id(forest, leaf)
        assert isinstance(created, LeafTask)
        assert created.status == TaskStatus.IN_REVIEW

    def test_defaults_and_timestamps(self, store: TaskStore) -> None:
        task_id = _create(store, name="Launch")
        row = store.read_rows()[0]
        assert row["id"] == task_id
        assert row["status"] == "not-started"
        assert row["priority"] == "medium"
        assert row["level"] == 0
        assert row["created_at"] == row["updated_at"]

    def test_rejects_level_three(self, store: TaskStore) -> None:
        root = _create(store, name="Launch")
        branch = _create(store, name="Copy", parent_id=root)
        leaf = _create(store, name="Draft", parent_id=branch)
        with pytest.raises(RemoteError, match="maximum depth"):
            _create(store, name="Too deep", parent_id=leaf)

    def test_rejects_unknown_parent(self, store: TaskStore) -> None:
        with pytest.raises(RemoteError, match="Parent task not found"):
            _create(store, name="Orphan", parent_id="missing")

    def test_rejects_short_name(self, store: TaskStore) -> None:
        with pytest.raises(RemoteError) as excinfo:
            _create(store, name="ab")
        assert excinfo.value.operation == "create_task"


class TestSetStatus:
    def test_updates_status_and_timestamp(self, store: TaskStore) -> None:
        task_id = _create(store, name="Launch")
        before = store.read_rows()[0]["updated_at"]
        asyncio.run(store.set_status(task_id, TaskStatus.BLOCKED))

        row = store.read_rows()[0]
        assert row["status"] == "blocked"
        assert str(row["updated_at"]) >= str(before)

    def test_unknown_task(self, store: TaskStore) -> None:
        with pytest.raises(RemoteError, match="not found"):
            asyncio.run(store.set_status("missing", TaskStatus.BLOCKED))


class TestDelete:
    def test_cascade_soft_deletes_subtree(self, store: TaskStore) -> None:
        root = _create(store, name="Launch")
        branch = _create(store, name="Copy", parent_id=root)
        _create(store, name="Draft", parent_id=branch)
        other = _create(store, name="Retro")

        asyncio.run(store.delete_task(root))

        assert [t.id for t in _list(store)] == [other]
        stored = store.read_rows(include_deleted=True)
        assert sum(1 for r in stored if r.get("deleted_at")) == 3

    def test_without_cascade_children_become_roots(self, store: TaskStore) -> None:
        root = _create(store, name="Launch")
        branch = _create(store, name="Copy", parent_id=root)

        asyncio.run(store.delete_task(root, cascade=False))

        forest = _list(store)
        assert [t.id for t in forest] == [branch]
        assert isinstance(forest[0], RootTask)

    def test_reparented_rows_accept_subtasks_at_their_new_depth(self, store: TaskStore) -> None:
        root = _create(store, name="Launch")
        branch = _create(store, name="Copy", parent_id=root)
        leaf = _create(store, name="Draft", parent_id=branch)

        asyncio.run(store.delete_task(root, cascade=False))
        child = _create(store, name="Proofread", parent_id=leaf)

        forest = _list(store)
        assert [t.id for t in forest] == [branch]
        assert isinstance(find_by_id(forest, leaf), BranchTask)
        assert isinstance(find_by_id(forest, child), LeafTask)
        assert next(r for r in store.read_rows() if r["id"] == child)["level"] == 2

    def test_deleting_twice_fails(self, store: TaskStore) -> None:
        task_id = _create(store, name="Launch")
        asyncio.run(store.delete_task(task_id))
        with pytest.raises(RemoteError, match="not found"):
            asyncio.run(store.delete_task(task_id))


class TestListAndAnalytics:
    @pytest.fixture
    def seeded(self, store: TaskStore) -> TaskStore:
        store.add_rows(
            [
                {"id": "r1", "name": "Launch plan", "status": "blocked", "due_date": "2024-04-30"},
                {"id": "b1", "name": "Copy", "parent_id": "r1", "level": 1, "status": "completed"},
                {"id": "r2", "name": "Retro notes", "due_date": "2024-05-01", "priority": "urgent"},
            ]
        )
        return store

    def test_filters_roots_with_store_clock(self, seeded: TaskStore) -> None:
        forest = _list(seeded, filters={"due": {"type": "overdue"}})
        assert [t.id for t in forest] == ["r1"]
        assert [t.id for t in flatten(forest)] == ["r1", "b1"]

    def test_sorts_roots(self, seeded: TaskStore) -> None:
        forest = _list(seeded, sort={"field": "priority", "direction": "desc"})
        assert [t.id for t in forest] == ["r2", "r1"]

    def test_analytics_cover_all_levels(self, seeded: TaskStore) -> None:
        summary = asyncio.run(seeded.fetch_analytics())
        assert summary.total == 3
        assert summary.by_status["completed"] == 1
        assert summary.overdue_count == 1
