"""Tests for the task variants, enums and row (de)serialization."""

from __future__ import annotations

from dataclasses import FrozenInstanceError
from datetime import date, datetime, timedelta, timezone

import pytest

from taskboard.task_engine.errors import TreeIntegrityError
from taskboard.task_engine.model import (
    Assignee,
    BranchTask,
    LeafTask,
    RootTask,
    TaskPriority,
    TaskStatus,
    advance_timestamp,
    children_of,
    derived_progress,
    parse_datetime,
    task_from_row,
    task_to_row,
    validate_row,
)

T0 = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


class TestEnums:
    def test_status_order_matches_board(self) -> None:
        assert [s.value for s in TaskStatus] == [
            "not-started",
            "in-progress",
            "in-review",
            "blocked",
            "completed",
        ]
        assert TaskStatus.NOT_STARTED.rank < TaskStatus.COMPLETED.rank

    def test_priority_rank(self) -> None:
        ranks = [p.rank for p in (TaskPriority.LOW, TaskPriority.MEDIUM, TaskPriority.HIGH, TaskPriority.URGENT)]
        assert ranks == sorted(ranks)

    def test_parse_rejects_unknown_status(self) -> None:
        with pytest.raises(TreeIntegrityError, match="Invalid task status"):
            TaskStatus.parse("done")

    def test_parse_accepts_members_and_values(self) -> None:
        assert TaskStatus.parse(TaskStatus.BLOCKED) is TaskStatus.BLOCKED
        assert TaskPriority.parse("urgent") is TaskPriority.URGENT

    def test_parse_rejects_unknown_priority(self) -> None:
        with pytest.raises(TreeIntegrityError):
            TaskPriority.parse("P0")


class TestTimestamps:
    def test_advance_uses_clock_when_later(self) -> None:
        later = T0 + timedelta(seconds=5)
        assert advance_timestamp(T0, now=later) == later

    def test_advance_is_strict_when_clock_stands_still(self) -> None:
        assert advance_timestamp(T0, now=T0) > T0
        assert advance_timestamp(T0, now=T0 - timedelta(hours=1)) > T0

    def test_with_status_advances_updated_at(self) -> None:
        task = RootTask(id="r1", name="Root", updated_at=T0)
        moved = task.with_status(TaskStatus.IN_PROGRESS, now=T0)
        assert moved.status == TaskStatus.IN_PROGRESS
        assert moved.updated_at > task.updated_at
        assert task.status == TaskStatus.NOT_STARTED

    def test_parse_datetime_handles_zulu_and_naive(self) -> None:
        assert parse_datetime("2024-05-01T09:00:00Z") == T0
        assert parse_datetime("2024-05-01T09:00:00") == T0
        assert parse_datetime("") is None


class TestVariants:
    def test_levels(self) -> None:
        assert RootTask(name="a").level == 0
        assert BranchTask(name="b").level == 1
        assert LeafTask(name="c").level == 2

    def test_leaf_has_no_children(self) -> None:
        assert children_of(LeafTask(name="leaf")) == ()
        assert not hasattr(LeafTask(name="leaf"), "subtasks")

    def test_frozen(self) -> None:
        task = RootTask(name="Root")
        with pytest.raises(FrozenInstanceError):
            task.name = "Other"  # type: ignore[misc]


class TestRows:
    def test_from_row_picks_variant_by_level(self) -> None:
        row = {"id": "t1", "name": "Task", "status": "in-review", "priority": "high"}
        assert isinstance(task_from_row(row, 0), RootTask)
        assert isinstance(task_from_row(row, 1), BranchTask)
        leaf = task_from_row(row, 2)
        assert isinstance(leaf, LeafTask)
        assert leaf.status == TaskStatus.IN_REVIEW
        assert leaf.priority == TaskPriority.HIGH

    def test_from_row_rejects_level_three(self) -> None:
        with pytest.raises(TreeIntegrityError, match="between 0 and 2"):
            task_from_row({"id": "t1", "name": "Task"}, 3)

    def test_leaf_cannot_own_subtasks(self) -> None:
        kid = LeafTask(id="k", name="Kid")
        with pytest.raises(TreeIntegrityError, match="cannot own subtasks"):
            task_from_row({"id": "t1", "name": "Task"}, 2, (kid,))

    def test_from_row_rejects_bad_enum(self) -> None:
        with pytest.raises(TreeIntegrityError):
            task_from_row({"id": "t1", "name": "Task", "status": "archived"})

    def test_from_row_rejects_out_of_range_progress(self) -> None:
        with pytest.raises(TreeIntegrityError, match="Progress"):
            task_from_row({"id": "t1", "name": "Task", "progress": 120})

    def test_to_row_serializes_scalars(self) -> None:
        task = RootTask(
            id="t1",
            name="Task",
            status=TaskStatus.BLOCKED,
            assignee=Assignee(id="u1", name="Ada"),
            due_date=date(2024, 5, 3),
            created_at=T0,
            updated_at=T0,
        )
        row = task_to_row(task)
        assert row["status"] == "blocked"
        assert row["assignee"]["name"] == "Ada"
        assert row["due_date"] == "2024-05-03"
        assert row["level"] == 0
        assert "subtasks" not in row

        again = task_from_row(row, 0)
        assert again == task


class TestDerivedProgress:
    def test_explicit_value_wins(self) -> None:
        assert derived_progress(RootTask(name="a", progress=35)) == 35

    def test_from_completed_subtasks(self) -> None:
        kids = (
            BranchTask(name="a", status=TaskStatus.COMPLETED),
            BranchTask(name="b"),
            BranchTask(name="c"),
            BranchTask(name="d", status=TaskStatus.COMPLETED),
        )
        assert derived_progress(RootTask(name="root", subtasks=kids)) == 50

    @pytest.mark.parametrize(
        ("status", "expected"),
        [
            (TaskStatus.NOT_STARTED, 0),
            (TaskStatus.IN_PROGRESS, 50),
            (TaskStatus.IN_REVIEW, 90),
            (TaskStatus.BLOCKED, 0),
            (TaskStatus.COMPLETED, 100),
        ],
    )
    def test_status_fallback(self, status: TaskStatus, expected: int) -> None:
        assert derived_progress(LeafTask(name="leaf", status=status)) == expected


class TestValidateRow:
    def test_valid(self) -> None:
        assert validate_row({"name": "Write docs", "status": "blocked", "due_date": "2024-05-01"}) == []

    def test_short_name(self) -> None:
        errors = validate_row({"name": " ab "})
        assert any("at least 3" in e for e in errors)

    def test_bad_enums_and_progress(self) -> None:
        errors = validate_row({"name": "Task", "status": "done", "priority": "P1", "progress": 101})
        assert len(errors) == 3

    def test_not_a_dict(self) -> None:
        assert validate_row(["name"]) == ["Expected a dict"]
