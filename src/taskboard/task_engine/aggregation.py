"""Rollup statistics over a task tree.

Every statistic is a ``count(tree, predicate)``: one depth-first pass that
tests the predicate at each node and adds the counts of the child subtrees.
Date buckets are evaluated against a :class:`DateWindow` so that "today" is
an explicit input rather than a hidden clock read.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Callable, Optional

from loguru import logger
from pydantic import BaseModel, Field

from .model import Task, TaskPriority, TaskStatus, children_of
from .tree import TreeLike, iter_tasks, roots_of

Predicate = Callable[[Task], bool]


# ---------------------------------------------------------------------------
# Counting
# ---------------------------------------------------------------------------

def count(tree: TreeLike, predicate: Predicate) -> int:
    """Number of tasks in *tree* (including every descendant) matching *predicate*."""
    total = 0
    for node in roots_of(tree):
        if predicate(node):
            total += 1
        for child in children_of(node):
            total += count(child, predicate)
    return total


# ---------------------------------------------------------------------------
# Date window
# ---------------------------------------------------------------------------

def sunday_first_weekday(day: date) -> int:
    """Weekday index with Sunday = 0 ... Saturday = 6."""
    return day.isoweekday() % 7


@dataclass(frozen=True)
class DateWindow:
    """The "today" and "this week" buckets for one calendar day.

    ``week_end`` is ``today + (7 - weekday)`` with a Sunday-first weekday, so
    the window always closes on the upcoming Sunday (a full week ahead when
    today is itself a Sunday).  Both ends are inclusive.
    """

    today: date
    week_end: date

    @classmethod
    def for_day(cls, today: date) -> "DateWindow":
        return cls(today=today, week_end=today + timedelta(days=7 - sunday_first_weekday(today)))

    @classmethod
    def current(cls) -> "DateWindow":
        return cls.for_day(date.today())


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------

def has_status(status: TaskStatus) -> Predicate:
    return lambda task: task.status == status


def has_priority(priority: TaskPriority) -> Predicate:
    return lambda task: task.priority == priority


def is_unassigned(task: Task) -> bool:
    return task.assignee is None


def is_overdue(window: DateWindow) -> Predicate:
    def _pred(task: Task) -> bool:
        return task.due_date is not None and not task.is_completed and task.due_date < window.today

    return _pred


def due_today(window: DateWindow) -> Predicate:
    def _pred(task: Task) -> bool:
        return task.due_date is not None and not task.is_completed and task.due_date == window.today

    return _pred


def due_this_week(window: DateWindow) -> Predicate:
    # Past-due tasks fall under is_overdue only.
    def _pred(task: Task) -> bool:
        if task.due_date is None or task.is_completed:
            return False
        return window.today <= task.due_date <= window.week_end

    return _pred


# ---------------------------------------------------------------------------
# Stat tiles
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TaskStats:
    """Rollup counts for the dashboard stat tiles."""

    total: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    by_priority: dict[str, int] = field(default_factory=dict)
    due_today: int = 0
    due_this_week: int = 0
    overdue: int = 0
    unassigned: int = 0

    @property
    def completed(self) -> int:
        return self.by_status.get(TaskStatus.COMPLETED.value, 0)

    @property
    def completion_rate(self) -> float:
        if not self.total:
            return 0.0
        return self.completed * 100.0 / self.total

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "by_status": dict(self.by_status),
            "by_priority": dict(self.by_priority),
            "due_today": self.due_today,
            "due_this_week": self.due_this_week,
            "overdue": self.overdue,
            "unassigned": self.unassigned,
            "completion_rate": self.completion_rate,
        }


def compute_stats(tree: TreeLike, window: Optional[DateWindow] = None) -> TaskStats:
    window = window or DateWindow.current()
    return TaskStats(
        total=count(tree, lambda _task: True),
        by_status={s.value: count(tree, has_status(s)) for s in TaskStatus},
        by_priority={p.value: count(tree, has_priority(p)) for p in TaskPriority},
        due_today=count(tree, due_today(window)),
        due_this_week=count(tree, due_this_week(window)),
        overdue=count(tree, is_overdue(window)),
        unassigned=count(tree, is_unassigned),
    )


def subtask_progress(task: Task) -> tuple[int, int]:
    """``(completed, total)`` over the direct subtasks of *task*."""
    subtasks = children_of(task)
    completed = sum(1 for st in subtasks if st.is_completed)
    return completed, len(subtasks)


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------

class AssigneePerformance(BaseModel):
    user_id: str
    user_name: str
    total_tasks: int = 0
    completed_tasks: int = 0
    completion_rate: float = 0.0


class AnalyticsSummary(BaseModel):
    """Precomputed rollups, either served by the remote store or computed locally."""

    total: int = 0
    by_status: dict[str, int] = Field(default_factory=lambda: {s.value: 0 for s in TaskStatus})
    by_priority: dict[str, int] = Field(default_factory=lambda: {p.value: 0 for p in TaskPriority})
    completion_rate: float = 0.0
    overdue_count: int = 0
    team_performance: list[AssigneePerformance] = Field(default_factory=list)


def team_performance(tree: TreeLike) -> list[AssigneePerformance]:
    """Per-assignee completion figures, best completion rate first."""
    totals: dict[str, list[Any]] = {}
    for task in iter_tasks(tree):
        if task.assignee is None:
            continue
        entry = totals.setdefault(task.assignee.id, [task.assignee.name, 0, 0])
        entry[1] += 1
        if task.is_completed:
            entry[2] += 1
    rows = [
        AssigneePerformance(
            user_id=user_id,
            user_name=name,
            total_tasks=total,
            completed_tasks=done,
            completion_rate=(done * 100.0 / total) if total else 0.0,
        )
        for user_id, (name, total, done) in totals.items()
    ]
    rows.sort(key=lambda r: r.completion_rate, reverse=True)
    return rows


def summarize(tree: TreeLike, window: Optional[DateWindow] = None) -> AnalyticsSummary:
    stats = compute_stats(tree, window)
    return AnalyticsSummary(
        total=stats.total,
        by_status=stats.by_status,
        by_priority=stats.by_priority,
        completion_rate=stats.completion_rate,
        overdue_count=stats.overdue,
        team_performance=team_performance(tree),
    )


def compare_analytics(local: AnalyticsSummary, remote: AnalyticsSummary, tolerance: float = 0.01) -> list[str]:
    """Names of the fields where *remote* disagrees with *local*."""
    mismatches: list[str] = []
    if local.total != remote.total:
        mismatches.append("total")
    for key in (s.value for s in TaskStatus):
        if local.by_status.get(key, 0) != remote.by_status.get(key, 0):
            mismatches.append(f"by_status.{key}")
    for key in (p.value for p in TaskPriority):
        if local.by_priority.get(key, 0) != remote.by_priority.get(key, 0):
            mismatches.append(f"by_priority.{key}")
    if local.overdue_count != remote.overdue_count:
        mismatches.append("overdue_count")
    if abs(local.completion_rate - remote.completion_rate) > tolerance:
        mismatches.append("completion_rate")
    return mismatches


def resolve_analytics(
    tree: TreeLike,
    remote: Optional[AnalyticsSummary],
    window: Optional[DateWindow] = None,
) -> AnalyticsSummary:
    """Prefer the precomputed *remote* summary when it agrees with the tree.

    A missing summary, or one that disagrees with the local rollups (stale),
    falls back to the locally computed summary.
    """
    local = summarize(tree, window)
    if remote is None:
        return local
    mismatches = compare_analytics(local, remote)
    if mismatches:
        logger.warning("Precomputed analytics disagree with the task tree on {}; using local rollups", mismatches)
        return local
    return remote
