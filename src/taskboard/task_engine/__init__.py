"""Hierarchical task engine for the Kanban task board.

This package provides the three-level task tree, the rollups shown on the
dashboard, the filter/sort engine for list views, and the engine that keeps
the board in sync with a remote task store.
"""

from __future__ import annotations

from .aggregation import AnalyticsSummary, DateWindow, TaskStats, compute_stats, count, summarize
from .board import DEFAULT_COLUMNS, BoardColumn, ColumnMap, KanbanColumn, project_board
from .engine import MoveOutcome, MoveTicket, TaskEngine
from .errors import FilterSpecError, InvalidColumnError, RemoteError, TaskEngineError, TreeIntegrityError
from .filtering import DueFilter, FilterSpec, SortSpec, apply, build_filter, build_sort
from .model import Assignee, BranchTask, Forest, LeafTask, RootTask, Task, TaskPriority, TaskStatus
from .remote import TaskRemote
from .settings import EngineSettings, ViewContext
from .store import TaskStore
from .tree import build_tree, find_by_id, flatten, insert, remove, replace

__all__ = [
    "AnalyticsSummary",
    "Assignee",
    "BoardColumn",
    "BranchTask",
    "ColumnMap",
    "DEFAULT_COLUMNS",
    "DateWindow",
    "DueFilter",
    "EngineSettings",
    "FilterSpec",
    "FilterSpecError",
    "Forest",
    "InvalidColumnError",
    "KanbanColumn",
    "LeafTask",
    "MoveOutcome",
    "MoveTicket",
    "RemoteError",
    "RootTask",
    "SortSpec",
    "Task",
    "TaskEngine",
    "TaskEngineError",
    "TaskPriority",
    "TaskRemote",
    "TaskStats",
    "TaskStatus",
    "TaskStore",
    "TreeIntegrityError",
    "ViewContext",
    "apply",
    "build_filter",
    "build_sort",
    "build_tree",
    "compute_stats",
    "count",
    "find_by_id",
    "flatten",
    "insert",
    "project_board",
    "remove",
    "replace",
    "summarize",
]
