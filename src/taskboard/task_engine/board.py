"""Kanban column layout and the status <-> column projection.

A task's column is a pure projection of its status; the board keeps no
placement state of its own.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from .errors import InvalidColumnError
from .model import RootTask, TaskStatus
from .tree import TreeLike, roots_of


@dataclass(frozen=True)
class KanbanColumn:
    id: str
    title: str
    status: TaskStatus

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "KanbanColumn":
        status = TaskStatus.parse(data.get("status"))
        return cls(
            id=str(data.get("id") or status.value),
            title=str(data.get("title") or status.value.replace("-", " ").title()),
            status=status,
        )


DEFAULT_COLUMNS: tuple[KanbanColumn, ...] = (
    KanbanColumn("not-started", "Not Started", TaskStatus.NOT_STARTED),
    KanbanColumn("in-progress", "In Progress", TaskStatus.IN_PROGRESS),
    KanbanColumn("in-review", "In Review", TaskStatus.IN_REVIEW),
    KanbanColumn("blocked", "Blocked", TaskStatus.BLOCKED),
    KanbanColumn("completed", "Completed", TaskStatus.COMPLETED),
)


class ColumnMap:
    """A total, order-preserving bijection between statuses and columns.

    Raises :class:`ValueError` when *columns* does not cover every status
    exactly once, repeats a column id, or lists statuses out of rank order.
    """

    def __init__(self, columns: Iterable[KanbanColumn] = DEFAULT_COLUMNS) -> None:
        self.columns: tuple[KanbanColumn, ...] = tuple(columns)
        ids = [c.id for c in self.columns]
        statuses = [c.status for c in self.columns]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Duplicate board column ids: {ids}")
        if sorted(statuses, key=lambda s: s.rank) != list(TaskStatus):
            missing = [s.value for s in TaskStatus if s not in statuses]
            raise ValueError(
                f"Board columns must map every status exactly once in board order; "
                f"got {[s.value for s in statuses]}, missing {missing}"
            )
        if statuses != list(TaskStatus):
            raise ValueError(f"Board columns must follow status order {[s.value for s in TaskStatus]}")
        self._by_id = {c.id: c for c in self.columns}
        self._by_status = {c.status: c for c in self.columns}

    def column_for(self, status: TaskStatus) -> KanbanColumn:
        return self._by_status[TaskStatus.parse(status)]

    def status_for(self, column_id: str) -> TaskStatus:
        column = self._by_id.get(column_id)
        if column is None:
            raise InvalidColumnError(column_id)
        return column.status

    def get(self, column_id: str) -> Optional[KanbanColumn]:
        return self._by_id.get(column_id)

    def __iter__(self):
        return iter(self.columns)

    def __len__(self) -> int:
        return len(self.columns)


@dataclass(frozen=True)
class BoardColumn:
    column: KanbanColumn
    items: tuple[RootTask, ...] = field(default_factory=tuple)

    @property
    def id(self) -> str:
        return self.column.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.column.id,
            "title": self.column.title,
            "status": self.column.status.value,
            "count": len(self.items),
            "task_ids": [t.id for t in self.items],
        }


def project_board(tree: TreeLike, column_map: Optional[ColumnMap] = None) -> list[BoardColumn]:
    """Group the root tasks of *tree* into columns, keeping their order."""
    column_map = column_map or ColumnMap()
    buckets: dict[str, list[RootTask]] = {c.id: [] for c in column_map}
    for task in roots_of(tree):
        if not isinstance(task, RootTask):
            continue
        buckets[column_map.column_for(task.status).id].append(task)
    return [BoardColumn(column=c, items=tuple(buckets[c.id])) for c in column_map]
