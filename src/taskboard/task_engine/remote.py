"""The boundary between the engine and the remote task store."""

from __future__ import annotations

from typing import Any, Optional, Protocol, Sequence, runtime_checkable

from .aggregation import AnalyticsSummary
from .filtering import FilterSpec, SortSpec
from .model import RootTask, TaskStatus


@runtime_checkable
class TaskRemote(Protocol):
    """Asynchronous remote task store.

    Every method raises :class:`~taskboard.task_engine.errors.RemoteError`
    on failure.
    """

    async def list_tasks(self, filters: FilterSpec, sort: SortSpec) -> Sequence[RootTask]:
        """Root tasks matching *filters*, each carrying its nested subtasks."""
        ...

    async def set_status(self, task_id: str, status: TaskStatus) -> None:
        ...

    async def create_task(self, payload: dict[str, Any]) -> str:
        """Create a task (or a subtask when ``parent_id`` is set); returns its id."""
        ...

    async def delete_task(self, task_id: str, cascade: bool = True) -> None:
        ...

    async def fetch_analytics(self) -> Optional[AnalyticsSummary]:
        """Precomputed rollups, or None when the store does not provide them."""
        ...
