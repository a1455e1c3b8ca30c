"""File-based reference implementation of :class:`TaskRemote`.

Stores flat task rows in a single YAML file (``tasks.yaml``) inside the
``.taskboard/`` directory.  All reads and writes go through
:meth:`TaskStore.transaction`, which holds an exclusive file lock; the async
:class:`TaskRemote` methods run that blocking work in a worker thread.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
from contextlib import contextmanager
from datetime import date
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Sequence

import yaml
from filelock import FileLock, Timeout
from loguru import logger

from ..constants import (
    LOCK_TIMEOUT,
    MAX_TASK_LEVEL,
    STORE_FILENAME,
    STORE_LOCK_FILENAME,
    STORE_VERSION,
)
from .aggregation import AnalyticsSummary, DateWindow, summarize
from .errors import RemoteError
from .filtering import FilterSpec, SortSpec, apply
from .model import RootTask, TaskPriority, TaskStatus, _generate_id, utc_now, validate_row
from .tree import build_tree


# ---------------------------------------------------------------------------
# Low-level I/O
# ---------------------------------------------------------------------------

def _load_raw(path: Path) -> list[dict[str, Any]]:
    """Load the raw row list from *path*, returning ``[]`` if missing."""
    if not path.exists():
        return []
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict) or "tasks" not in data:
        return []
    tasks = data["tasks"]
    return [dict(t) for t in tasks if isinstance(t, dict)] if isinstance(tasks, list) else []


def _save_raw(path: Path, rows: list[dict[str, Any]]) -> None:
    """Atomically write *rows* to *path* (write-tmp-then-rename)."""
    payload = {"version": STORE_VERSION, "tasks": rows}
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            yaml.safe_dump(payload, fh, default_flow_style=False, sort_keys=False, allow_unicode=True)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


# ---------------------------------------------------------------------------
# TaskStore
# ---------------------------------------------------------------------------

class TaskStore:
    """Thread-safe, file-backed task store.

    Parameters
    ----------
    state_dir:
        Path to the ``.taskboard/`` directory.
    clock:
        Returns "today" for the due-date buckets; defaults to the wall clock.
    """

    def __init__(self, state_dir: Path, clock: Callable[[], date] = date.today) -> None:
        self._state_dir = state_dir
        self._store_path = state_dir / STORE_FILENAME
        self._lock = FileLock(str(state_dir / STORE_LOCK_FILENAME), timeout=LOCK_TIMEOUT)
        self._clock = clock

    @property
    def path(self) -> Path:
        return self._store_path

    # -- synchronous API ----------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[_RowTx]:
        """Acquire the lock, load rows, yield a transaction, and save on exit."""
        self._state_dir.mkdir(parents=True, exist_ok=True)
        try:
            self._lock.acquire()
        except Timeout as exc:
            raise RemoteError(f"Timed out waiting for {self._lock.lock_file}", operation="lock") from exc
        try:
            tx = _RowTx(_load_raw(self._store_path))
            yield tx
            if tx.dirty:
                _save_raw(self._store_path, tx.rows)
        finally:
            self._lock.release()

    def read_rows(self, include_deleted: bool = False) -> list[dict[str, Any]]:
        with self.transaction() as tx:
            return tx.live_rows() if not include_deleted else list(tx.rows)

    def add_rows(self, rows: Sequence[dict[str, Any]]) -> None:
        """Insert pre-built rows verbatim (fixtures and imports)."""
        with self.transaction() as tx:
            for row in rows:
                tx.add(dict(row))

    def _window(self) -> DateWindow:
        return DateWindow.for_day(self._clock())

    def _list_sync(self, filters: FilterSpec, sort: SortSpec) -> list[RootTask]:
        forest = build_tree(self.read_rows())
        return apply(forest, filters, sort, self._window())  # type: ignore[return-value]

    def _set_status_sync(self, task_id: str, status: TaskStatus) -> None:
        with self.transaction() as tx:
            row = tx.get(task_id)
            if row is None:
                raise RemoteError("Task not found", operation="set_status", task_id=task_id)
            row["status"] = TaskStatus.parse(status).value
            row["updated_at"] = utc_now().isoformat()
            tx.dirty = True

    def _create_sync(self, payload: dict[str, Any]) -> str:
        errors = validate_row(payload)
        if errors:
            raise RemoteError("; ".join(errors), operation="create_task")
        with self.transaction() as tx:
            level = 0
            parent_id = payload.get("parent_id") or None
            if parent_id:
                parent = tx.get(parent_id)
                if parent is None:
                    raise RemoteError("Parent task not found", operation="create_task", task_id=parent_id)
                parent_level = tx.depth_of(parent_id)
                if parent_level >= MAX_TASK_LEVEL:
                    raise RemoteError(
                        f"Cannot create a subtask under a level-{MAX_TASK_LEVEL} task (maximum depth reached)",
                        operation="create_task",
                        task_id=parent_id,
                    )
                level = parent_level + 1
            now = utc_now().isoformat()
            row = dict(payload)
            row.update(
                {
                    "id": row.get("id") or _generate_id(),
                    "name": str(payload["name"]).strip(),
                    "status": TaskStatus.parse(row.get("status") or TaskStatus.NOT_STARTED).value,
                    "priority": TaskPriority.parse(row.get("priority") or TaskPriority.MEDIUM).value,
                    "parent_id": parent_id,
                    "level": level,
                    "created_at": now,
                    "updated_at": now,
                    "deleted_at": None,
                }
            )
            tx.add(row)
            return str(row["id"])

    def _delete_sync(self, task_id: str, cascade: bool) -> None:
        with self.transaction() as tx:
            if tx.get(task_id) is None:
                raise RemoteError("Task not found", operation="delete_task", task_id=task_id)
            doomed = [task_id] + (tx.descendant_ids(task_id) if cascade else [])
            now = utc_now().isoformat()
            for row_id in doomed:
                row = tx.get(row_id)
                if row is not None:
                    row["deleted_at"] = now
            tx.dirty = True
        logger.debug("Soft-deleted {} task(s) rooted at {}", len(doomed), task_id)

    def _analytics_sync(self) -> AnalyticsSummary:
        return summarize(build_tree(self.read_rows()), self._window())

    # -- TaskRemote ---------------------------------------------------------

    async def list_tasks(self, filters: FilterSpec, sort: SortSpec) -> list[RootTask]:
        return await asyncio.to_thread(self._list_sync, FilterSpec.parse(filters), SortSpec.parse(sort))

    async def set_status(self, task_id: str, status: TaskStatus) -> None:
        await asyncio.to_thread(self._set_status_sync, task_id, status)

    async def create_task(self, payload: dict[str, Any]) -> str:
        return await asyncio.to_thread(self._create_sync, payload)

    async def delete_task(self, task_id: str, cascade: bool = True) -> None:
        await asyncio.to_thread(self._delete_sync, task_id, cascade)

    async def fetch_analytics(self) -> Optional[AnalyticsSummary]:
        return await asyncio.to_thread(self._analytics_sync)


class _RowTx:
    """In-memory transaction over the stored rows.

    Mutations are flushed back to disk when the ``transaction``
    context-manager exits with ``dirty`` set.
    """

    def __init__(self, rows: list[dict[str, Any]]) -> None:
        self.rows = rows
        self.dirty = False
        self._index: dict[str, int] = {str(r.get("id")): i for i, r in enumerate(rows)}

    def get(self, task_id: str) -> Optional[dict[str, Any]]:
        idx = self._index.get(task_id)
        if idx is None:
            return None
        row = self.rows[idx]
        return None if row.get("deleted_at") else row

    def live_rows(self) -> list[dict[str, Any]]:
        return [dict(r) for r in self.rows if not r.get("deleted_at")]

    def depth_of(self, task_id: str) -> int:
        """Depth of *task_id* as the tree is built: a row without a live parent is a root."""
        depth = 0
        seen = {task_id}
        row = self.get(task_id)
        while row is not None and row.get("parent_id"):
            parent_id = str(row["parent_id"])
            parent = self.get(parent_id)
            if parent is None or parent_id in seen:
                break
            seen.add(parent_id)
            depth += 1
            row = parent
        return depth

    def add(self, row: dict[str, Any]) -> dict[str, Any]:
        row_id = str(row.get("id") or "")
        if not row_id:
            raise ValueError("Task row needs an id")
        if row_id in self._index:
            raise ValueError(f"Task {row_id} already exists")
        self._index[row_id] = len(self.rows)
        self.rows.append(row)
        self.dirty = True
        return row

    def descendant_ids(self, task_id: str) -> list[str]:
        found: list[str] = []
        frontier = [task_id]
        while frontier:
            current = frontier.pop()
            for row in self.rows:
                if row.get("parent_id") == current and not row.get("deleted_at"):
                    found.append(str(row["id"]))
                    frontier.append(str(row["id"]))
        return found
