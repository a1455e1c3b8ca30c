"""Task engine: the client-side snapshot and the Kanban synchronization loop.

:class:`TaskEngine` owns the immutable task forest shown to the user.  Board
moves are applied optimistically and confirmed against the remote store in
the background; a failed confirmation rolls the task back and triggers a
reconciling refetch.  Everything runs on a single asyncio event loop, and
every change swaps in a new snapshot instead of mutating the old one.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from ..logging_utils import summarize_event
from .aggregation import AnalyticsSummary, DateWindow, TaskStats, compute_stats, resolve_analytics
from .board import BoardColumn, project_board
from .errors import RemoteError, TreeIntegrityError
from .filtering import FilterSpec, SortSpec, apply, apply_to_subtasks
from .model import Forest, RootTask, Task, TaskStatus, utc_now, validate_row
from .remote import TaskRemote
from .settings import EngineSettings, ViewContext
from .tree import find_by_id, remove, replace

Listener = Callable[[dict[str, Any]], None]


# ---------------------------------------------------------------------------
# Move bookkeeping
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MoveOutcome:
    """How a board move ended once the remote store answered.

    ``superseded`` is set when a later move of the same task was issued
    before this one was confirmed.
    """

    task_id: str
    from_status: TaskStatus
    to_status: TaskStatus
    ok: bool
    error: Optional[RemoteError] = None
    rolled_back: bool = False
    superseded: bool = False


@dataclass(frozen=True)
class MoveTicket:
    task_id: str
    from_status: TaskStatus
    to_status: TaskStatus
    version: int
    confirmation: "asyncio.Future[MoveOutcome]"

    def done(self) -> bool:
        return self.confirmation.done()

    async def wait(self) -> MoveOutcome:
        return await asyncio.shield(self.confirmation)


def _as_remote_error(exc: BaseException, operation: str, task_id: Optional[str] = None) -> RemoteError:
    if isinstance(exc, RemoteError):
        return exc
    return RemoteError(str(exc) or exc.__class__.__name__, operation=operation, task_id=task_id)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class TaskEngine:
    """Client-side view of a remote task store.

    Parameters
    ----------
    remote:
        Any :class:`~taskboard.task_engine.remote.TaskRemote`.
    settings:
        Engine behaviour (rollback, refetch, columns).  Defaults apply when omitted.
    view:
        Filters, sort and "today" of the page being shown.
    forest:
        Initial snapshot, for callers that already hold fetched data.
    """

    def __init__(
        self,
        remote: TaskRemote,
        settings: Optional[EngineSettings] = None,
        view: Optional[ViewContext] = None,
        forest: Forest = (),
    ) -> None:
        self.remote = remote
        self.settings = settings or EngineSettings()
        self._view = view or ViewContext(sort=self.settings.default_sort)
        self._column_map = self.settings.column_map()
        self._forest: Forest = tuple(forest)
        self._version = 0

        # Refresh bookkeeping: issued vs. applied request numbers, and the
        # count of applied refreshes (the "generation").
        self._refresh_seq = 0
        self._applied_refresh = 0
        self._generation = 0
        # Move sequence number at the start of each refresh still in flight.
        self._refresh_marks: dict[int, int] = {}

        # Move bookkeeping, keyed by task id.
        self._move_seq = 0
        self._latest_move: dict[str, int] = {}
        self._confirmed_status: dict[str, TaskStatus] = {}
        self._pending: dict[str, int] = {}
        self._task_locks: dict[str, asyncio.Lock] = {}
        # Latest status a refresh in flight must not overwrite: task id -> (move seq, status).
        self._held_status: dict[str, tuple[int, TaskStatus]] = {}
        # Tasks whose optimistic status a refresh kept while the request was pending.
        self._held_pending: set[str] = set()

        self._inflight: set[asyncio.Task] = set()
        self._listeners: list[Listener] = []

    # ------------------------------------------------------------------
    # Snapshot access
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> Forest:
        return self._forest

    @property
    def version(self) -> int:
        """Incremented on every snapshot swap."""
        return self._version

    @property
    def view(self) -> ViewContext:
        return self._view

    def set_view(self, view: ViewContext) -> None:
        """Change the active view without refetching."""
        self._view = view

    def get(self, task_id: str) -> Optional[Task]:
        return find_by_id(self._forest, task_id)

    def visible_roots(self) -> list[RootTask]:
        """Root tasks of the snapshot, filtered and sorted by the active view."""
        return apply(  # type: ignore[return-value]
            self._forest,
            self._view.filters,
            self._view.sort,
            self._view.window(),
            self.settings.search_min_chars,
        )

    def subtasks(
        self,
        task_id: str,
        filters: Optional[FilterSpec] = None,
        sort: Optional[SortSpec] = None,
    ) -> list[Task]:
        """Direct subtasks of *task_id* for its expanded row, filtered and sorted locally."""
        task = self.get(task_id)
        if task is None:
            return []
        return apply_to_subtasks(task, filters, sort, self._view.window(), self.settings.search_min_chars)

    def board(self) -> list[BoardColumn]:
        return project_board(self.visible_roots(), self._column_map)

    def stats(self, window: Optional[DateWindow] = None) -> TaskStats:
        return compute_stats(self._forest, window or self._view.window())

    async def analytics(self) -> AnalyticsSummary:
        """Analytics for the dashboard.

        The store's precomputed summary is used when it agrees with the local
        rollups.  While the view is filtered the snapshot only holds part of
        the data, so a precomputed summary is taken as is.
        """
        try:
            remote = await self.remote.fetch_analytics()
        except Exception as exc:
            logger.warning("Precomputed analytics unavailable ({}); using local rollups", exc)
            remote = None
        window = self._view.window()
        if remote is not None and not self._view.filters.is_empty(self.settings.search_min_chars):
            return remote
        return resolve_analytics(self._forest, remote, window)

    def pending_moves(self) -> frozenset[str]:
        """Ids of tasks with a status request still in flight."""
        return frozenset(task_id for task_id, n in self._pending.items() if n > 0)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener* for engine events; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(
        self,
        event_type: str,
        task_id: Optional[str] = None,
        status: Optional[TaskStatus] = None,
        **details: Any,
    ) -> dict[str, Any]:
        event: dict[str, Any] = {
            "type": event_type,
            "task_id": task_id,
            "status": status.value if status is not None else None,
            "version": self._version,
            "ts": utc_now().isoformat(),
            "details": details,
        }
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Engine listener failed on {}", summarize_event(event))
        return event

    def _swap(self, forest: Forest) -> None:
        self._forest = forest
        self._version += 1

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    # ------------------------------------------------------------------
    # Board moves
    # ------------------------------------------------------------------

    def move(self, task_id: str, from_column: str, to_column: str) -> Optional[MoveTicket]:
        """Move a root task to *to_column*, optimistically.

        The snapshot already shows the new status when this returns; the
        remote ``set_status`` runs on the event loop and the ticket's
        ``confirmation`` resolves when it answers.  Returns None for a drop
        onto the same column or for an id that is not a visible root task.

        Raises:
            InvalidColumnError: *to_column* is not a board column.
            RuntimeError: No event loop is running.
        """
        if from_column == to_column:
            return None
        target = self._column_map.status_for(to_column)
        task = find_by_id(self._forest, task_id)
        if not isinstance(task, RootTask):
            logger.debug("Ignoring move of {}: not a root task in the current snapshot", task_id)
            return None
        loop = asyncio.get_running_loop()

        previous = task.status
        self._swap(replace(self._forest, task_id, lambda t: t.with_status(target)))
        self._move_seq += 1
        seq = self._move_seq
        self._latest_move[task_id] = seq
        if self._refresh_marks:
            self._held_status[task_id] = (seq, target)
        if not self._pending.get(task_id):
            self._confirmed_status[task_id] = previous
        self._pending[task_id] = self._pending.get(task_id, 0) + 1

        ticket = MoveTicket(
            task_id=task_id,
            from_status=previous,
            to_status=target,
            version=self._version,
            confirmation=loop.create_future(),
        )
        logger.info("Moved {} from {} to {} (optimistic)", task_id, previous.value, target.value)
        self._emit(
            "move.applied",
            task_id,
            target,
            previous_status=previous.value,
            from_column=from_column,
            to_column=to_column,
        )
        self._spawn(self._confirm_move(ticket, seq, self._generation))
        return ticket

    async def move_and_wait(self, task_id: str, from_column: str, to_column: str) -> Optional[MoveOutcome]:
        ticket = self.move(task_id, from_column, to_column)
        if ticket is None:
            return None
        return await ticket.wait()

    async def _confirm_move(self, ticket: MoveTicket, seq: int, generation: int) -> None:
        task_id = ticket.task_id
        lock = self._task_locks.setdefault(task_id, asyncio.Lock())
        outcome: Optional[MoveOutcome] = None
        try:
            async with lock:
                try:
                    await self.remote.set_status(task_id, ticket.to_status)
                except Exception as exc:
                    outcome = self._move_failed(ticket, seq, generation, _as_remote_error(exc, "set_status", task_id))
                else:
                    outcome = self._move_confirmed(ticket, seq, generation)
        finally:
            remaining = self._pending.get(task_id, 1) - 1
            if remaining > 0:
                self._pending[task_id] = remaining
            else:
                self._pending.pop(task_id, None)
                self._confirmed_status.pop(task_id, None)
                self._latest_move.pop(task_id, None)
                self._task_locks.pop(task_id, None)
                self._held_pending.discard(task_id)
            if outcome is not None:
                ticket.confirmation.set_result(outcome)
            elif not ticket.confirmation.done():
                ticket.confirmation.cancel()

    def _move_confirmed(self, ticket: MoveTicket, seq: int, generation: int) -> MoveOutcome:
        task_id = ticket.task_id
        latest = self._latest_move.get(task_id) == seq
        self._confirmed_status[task_id] = ticket.to_status
        if latest and generation != self._generation:
            # A refetch landed while the request was in flight and may predate it.
            current = find_by_id(self._forest, task_id)
            if current is not None and current.status != ticket.to_status:
                self._swap(replace(self._forest, task_id, lambda t: t.with_status(ticket.to_status)))
        logger.debug("Move of {} to {} confirmed", task_id, ticket.to_status.value)
        self._emit("move.confirmed", task_id, ticket.to_status, superseded=not latest)
        return MoveOutcome(
            task_id=task_id,
            from_status=ticket.from_status,
            to_status=ticket.to_status,
            ok=True,
            superseded=not latest,
        )

    def _move_failed(self, ticket: MoveTicket, seq: int, generation: int, error: RemoteError) -> MoveOutcome:
        task_id = ticket.task_id
        latest = self._latest_move.get(task_id) == seq
        logger.warning("Move of {} to {} failed: {}", task_id, ticket.to_status.value, error.reason)
        self._emit("move.failed", task_id, ticket.to_status, error=error.reason, superseded=not latest)

        held = self._held_status.pop(task_id, None)
        if held is not None and held[0] != seq:
            self._held_status[task_id] = held
            held = None
        restorable = generation == self._generation or task_id in self._held_pending

        rolled_back = False
        if self.settings.rollback_on_failure and latest and restorable:
            restore = self._confirmed_status.get(task_id, ticket.from_status)
            current = find_by_id(self._forest, task_id)
            if current is not None and current.status == ticket.to_status:
                self._swap(replace(self._forest, task_id, lambda t: t.with_status(restore)))
                rolled_back = True
                if held is not None:
                    self._held_status[task_id] = (seq, restore)
                logger.warning("Rolled {} back to {}", task_id, restore.value)
                self._emit("move.rolled_back", task_id, restore, failed_status=ticket.to_status.value)

        if self.settings.refetch_on_failure:
            self._spawn(self._refresh_quietly())
        return MoveOutcome(
            task_id=task_id,
            from_status=ticket.from_status,
            to_status=ticket.to_status,
            ok=False,
            error=error,
            rolled_back=rolled_back,
            superseded=not latest,
        )

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def refresh(self, view: Optional[ViewContext] = None) -> Forest:
        """Refetch the visible roots and replace the snapshot wholesale.

        A response that arrives after a newer refresh was already applied is
        discarded.  Moves issued after the request went out are applied on
        top of the response: a pending move keeps its optimistic status and
        a confirmed one its confirmed status.  Returns the snapshot in effect
        afterwards.

        Raises:
            RemoteError: The store could not list tasks.
        """
        if view is not None:
            self._view = view
        self._refresh_seq += 1
        request = self._refresh_seq
        self._refresh_marks[request] = self._move_seq
        filters, sort = self._view.filters, self._view.sort
        try:
            try:
                roots = await self.remote.list_tasks(filters, sort)
            except Exception as exc:
                error = _as_remote_error(exc, "list_tasks")
                logger.warning("Refresh failed: {}", error.reason)
                self._emit("refresh.failed", error=error.reason)
                if error is exc:
                    raise
                raise error from exc

            if request < self._applied_refresh:
                logger.debug("Discarding refresh #{} (already applied #{})", request, self._applied_refresh)
                return self._forest
            forest = tuple(roots)
            for root in forest:
                if not isinstance(root, RootTask):
                    raise TreeIntegrityError(f"Remote returned a non-root task {getattr(root, 'id', root)!r}")
            forest, kept = self._keep_later_moves(forest, self._refresh_marks[request])
            self._applied_refresh = request
            self._generation += 1
            self._swap(forest)
            logger.info("Refreshed task snapshot: {} root task(s)", len(forest))
            self._emit("refresh.completed", roots=len(forest), kept_moves=kept)
            return self._forest
        finally:
            del self._refresh_marks[request]
            oldest = min(self._refresh_marks.values(), default=self._move_seq)
            for task_id, (seq, _status) in list(self._held_status.items()):
                if seq <= oldest:
                    del self._held_status[task_id]

    def _keep_later_moves(self, forest: Forest, mark: int) -> tuple[Forest, list[str]]:
        kept: list[str] = []
        for task_id, (seq, status) in self._held_status.items():
            if seq <= mark:
                continue
            current = find_by_id(forest, task_id)
            if not isinstance(current, RootTask) or current.status == status:
                continue
            if self._pending.get(task_id):
                self._held_pending.add(task_id)
            forest = replace(forest, task_id, lambda t, s=status: t.with_status(s))
            kept.append(task_id)
        if kept:
            logger.debug("Kept local status of {} over an older listing", ", ".join(kept))
        return forest, kept

    async def _refresh_quietly(self) -> None:
        try:
            await self.refresh()
        except RemoteError:
            # Already logged and emitted as refresh.failed.
            return

    # ------------------------------------------------------------------
    # Create / delete
    # ------------------------------------------------------------------

    async def create_task(self, payload: dict[str, Any]) -> str:
        """Create a task (or subtask, via ``parent_id``) remotely, then refetch.

        Raises:
            ValueError: The payload fails local validation.
            RemoteError: The store rejected the task.
        """
        errors = validate_row(payload)
        if errors:
            raise ValueError("; ".join(errors))
        try:
            task_id = await self.remote.create_task(dict(payload))
        except Exception as exc:
            error = _as_remote_error(exc, "create_task")
            logger.warning("Creating task {!r} failed: {}", payload.get("name"), error.reason)
            if error is exc:
                raise
            raise error from exc
        logger.info("Created task {}", task_id)
        self._emit("task.created", task_id, parent_id=payload.get("parent_id"))
        await self._refresh_quietly()
        return task_id

    async def delete_task(self, task_id: str, cascade: bool = True) -> None:
        """Delete *task_id* remotely, drop it locally, then refetch.

        A failed delete leaves the snapshot untouched.
        """
        try:
            await self.remote.delete_task(task_id, cascade)
        except Exception as exc:
            error = _as_remote_error(exc, "delete_task", task_id)
            logger.warning("Deleting {} failed: {}", task_id, error.reason)
            if error is exc:
                raise
            raise error from exc
        self.remove_local(task_id)
        logger.info("Deleted task {} (cascade={})", task_id, cascade)
        self._emit("task.deleted", task_id, cascade=cascade)
        await self._refresh_quietly()

    def remove_local(self, task_id: str) -> bool:
        """Drop *task_id* and its subtree from the snapshot only."""
        updated = remove(self._forest, task_id)
        if updated is self._forest:
            return False
        self._swap(updated)
        self._emit("task.removed_local", task_id)
        return True

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        """Wait for every in-flight confirmation and follow-up refetch."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
