"""Filter and sort engine for task collections.

Filters and sorts only ever reorder the *root* level of a tree: a root task
carries its subtasks along untouched.  Subtasks are filtered or sorted
separately, inside their parent's expanded view, via
:func:`apply_to_subtasks`.
"""

from __future__ import annotations

from datetime import date
from enum import Enum
from functools import cmp_to_key
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from ..constants import DEFAULT_SEARCH_MIN_CHARS, DEFAULT_SORT_DIRECTION, DEFAULT_SORT_FIELD
from .aggregation import DateWindow, due_this_week, due_today, is_overdue
from .errors import FilterSpecError
from .model import Task, TaskPriority, TaskStatus, children_of
from .tree import TreeLike, roots_of

Predicate = Callable[[Task], bool]
Comparator = Callable[[Task, Task], int]


# ---------------------------------------------------------------------------
# Filter spec
# ---------------------------------------------------------------------------

class DueBucket(str, Enum):
    TODAY = "today"
    THIS_WEEK = "this-week"
    OVERDUE = "overdue"
    CUSTOM = "custom"


class DueFilter(BaseModel):
    """Due-date selector.  ``custom`` uses the inclusive ``start``/``end`` range."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: DueBucket
    start: Optional[date] = None
    end: Optional[date] = None

    @model_validator(mode="after")
    def _check_range(self) -> "DueFilter":
        if self.start and self.end and self.start > self.end:
            raise ValueError(f"Due-date range starts after it ends ({self.start} > {self.end})")
        return self


class FilterSpec(BaseModel):
    """Every supplied criterion must match (logical AND); empty means "any"."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    search: Optional[str] = None
    statuses: tuple[TaskStatus, ...] = ()
    priorities: tuple[TaskPriority, ...] = ()
    assignee_ids: tuple[str, ...] = ()
    project_ids: tuple[str, ...] = ()
    due: Optional[DueFilter] = None

    @classmethod
    def parse(cls, data: Any) -> "FilterSpec":
        """Validate a raw mapping, raising :class:`FilterSpecError` when malformed."""
        if data is None:
            return cls()
        if isinstance(data, cls):
            return data
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise FilterSpecError(f"Invalid filter spec: {exc}") from exc

    def search_term(self, min_chars: int = DEFAULT_SEARCH_MIN_CHARS) -> Optional[str]:
        """The trimmed search text, or None when too short to filter on."""
        term = (self.search or "").strip()
        if len(term) < min_chars:
            return None
        return term

    def is_empty(self, min_chars: int = DEFAULT_SEARCH_MIN_CHARS) -> bool:
        return (
            self.search_term(min_chars) is None
            and not self.statuses
            and not self.priorities
            and not self.assignee_ids
            and not self.project_ids
            and self.due is None
        )


# ---------------------------------------------------------------------------
# Filter construction
# ---------------------------------------------------------------------------

def _matches_search(term: str) -> Predicate:
    needle = term.casefold()

    def _pred(task: Task) -> bool:
        haystacks = [task.name, task.description or ""]
        if task.assignee is not None:
            haystacks.append(task.assignee.name)
        return any(needle in text.casefold() for text in haystacks)

    return _pred


def _due_predicate(due: DueFilter, window: DateWindow) -> Predicate:
    if due.type == DueBucket.TODAY:
        return due_today(window)
    if due.type == DueBucket.THIS_WEEK:
        return due_this_week(window)
    if due.type == DueBucket.OVERDUE:
        return is_overdue(window)

    def _in_range(task: Task) -> bool:
        if task.due_date is None:
            return False
        if due.start and task.due_date < due.start:
            return False
        if due.end and task.due_date > due.end:
            return False
        return True

    return _in_range


def build_filter(
    spec: Optional[FilterSpec] = None,
    window: Optional[DateWindow] = None,
    search_min_chars: int = DEFAULT_SEARCH_MIN_CHARS,
) -> Predicate:
    """Compile *spec* into a single predicate over one task."""
    spec = FilterSpec.parse(spec)
    predicates: list[Predicate] = []

    term = spec.search_term(search_min_chars)
    if term is not None:
        predicates.append(_matches_search(term))
    if spec.statuses:
        statuses = frozenset(spec.statuses)
        predicates.append(lambda t: t.status in statuses)
    if spec.priorities:
        priorities = frozenset(spec.priorities)
        predicates.append(lambda t: t.priority in priorities)
    if spec.assignee_ids:
        assignee_ids = frozenset(spec.assignee_ids)
        predicates.append(lambda t: t.assignee is not None and t.assignee.id in assignee_ids)
    if spec.project_ids:
        project_ids = frozenset(spec.project_ids)
        predicates.append(lambda t: t.project_id in project_ids)
    if spec.due is not None:
        predicates.append(_due_predicate(spec.due, window or DateWindow.current()))

    if not predicates:
        return lambda _task: True
    return lambda task: all(pred(task) for pred in predicates)


# ---------------------------------------------------------------------------
# Sort spec
# ---------------------------------------------------------------------------

class SortField(str, Enum):
    NAME = "name"
    DUE_DATE = "due_date"
    PRIORITY = "priority"
    STATUS = "status"
    ASSIGNEE = "assignee"
    CREATED_AT = "created_at"
    UPDATED_AT = "updated_at"

    @classmethod
    def _missing_(cls, value: object) -> Optional["SortField"]:
        if value == "assigned_to":
            return cls.ASSIGNEE
        return None


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class SortSpec(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    field: SortField = SortField(DEFAULT_SORT_FIELD)
    direction: SortDirection = SortDirection(DEFAULT_SORT_DIRECTION)

    @field_validator("field", mode="before")
    @classmethod
    def _coerce_field(cls, value: Any) -> Any:
        # Routes legacy names such as "assigned_to" through SortField._missing_.
        return SortField(value) if isinstance(value, str) else value

    @classmethod
    def parse(cls, data: Any) -> "SortSpec":
        if data is None:
            return cls()
        if isinstance(data, cls):
            return data
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise FilterSpecError(f"Invalid sort spec: {exc}") from exc


_SORT_KEYS: dict[SortField, Callable[[Task], Any]] = {
    SortField.NAME: lambda t: t.name.casefold(),
    SortField.DUE_DATE: lambda t: t.due_date,
    SortField.PRIORITY: lambda t: t.priority.rank,
    SortField.STATUS: lambda t: t.status.rank,
    SortField.ASSIGNEE: lambda t: t.assignee.name.casefold() if t.assignee else None,
    SortField.CREATED_AT: lambda t: t.created_at,
    SortField.UPDATED_AT: lambda t: t.updated_at,
}


def sort_key(field: Any) -> Callable[[Task], Any]:
    try:
        return _SORT_KEYS[SortField(field)]
    except ValueError:
        raise FilterSpecError(f"Unknown sort field {field!r}") from None


def build_sort(field: Any, direction: Any = SortDirection.ASC) -> Comparator:
    """Comparator for *field*; tasks missing the value sort last either way."""
    key = sort_key(field)
    try:
        descending = SortDirection(direction) == SortDirection.DESC
    except ValueError:
        raise FilterSpecError(f"Unknown sort direction {direction!r}") from None

    def _compare(a: Task, b: Task) -> int:
        ka, kb = key(a), key(b)
        if ka is None or kb is None:
            return (ka is None) - (kb is None)
        result = (ka > kb) - (ka < kb)
        return -result if descending else result

    return _compare


def sort_tasks(tasks: list[Task], spec: Optional[SortSpec] = None) -> list[Task]:
    """Stable sort of *tasks* by *spec* (default: most recently updated first)."""
    spec = SortSpec.parse(spec)
    return sorted(tasks, key=cmp_to_key(build_sort(spec.field, spec.direction)))


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

def apply(
    tree: TreeLike,
    filters: Optional[FilterSpec] = None,
    sort: Optional[SortSpec] = None,
    window: Optional[DateWindow] = None,
    search_min_chars: int = DEFAULT_SEARCH_MIN_CHARS,
) -> list[Task]:
    """Filter and sort the root level of *tree*; subtasks stay with their root."""
    predicate = build_filter(filters, window, search_min_chars)
    return sort_tasks([t for t in roots_of(tree) if predicate(t)], sort)


def apply_to_subtasks(
    task: Task,
    filters: Optional[FilterSpec] = None,
    sort: Optional[SortSpec] = None,
    window: Optional[DateWindow] = None,
    search_min_chars: int = DEFAULT_SEARCH_MIN_CHARS,
) -> list[Task]:
    """Filter and sort the direct subtasks of *task* for its expanded view."""
    predicate = build_filter(filters, window, search_min_chars)
    return sort_tasks([t for t in children_of(task) if predicate(t)], sort)
