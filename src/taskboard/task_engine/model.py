"""Task tree model for the hierarchical task engine.

A task tree has at most three levels.  Instead of a numeric ``level`` field
checked at every branch, the level is encoded by the variant:

* :class:`RootTask` (level 0) owns :class:`BranchTask` subtasks,
* :class:`BranchTask` (level 1) owns :class:`LeafTask` subtasks,
* :class:`LeafTask` (level 2) has no subtasks at all.

Every variant is a frozen dataclass and children are stored in tuples, so a
snapshot can be shared between readers and is only ever *replaced*, never
mutated in place (see :mod:`taskboard.task_engine.tree`).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, ClassVar, Optional, Union

from ..constants import (
    IN_PROGRESS_DEFAULT_PROGRESS,
    IN_REVIEW_DEFAULT_PROGRESS,
    MAX_TASK_LEVEL,
    MIN_TASK_NAME_LENGTH,
)
from .errors import TreeIntegrityError


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    """Closed set of task statuses, declared in board (presentation) order."""

    NOT_STARTED = "not-started"
    IN_PROGRESS = "in-progress"
    IN_REVIEW = "in-review"
    BLOCKED = "blocked"
    COMPLETED = "completed"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    @classmethod
    def parse(cls, value: Any) -> "TaskStatus":
        """Coerce *value* to a status; anything outside the enum is an integrity error."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            raise TreeIntegrityError(
                f"Invalid task status {value!r}; expected one of {[s.value for s in cls]}"
            ) from None


class TaskPriority(str, Enum):
    """Closed set of priorities, ``low`` < ``medium`` < ``high`` < ``urgent``."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_ORDER.index(self)

    @classmethod
    def parse(cls, value: Any) -> "TaskPriority":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            raise TreeIntegrityError(
                f"Invalid task priority {value!r}; expected one of {[p.value for p in cls]}"
            ) from None


_STATUS_ORDER = list(TaskStatus)
_PRIORITY_ORDER = list(TaskPriority)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _generate_id() -> str:
    """Short task id: ``task-<8hex>``."""
    return f"task-{uuid.uuid4().hex[:8]}"


def advance_timestamp(previous: datetime, now: Optional[datetime] = None) -> datetime:
    """Return a timestamp strictly later than *previous*.

    Wall clocks can stand still (or step back) between two quick status
    changes; ``updated_at`` must still move forward every time.
    """
    current = now or utc_now()
    if current <= previous:
        return previous + timedelta(microseconds=1)
    return current


def parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise TreeIntegrityError(f"Invalid date {value!r}") from None


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        raw = str(value).strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            raise TreeIntegrityError(f"Invalid timestamp {value!r}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Task variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Assignee:
    """The person a task is assigned to."""

    id: str
    name: str
    email: Optional[str] = None
    avatar: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "email": self.email, "avatar": self.avatar}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Assignee":
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or "Unknown"),
            email=data.get("email") or None,
            avatar=data.get("avatar") or None,
        )


@dataclass(frozen=True)
class _TaskFields:
    id: str = field(default_factory=_generate_id)
    name: str = ""
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.NOT_STARTED
    priority: TaskPriority = TaskPriority.MEDIUM
    assignee: Optional[Assignee] = None
    due_date: Optional[date] = None
    start_date: Optional[date] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    progress: Optional[int] = None
    project_id: Optional[str] = None
    parent_id: Optional[str] = None
    external_link: Optional[str] = None
    attachment_count: int = 0
    comment_count: int = 0

    LEVEL: ClassVar[int] = -1

    @property
    def level(self) -> int:
        return self.LEVEL

    @property
    def is_completed(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    def with_status(self, status: TaskStatus, now: Optional[datetime] = None):
        """Copy of this task with *status* and a strictly advanced ``updated_at``."""
        return replace(self, status=TaskStatus.parse(status), updated_at=advance_timestamp(self.updated_at, now))


@dataclass(frozen=True)
class LeafTask(_TaskFields):
    """A level-2 task; it can never own subtasks."""

    LEVEL: ClassVar[int] = 2


@dataclass(frozen=True)
class BranchTask(_TaskFields):
    """A level-1 subtask owning level-2 subtasks."""

    subtasks: tuple[LeafTask, ...] = ()

    LEVEL: ClassVar[int] = 1


@dataclass(frozen=True)
class RootTask(_TaskFields):
    """A level-0 task; the only kind shown on the Kanban board."""

    subtasks: tuple[BranchTask, ...] = ()

    LEVEL: ClassVar[int] = 0


Task = Union[RootTask, BranchTask, LeafTask]
Forest = tuple[RootTask, ...]

VARIANT_BY_LEVEL: dict[int, type] = {0: RootTask, 1: BranchTask, 2: LeafTask}


def children_of(task: Task) -> tuple[Task, ...]:
    """Direct subtasks of *task* (always empty for a :class:`LeafTask`)."""
    return getattr(task, "subtasks", ())


def derived_progress(task: Task) -> int:
    """Progress percentage shown for *task*.

    An explicitly stored value wins.  Otherwise the share of completed direct
    subtasks is used, and a task without subtasks falls back to a fixed value
    per status.
    """
    if task.progress is not None:
        return int(task.progress)
    subtasks = children_of(task)
    if subtasks:
        completed = sum(1 for st in subtasks if st.status == TaskStatus.COMPLETED)
        return int(round(completed * 100 / len(subtasks)))
    if task.status == TaskStatus.COMPLETED:
        return 100
    if task.status == TaskStatus.IN_PROGRESS:
        return IN_PROGRESS_DEFAULT_PROGRESS
    if task.status == TaskStatus.IN_REVIEW:
        return IN_REVIEW_DEFAULT_PROGRESS
    return 0


# ---------------------------------------------------------------------------
# Row (de)serialization
# ---------------------------------------------------------------------------

_SCALAR_FIELDS = tuple(f.name for f in fields(_TaskFields))


def task_from_row(
    row: dict[str, Any],
    level: int = 0,
    subtasks: tuple[Task, ...] = (),
) -> Task:
    """Build the variant for *level* from a flat row dict.

    ``status`` and ``priority`` must be valid enum values; unlike most other
    fields they are never defaulted when present but wrong.
    """
    if level not in VARIANT_BY_LEVEL:
        raise TreeIntegrityError(f"Task level must be between 0 and {MAX_TASK_LEVEL}, got {level}")
    if level == MAX_TASK_LEVEL and subtasks:
        raise TreeIntegrityError(f"Level-{MAX_TASK_LEVEL} task {row.get('id')!r} cannot own subtasks")

    assignee_raw = row.get("assignee")
    assignee = Assignee.from_dict(assignee_raw) if isinstance(assignee_raw, dict) else None
    progress = row.get("progress")
    if progress is not None:
        progress = int(progress)
        if not 0 <= progress <= 100:
            raise TreeIntegrityError(f"Progress must be between 0 and 100, got {progress}")

    now = utc_now()
    kwargs: dict[str, Any] = {
        "id": str(row.get("id") or _generate_id()),
        "name": str(row.get("name") or ""),
        "description": row.get("description") or None,
        "status": TaskStatus.parse(row.get("status") or TaskStatus.NOT_STARTED),
        "priority": TaskPriority.parse(row.get("priority") or TaskPriority.MEDIUM),
        "assignee": assignee,
        "due_date": parse_date(row.get("due_date")),
        "start_date": parse_date(row.get("start_date")),
        "created_at": parse_datetime(row.get("created_at")) or now,
        "updated_at": parse_datetime(row.get("updated_at")) or now,
        "progress": progress,
        "project_id": row.get("project_id") or None,
        "parent_id": row.get("parent_id") or None,
        "external_link": row.get("external_link") or None,
        "attachment_count": int(row.get("attachment_count") or 0),
        "comment_count": int(row.get("comment_count") or 0),
    }
    variant = VARIANT_BY_LEVEL[level]
    if variant is LeafTask:
        return LeafTask(**kwargs)
    return variant(subtasks=tuple(subtasks), **kwargs)


def task_to_row(task: Task) -> dict[str, Any]:
    """Serialize a single node (without its subtasks) to a flat row dict."""
    row: dict[str, Any] = {}
    for name in _SCALAR_FIELDS:
        value = getattr(task, name)
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, Assignee):
            value = value.to_dict()
        elif isinstance(value, (date, datetime)):
            value = value.isoformat()
        row[name] = value
    row["level"] = task.level
    return row


def validate_row(row: Any) -> list[str]:
    """Lightweight validation of a create/update payload.

    Returns a list of error strings (empty = valid).
    """
    if not isinstance(row, dict):
        return ["Expected a dict"]
    errors: list[str] = []
    name = str(row.get("name") or "").strip()
    if len(name) < MIN_TASK_NAME_LENGTH:
        errors.append(f"'name' must be at least {MIN_TASK_NAME_LENGTH} characters")
    status = row.get("status")
    if status is not None and status not in {s.value for s in TaskStatus}:
        errors.append(f"'status' must be one of {[s.value for s in TaskStatus]}, got '{status}'")
    priority = row.get("priority")
    if priority is not None and priority not in {p.value for p in TaskPriority}:
        errors.append(f"'priority' must be one of {[p.value for p in TaskPriority]}, got '{priority}'")
    progress = row.get("progress")
    if progress is not None:
        if not isinstance(progress, int) or isinstance(progress, bool) or not 0 <= progress <= 100:
            errors.append("'progress' must be an integer between 0 and 100")
    for date_field in ("due_date", "start_date"):
        value = row.get(date_field)
        if value:
            try:
                parse_date(value)
            except TreeIntegrityError:
                errors.append(f"'{date_field}' must be an ISO date")
    return errors
