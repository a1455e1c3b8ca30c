"""Exception types raised by the task engine."""

from __future__ import annotations

from typing import Optional


class TaskEngineError(Exception):
    """Base class for every error raised by :mod:`taskboard.task_engine`."""


class TreeIntegrityError(TaskEngineError, ValueError):
    """The task data violates a structural invariant (depth, enum, cycle)."""


class InvalidColumnError(TaskEngineError, ValueError):
    """A board column id has no mapped status."""

    def __init__(self, column_id: str) -> None:
        super().__init__(f"Unknown board column '{column_id}'")
        self.column_id = column_id


class FilterSpecError(TaskEngineError, ValueError):
    """A filter or sort specification could not be validated."""


class RemoteError(TaskEngineError):
    """A call to the remote task store failed.

    ``operation`` names the remote call (``list_tasks``, ``set_status`` ...)
    and ``reason`` is the human-readable failure message.
    """

    def __init__(self, reason: str, *, operation: Optional[str] = None, task_id: Optional[str] = None) -> None:
        prefix = f"{operation} failed" if operation else "Remote call failed"
        super().__init__(f"{prefix}: {reason}")
        self.reason = reason
        self.operation = operation
        self.task_id = task_id
