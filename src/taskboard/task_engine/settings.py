"""Typed engine settings and the per-view context.

Both objects are passed to :class:`~taskboard.task_engine.engine.TaskEngine`
explicitly; nothing about the current user's view lives in module state.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any, Optional

from ..constants import DEFAULT_SEARCH_MIN_CHARS
from .aggregation import DateWindow
from .board import DEFAULT_COLUMNS, ColumnMap, KanbanColumn
from .filtering import FilterSpec, SortSpec


@dataclass(frozen=True)
class EngineSettings:
    search_min_chars: int = DEFAULT_SEARCH_MIN_CHARS
    # Restore the pre-move status when a status request fails.
    rollback_on_failure: bool = True
    # Schedule a reconciling refetch after a failed status request.
    refetch_on_failure: bool = True
    default_sort: SortSpec = field(default_factory=SortSpec)
    columns: tuple[KanbanColumn, ...] = DEFAULT_COLUMNS

    def column_map(self) -> ColumnMap:
        return ColumnMap(self.columns)

    @classmethod
    def from_config(cls, raw: dict[str, Any]) -> "EngineSettings":
        """Build settings from the ``engine`` block of the config file.

        See :func:`taskboard.config.get_engine_config`.  Unknown keys are
        ignored; invalid values raise :class:`ValueError`.
        """
        settings = cls()
        changes: dict[str, Any] = {}
        if "search_min_chars" in raw:
            value = int(raw["search_min_chars"])
            if value < 0:
                raise ValueError("'engine.search_min_chars' must be >= 0")
            changes["search_min_chars"] = value
        for flag in ("rollback_on_failure", "refetch_on_failure"):
            if flag in raw:
                if not isinstance(raw[flag], bool):
                    raise ValueError(f"'engine.{flag}' must be true or false, got {raw[flag]!r}")
                changes[flag] = raw[flag]
        if raw.get("default_sort") is not None:
            changes["default_sort"] = SortSpec.parse(raw["default_sort"])
        if raw.get("columns"):
            columns = tuple(KanbanColumn.from_dict(c) for c in raw["columns"] if isinstance(c, dict))
            ColumnMap(columns)  # validate the bijection up front
            changes["columns"] = columns
        return replace(settings, **changes) if changes else settings


@dataclass(frozen=True)
class ViewContext:
    """What the current page is looking at: filters, sort, and "today"."""

    filters: FilterSpec = field(default_factory=FilterSpec)
    sort: SortSpec = field(default_factory=SortSpec)
    today: Optional[date] = None

    def window(self) -> DateWindow:
        return DateWindow.for_day(self.today) if self.today else DateWindow.current()

    def with_filters(self, filters: Any) -> "ViewContext":
        return replace(self, filters=FilterSpec.parse(filters))

    def with_sort(self, sort: Any) -> "ViewContext":
        return replace(self, sort=SortSpec.parse(sort))
