"""Provide the public `taskboard` package exports."""

from __future__ import annotations

from .config import load_engine_config, load_settings, open_store
from .logging_utils import configure_logging
from .task_engine import EngineSettings, TaskEngine, TaskStore, ViewContext

__all__ = [
    "EngineSettings",
    "TaskEngine",
    "TaskStore",
    "ViewContext",
    "configure_logging",
    "load_engine_config",
    "load_settings",
    "open_store",
]
