"""Configure loguru and format engine events for log lines."""

from __future__ import annotations

import sys
from typing import Any, TextIO

from loguru import logger


def configure_logging(level: str = "INFO", sink: TextIO | None = None) -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sink or sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


def summarize_event(event: dict[str, Any] | None) -> dict[str, Any]:
    """Render a compact, JSON-friendly summary of an engine event.

    Args:
        event: Event dict as emitted by :class:`~taskboard.task_engine.engine.TaskEngine`.

    Returns:
        A dictionary suitable for logging.
    """
    if not event:
        return {"event": None}

    d: dict[str, Any] = {"event": event.get("type")}
    for key in ("task_id", "status", "version"):
        if event.get(key) is not None:
            d[key] = event[key]

    details = event.get("details") or {}
    if "error" in details:
        error = str(details["error"] or "")
        d["error"] = (error[:240] + "…") if len(error) > 240 else error
    if "previous_status" in details:
        d["from"] = details["previous_status"]
    if "roots" in details:
        d["roots_n"] = details["roots"]
    return d
