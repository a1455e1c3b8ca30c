"""Load optional engine configuration from `.taskboard/config.yaml`."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from .constants import CONFIG_FILE, STATE_DIR_NAME
from .io_utils import _load_data_with_error
from .task_engine.settings import EngineSettings
from .task_engine.store import TaskStore


def load_engine_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional engine config file.

    Args:
        project_dir: Directory that holds the `.taskboard/` state directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    project_dir = project_dir.resolve()
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    data, err = _load_data_with_error(path, {})
    if not path.exists():
        return {}, None
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def get_engine_config(config: dict[str, Any]) -> dict[str, Any]:
    """Extract the engine configuration block.

    Args:
        config: Parsed configuration dictionary.

    Returns:
        The `engine` config mapping, or an empty dict if not present.
    """
    raw = _get_nested(config, "engine")
    return raw if isinstance(raw, dict) else {}


def get_store_dir(config: dict[str, Any], project_dir: Path) -> Path:
    """Resolve the directory the file-backed store writes to.

    Relative `store.dir` values are taken relative to *project_dir*.
    """
    raw = _get_nested(config, "store", "dir")
    if isinstance(raw, str) and raw.strip():
        path = Path(raw.strip())
        return path if path.is_absolute() else (project_dir / path).resolve()
    return (project_dir / STATE_DIR_NAME).resolve()


def load_settings(project_dir: Path) -> tuple[EngineSettings, str | None]:
    """Load and validate engine settings, falling back to defaults on error.

    Returns:
        A tuple of `(settings, error_message)`.
    """
    config, err = load_engine_config(project_dir)
    if err:
        return EngineSettings(), err
    try:
        return EngineSettings.from_config(get_engine_config(config)), None
    except ValueError as exc:
        return EngineSettings(), f"{CONFIG_FILE}: {exc}"


def open_store(project_dir: Path, config: dict[str, Any] | None = None) -> TaskStore:
    """Open the file-backed store configured for *project_dir*.

    When *config* is omitted the config file is loaded; an unreadable file
    falls back to the default `.taskboard/` directory.
    """
    if config is None:
        config, _err = load_engine_config(project_dir)
    return TaskStore(get_store_dir(config, project_dir.resolve()))
