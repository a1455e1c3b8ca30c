"""Persistent (structurally shared) operations over a task tree.

Every function here is pure.  Mutating helpers return a *new* tree in which
only the nodes on the path from the root to the changed task are rebuilt;
untouched subtrees are the very same objects as in the input.  When nothing
changes, the input object itself is returned, so ``new is old`` is a cheap
"did anything apply?" check for callers.

A *tree* argument may be a single task or a forest (tuple of root tasks).
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import replace as dc_replace
from typing import Any, Callable, Iterable, Iterator, Optional, Union

from loguru import logger

from ..constants import MAX_TASK_LEVEL
from .errors import TreeIntegrityError
from .model import (
    VARIANT_BY_LEVEL,
    Forest,
    LeafTask,
    Task,
    children_of,
    task_from_row,
    task_to_row,
)

TreeLike = Union[Task, Forest, list]
Updater = Callable[[Task], Task]


def roots_of(tree: TreeLike) -> tuple[Task, ...]:
    if isinstance(tree, (tuple, list)):
        return tuple(tree)
    return (tree,)


# ---------------------------------------------------------------------------
# Traversal
# ---------------------------------------------------------------------------

def iter_tasks(tree: TreeLike) -> Iterator[Task]:
    """Yield every task in pre-order (parent before its children)."""
    stack = list(reversed(roots_of(tree)))
    while stack:
        task = stack.pop()
        yield task
        stack.extend(reversed(children_of(task)))


def flatten(tree: TreeLike) -> list[Task]:
    """Return all tasks of *tree* in pre-order as a fresh list."""
    return list(iter_tasks(tree))


def find_by_id(tree: TreeLike, task_id: str) -> Optional[Task]:
    for task in iter_tasks(tree):
        if task.id == task_id:
            return task
    return None


def find_path(tree: TreeLike, task_id: str) -> tuple[Task, ...]:
    """Return the chain ``(root, ..., task)`` leading to *task_id*, or ``()``."""

    def _walk(node: Task, trail: tuple[Task, ...]) -> tuple[Task, ...]:
        trail = trail + (node,)
        if node.id == task_id:
            return trail
        for child in children_of(node):
            found = _walk(child, trail)
            if found:
                return found
        return ()

    for root in roots_of(tree):
        found = _walk(root, ())
        if found:
            return found
    return ()


def parent_of(tree: TreeLike, task_id: str) -> Optional[Task]:
    path = find_path(tree, task_id)
    return path[-2] if len(path) >= 2 else None


# ---------------------------------------------------------------------------
# Persistent updates
# ---------------------------------------------------------------------------

def _rebuild(tree: TreeLike, updated: tuple[Task, ...]) -> TreeLike:
    if isinstance(tree, list):
        return list(updated)
    if isinstance(tree, tuple):
        return updated
    return updated[0] if updated else None


def _map_children(node: Task, fn: Callable[[Task], Optional[Task]]) -> Task:
    """Apply *fn* to each child; rebuild *node* only if some child changed."""
    kids = children_of(node)
    if not kids:
        return node
    changed = False
    new_kids: list[Task] = []
    for kid in kids:
        result = fn(kid)
        if result is not kid:
            changed = True
        if result is not None:
            new_kids.append(result)
    if not changed:
        return node
    return dc_replace(node, subtasks=tuple(new_kids))


def replace(tree: TreeLike, task_id: str, updater: Updater) -> TreeLike:
    """Return a tree where the task *task_id* is replaced by ``updater(task)``.

    Only the ancestors of the target are rebuilt.  An unknown id returns
    *tree* unchanged (the same object).  The updater must keep the variant
    and the id, otherwise :class:`TreeIntegrityError` is raised.
    """

    def _visit(node: Task) -> Task:
        if node.id == task_id:
            new_node = updater(node)
            if type(new_node) is not type(node):
                raise TreeIntegrityError(
                    f"Updater changed task {task_id} from {type(node).__name__} to {type(new_node).__name__}"
                )
            if new_node.id != task_id:
                raise TreeIntegrityError(f"Updater changed task id {task_id!r} to {new_node.id!r}")
            return new_node
        return _map_children(node, _visit)

    roots = roots_of(tree)
    new_roots = tuple(_visit(root) for root in roots)
    if all(a is b for a, b in zip(roots, new_roots)):
        return tree
    return _rebuild(tree, new_roots)


def remove(tree: TreeLike, task_id: str) -> TreeLike:
    """Drop *task_id* and its whole subtree from the in-memory tree.

    This never touches the remote store; deleting remotely is a separate,
    explicit operation.  An unknown id returns *tree* unchanged.
    """

    def _visit(node: Task) -> Optional[Task]:
        if node.id == task_id:
            return None
        return _map_children(node, _visit)

    roots = roots_of(tree)
    kept: list[Task] = []
    changed = False
    for root in roots:
        result = _visit(root)
        if result is not root:
            changed = True
        if result is not None:
            kept.append(result)
    if not changed:
        return tree
    return _rebuild(tree, tuple(kept))


def _as_level(task: Task, level: int, parent_id: Optional[str]) -> Task:
    """Re-type *task* (and its subtree) for a new position in the tree."""
    if level > MAX_TASK_LEVEL:
        raise TreeIntegrityError(f"Task {task.id} would exceed the maximum depth of {MAX_TASK_LEVEL}")
    kids = tuple(_as_level(kid, level + 1, task.id) for kid in children_of(task))
    row = task_to_row(task)
    row["parent_id"] = parent_id
    return task_from_row(row, level, kids)


def insert(tree: TreeLike, parent_id: Optional[str], child: Task) -> TreeLike:
    """Attach *child* under *parent_id*, or as a new root when ``parent_id`` is None.

    The child is re-typed to the variant matching its new depth.  An unknown
    parent leaves *tree* unchanged.
    """
    if parent_id is None:
        if not isinstance(tree, (tuple, list)):
            raise TreeIntegrityError("A new root task can only be added to a forest")
        return _rebuild(tree, roots_of(tree) + (_as_level(child, 0, None),))

    parent = find_by_id(tree, parent_id)
    if parent is None:
        return tree
    if isinstance(parent, LeafTask):
        raise TreeIntegrityError(f"Cannot add a subtask under level-{MAX_TASK_LEVEL} task {parent_id}")
    attached = _as_level(child, parent.level + 1, parent_id)
    return replace(tree, parent_id, lambda p: dc_replace(p, subtasks=children_of(p) + (attached,)))


# ---------------------------------------------------------------------------
# Flat rows <-> tree
# ---------------------------------------------------------------------------

def to_rows(tree: TreeLike) -> list[dict[str, Any]]:
    """Flatten *tree* to row dicts carrying ``parent_id`` and ``level``."""
    rows: list[dict[str, Any]] = []

    def _walk(node: Task, parent_id: Optional[str]) -> None:
        row = task_to_row(node)
        row["parent_id"] = parent_id
        rows.append(row)
        for kid in children_of(node):
            _walk(kid, node.id)

    for root in roots_of(tree):
        _walk(root, None)
    return rows


def build_tree(rows: Iterable[dict[str, Any]]) -> Forest:
    """Assemble a forest from flat rows linked by ``parent_id``.

    Rows whose parent is not among *rows* are treated as roots (a filtered
    fetch can leave subtasks without their parent).  Levels are derived from
    position, not trusted from the row.  Children keep the order in which
    they appear in *rows*.
    """
    rows = list(rows)
    by_id: dict[str, dict[str, Any]] = {}
    for row in rows:
        row_id = str(row.get("id") or "")
        if not row_id:
            raise TreeIntegrityError("Task row without an id")
        if row_id in by_id:
            raise TreeIntegrityError(f"Duplicate task id {row_id!r}")
        by_id[row_id] = row

    children: dict[str, list[str]] = defaultdict(list)
    root_ids: list[str] = []
    for row in rows:
        row_id = str(row["id"])
        parent_id = row.get("parent_id")
        if parent_id and parent_id in by_id:
            children[parent_id].append(row_id)
        else:
            if parent_id:
                logger.debug("Task {} has no parent {} in this fetch; treating it as a root", row_id, parent_id)
            root_ids.append(row_id)

    placed: set[str] = set()

    def _build(row_id: str, level: int, parent_id: Optional[str]) -> Task:
        if level > MAX_TASK_LEVEL:
            raise TreeIntegrityError(
                f"Task {row_id} is nested below a level-{MAX_TASK_LEVEL} task"
            )
        placed.add(row_id)
        kids = tuple(_build(kid, level + 1, row_id) for kid in children.get(row_id, []))
        row = dict(by_id[row_id])
        row["parent_id"] = parent_id
        return task_from_row(row, level, kids)

    forest = tuple(_build(rid, 0, None) for rid in root_ids)
    unplaced = [rid for rid in by_id if rid not in placed]
    if unplaced:
        raise TreeIntegrityError(f"Parent cycle among tasks: {sorted(unplaced)}")
    return forest  # type: ignore[return-value]


def levels_consistent(tree: TreeLike) -> bool:
    """True when every node's variant matches its depth below the roots."""

    def _check(node: Task, level: int) -> bool:
        if not isinstance(node, VARIANT_BY_LEVEL[level]):
            return False
        return all(_check(kid, level + 1) for kid in children_of(node))

    return all(_check(root, 0) for root in roots_of(tree))
