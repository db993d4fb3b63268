"""Task definition loading and dependency ordering."""

from __future__ import annotations

import heapq
import json
import logging
import tomllib
from pathlib import Path

from pydantic import ValidationError

from .exceptions import TaskGraphError
from .models import Task, TaskSpec

logger = logging.getLogger(__name__)


def load_task_specs(path: Path) -> list[TaskSpec]:
    """Load task definitions from a TOML or JSON file.

    The file holds an ordered ``tasks`` list; each entry has ``id`` and
    optionally ``depends_on``, ``operation``, ``timeout`` and ``payload``.

    Raises:
        TaskGraphError: If the file is malformed or the graph is invalid.
    """
    path = Path(path)
    try:
        if path.suffix == ".json":
            data = json.loads(path.read_text(encoding="utf-8"))
        else:
            with open(path, "rb") as f:
                data = tomllib.load(f)
    except OSError as e:
        raise TaskGraphError(f"Cannot read task file {path}: {e}") from e
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as e:
        raise TaskGraphError(f"Cannot parse task file {path}: {e}") from e

    entries = data.get("tasks") if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise TaskGraphError(f"{path} must contain a 'tasks' list")

    try:
        specs = [TaskSpec.model_validate(entry) for entry in entries]
    except ValidationError as e:
        raise TaskGraphError(f"Invalid task definition in {path}: {e}") from e

    validate_task_graph(specs)
    logger.debug(f"Loaded {len(specs)} task definitions from {path}")
    return specs


def validate_task_graph(specs: list[TaskSpec]) -> None:
    """Reject duplicate ids, unknown dependencies and cycles."""
    ids: set[str] = set()
    for spec in specs:
        if not spec.id:
            raise TaskGraphError("Task with empty id")
        if spec.id in ids:
            raise TaskGraphError(f"Duplicate task id '{spec.id}'")
        ids.add(spec.id)

    for spec in specs:
        for dep in spec.depends_on:
            if dep == spec.id:
                raise TaskGraphError(f"Task '{spec.id}' depends on itself")
            if dep not in ids:
                raise TaskGraphError(f"Task '{spec.id}' depends on unknown task '{dep}'")

    graph = {spec.id: list(spec.depends_on) for spec in specs}
    visiting: set[str] = set()
    done: set[str] = set()

    def visit(node: str, trail: list[str]) -> None:
        if node in done:
            return
        if node in visiting:
            cycle = trail[trail.index(node):] + [node]
            raise TaskGraphError("Dependency cycle: " + " -> ".join(cycle))
        visiting.add(node)
        for dep in graph[node]:
            visit(dep, trail + [node])
        visiting.discard(node)
        done.add(node)

    for spec in specs:
        visit(spec.id, [])


def dependency_order(tasks: list[Task]) -> list[Task]:
    """Topological order, ties broken by file position."""
    by_id = {task.id: task for task in tasks}
    pending = {task.id: {d for d in task.depends_on if d in by_id} for task in tasks}
    dependents: dict[str, list[str]] = {task.id: [] for task in tasks}
    for task in tasks:
        for dep in pending[task.id]:
            dependents[dep].append(task.id)

    heap = [(task.position, task.id) for task in tasks if not pending[task.id]]
    heapq.heapify(heap)
    ordered: list[Task] = []
    while heap:
        _, task_id = heapq.heappop(heap)
        ordered.append(by_id[task_id])
        for child in dependents[task_id]:
            pending[child].discard(task_id)
            if not pending[child]:
                heapq.heappush(heap, (by_id[child].position, child))

    if len(ordered) != len(tasks):
        raise TaskGraphError("Dependency cycle in run tasks")
    return ordered


def next_task_after_completed(tasks: list[Task]) -> str | None:
    """First not-completed task after the last completed one, in dependency order."""
    ordered = dependency_order(tasks)
    last_done = -1
    for index, task in enumerate(ordered):
        if task.is_resolved:
            last_done = index
    for task in ordered[last_done + 1:]:
        if not task.is_resolved:
            return task.id
    for task in ordered:
        if not task.is_resolved:
            return task.id
    return None
