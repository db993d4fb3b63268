"""Durable run state.

The state store is the single source of truth for a run. It has exactly one
writer (the execution engine, or the CLI while no engine is active); every
other component gets a read-only ``StateReader``.

``FileStateStore`` writes through a temp file and ``os.replace`` so a crash
never leaves a half-written primary file, and keeps a backup copy that
``load`` falls back to when the primary is missing or invalid.
"""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import NamedTuple

from pydantic import ValidationError

from .exceptions import StateCorrupted, StateNotFound
from .models import Run, TaskStatus

logger = logging.getLogger(__name__)

STATE_FILE = "state.json"
BACKUP_SUFFIX = ".bak"


class ConsistencyError(NamedTuple):
    """A single violated consistency rule."""

    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


def validate_run(run: Run) -> list[ConsistencyError]:
    """Check a run against the state consistency rules.

    Returns an empty list when the run is consistent.
    """
    problems: list[ConsistencyError] = []

    ids = [task.id for task in run.tasks]
    seen: set[str] = set()
    for task_id in ids:
        if task_id in seen:
            problems.append(ConsistencyError("tasks", f"task '{task_id}' appears more than once"))
        seen.add(task_id)

    if run.total_tasks != len(run.tasks):
        problems.append(
            ConsistencyError(
                "total_tasks", f"{run.total_tasks} recorded but {len(run.tasks)} tasks present"
            )
        )

    for name in ("completed_count", "failed_count", "blocked_count", "global_retries"):
        if getattr(run, name) < 0:
            problems.append(ConsistencyError(name, "must not be negative"))

    if run.completed_count + run.failed_count + run.blocked_count > run.total_tasks:
        problems.append(
            ConsistencyError("counts", "completed + failed + blocked exceeds total tasks")
        )

    expected = run.model_copy(deep=True)
    expected.refresh_counts()
    for name in ("completed_count", "failed_count", "blocked_count"):
        if getattr(run, name) != getattr(expected, name):
            problems.append(
                ConsistencyError(
                    name,
                    f"{getattr(run, name)} recorded but task statuses give {getattr(expected, name)}",
                )
            )

    if run.current_task is not None and run.current_task not in seen:
        problems.append(
            ConsistencyError("current_task", f"'{run.current_task}' is not a known task")
        )

    running = [task.id for task in run.tasks if task.status == TaskStatus.IN_PROGRESS]
    if len(running) > 1:
        problems.append(
            ConsistencyError("tasks", f"more than one task in progress: {', '.join(running)}")
        )
    elif running and running[0] != run.current_task:
        problems.append(
            ConsistencyError("current_task", f"task '{running[0]}' is in progress but not current")
        )

    for task in run.tasks:
        if task.attempt_count < 0:
            problems.append(ConsistencyError(f"tasks.{task.id}", "negative attempt count"))
        if task.status == TaskStatus.COMPLETED and task.finished_at is None:
            problems.append(
                ConsistencyError(f"tasks.{task.id}", "completed without a finish timestamp")
            )
        for dep in task.depends_on:
            if dep not in seen:
                problems.append(
                    ConsistencyError(f"tasks.{task.id}", f"depends on unknown task '{dep}'")
                )

    return problems


def parse_run(text: str) -> Run:
    """Parse serialized state. Raises ``ValueError`` on malformed input."""
    return Run.model_validate_json(text)


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to ``path`` through a synced temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


def append_lines(path: Path, lines: list[str], max_lines: int = 0, keep_lines: int = 0) -> None:
    """Append lines to a journal file, trimming it once it grows too long.

    When ``max_lines`` is set and the file holds more lines than that, only
    the newest ``keep_lines`` (half of ``max_lines`` if unset) are kept.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        for line in lines:
            f.write(line + "\n")

    if max_lines <= 0:
        return
    existing = path.read_text(encoding="utf-8").splitlines()
    if len(existing) <= max_lines:
        return
    keep = keep_lines or max_lines // 2
    atomic_write_text(path, "\n".join(existing[-keep:]) + "\n")
    logger.debug(f"Trimmed {path.name} to its last {keep} lines")


def copy_tail(source: Path, dest: Path, max_bytes: int = 0) -> None:
    """Copy ``source`` to ``dest``, keeping only the last ``max_bytes``.

    A truncated copy starts at the first complete line. ``max_bytes=0``
    copies the whole file.
    """
    size = source.stat().st_size
    if max_bytes <= 0 or size <= max_bytes:
        shutil.copy2(source, dest)
        return
    with open(source, "rb") as f:
        f.seek(size - max_bytes)
        data = f.read()
    newline = data.find(b"\n")
    if newline != -1:
        data = data[newline + 1 :]
    dest.write_bytes(data)


class StateReader(ABC):
    """Read-only view of a run's state."""

    @abstractmethod
    def load(self) -> Run:
        """Load the current run. Raises StateNotFound or StateCorrupted."""

    @abstractmethod
    def last_modified(self) -> datetime | None:
        """When the state was last written, or None if never."""


class StateStore(StateReader):
    """Writable state store. Only the engine (or an idle CLI) holds one."""

    @abstractmethod
    def save(self, run: Run) -> None:
        """Persist ``run`` atomically."""

    @abstractmethod
    def exists(self) -> bool:
        """Whether any state has been saved."""

    def validate(self, run: Run) -> list[ConsistencyError]:
        return validate_run(run)

    def reader(self) -> StateReader:
        """Return a view exposing only the read operations."""
        return _ReadOnlyView(self)

    def _check_before_save(self, run: Run) -> None:
        run.refresh_counts()
        problems = self.validate(run)
        if problems:
            raise StateCorrupted(
                "Refusing to save inconsistent state", [str(p) for p in problems]
            )


class _ReadOnlyView(StateReader):
    def __init__(self, store: StateStore) -> None:
        self._store = store

    def load(self) -> Run:
        return self._store.load()

    def last_modified(self) -> datetime | None:
        return self._store.last_modified()


class FileStateStore(StateStore):
    """JSON state file with a backup copy in a state directory."""

    def __init__(self, state_dir: Path, filename: str = STATE_FILE) -> None:
        self.state_dir = Path(state_dir)
        self.primary_path = self.state_dir / filename
        self.backup_path = self.state_dir / (filename + BACKUP_SUFFIX)

    def exists(self) -> bool:
        return self.primary_path.exists() or self.backup_path.exists()

    def last_modified(self) -> datetime | None:
        for path in (self.primary_path, self.backup_path):
            if path.exists():
                return datetime.fromtimestamp(path.stat().st_mtime)
        return None

    def save(self, run: Run) -> None:
        run.updated_at = datetime.now()
        self._check_before_save(run)
        text = run.model_dump_json(indent=2)
        atomic_write_text(self.primary_path, text)
        atomic_write_text(self.backup_path, text)
        logger.debug(f"Saved state for run {run.run_id} to {self.primary_path}")

    def load(self) -> Run:
        if not self.exists():
            raise StateNotFound(f"No state found in {self.state_dir}")

        problems: list[str] = []
        for label, path in (("primary", self.primary_path), ("backup", self.backup_path)):
            if not path.exists():
                problems.append(f"{label} state file missing")
                continue
            try:
                run = parse_run(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.warning(f"Could not read {label} state file {path}: {_short(e)}")
                problems.append(f"{label} unreadable: {_short(e)}")
                continue

            inconsistencies = self.validate(run)
            if inconsistencies:
                logger.warning(
                    f"{label.capitalize()} state file {path} failed validation: "
                    + "; ".join(str(p) for p in inconsistencies)
                )
                problems.append(f"{label} invalid: " + "; ".join(str(p) for p in inconsistencies))
                continue

            if label == "backup":
                logger.warning(f"Primary state unusable, recovered run {run.run_id} from backup {path}")
            return run

        raise StateCorrupted(f"State in {self.state_dir} is corrupted", problems)


class MemoryStateStore(StateStore):
    """In-process store with the same contract as FileStateStore.

    Keeps the serialized form so loads return independent copies.
    """

    def __init__(self, run: Run | None = None) -> None:
        self._data: str | None = None
        self._modified: datetime | None = None
        if run is not None:
            self.save(run)

    def exists(self) -> bool:
        return self._data is not None

    def last_modified(self) -> datetime | None:
        return self._modified

    def save(self, run: Run) -> None:
        run.updated_at = datetime.now()
        self._check_before_save(run)
        self._data = run.model_dump_json()
        self._modified = run.updated_at

    def load(self) -> Run:
        if self._data is None:
            raise StateNotFound("No state saved")
        try:
            run = parse_run(self._data)
        except ValueError as e:
            raise StateCorrupted("In-memory state is unreadable", [_short(e)]) from e
        problems = self.validate(run)
        if problems:
            raise StateCorrupted("In-memory state is invalid", [str(p) for p in problems])
        return run


def _short(error: Exception) -> str:
    if isinstance(error, ValidationError):
        return f"{error.error_count()} validation error(s): " + "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in error.errors()[:3]
        )
    return str(error).splitlines()[0] if str(error) else type(error).__name__
