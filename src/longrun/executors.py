"""Executors: how a task's opaque payload is actually run.

The engine only sees ``TaskOutcome`` values. Executors must enforce the
timeout they are given and never raise for ordinary task failures.
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path

from pydantic import BaseModel

from .models import Task

logger = logging.getLogger(__name__)

# Exception types with a well-known error kind
EXCEPTION_KINDS: list[tuple[type[BaseException], str]] = [
    (TimeoutError, "TIMEOUT"),
    (ConnectionError, "NETWORK_ERROR"),
    (PermissionError, "PERMISSION_DENIED"),
    (MemoryError, "OUT_OF_MEMORY"),
    (FileNotFoundError, "COMMAND_NOT_FOUND"),
    (ValueError, "INVALID_INPUT"),
]


class TaskOutcome(BaseModel):
    """Result of one dispatch."""

    success: bool
    error_kind: str | None = None
    message: str = ""
    output: str = ""
    duration: float = 0.0

    @classmethod
    def ok(cls, output: str = "", duration: float = 0.0) -> TaskOutcome:
        return cls(success=True, output=output, duration=duration)

    @classmethod
    def failure(cls, kind: str | None, message: str, duration: float = 0.0) -> TaskOutcome:
        return cls(success=False, error_kind=kind, message=message, duration=duration)

    @classmethod
    def from_exception(cls, error: BaseException, duration: float = 0.0) -> TaskOutcome:
        kind = None
        for exc_type, exc_kind in EXCEPTION_KINDS:
            if isinstance(error, exc_type):
                kind = exc_kind
                break
        message = str(error) or type(error).__name__
        return cls.failure(kind, f"{type(error).__name__}: {message}", duration)


class Executor(ABC):
    """Runs a single task attempt."""

    @abstractmethod
    def execute(self, task: Task, timeout: float | None) -> TaskOutcome:
        """Run ``task`` within ``timeout`` seconds and report the outcome."""


TaskFunction = Callable[[Task], "TaskOutcome | bool | None"]


class CallableExecutor(Executor):
    """Runs a Python callable per task.

    The callable may return a ``TaskOutcome``, a bool, or None (success), or
    raise. With a timeout the call runs on a daemon thread; a call that
    overruns is abandoned and reported as ``TIMEOUT``.
    """

    def __init__(self, func: TaskFunction):
        self.func = func

    def _invoke(self, task: Task) -> TaskOutcome:
        start = time.monotonic()
        try:
            result = self.func(task)
        except Exception as e:
            return TaskOutcome.from_exception(e, time.monotonic() - start)
        duration = time.monotonic() - start
        if isinstance(result, TaskOutcome):
            if not result.duration:
                result.duration = duration
            return result
        if result is False:
            return TaskOutcome.failure(None, f"Task {task.id} reported failure", duration)
        return TaskOutcome.ok(duration=duration)

    def execute(self, task: Task, timeout: float | None) -> TaskOutcome:
        if timeout is None:
            return self._invoke(task)

        box: list[TaskOutcome] = []
        thread = threading.Thread(
            target=lambda: box.append(self._invoke(task)),
            name=f"longrun-task-{task.id}",
            daemon=True,
        )
        thread.start()
        thread.join(timeout)
        if thread.is_alive() or not box:
            logger.warning(f"Task {task.id} exceeded its {timeout:.0f}s timeout")
            return TaskOutcome.failure("TIMEOUT", f"Task timed out after {timeout:.0f}s", timeout)
        return box[0]


class SubprocessExecutor(Executor):
    """Runs ``payload["command"]`` as a subprocess.

    Payload keys:
        command: Shell string or argv list (required).
        cwd: Working directory, relative to the executor's cwd.
        env: Extra environment variables.
        error_kinds: Mapping of exit code to error kind.
    """

    def __init__(self, cwd: Path | None = None, env: dict[str, str] | None = None):
        self.cwd = Path(cwd) if cwd else None
        self.env = env or {}

    def execute(self, task: Task, timeout: float | None) -> TaskOutcome:
        command = task.payload.get("command")
        if not command:
            return TaskOutcome.failure("MALFORMED_TASK", f"Task {task.id} has no command")

        cwd = self.cwd
        if task.payload.get("cwd"):
            cwd = (cwd or Path.cwd()) / task.payload["cwd"]
        env = {**os.environ, **self.env, **{k: str(v) for k, v in task.payload.get("env", {}).items()}}
        env["LONGRUN_TASK_ID"] = task.id

        start = time.monotonic()
        try:
            result = subprocess.run(
                command,
                shell=isinstance(command, str),
                cwd=str(cwd) if cwd else None,
                env=env,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return TaskOutcome.failure(
                "TIMEOUT", f"Command timed out after {timeout:.0f}s", time.monotonic() - start
            )
        except OSError as e:
            return TaskOutcome.from_exception(e, time.monotonic() - start)

        duration = time.monotonic() - start
        if result.returncode == 0:
            return TaskOutcome.ok(result.stdout, duration)

        kinds = {str(code): kind for code, kind in task.payload.get("error_kinds", {}).items()}
        kind = kinds.get(str(result.returncode))
        if kind is None and result.returncode == 127:
            kind = "COMMAND_NOT_FOUND"
        stderr = (result.stderr or result.stdout or "").strip()
        message = stderr.splitlines()[-1] if stderr else f"exit code {result.returncode}"
        logger.debug(f"Task {task.id} exited with {result.returncode}: {message}")
        return TaskOutcome(
            success=False,
            error_kind=kind,
            message=message,
            output=result.stdout,
            duration=duration,
        )
