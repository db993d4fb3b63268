"""Operator control channel.

The CLI never writes run state while an engine is active. It drops command
files into ``<state_dir>/control/``; the engine drains them between steps and
during waits. A ``watchfiles`` watcher wakes the engine as soon as a command
arrives.
"""

from __future__ import annotations

import logging
import os
import threading
import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path

import psutil
from pydantic import BaseModel, Field
from watchfiles import Change, watch

from .exceptions import EngineBusy
from .state import atomic_write_text

logger = logging.getLogger(__name__)

CONTROL_DIR = "control"
LOCK_FILE = "engine.lock"
COMMAND_SUFFIX = ".json"
REJECTED_SUFFIX = ".rejected"


class OperatorAction(str, Enum):
    RESUME = "resume"
    RETRY = "retry"
    ABORT = "abort"
    PAUSE = "pause"
    SNAPSHOT = "snapshot"


class OperatorCommand(BaseModel):
    """A command issued by the operator."""

    action: OperatorAction
    task_id: str | None = None
    note: str | None = None
    issued_at: datetime = Field(default_factory=datetime.now)
    command_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:8])


class ControlChannel:
    """File-based queue of operator commands."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def send(self, command: OperatorCommand) -> Path:
        """Queue a command for the running engine."""
        name = f"{command.issued_at.strftime('%Y%m%dT%H%M%S%f')}-{command.command_id}{COMMAND_SUFFIX}"
        path = self.root / name
        atomic_write_text(path, command.model_dump_json())
        logger.info(f"Queued {command.action.value} command {command.command_id}")
        return path

    def _command_files(self) -> list[Path]:
        if not self.root.exists():
            return []
        return sorted(p for p in self.root.glob(f"*{COMMAND_SUFFIX}") if not p.name.startswith("."))

    def pending(self) -> list[OperatorCommand]:
        """Queued commands, oldest first, without consuming them."""
        commands = []
        for path in self._command_files():
            try:
                commands.append(OperatorCommand.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValueError):
                continue
        return commands

    def drain(self) -> list[OperatorCommand]:
        """Consume queued commands, oldest first.

        Malformed command files are renamed with a ``.rejected`` suffix.
        """
        commands = []
        for path in self._command_files():
            try:
                text = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                continue
            try:
                command = OperatorCommand.model_validate_json(text)
            except ValueError as e:
                logger.warning(f"Rejecting malformed control command {path.name}: {e}")
                os.replace(path, path.with_name(path.name + REJECTED_SUFFIX))
                continue
            path.unlink(missing_ok=True)
            commands.append(command)
        return commands

    def watch(self, wake: threading.Event, stop: threading.Event) -> threading.Thread:
        """Start a daemon thread that sets ``wake`` whenever a command lands."""
        self.root.mkdir(parents=True, exist_ok=True)

        def _run() -> None:
            for changes in watch(self.root, stop_event=stop, raise_interrupt=False):
                if any(change != Change.deleted for change, _ in changes):
                    logger.debug("Control command received")
                    wake.set()

        thread = threading.Thread(target=_run, name="longrun-control", daemon=True)
        thread.start()
        return thread


def read_lock_pid(state_dir: Path) -> int | None:
    path = Path(state_dir) / LOCK_FILE
    try:
        return int(path.read_text().strip())
    except (FileNotFoundError, ValueError):
        return None


def active_engine_pid(state_dir: Path) -> int | None:
    """PID of a live engine holding the state directory, if any."""
    pid = read_lock_pid(state_dir)
    if pid is None or not psutil.pid_exists(pid):
        return None
    return pid


class EngineLock:
    """Exclusive claim on a state directory, held while an engine runs."""

    def __init__(self, state_dir: Path):
        self.path = Path(state_dir) / LOCK_FILE
        self._held = False

    def acquire(self) -> None:
        pid = active_engine_pid(self.path.parent)
        if pid is not None and pid != os.getpid():
            raise EngineBusy(pid)
        if self.path.exists() and pid is None:
            logger.warning(f"Removing stale engine lock {self.path}")
        atomic_write_text(self.path, str(os.getpid()))
        self._held = True

    def release(self) -> None:
        if self._held:
            self.path.unlink(missing_ok=True)
            self._held = False

    def __enter__(self) -> EngineLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()
