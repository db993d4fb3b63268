"""Exceptions raised by longrun."""

from __future__ import annotations


class LongrunError(Exception):
    """Base class for all longrun errors."""


class StateNotFound(LongrunError):
    """No state file (primary or backup) exists yet."""


class StateCorrupted(LongrunError):
    """Neither the primary nor the backup state could be loaded and validated."""

    def __init__(self, message: str, problems: list[str] | None = None) -> None:
        super().__init__(message)
        self.problems = problems or []

    def __str__(self) -> str:
        base = super().__str__()
        if not self.problems:
            return base
        return base + ": " + "; ".join(self.problems)


class CircuitOpenError(LongrunError):
    """A call was rejected because the operation's circuit is open."""

    def __init__(self, operation: str, retry_after: float) -> None:
        super().__init__(
            f"Circuit for '{operation}' is open; retry in {retry_after:.0f}s"
        )
        self.operation = operation
        self.retry_after = retry_after


class RecoveryPointError(LongrunError):
    """A recovery point could not be written, read or validated."""


class RecoveryPointNotFound(RecoveryPointError):
    """The requested recovery point does not exist."""


class TaskGraphError(LongrunError):
    """Task definitions are malformed (duplicates, unknown deps, cycles)."""


class RunCancelled(LongrunError):
    """A cancellable wait was interrupted by pause, abort or a signal."""


class EngineBusy(LongrunError):
    """Another engine process holds the state directory lock."""

    def __init__(self, pid: int) -> None:
        super().__init__(f"An engine (pid {pid}) is already running on this state directory")
        self.pid = pid
