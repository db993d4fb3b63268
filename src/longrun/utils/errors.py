"""Error display utilities for the longrun CLI.

Provides consistent error formatting with:
- Human-friendly messages
- Suggested fixes
- Hidden stack traces (unless debug mode)
"""

from __future__ import annotations

import os
import sys
import traceback
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from ..exceptions import (
    CircuitOpenError,
    EngineBusy,
    RecoveryPointError,
    RecoveryPointNotFound,
    StateCorrupted,
    StateNotFound,
    TaskGraphError,
)

if TYPE_CHECKING:
    from rich.console import Console

# Debug mode enabled by LONGRUN_DEBUG=1 or --debug flag
_debug_mode = os.environ.get("LONGRUN_DEBUG", "0") == "1"


class ErrorCategory(str, Enum):
    """Categories of errors for consistent formatting."""

    CONFIG = "config"
    FILE = "file"
    STATE = "state"  # Run state missing or corrupted
    RECOVERY = "recovery"  # Recovery point problems
    TASK = "task"  # Task definitions and task lookups
    ENGINE = "engine"  # Engine lock and lifecycle
    NETWORK = "network"
    INTERNAL = "internal"


@dataclass
class ErrorInfo:
    """Structured error information for consistent display."""

    message: str
    category: ErrorCategory
    suggestion: str | None = None
    details: str | None = None
    original_error: Exception | None = None


def set_debug_mode(enabled: bool) -> None:
    """Enable or disable debug mode for verbose error output."""
    global _debug_mode
    _debug_mode = enabled


def is_debug_mode() -> bool:
    return _debug_mode


def format_error(error: ErrorInfo, console: Console) -> None:
    """Display an error with consistent styling."""
    console.print(f"[bold red]Error:[/bold red] {error.message}")

    if error.details:
        if _debug_mode or len(error.details) < 200:
            console.print(f"[dim]{error.details}[/dim]")

    if error.suggestion:
        console.print()
        console.print(f"[yellow]Suggestion:[/yellow] {error.suggestion}")

    if _debug_mode and error.original_error:
        console.print()
        console.print("[dim]Stack trace (debug mode):[/dim]")
        tb_lines = traceback.format_exception(
            type(error.original_error),
            error.original_error,
            error.original_error.__traceback__,
        )
        for line in tb_lines:
            console.print(f"[dim]{line.rstrip()}[/dim]")

    if not _debug_mode and error.original_error:
        console.print()
        console.print("[dim]Set LONGRUN_DEBUG=1 or use --debug for more details[/dim]")


def error_state_missing(state_dir: str) -> ErrorInfo:
    return ErrorInfo(
        message=f"No run state in {state_dir}",
        category=ErrorCategory.STATE,
        suggestion="Run 'longrun init <tasks file>' or 'longrun run <tasks file>' to start a run",
    )


def error_state_corrupted(exception: StateCorrupted) -> ErrorInfo:
    details = "\n".join(exception.problems) if exception.problems else None
    return ErrorInfo(
        message=str(exception).split(":")[0],
        category=ErrorCategory.STATE,
        suggestion="Run 'longrun points' and 'longrun recover --auto' to restore a recovery point",
        details=details,
        original_error=exception,
    )


def error_task_not_found(task_id: str) -> ErrorInfo:
    return ErrorInfo(
        message=f"Task not found: {task_id}",
        category=ErrorCategory.TASK,
        suggestion="Run 'longrun status' to see the tasks of this run",
    )


def error_engine_busy(pid: int) -> ErrorInfo:
    return ErrorInfo(
        message=f"An engine is already running on this state directory (pid {pid})",
        category=ErrorCategory.ENGINE,
        suggestion="Use 'longrun pause', 'longrun retry' or 'longrun abort' to control it",
    )


def error_internal(message: str, original: Exception | None = None) -> ErrorInfo:
    return ErrorInfo(
        message=f"Internal error: {message}",
        category=ErrorCategory.INTERNAL,
        suggestion="This may be a bug; rerun with --debug and keep the run.log",
        original_error=original,
    )


def handle_exception(
    console: Console,
    exception: Exception,
    context: str = "operation",
    exit_code: int = 1,
    exit_on_error: bool = True,
) -> ErrorInfo:
    """Classify and display an exception, optionally exiting.

    Returns:
        ErrorInfo for the error (useful if not exiting)
    """
    error = classify_exception(exception, context)
    format_error(error, console)

    if exit_on_error:
        sys.exit(exit_code)

    return error


def classify_exception(exception: Exception, context: str = "operation") -> ErrorInfo:
    """Classify an exception into an ErrorInfo."""
    if isinstance(exception, StateCorrupted):
        return error_state_corrupted(exception)

    if isinstance(exception, StateNotFound):
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.STATE,
            suggestion="Run 'longrun init <tasks file>' to start a run",
        )

    if isinstance(exception, EngineBusy):
        return error_engine_busy(exception.pid)

    if isinstance(exception, RecoveryPointNotFound):
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.RECOVERY,
            suggestion="Run 'longrun points' to list available recovery points",
        )

    if isinstance(exception, RecoveryPointError):
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.RECOVERY,
            suggestion="Check free disk space and permissions of the state directory",
            original_error=exception,
        )

    if isinstance(exception, TaskGraphError):
        return ErrorInfo(
            message=f"Invalid task definitions: {exception}",
            category=ErrorCategory.TASK,
            suggestion="Check task ids and depends_on entries in the tasks file",
        )

    if isinstance(exception, CircuitOpenError):
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.NETWORK,
            suggestion="Wait for the cooldown or check the failing service",
        )

    if isinstance(exception, FileNotFoundError):
        return ErrorInfo(
            message=f"{context.capitalize()} not found: {exception.filename or exception}",
            category=ErrorCategory.FILE,
            suggestion="Check the path and ensure the file exists",
            original_error=exception,
        )

    if isinstance(exception, PermissionError):
        return ErrorInfo(
            message=f"Permission denied: {exception}",
            category=ErrorCategory.FILE,
            suggestion="Check file permissions or run with appropriate access",
            original_error=exception,
        )

    error_str = str(exception).lower()
    if any(word in error_str for word in ["config", "toml"]):
        return ErrorInfo(
            message=f"Configuration error: {exception}",
            category=ErrorCategory.CONFIG,
            suggestion="Run 'longrun config' to view current configuration",
            original_error=exception,
        )

    return error_internal(f"{context}: {exception}", exception)
