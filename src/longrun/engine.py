"""Execution engine.

Drives the task queue to completion:

    LOADING -> READY -> RUNNING <-> {RETRYING, BLOCKED} -> COMPLETED | FAILED

with PAUSED and RECOVERING reachable from any state. The engine is the only
writer of run state while it is active; counters are only changed on the
engine thread. Waits (retry backoff, operator decisions) are cancellable
through a single wake event.
"""

from __future__ import annotations

import functools
import logging
import random
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum, IntEnum
from pathlib import Path

from rich.console import Console

from .config import LongrunConfig, get_config
from .control import CONTROL_DIR, ControlChannel, OperatorAction, OperatorCommand
from .exceptions import (
    CircuitOpenError,
    RecoveryPointError,
    RunCancelled,
    StateCorrupted,
    StateNotFound,
)
from .executors import Executor, TaskOutcome
from .gateway import Escalation, InterventionGateway, OperatorDecision
from .health import EVENTS_FILE, HealthMonitor, ResourceProbe, sample_resources
from .models import (
    AttemptOutcome,
    AttemptRecord,
    ErrorClass,
    RecoveryReason,
    Run,
    RunStatus,
    Severity,
    Task,
    TaskError,
    TaskSpec,
    TaskStatus,
    new_run,
)
from .recovery.circuit import CircuitBoard
from .recovery.classifier import CIRCUIT_OPEN, ClassificationTable
from .recovery.points import RecoveryPointManager, prepare_resume
from .recovery.retry import RetryPolicy, should_retry
from .state import FileStateStore, StateStore

logger = logging.getLogger(__name__)

Waiter = Callable[[float], bool]


class EngineState(str, Enum):
    LOADING = "loading"
    READY = "ready"
    RUNNING = "running"
    RETRYING = "retrying"
    BLOCKED = "blocked"
    PAUSED = "paused"
    RECOVERING = "recovering"
    COMPLETED = "completed"
    FAILED = "failed"


class ExitCode(IntEnum):
    COMPLETED = 0
    FAILED = 1
    STATE_CORRUPTED = 2
    ABORTED = 3
    PAUSED = 4
    RECOVERING = 5


@dataclass
class RunResult:
    """How a call to ``ExecutionEngine.run`` ended."""

    exit_code: ExitCode
    status: RunStatus | None
    summary: str
    unresolved: list[str] = field(default_factory=list)


def apply_retry_override(run: Run, task_id: str, now: datetime) -> Task:
    """Reset a task's attempt counter on operator request.

    The override is recorded in the task's history; the global retry counter
    is left as is.

    Raises:
        KeyError: If the task does not exist.
        ValueError: If the task already completed.
    """
    task = run.get_task(task_id)
    if task is None:
        raise KeyError(task_id)
    if task.status == TaskStatus.COMPLETED:
        raise ValueError(f"Task {task_id} already completed")

    logger.warning(
        f"Manual retry override for task {task_id} "
        f"(was {task.status.value} after {task.attempt_count} attempt(s))"
    )
    task.history.append(
        AttemptRecord(
            attempt=task.attempt_count,
            outcome=AttemptOutcome.OVERRIDE,
            message="manual retry override",
            started_at=now,
            finished_at=now,
        )
    )
    task.attempt_count = 0
    task.status = TaskStatus.READY
    task.started_at = None
    task.finished_at = None
    if run.is_finished:
        run.status = RunStatus.PAUSED
        run.status_reason = f"task {task_id} queued for manual retry"
    run.refresh_counts()
    return task


class ExecutionEngine:
    """Runs a task queue with retries, circuit breakers and recovery points."""

    def __init__(
        self,
        store: StateStore,
        executor: Executor,
        points: RecoveryPointManager,
        *,
        config: LongrunConfig | None = None,
        gateway: InterventionGateway | None = None,
        monitor: HealthMonitor | None = None,
        control: ControlChannel | None = None,
        table: ClassificationTable | None = None,
        clock: Callable[[], datetime] = datetime.now,
        waiter: Waiter | None = None,
        rng: random.Random | None = None,
        resource_probe: ResourceProbe | None = None,
    ):
        self.config = config or get_config()
        self.store = store
        self.executor = executor
        self.points = points
        self.gateway = gateway or InterventionGateway()
        self.monitor = monitor
        self._resource_checker = monitor or HealthMonitor(
            store.reader(), self.config.health, probe=resource_probe, clock=clock
        )
        self.control = control
        self.table = table or ClassificationTable.from_config(self.config.classification)
        self.policy = RetryPolicy.from_config(self.config.retry, self.config.classification)
        self._clock = clock
        self._rng = rng

        self._wake = threading.Event()
        self._cancel = threading.Event()
        self._stop_watch = threading.Event()
        self._waiter = waiter or self._wait_for_wake
        self.gateway.bind_wake(self._wake)

        self._state = EngineState.LOADING
        self._run: Run | None = None
        self._circuits: CircuitBoard | None = None
        self._abort_reason: str | None = None
        self._cancel_reason = "cancelled"
        self._last_periodic: datetime | None = None
        self._latest_point: str | None = None

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def current_run(self) -> Run | None:
        return self._run

    # Public control

    def cancel(self, reason: str = "cancelled") -> None:
        """Stop at the next suspension point and pause the run.

        Safe to call from signal handlers and other threads.
        """
        self._cancel_reason = reason
        self._cancel.set()
        self._wake.set()

    def abort(self, reason: str = "aborted by operator") -> None:
        self._abort_reason = reason
        self._wake.set()

    def retry_task(self, task_id: str) -> bool:
        """Apply a manual retry override on the engine thread."""
        if self._run is None:
            return False
        try:
            apply_retry_override(self._run, task_id, self._clock())
        except KeyError:
            logger.warning(f"Retry requested for unknown task {task_id}")
            return False
        except ValueError as e:
            logger.warning(str(e))
            return False
        self._run.status = RunStatus.RUNNING
        self._run.status_reason = None
        self._save()
        return True

    # Main entry point

    def run(self, specs: list[TaskSpec] | None = None) -> RunResult:
        """Load or create the run and drive it until it finishes or stops."""
        self._state = EngineState.LOADING
        self._cancel.clear()
        self._abort_reason = None

        try:
            run = self._load_or_create(specs)
        except StateCorrupted as e:
            return self._halt_corrupted(e)

        self._run = run
        self._circuits = CircuitBoard(
            run.circuits,
            failure_threshold=self.config.circuit.failure_threshold,
            reset_timeout=self.config.circuit.reset_timeout,
        )

        if run.status == RunStatus.COMPLETED:
            logger.info(f"Run {run.run_id} already completed")
            self._state = EngineState.COMPLETED
            return RunResult(ExitCode.COMPLETED, run.status, "Run already completed")

        if run.running_task() is not None:
            logger.warning("Found an interrupted attempt, resuming from last saved state")
            prepare_resume(run, self._clock())

        run.status = RunStatus.RUNNING
        run.status_reason = None
        self._last_periodic = self._clock()
        self._start_side_channels()
        try:
            self._save()
            return self._loop()
        except StateCorrupted as e:
            return self._halt_corrupted(e)
        except RecoveryPointError as e:
            return self._enter_recovering(
                f"recovery point failure: {e}",
                reason=f"Recovery point could not be created: {e}",
            )
        except OSError as e:
            logger.error(f"Could not write run state: {e}")
            return self._enter_recovering(
                f"state write failed: {e}",
                kind="state",
                reason=f"Run state could not be written: {e}",
            )
        finally:
            self._stop_side_channels()

    def _load_or_create(self, specs: list[TaskSpec] | None) -> Run:
        try:
            run = self.store.load()
            logger.info(
                f"Loaded run {run.run_id}: {run.completed_count}/{run.total_tasks} tasks completed"
            )
            return run
        except StateNotFound:
            if not specs:
                raise
            run = new_run(specs)
            logger.info(f"Starting new run {run.run_id} with {len(specs)} tasks")
            return run

    def _start_side_channels(self) -> None:
        self._stop_watch.clear()
        if self.monitor is not None:
            self.monitor.start()
        if self.control is not None:
            self.control.watch(self._wake, self._stop_watch)

    def _stop_side_channels(self) -> None:
        self._stop_watch.set()
        if self.monitor is not None:
            self.monitor.stop()

    # Loop

    def _loop(self) -> RunResult:
        self._state = EngineState.READY
        while True:
            try:
                self._between_steps()
                self._check_interrupts()
                self._maybe_periodic_point()

                task = self._next_ready_task()
                if task is None:
                    return self._finish()
                self._run_task(task)
            except RunCancelled:
                if self._abort_reason is not None:
                    return self._aborted(self._abort_reason)
                return self._paused(self._cancel_reason)

    def _check_interrupts(self) -> None:
        if self._abort_reason is not None or self._cancel.is_set():
            raise RunCancelled(self._abort_reason or self._cancel_reason)

    def _next_ready_task(self) -> Task | None:
        """Promote or block tasks by prerequisites and return the first ready one."""
        run = self._run
        status_by_id = {task.id: task.status for task in run.tasks}
        candidate = None
        changed = False

        for task in sorted(run.tasks, key=lambda t: t.position):
            if task.status not in (TaskStatus.PENDING, TaskStatus.READY, TaskStatus.BLOCKED):
                continue
            waiting_on = [d for d in task.depends_on if status_by_id.get(d) != TaskStatus.COMPLETED]
            if waiting_on:
                if task.status != TaskStatus.BLOCKED:
                    logger.info(f"Task {task.id} blocked on {', '.join(waiting_on)}")
                    task.status = TaskStatus.BLOCKED
                    changed = True
                continue
            if task.status != TaskStatus.READY:
                task.status = TaskStatus.READY
                changed = True
            if candidate is None:
                candidate = task

        if changed:
            self._save()
        if candidate is None and run.blocked_count:
            self._state = EngineState.BLOCKED
        return candidate

    def _run_task(self, task: Task) -> None:
        run = self._run
        run.current_task = task.id
        delay = 0.0

        while True:
            self._state = EngineState.RUNNING
            self._checkpoint(RecoveryReason.PRE_TASK, task.id)

            now = self._clock()
            try:
                self._circuits.acquire(task.operation, now)
            except CircuitOpenError as e:
                error = self.table.classify(CIRCUIT_OPEN, str(e))
                task.history.append(
                    AttemptRecord(
                        attempt=task.attempt_count,
                        delay=delay,
                        outcome=AttemptOutcome.REJECTED,
                        error_kind=error.kind,
                        error_class=error.error_class,
                        message=error.message,
                        started_at=now,
                        finished_at=now,
                    )
                )
                task.last_error = error
                logger.warning(f"Task {task.id} not dispatched: {e}")
            else:
                outcome = self._dispatch(task, delay, now)
                if outcome.success:
                    self._complete(task)
                    return
                error = task.last_error

            if error.error_class == ErrorClass.STATE_CORRUPTION:
                task.status = TaskStatus.NEEDS_REVIEW
                run.status = RunStatus.FAILED
                run.status_reason = f"task {task.id} reported state corruption: {error.message}"
                self._save()
                raise StateCorrupted(f"Task {task.id} reported state corruption: {error.message}")

            decision = should_retry(task, run.global_retries, error.error_class, self.policy, self._rng)
            if not decision.allow:
                self._needs_review(task, error, decision.reason.value)
                return

            delay = max(decision.delay, self._circuits.cooldown(task.operation, self._clock()))
            task.status = TaskStatus.READY
            self._save()
            self._checkpoint(RecoveryReason.ON_ERROR, task.id, note=f"{error.kind}: retry scheduled")

            self._state = EngineState.RETRYING
            logger.warning(
                f"Task {task.id} failed ({error.kind}, {error.error_class.value}); "
                f"retrying in {delay:.1f}s (attempt {task.attempt_count + 1} of "
                f"{self.policy.max_retries_per_task})"
            )
            self._wait(delay)
            if error.error_class == ErrorClass.RESOURCE:
                self._wait_for_resources()

    def _dispatch(self, task: Task, delay: float, now: datetime) -> TaskOutcome:
        run = self._run
        task.status = TaskStatus.IN_PROGRESS
        task.attempt_count += 1
        if task.attempt_count > 1:
            run.global_retries += 1
        task.started_at = now
        task.finished_at = None
        self._save()

        timeout = task.timeout or self.config.engine.task_timeout
        logger.info(f"Running task {task.id} (attempt {task.attempt_count})")
        try:
            outcome = self.executor.execute(task, timeout)
        except Exception as e:
            logger.exception(f"Executor raised for task {task.id}")
            outcome = TaskOutcome.from_exception(e)

        finished = self._clock()
        record = AttemptRecord(
            attempt=task.attempt_count,
            delay=delay,
            outcome=AttemptOutcome.SUCCESS if outcome.success else AttemptOutcome.FAILURE,
            started_at=now,
            finished_at=finished,
        )
        if outcome.success:
            self._circuits.record_success(task.operation)
            task.finished_at = finished
        else:
            error = self.table.classify(outcome.error_kind, outcome.message)
            record.error_kind = error.kind
            record.error_class = error.error_class
            record.message = error.message
            task.last_error = error
            self._circuits.record_failure(task.operation, finished)
        task.history.append(record)
        return outcome

    def _complete(self, task: Task) -> None:
        task.status = TaskStatus.COMPLETED
        task.last_error = None
        self._save()
        logger.info(f"Task {task.id} completed ({self._run.completed_count}/{self._run.total_tasks})")
        self._checkpoint(RecoveryReason.POST_TASK, task.id)
        self._prune()

    def _needs_review(self, task: Task, error: TaskError, reason: str) -> None:
        task.status = TaskStatus.NEEDS_REVIEW
        self._save()
        point = self._checkpoint(RecoveryReason.ON_ERROR, task.id, note=f"{error.kind}: {reason}")
        logger.error(f"Task {task.id} needs review: {reason} ({error.kind})")

        escalation = self.gateway.escalate(
            Escalation(
                kind="task",
                reason=f"Task {task.id} needs review: {reason}",
                run_id=self._run.run_id,
                task_id=task.id,
                error_kind=error.kind,
                error_class=error.error_class,
                history=list(task.history),
                recovery_point=point,
            )
        )
        if self.config.engine.await_operator:
            decision = self._await_operator(escalation)
            self._apply_decision(decision, default_task=task.id)

    # Operator interaction

    def _await_operator(self, escalation: Escalation) -> OperatorDecision:
        future = self.gateway.request_decision(escalation)
        while not future.done():
            self._between_steps()
            if self._cancel.is_set() or self._abort_reason is not None:
                self.gateway.cancel_pending()
                raise RunCancelled(self._abort_reason or self._cancel_reason)
            if future.done():
                break
            self._waiter(self.config.engine.operator_poll_interval)
        return future.result()

    def _apply_decision(self, decision: OperatorDecision, default_task: str | None = None) -> None:
        if decision.action == OperatorAction.RETRY:
            self.retry_task(decision.task_id or default_task)
        elif decision.action == OperatorAction.ABORT:
            self.abort(decision.note or "aborted by operator")
        elif decision.action == OperatorAction.PAUSE:
            self.cancel("paused by operator")
        elif decision.action == OperatorAction.RESUME:
            logger.info("Operator chose to continue with the remaining tasks")

    def _between_steps(self) -> None:
        """Handle queued operator commands and critical health events."""
        if self.control is not None:
            for command in self.control.drain():
                self._handle_command(command)

        for event in self.gateway.drain_critical():
            if self.config.engine.pause_on_critical and event.severity == Severity.CRITICAL:
                logger.error(f"Pausing on critical health event: {event.message}")
                self.cancel(f"critical health event: {event.message}")

    def _handle_command(self, command: OperatorCommand) -> None:
        logger.info(f"Operator command: {command.action.value}")
        pending = self.gateway.pending_escalation is not None

        if command.action == OperatorAction.PAUSE:
            self.cancel(command.note or "paused by operator")
        elif command.action == OperatorAction.SNAPSHOT:
            self._save()
            self._checkpoint(RecoveryReason.MANUAL, self._run.current_task, note=command.note)
        elif pending and command.action in (
            OperatorAction.RETRY,
            OperatorAction.RESUME,
            OperatorAction.ABORT,
        ):
            self.gateway.resolve(
                OperatorDecision(action=command.action, task_id=command.task_id, note=command.note)
            )
        elif command.action == OperatorAction.RETRY and command.task_id:
            self.retry_task(command.task_id)
        elif command.action == OperatorAction.ABORT:
            self.abort(command.note or "aborted by operator")
        elif command.action == OperatorAction.RESUME:
            logger.info("Resume requested but the run is not waiting on the operator")

    # Waiting

    def _wait_for_wake(self, seconds: float) -> bool:
        woke = self._wake.wait(seconds)
        self._wake.clear()
        return woke

    def _wait(self, seconds: float) -> None:
        """Sleep for ``seconds``, handling operator input; raise RunCancelled if interrupted."""
        deadline = self._clock() + timedelta(seconds=seconds)
        while True:
            self._between_steps()
            self._check_interrupts()
            remaining = (deadline - self._clock()).total_seconds()
            if remaining <= 0:
                return
            self._waiter(remaining)

    def _wait_for_resources(self) -> None:
        """Hold a retry until a fresh sample is below the critical thresholds."""
        checker = self._resource_checker
        checker.check_resources(self._clock())
        while not checker.resources_ok:
            logger.info("Waiting for system resources to recover")
            self._wait(self.config.health.interval)
            checker.check_resources(self._clock())

    # Recovery points

    def _checkpoint(self, reason: RecoveryReason, task_id: str | None, note: str | None = None) -> str:
        self._save()
        point_id = self.points.create(reason, task_id=task_id, note=note)
        self._latest_point = point_id
        return point_id

    def _maybe_periodic_point(self) -> None:
        now = self._clock()
        interval = self.config.recovery.periodic_interval
        if self._last_periodic is None or (now - self._last_periodic).total_seconds() >= interval:
            self._last_periodic = now
            self._checkpoint(RecoveryReason.PERIODIC, self._run.current_task)

    def _prune(self) -> None:
        try:
            self.points.prune()
        except OSError as e:
            logger.warning(f"Pruning recovery points failed: {e}")

    # Terminal transitions

    def _save(self) -> None:
        self._run.refresh_counts()
        self.store.save(self._run)

    def _finish(self) -> RunResult:
        run = self._run
        unresolved = run.unresolved()
        if not unresolved:
            run.status = RunStatus.COMPLETED
            run.current_task = None
            run.status_reason = None
            self._save()
            self._state = EngineState.COMPLETED
            logger.info(f"Run {run.run_id} completed: {run.total_tasks} tasks")
            return RunResult(ExitCode.COMPLETED, run.status, f"All {run.total_tasks} tasks completed")

        summary = ", ".join(f"{t.id} ({t.status.value})" for t in unresolved)
        run.status = RunStatus.FAILED
        run.status_reason = f"{len(unresolved)} unresolved task(s): {summary}"
        self._save()
        self._state = EngineState.FAILED
        logger.error(f"Run {run.run_id} finished with {run.status_reason}")
        self.gateway.escalate(
            Escalation(
                kind="run",
                reason=run.status_reason,
                run_id=run.run_id,
                recovery_point=self._latest_point,
            )
        )
        return RunResult(ExitCode.FAILED, run.status, run.status_reason, [t.id for t in unresolved])

    def _paused(self, reason: str) -> RunResult:
        run = self._run
        self._save()
        self._checkpoint(RecoveryReason.MANUAL, run.current_task, note=f"paused: {reason}")
        run.status = RunStatus.PAUSED
        run.status_reason = reason
        self._save()
        self._state = EngineState.PAUSED
        logger.warning(f"Run {run.run_id} paused: {reason}")
        return RunResult(ExitCode.PAUSED, run.status, f"Paused: {reason}", [t.id for t in run.unresolved()])

    def _aborted(self, reason: str) -> RunResult:
        run = self._run
        self._save()
        self._checkpoint(RecoveryReason.MANUAL, run.current_task, note=f"aborted: {reason}")
        run.status = RunStatus.FAILED
        run.status_reason = reason
        self._save()
        self._state = EngineState.FAILED
        logger.warning(f"Run {run.run_id} aborted: {reason}")
        return RunResult(ExitCode.ABORTED, run.status, f"Aborted: {reason}", [t.id for t in run.unresolved()])

    def _enter_recovering(
        self, status_reason: str, kind: str = "snapshot", reason: str | None = None
    ) -> RunResult:
        run = self._run
        self._state = EngineState.RECOVERING
        run.status = RunStatus.RECOVERING
        run.status_reason = status_reason
        try:
            self._save()
        except (OSError, StateCorrupted) as e:
            logger.error(f"Could not persist recovering status: {e}")
        self.gateway.escalate(
            Escalation(
                kind=kind,
                reason=reason or status_reason,
                run_id=run.run_id,
                task_id=run.current_task,
                recovery_point=self._latest_point,
            )
        )
        return RunResult(ExitCode.RECOVERING, run.status, run.status_reason)

    def _halt_corrupted(self, error: StateCorrupted) -> RunResult:
        self._state = EngineState.FAILED
        latest = None
        try:
            meta = self.points.latest_valid()
            latest = meta.point_id if meta else None
        except OSError as e:
            logger.warning(f"Could not list recovery points: {e}")
        self.gateway.escalate(
            Escalation(
                kind="state",
                reason=f"State corrupted: {error}",
                run_id=self._run.run_id if self._run else None,
                error_kind="STATE_CORRUPTION",
                error_class=ErrorClass.STATE_CORRUPTION,
                recovery_point=latest,
            )
        )
        return RunResult(ExitCode.STATE_CORRUPTED, None, f"State corrupted: {error}")


def build_engine(
    state_dir: Path,
    executor: Executor,
    config: LongrunConfig | None = None,
    console: Console | None = None,
) -> ExecutionEngine:
    """Wire an engine with file-backed components under ``state_dir``."""
    config = config or get_config()
    state_dir = Path(state_dir)
    store = FileStateStore(state_dir)
    points = RecoveryPointManager.from_config(store.reader(), state_dir, config)
    gateway = InterventionGateway.from_config(state_dir, config, console=console)
    monitor = HealthMonitor(
        store.reader(),
        config.health,
        gateway,
        state_dir / EVENTS_FILE,
        default_timeout=config.engine.task_timeout,
        probe=functools.partial(sample_resources, state_dir),
        max_lines=config.core.journal_max_lines,
        keep_lines=config.core.journal_keep_lines,
    )
    return ExecutionEngine(
        store,
        executor,
        points,
        config=config,
        gateway=gateway,
        monitor=monitor,
        control=ControlChannel(state_dir / CONTROL_DIR),
    )
