"""Data models for longrun runs, tasks and recovery bookkeeping."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RunStatus(str, Enum):
    READY = "ready"
    RUNNING = "running"
    PAUSED = "paused"
    RECOVERING = "recovering"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    NEEDS_REVIEW = "needs_review"


class ErrorClass(str, Enum):
    """Recovery class of an error; decides whether a retry makes sense."""

    TRANSIENT = "transient"  # Network blips, rate limits, timeouts
    PERMANENT = "permanent"  # Bad input, missing permissions
    RESOURCE = "resource"  # Disk full, out of memory
    STATE_CORRUPTION = "state_corruption"  # Halts the run


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    REJECTED = "rejected"  # Circuit open, executor never called
    OVERRIDE = "override"  # Operator reset the attempt counter


class CircuitStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class RecoveryReason(str, Enum):
    PRE_TASK = "pre-task"
    POST_TASK = "post-task"
    ON_ERROR = "on-error"
    MANUAL = "manual"
    PERIODIC = "periodic"


def generate_run_id() -> str:
    """Generate a short unique run identifier."""
    return uuid.uuid4().hex[:8]


class TaskError(BaseModel):
    """Classified failure of a task attempt."""

    kind: str
    error_class: ErrorClass
    message: str = ""


class AttemptRecord(BaseModel):
    """One entry in a task's retry history."""

    attempt: int
    delay: float = 0.0
    outcome: AttemptOutcome
    error_kind: str | None = None
    error_class: ErrorClass | None = None
    message: str | None = None
    started_at: datetime
    finished_at: datetime | None = None


class TaskSpec(BaseModel):
    """Task definition as read from a tasks file."""

    id: str
    depends_on: list[str] = Field(default_factory=list)
    operation: str = "default"
    timeout: float | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class Task(BaseModel):
    """A task inside a run, with its execution bookkeeping."""

    id: str
    position: int
    depends_on: list[str] = Field(default_factory=list)
    operation: str = "default"
    timeout: float | None = None
    payload: dict[str, Any] = Field(default_factory=dict)

    status: TaskStatus = TaskStatus.PENDING
    attempt_count: int = 0
    last_error: TaskError | None = None
    history: list[AttemptRecord] = Field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @classmethod
    def from_spec(cls, spec: TaskSpec, position: int) -> Task:
        return cls(
            id=spec.id,
            position=position,
            depends_on=list(spec.depends_on),
            operation=spec.operation,
            timeout=spec.timeout,
            payload=dict(spec.payload),
        )

    @property
    def is_running(self) -> bool:
        return self.status == TaskStatus.IN_PROGRESS

    @property
    def is_resolved(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    @property
    def retries(self) -> int:
        """Attempts beyond the first one."""
        return max(0, self.attempt_count - 1)

    def failures_since(self, since: datetime) -> int:
        return sum(
            1
            for record in self.history
            if record.outcome in (AttemptOutcome.FAILURE, AttemptOutcome.REJECTED)
            and (record.finished_at or record.started_at) >= since
        )


class CircuitState(BaseModel):
    """Breaker state for one operation class.

    Frozen: the transition functions in ``longrun.recovery.circuit`` return
    new instances.
    """

    model_config = ConfigDict(frozen=True)

    operation: str
    status: CircuitStatus = CircuitStatus.CLOSED
    consecutive_failures: int = 0
    last_failure: datetime | None = None
    failure_threshold: int = 5
    reset_timeout: float = 300.0
    probe_in_flight: bool = False


class Run(BaseModel):
    """Persistent state of one orchestrated run."""

    run_id: str = Field(default_factory=generate_run_id)
    started_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    status: RunStatus = RunStatus.READY
    status_reason: str | None = None
    current_task: str | None = None

    tasks: list[Task] = Field(default_factory=list)
    total_tasks: int = 0
    completed_count: int = 0
    failed_count: int = 0
    blocked_count: int = 0

    global_retries: int = 0
    circuits: dict[str, CircuitState] = Field(default_factory=dict)
    last_recovery: datetime | None = None

    def get_task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def refresh_counts(self) -> None:
        """Recompute derived counters from task statuses."""
        self.total_tasks = len(self.tasks)
        self.completed_count = sum(1 for t in self.tasks if t.status == TaskStatus.COMPLETED)
        self.failed_count = sum(
            1 for t in self.tasks if t.status in (TaskStatus.FAILED, TaskStatus.NEEDS_REVIEW)
        )
        self.blocked_count = sum(1 for t in self.tasks if t.status == TaskStatus.BLOCKED)

    def unresolved(self) -> list[Task]:
        return [t for t in self.tasks if not t.is_resolved]

    def running_task(self) -> Task | None:
        for task in self.tasks:
            if task.is_running:
                return task
        return None

    @property
    def progress(self) -> float:
        """Completion percentage (0-100)."""
        if not self.tasks:
            return 100.0
        return 100.0 * self.completed_count / len(self.tasks)

    @property
    def is_finished(self) -> bool:
        return self.status in (RunStatus.COMPLETED, RunStatus.FAILED)


def new_run(specs: list[TaskSpec], run_id: str | None = None) -> Run:
    """Build a fresh run from task definitions, in file order."""
    tasks = [Task.from_spec(spec, position) for position, spec in enumerate(specs)]
    run = Run(run_id=run_id or generate_run_id(), tasks=tasks)
    run.refresh_counts()
    run.current_task = tasks[0].id if tasks else None
    return run


class RecoveryPointMeta(BaseModel):
    """Metadata stored next to each recovery point snapshot."""

    point_id: str
    reason: RecoveryReason
    created_at: datetime
    run_id: str
    run_status: RunStatus
    current_task: str | None = None
    task_id: str | None = None
    completed_count: int = 0
    total_tasks: int = 0
    note: str | None = None


class HealthEvent(BaseModel):
    """A single health observation."""

    metric: str
    value: float
    threshold: float
    severity: Severity
    message: str
    timestamp: datetime = Field(default_factory=datetime.now)
    task_id: str | None = None
