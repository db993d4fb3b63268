"""Recovery points: snapshots of run state a run can be restored from.

Each point is a directory under ``recovery_points/`` holding the serialized
run (``state.json``), its metadata (``meta.json``) and copies of the
supporting logs. Points are written into a hidden temp directory and renamed
into place, so a listed point is always complete.

The manager only reads the state store; restoring returns a ``Run`` that the
single writer (engine or CLI) then saves.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

from ..exceptions import LongrunError, RecoveryPointError, RecoveryPointNotFound
from ..models import RecoveryPointMeta, RecoveryReason, Run, TaskStatus
from ..state import StateReader, atomic_write_text, copy_tail, parse_run, validate_run
from ..tasks import next_task_after_completed
from .circuit import release_probe

logger = logging.getLogger(__name__)

POINTS_DIR = "recovery_points"
STATE_FILE = "state.json"
META_FILE = "meta.json"
LOGS_DIR = "logs"
SUPPORTING_LOGS = ("run.log", "escalations.jsonl", "health_events.jsonl")

ID_PREFIX = "rp_"
ID_FORMAT = "%Y%m%dT%H%M%S%f"


def _generate_point_id(now: datetime) -> str:
    """Point ID derived from a timestamp with microseconds."""
    return ID_PREFIX + now.strftime(ID_FORMAT)


def prepare_resume(run: Run, now: datetime) -> Run:
    """Make a snapshot safe to continue from.

    Interrupted attempts go back to READY, half-open probes are released and
    the current task is re-derived. Completed tasks are left untouched.
    """
    for task in run.tasks:
        if task.status == TaskStatus.IN_PROGRESS:
            logger.info(f"Resetting interrupted task {task.id} to ready")
            task.status = TaskStatus.READY
    for operation, state in list(run.circuits.items()):
        run.circuits[operation] = release_probe(state)
    run.current_task = next_task_after_completed(run.tasks)
    run.last_recovery = now
    run.refresh_counts()
    return run


class RecoveryPointManager:
    """Creates, lists, restores and prunes recovery points."""

    def __init__(
        self,
        state: StateReader,
        root: Path,
        keep_last: int = 20,
        error_retention: float = 86400.0,
        log_dir: Path | None = None,
        clock: Callable[[], datetime] = datetime.now,
        log_copy_bytes: int = 0,
    ):
        """Initialize the manager.

        Args:
            state: Read-only access to the current run.
            root: Directory holding one subdirectory per point.
            keep_last: Newest points always kept by prune().
            error_retention: Seconds on-error points survive prune().
            log_dir: Directory whose supporting logs are copied into each point.
            clock: Source of the current time.
            log_copy_bytes: Only the last this many bytes of each log are
                copied (0 copies whole files).
        """
        self._state = state
        self.root = Path(root)
        self.keep_last = keep_last
        self.error_retention = error_retention
        self.log_dir = Path(log_dir) if log_dir else None
        self.log_copy_bytes = log_copy_bytes
        self._clock = clock
        self._last_id: str | None = None

    @classmethod
    def from_config(cls, state: StateReader, state_dir: Path, config) -> RecoveryPointManager:
        return cls(
            state,
            Path(state_dir) / POINTS_DIR,
            keep_last=config.recovery.keep_last,
            error_retention=config.recovery.error_retention,
            log_dir=Path(state_dir),
            log_copy_bytes=config.recovery.log_copy_bytes,
        )

    def _next_id(self, now: datetime) -> str:
        point_id = _generate_point_id(now)
        newest = self._last_id
        if newest is None:
            existing = self._point_dirs()
            newest = existing[-1].name if existing else None
        if newest is not None and point_id <= newest:
            stamp = datetime.strptime(newest[len(ID_PREFIX):], ID_FORMAT)
            point_id = _generate_point_id(stamp + timedelta(microseconds=1))
        self._last_id = point_id
        return point_id

    def _point_dirs(self) -> list[Path]:
        if not self.root.is_dir():
            return []
        return sorted(
            p for p in self.root.iterdir() if p.is_dir() and p.name.startswith(ID_PREFIX)
        )

    def create(
        self,
        reason: RecoveryReason,
        task_id: str | None = None,
        note: str | None = None,
    ) -> str:
        """Snapshot the current state.

        Returns:
            The new point ID.

        Raises:
            RecoveryPointError: If the state cannot be read or the point
                cannot be written.
        """
        try:
            run = self._state.load()
        except LongrunError as e:
            raise RecoveryPointError(f"Cannot snapshot state: {e}") from e

        now = self._clock()
        point_id = self._next_id(now)
        meta = RecoveryPointMeta(
            point_id=point_id,
            reason=reason,
            created_at=now,
            run_id=run.run_id,
            run_status=run.status,
            current_task=run.current_task,
            task_id=task_id,
            completed_count=run.completed_count,
            total_tasks=run.total_tasks,
            note=note,
        )

        final_dir = self.root / point_id
        tmp_dir = self.root / f".{point_id}.tmp"
        try:
            tmp_dir.mkdir(parents=True, exist_ok=False)
            atomic_write_text(tmp_dir / STATE_FILE, run.model_dump_json(indent=2))
            atomic_write_text(tmp_dir / META_FILE, meta.model_dump_json(indent=2))
            self._copy_logs(tmp_dir / LOGS_DIR)
            tmp_dir.rename(final_dir)
        except OSError as e:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise RecoveryPointError(f"Failed to write recovery point {point_id}: {e}") from e

        logger.info(f"Created {reason.value} recovery point {point_id}")
        return point_id

    def _copy_logs(self, dest: Path) -> None:
        if self.log_dir is None:
            return
        for name in SUPPORTING_LOGS:
            source = self.log_dir / name
            if source.exists():
                dest.mkdir(exist_ok=True)
                copy_tail(source, dest / name, self.log_copy_bytes)

    def list(self) -> list[RecoveryPointMeta]:
        """All readable points, newest first."""
        points = []
        for path in reversed(self._point_dirs()):
            try:
                points.append(
                    RecoveryPointMeta.model_validate_json((path / META_FILE).read_text(encoding="utf-8"))
                )
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping unreadable recovery point {path.name}: {e}")
        return points

    def get(self, point_id: str) -> RecoveryPointMeta:
        path = self.root / point_id / META_FILE
        if not path.exists():
            raise RecoveryPointNotFound(f"Recovery point not found: {point_id}")
        try:
            return RecoveryPointMeta.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise RecoveryPointError(f"Recovery point {point_id} metadata unreadable: {e}") from e

    def load(self, point_id: str) -> Run:
        """Read and validate the snapshot of a point."""
        path = self.root / point_id / STATE_FILE
        if not path.exists():
            raise RecoveryPointNotFound(f"Recovery point not found: {point_id}")
        try:
            run = parse_run(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise RecoveryPointError(f"Recovery point {point_id} is unreadable: {e}") from e

        problems = validate_run(run)
        if problems:
            raise RecoveryPointError(
                f"Recovery point {point_id} is invalid: " + "; ".join(str(p) for p in problems)
            )
        return run

    def is_valid(self, point_id: str) -> bool:
        try:
            self.load(point_id)
        except RecoveryPointError:
            return False
        return True

    def latest_valid(self) -> RecoveryPointMeta | None:
        for meta in self.list():
            if self.is_valid(meta.point_id):
                return meta
            logger.warning(f"Recovery point {meta.point_id} failed validation, trying older")
        return None

    def restore(self, point_id: str | None = None) -> Run:
        """Load a point and prepare it for resumption.

        Without an ID the newest valid point is used.

        Raises:
            RecoveryPointNotFound: If no usable point exists.
            RecoveryPointError: If the requested point is invalid.
        """
        if point_id is None:
            meta = self.latest_valid()
            if meta is None:
                raise RecoveryPointNotFound("No valid recovery point available")
            point_id = meta.point_id

        run = self.load(point_id)
        prepare_resume(run, self._clock())
        logger.info(
            f"Restored run {run.run_id} from recovery point {point_id} "
            f"({run.completed_count}/{run.total_tasks} tasks completed)"
        )
        return run

    def delete(self, point_id: str) -> bool:
        path = self.root / point_id
        if not path.exists():
            return False
        shutil.rmtree(path)
        return True

    def prune(self) -> list[str]:
        """Drop old points.

        Keeps the newest ``keep_last`` points and every on-error point younger
        than ``error_retention`` seconds.

        Returns:
            IDs of removed points.
        """
        cutoff = self._clock() - timedelta(seconds=self.error_retention)
        removed = []
        for index, meta in enumerate(self.list()):
            if index < self.keep_last:
                continue
            if meta.reason == RecoveryReason.ON_ERROR and meta.created_at >= cutoff:
                continue
            if self.delete(meta.point_id):
                removed.append(meta.point_id)

        if removed:
            logger.info(f"Pruned {len(removed)} recovery points")
        return removed


def render_recovery_report(
    before: Run | None,
    after: Run,
    point: RecoveryPointMeta,
) -> str:
    """Markdown summary of a restore."""
    lines = [
        "# Recovery report",
        "",
        f"- Run: `{after.run_id}`",
        f"- Restored from: `{point.point_id}` ({point.reason.value}, {point.created_at:%Y-%m-%d %H:%M:%S})",
        f"- Restored at: {after.last_recovery:%Y-%m-%d %H:%M:%S}" if after.last_recovery else "- Restored at: -",
        f"- Current task: `{after.current_task or '-'}`",
        f"- Progress: {after.completed_count}/{after.total_tasks} completed",
        "",
        "| Task | Status after restore | Status before | Attempts |",
        "|---|---|---|---|",
    ]
    previous = {t.id: t for t in before.tasks} if before else {}
    for task in after.tasks:
        old = previous.get(task.id)
        lines.append(
            f"| {task.id} | {task.status.value} | {old.status.value if old else '-'} | {task.attempt_count} |"
        )
    if point.note:
        lines.extend(["", f"Note: {point.note}"])
    return "\n".join(lines) + "\n"
