"""Health monitoring for a running orchestration.

The monitor runs on its own daemon thread and only ever reads run state
through a ``StateReader``. Each check produces ``HealthEvent`` records which
are appended to ``health_events.jsonl``, which is trimmed to its newest
lines once it grows past ``max_lines``. Critical events go to the
intervention gateway at once; warnings are batched and surfaced at most once
per ``warning_flush_interval``.
"""

from __future__ import annotations

import logging
import socket
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

import psutil

from .config import HealthConfig
from .exceptions import StateCorrupted, StateNotFound
from .gateway import InterventionGateway
from .models import HealthEvent, Run, RunStatus, Severity
from .state import StateReader, append_lines

logger = logging.getLogger(__name__)

EVENTS_FILE = "health_events.jsonl"

ResourceProbe = Callable[[], dict[str, float]]
NetworkProbe = Callable[[str, float], bool]


def sample_resources(path: Path | str = "/", cpu_interval: float | None = None) -> dict[str, float]:
    """Current CPU, memory and disk usage percentages.

    With ``cpu_interval=None`` CPU usage is measured since the previous call,
    so the very first sample of a process reads 0.
    """
    return {
        "cpu": float(psutil.cpu_percent(interval=cpu_interval)),
        "memory": float(psutil.virtual_memory().percent),
        "disk": float(psutil.disk_usage(str(path)).percent),
    }


def tcp_reachable(target: str, timeout: float) -> bool:
    """Whether a TCP connection to ``host:port`` succeeds within ``timeout``.

    A target without a port is tried on 443.
    """
    host, sep, port = target.rpartition(":")
    if not sep:
        host, port = target, "443"
    try:
        with socket.create_connection((host, int(port)), timeout=timeout):
            return True
    except ValueError:
        logger.warning(f"Ignoring malformed network target {target!r}")
        return False
    except OSError as e:
        logger.debug(f"Network target {target} unreachable: {e}")
        return False


def _graded(
    metric: str,
    value: float,
    warning: float,
    critical: float,
    message: str,
    now: datetime,
    task_id: str | None = None,
) -> HealthEvent:
    if value >= critical:
        severity, threshold = Severity.CRITICAL, critical
    elif value >= warning:
        severity, threshold = Severity.WARNING, warning
    else:
        severity, threshold = Severity.INFO, warning
    return HealthEvent(
        metric=metric,
        value=value,
        threshold=threshold,
        severity=severity,
        message=message,
        timestamp=now,
        task_id=task_id,
    )


class HealthMonitor:
    """Periodic health checks over a run."""

    def __init__(
        self,
        state: StateReader,
        config: HealthConfig | None = None,
        gateway: InterventionGateway | None = None,
        events_path: Path | None = None,
        default_timeout: float = 1800.0,
        probe: ResourceProbe | None = None,
        clock: Callable[[], datetime] = datetime.now,
        network_probe: NetworkProbe | None = None,
        max_lines: int = 0,
        keep_lines: int = 0,
    ):
        self._state = state
        self.config = config or HealthConfig()
        self.gateway = gateway
        self.events_path = Path(events_path) if events_path else None
        self.default_timeout = default_timeout
        self._probe = probe or sample_resources
        self._network_probe = network_probe or tcp_reachable
        self.max_lines = max_lines
        self.keep_lines = keep_lines
        self._clock = clock

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._pending_warnings: list[HealthEvent] = []
        self._last_flush: datetime | None = None
        self._resources_ok = True
        self._last_events: list[HealthEvent] = []

    @property
    def resources_ok(self) -> bool:
        """Whether the last resource sample was below the critical thresholds."""
        with self._lock:
            return self._resources_ok

    @property
    def last_events(self) -> list[HealthEvent]:
        with self._lock:
            return list(self._last_events)

    # Checks

    def check_stuck(self, run: Run, now: datetime) -> list[HealthEvent]:
        task = run.running_task()
        if task is None or task.started_at is None:
            return []
        timeout = task.timeout or self.default_timeout
        elapsed = (now - task.started_at).total_seconds()
        return [
            _graded(
                "stuck_task",
                elapsed,
                self.config.warning_factor * timeout,
                self.config.critical_factor * timeout,
                f"Task {task.id} running for {elapsed:.0f}s (timeout {timeout:.0f}s)",
                now,
                task.id,
            )
        ]

    def check_error_rate(self, run: Run, now: datetime) -> list[HealthEvent]:
        since = now - timedelta(seconds=self.config.error_window)
        failures = sum(task.failures_since(since) for task in run.tasks)
        return [
            _graded(
                "error_rate",
                float(failures),
                self.config.error_warning,
                self.config.error_critical,
                f"{failures} failed attempt(s) in the last {self.config.error_window:.0f}s",
                now,
            )
        ]

    def check_resources(self, now: datetime) -> list[HealthEvent]:
        try:
            sample = self._probe()
        except OSError as e:
            logger.warning(f"Resource sampling failed: {e}")
            return []

        thresholds = {
            "cpu": (self.config.cpu_warning, self.config.cpu_critical),
            "memory": (self.config.memory_warning, self.config.memory_critical),
            "disk": (self.config.disk_warning, self.config.disk_critical),
        }
        events = []
        for metric, (warning, critical) in thresholds.items():
            if metric not in sample:
                continue
            value = sample[metric]
            events.append(
                _graded(metric, value, warning, critical, f"{metric} usage at {value:.1f}%", now)
            )

        with self._lock:
            self._resources_ok = all(e.severity != Severity.CRITICAL for e in events)
        return events

    def check_network(self, now: datetime) -> list[HealthEvent]:
        """Probe the configured network targets and grade the failures."""
        targets = self.config.network_targets
        if not targets:
            return []
        failed = [t for t in targets if not self._network_probe(t, self.config.network_timeout)]
        critical = self.config.network_critical or len(targets)
        message = f"{len(failed)} of {len(targets)} network target(s) unreachable"
        if failed:
            message += f": {', '.join(failed)}"
        return [
            _graded(
                "network",
                float(len(failed)),
                self.config.network_warning,
                critical,
                message,
                now,
            )
        ]

    def check_stale(self, run: Run, now: datetime) -> list[HealthEvent]:
        if run.status != RunStatus.RUNNING:
            return []
        modified = self._state.last_modified() or run.updated_at
        age = (now - modified).total_seconds()
        if age <= self.config.stale_after:
            return []
        return [
            HealthEvent(
                metric="stale_state",
                value=age,
                threshold=self.config.stale_after,
                severity=Severity.WARNING,
                message=f"State not updated for {age:.0f}s",
                timestamp=now,
                task_id=run.current_task,
            )
        ]

    def check_progress(self, run: Run, now: datetime) -> list[HealthEvent]:
        if run.status != RunStatus.RUNNING:
            return []
        age = (now - run.started_at).total_seconds()
        if age <= self.config.slow_after or run.progress >= self.config.slow_min_completion:
            return []
        return [
            HealthEvent(
                metric="slow_progress",
                value=run.progress,
                threshold=self.config.slow_min_completion,
                severity=Severity.WARNING,
                message=f"Only {run.progress:.0f}% complete after {age / 3600:.1f}h",
                timestamp=now,
            )
        ]

    def check_once(self) -> list[HealthEvent]:
        """Run every check once and route the results."""
        now = self._clock()
        events: list[HealthEvent] = []
        run_id = None

        try:
            run = self._state.load()
        except StateNotFound:
            run = None
        except StateCorrupted as e:
            run = None
            events.append(
                HealthEvent(
                    metric="state",
                    value=1.0,
                    threshold=0.0,
                    severity=Severity.CRITICAL,
                    message=f"State corrupted: {e}",
                    timestamp=now,
                )
            )

        if run is not None:
            run_id = run.run_id
            events.extend(self.check_stuck(run, now))
            events.extend(self.check_error_rate(run, now))
            events.extend(self.check_stale(run, now))
            events.extend(self.check_progress(run, now))
        events.extend(self.check_resources(now))
        events.extend(self.check_network(now))

        self._record(events)
        self._route(events, now, run_id)
        with self._lock:
            self._last_events = events
        return events

    def _record(self, events: list[HealthEvent]) -> None:
        if self.events_path is None or not events:
            return
        append_lines(
            self.events_path,
            [event.model_dump_json() for event in events],
            self.max_lines,
            self.keep_lines,
        )

    def _route(self, events: list[HealthEvent], now: datetime, run_id: str | None) -> None:
        for event in events:
            if event.severity == Severity.CRITICAL:
                logger.error(f"Health critical: {event.message}")
                if self.gateway is not None:
                    self.gateway.notify_health(event, run_id)
            elif event.severity == Severity.WARNING:
                logger.debug(f"Health warning: {event.message}")
                self._pending_warnings.append(event)

        if not self._pending_warnings:
            return
        due = self._last_flush is None or (
            (now - self._last_flush).total_seconds() >= self.config.warning_flush_interval
        )
        if due:
            warnings, self._pending_warnings = self._pending_warnings, []
            self._last_flush = now
            if self.gateway is not None:
                self.gateway.surface_warnings(warnings)
            else:
                logger.warning(f"{len(warnings)} health warning(s)")

    # Thread lifecycle

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="longrun-health", daemon=True)
        self._thread.start()
        logger.debug(f"Health monitor started (interval {self.config.interval}s)")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self.config.interval):
            try:
                self.check_once()
            except Exception:
                logger.exception("Health check failed")

    def recent_events(self, limit: int = 50) -> list[HealthEvent]:
        """Events from the events log, oldest first."""
        if self.events_path is None or not self.events_path.exists():
            return []
        events = []
        for line in self.events_path.read_text(encoding="utf-8").splitlines()[-limit:]:
            try:
                events.append(HealthEvent.model_validate_json(line))
            except ValueError:
                continue
        return events


def render_report(run: Run | None, events: list[HealthEvent], now: datetime | None = None) -> str:
    """Markdown health report."""
    now = now or datetime.now()
    lines = ["# Health report", "", f"Generated: {now:%Y-%m-%d %H:%M:%S}", ""]

    if run is not None:
        lines.extend(
            [
                "## Run",
                "",
                f"- Run: `{run.run_id}` ({run.status.value})",
                f"- Progress: {run.completed_count}/{run.total_tasks} ({run.progress:.0f}%)",
                f"- Current task: `{run.current_task or '-'}`",
                f"- Global retries: {run.global_retries}",
                f"- Failed or awaiting review: {run.failed_count}, blocked: {run.blocked_count}",
                "",
            ]
        )
    else:
        lines.extend(["No readable run state.", ""])

    counts = {severity: 0 for severity in Severity}
    for event in events:
        counts[event.severity] += 1
    overall = "healthy"
    if counts[Severity.CRITICAL]:
        overall = "critical"
    elif counts[Severity.WARNING]:
        overall = "degraded"
    lines.extend([f"## Status: {overall}", ""])

    network = [event for event in events if event.metric == "network"]
    if network:
        lines.extend([f"Network: {network[-1].message}", ""])

    lines.extend(["| Time | Severity | Metric | Value | Threshold | Message |", "|---|---|---|---|---|---|"])
    for event in events:
        lines.append(
            f"| {event.timestamp:%H:%M:%S} | {event.severity.value} | {event.metric} "
            f"| {event.value:.1f} | {event.threshold:.1f} | {event.message} |"
        )
    return "\n".join(lines) + "\n"
