"""Intervention gateway: the boundary between the run and its operator.

Escalations are recorded in ``escalations.jsonl``, logged, rendered on the
console and passed to any registered notifiers. When the engine needs a
decision it asks for a ``Future`` which the control channel resolves; the
engine never blocks on console input.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections import deque
from collections.abc import Callable, Iterable
from concurrent.futures import Future
from datetime import datetime
from pathlib import Path
from typing import Any
from urllib.error import URLError
from urllib.request import Request, urlopen

from pydantic import BaseModel, Field
from rich.console import Console
from rich.panel import Panel

from .control import OperatorAction
from .models import AttemptRecord, ErrorClass, HealthEvent, Severity
from .state import append_lines

logger = logging.getLogger(__name__)

ESCALATIONS_FILE = "escalations.jsonl"


class Escalation(BaseModel):
    """A situation the run could not resolve on its own."""

    escalation_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:8])
    kind: str  # task, run, health, state, snapshot
    reason: str
    severity: Severity = Severity.CRITICAL
    run_id: str | None = None
    task_id: str | None = None
    error_kind: str | None = None
    error_class: ErrorClass | None = None
    history: list[AttemptRecord] = Field(default_factory=list)
    recovery_point: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)

    @classmethod
    def from_health(cls, event: HealthEvent, run_id: str | None = None) -> Escalation:
        return cls(
            kind="health",
            reason=event.message,
            severity=event.severity,
            run_id=run_id,
            task_id=event.task_id,
            error_kind=event.metric.upper(),
        )


class OperatorDecision(BaseModel):
    action: OperatorAction
    task_id: str | None = None
    note: str | None = None


Notifier = Callable[[Escalation], None]


def render_escalation(escalation: Escalation) -> Panel:
    """Rich panel describing an escalation."""
    lines = [f"[bold]{escalation.reason}[/bold]"]
    if escalation.task_id:
        lines.append(f"Task: [cyan]{escalation.task_id}[/cyan]")
    if escalation.error_kind:
        error_class = escalation.error_class.value if escalation.error_class else "-"
        lines.append(f"Error: {escalation.error_kind} ({error_class})")
    if escalation.history:
        lines.append("")
        lines.append("Attempts:")
        for record in escalation.history:
            detail = record.error_kind or ""
            if record.message:
                detail = f"{detail}: {record.message}" if detail else record.message
            lines.append(
                f"  #{record.attempt} {record.outcome.value} "
                f"(waited {record.delay:.1f}s) {detail}".rstrip()
            )
    lines.append("")
    if escalation.recovery_point:
        lines.append(f"Latest recovery point: [green]{escalation.recovery_point}[/green]")
    else:
        lines.append("[yellow]No valid recovery point available[/yellow]")
    if escalation.task_id:
        lines.append(f"[dim]Actions: longrun retry {escalation.task_id} | longrun resume | longrun abort[/dim]")

    style = "red" if escalation.severity == Severity.CRITICAL else "yellow"
    return Panel(
        "\n".join(lines),
        title=f"Escalation {escalation.escalation_id} [{escalation.kind}]",
        border_style=style,
    )


class WebhookNotifier:
    """Posts escalations as JSON to a webhook URL."""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    def payload(self, escalation: Escalation) -> dict[str, Any]:
        title = f"longrun escalation: {escalation.reason}"
        return {
            "text": title,
            "escalation": escalation.model_dump(mode="json"),
        }

    def __call__(self, escalation: Escalation) -> None:
        data = json.dumps(self.payload(escalation)).encode("utf-8")
        request = Request(
            self.url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urlopen(request, timeout=self.timeout) as response:
                if response.status not in (200, 201, 202, 204):
                    logger.warning(f"Webhook returned HTTP {response.status}")
        except URLError as e:
            logger.error(f"Failed to send webhook: {e}")


class InterventionGateway:
    """Routes escalations and health alerts to the operator."""

    def __init__(
        self,
        log_path: Path | None = None,
        console: Console | None = None,
        notifiers: Iterable[Notifier] = (),
        wake: threading.Event | None = None,
        notify_warnings: bool = False,
        max_lines: int = 0,
        keep_lines: int = 0,
    ):
        self.log_path = Path(log_path) if log_path else None
        self.max_lines = max_lines
        self.keep_lines = keep_lines
        self.console = console
        self.notifiers: list[Notifier] = list(notifiers)
        self.notify_warnings = notify_warnings
        self._wake = wake
        self._lock = threading.Lock()
        self._critical: deque[HealthEvent] = deque()
        self._pending: Future[OperatorDecision] | None = None
        self._pending_escalation: Escalation | None = None

    @classmethod
    def from_config(
        cls, state_dir: Path, config, console: Console | None = None
    ) -> InterventionGateway:
        notifiers: list[Notifier] = []
        if config.gateway.is_configured:
            notifiers.append(WebhookNotifier(config.gateway.webhook_url, config.gateway.webhook_timeout))
        return cls(
            Path(state_dir) / ESCALATIONS_FILE,
            console=console,
            notifiers=notifiers,
            notify_warnings=config.gateway.notify_warnings,
            max_lines=config.core.journal_max_lines,
            keep_lines=config.core.journal_keep_lines,
        )

    def bind_wake(self, wake: threading.Event) -> None:
        """Set the event that wakes the engine when operator input arrives."""
        self._wake = wake

    def add_notifier(self, notifier: Notifier) -> None:
        self.notifiers.append(notifier)

    def _record(self, escalation: Escalation) -> None:
        if self.log_path is None:
            return
        try:
            with self._lock:
                append_lines(
                    self.log_path, [escalation.model_dump_json()], self.max_lines, self.keep_lines
                )
        except OSError as e:
            logger.error(f"Could not record escalation {escalation.escalation_id}: {e}")

    def _notify(self, escalation: Escalation) -> None:
        for notifier in self.notifiers:
            try:
                notifier(escalation)
            except Exception:
                logger.exception(f"Notifier failed for escalation {escalation.escalation_id}")

    def escalate(self, escalation: Escalation) -> Escalation:
        """Record and announce an escalation."""
        self._record(escalation)
        log = logger.error if escalation.severity == Severity.CRITICAL else logger.warning
        target = f" for task {escalation.task_id}" if escalation.task_id else ""
        log(f"Escalation{target}: {escalation.reason}")
        if self.console is not None:
            self.console.print(render_escalation(escalation))
        self._notify(escalation)
        return escalation

    def history(self, limit: int | None = None) -> list[Escalation]:
        """Recorded escalations, oldest first."""
        if self.log_path is None or not self.log_path.exists():
            return []
        escalations = []
        for line in self.log_path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                escalations.append(Escalation.model_validate_json(line))
            except ValueError:
                logger.warning(f"Skipping malformed line in {self.log_path}")
        return escalations[-limit:] if limit else escalations

    # Health monitor side

    def notify_health(self, event: HealthEvent, run_id: str | None = None) -> None:
        """Deliver a critical health event immediately."""
        with self._lock:
            self._critical.append(event)
        self.escalate(Escalation.from_health(event, run_id))
        if self._wake is not None:
            self._wake.set()

    def surface_warnings(self, events: list[HealthEvent]) -> None:
        """Announce an aggregated batch of warnings."""
        if not events:
            return
        summary = "; ".join(event.message for event in events)
        logger.warning(f"{len(events)} health warning(s): {summary}")
        if self.console is not None:
            self.console.print(f"[yellow]Health warnings ({len(events)}):[/yellow]")
            for event in events:
                self.console.print(f"  [yellow]-[/yellow] {event.message}")
        if self.notify_warnings:
            self._notify(
                Escalation(
                    kind="health",
                    reason=f"{len(events)} health warning(s): {summary}",
                    severity=Severity.WARNING,
                )
            )

    def drain_critical(self) -> list[HealthEvent]:
        with self._lock:
            events = list(self._critical)
            self._critical.clear()
        return events

    # Operator decisions

    def request_decision(self, escalation: Escalation) -> Future[OperatorDecision]:
        """Open a decision slot the operator resolves through the control channel."""
        with self._lock:
            if self._pending is not None and not self._pending.done():
                self._pending.cancel()
            self._pending = Future()
            self._pending_escalation = escalation
            future = self._pending
        logger.info(f"Waiting for operator decision on escalation {escalation.escalation_id}")
        return future

    @property
    def pending_escalation(self) -> Escalation | None:
        with self._lock:
            if self._pending is None or self._pending.done():
                return None
            return self._pending_escalation

    def resolve(self, decision: OperatorDecision) -> bool:
        """Answer the pending decision. Returns False if nothing was pending."""
        with self._lock:
            future = self._pending
            if future is None or future.done():
                return False
            future.set_result(decision)
        logger.info(f"Operator decision: {decision.action.value}")
        if self._wake is not None:
            self._wake.set()
        return True

    def cancel_pending(self) -> None:
        with self._lock:
            if self._pending is not None and not self._pending.done():
                self._pending.cancel()
            self._pending = None
            self._pending_escalation = None
