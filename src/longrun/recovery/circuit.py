"""Circuit breaker per operation class.

Breaker state is a frozen ``CircuitState``; the functions below are the only
transitions and return new states. ``CircuitBoard`` keeps one state per
operation class inside the run so breakers survive pause and resume.

    CLOSED --(failure_threshold consecutive failures)--> OPEN
    OPEN --(more than reset_timeout elapsed)--> HALF_OPEN (one probe call)
    HALF_OPEN --(probe succeeds)--> CLOSED
    HALF_OPEN --(probe fails)--> OPEN
"""

from __future__ import annotations

import logging
from datetime import datetime

from ..exceptions import CircuitOpenError
from ..models import CircuitState, CircuitStatus

logger = logging.getLogger(__name__)

# Smallest step a datetime can take; a probe needs strictly more than reset_timeout.
TICK = 1e-6


def remaining_cooldown(state: CircuitState, now: datetime) -> float:
    """Seconds until an open circuit lets a probe through."""
    if state.status != CircuitStatus.OPEN or state.last_failure is None:
        return 0.0
    elapsed = (now - state.last_failure).total_seconds()
    if elapsed > state.reset_timeout:
        return 0.0
    return state.reset_timeout - elapsed + TICK


def before_call(state: CircuitState, now: datetime) -> tuple[CircuitState, bool]:
    """Check whether a call may go through.

    Returns the (possibly transitioned) state and whether the call is allowed.
    """
    if state.status == CircuitStatus.CLOSED:
        return state, True

    if state.status == CircuitStatus.OPEN:
        if state.last_failure is not None and (
            (now - state.last_failure).total_seconds() <= state.reset_timeout
        ):
            return state, False
        return state.model_copy(
            update={"status": CircuitStatus.HALF_OPEN, "probe_in_flight": True}
        ), True

    # HALF_OPEN: exactly one probe at a time
    if state.probe_in_flight:
        return state, False
    return state.model_copy(update={"probe_in_flight": True}), True


def on_success(state: CircuitState) -> CircuitState:
    return state.model_copy(
        update={
            "status": CircuitStatus.CLOSED,
            "consecutive_failures": 0,
            "probe_in_flight": False,
        }
    )


def on_failure(state: CircuitState, now: datetime) -> CircuitState:
    failures = state.consecutive_failures + 1
    if state.status == CircuitStatus.HALF_OPEN or failures >= state.failure_threshold:
        status = CircuitStatus.OPEN
    else:
        status = CircuitStatus.CLOSED
    return state.model_copy(
        update={
            "status": status,
            "consecutive_failures": failures,
            "last_failure": now,
            "probe_in_flight": False,
        }
    )


def release_probe(state: CircuitState) -> CircuitState:
    """Forget a probe interrupted by a crash or restore."""
    if not state.probe_in_flight:
        return state
    return state.model_copy(update={"status": CircuitStatus.OPEN, "probe_in_flight": False})


class CircuitBoard:
    """Breaker states for all operation classes of a run.

    Mutates the ``circuits`` mapping it is given, which is the run's own.
    """

    def __init__(
        self,
        circuits: dict[str, CircuitState],
        failure_threshold: int = 5,
        reset_timeout: float = 300.0,
    ) -> None:
        self.circuits = circuits
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout

    def get(self, operation: str) -> CircuitState:
        state = self.circuits.get(operation)
        if state is None:
            state = CircuitState(
                operation=operation,
                failure_threshold=self.failure_threshold,
                reset_timeout=self.reset_timeout,
            )
            self.circuits[operation] = state
        return state

    def acquire(self, operation: str, now: datetime) -> None:
        """Admit a call or raise CircuitOpenError without side effects."""
        state = self.get(operation)
        new_state, allowed = before_call(state, now)
        if not allowed:
            raise CircuitOpenError(operation, remaining_cooldown(state, now))
        if new_state.status != state.status:
            logger.info(f"Circuit for '{operation}' half-open, sending probe")
        self.circuits[operation] = new_state

    def record_success(self, operation: str) -> None:
        state = self.get(operation)
        if state.status != CircuitStatus.CLOSED:
            logger.info(f"Circuit for '{operation}' closed after successful probe")
        self.circuits[operation] = on_success(state)

    def record_failure(self, operation: str, now: datetime) -> None:
        state = self.get(operation)
        new_state = on_failure(state, now)
        if new_state.status == CircuitStatus.OPEN and state.status != CircuitStatus.OPEN:
            logger.warning(
                f"Circuit for '{operation}' opened after {new_state.consecutive_failures} "
                f"consecutive failures"
            )
        self.circuits[operation] = new_state

    def cooldown(self, operation: str, now: datetime) -> float:
        return remaining_cooldown(self.get(operation), now)

    def release_probes(self) -> None:
        for operation, state in list(self.circuits.items()):
            self.circuits[operation] = release_probe(state)
