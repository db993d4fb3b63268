"""Retry decisions with exponential backoff.

``should_retry`` is a pure function: it reads the task's attempt count and
the run's global retry counter and returns a decision. Counters are only
incremented by the engine when the retry is actually dispatched.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from enum import Enum
from typing import NamedTuple

from ..models import ErrorClass, Task


class RetryReason(str, Enum):
    RETRY_SCHEDULED = "retry_scheduled"
    NON_RETRYABLE_ERROR = "non_retryable_error"
    TASK_LIMIT_EXCEEDED = "task_limit_exceeded"
    GLOBAL_LIMIT_EXCEEDED = "global_limit_exceeded"


class RetryDecision(NamedTuple):
    """Outcome of a retry check."""

    allow: bool
    delay: float  # seconds to wait before the next attempt
    reason: RetryReason


@dataclass(frozen=True)
class RetryPolicy:
    """Retry ceilings and backoff parameters.

    Attributes:
        max_retries_per_task: Attempts allowed for one task, first attempt included.
        max_total_retries: Retries (attempts beyond a task's first) allowed per run.
        base_delay: Delay before the first retry.
        max_delay: Cap for any delay, jitter included.
        backoff_factor: Multiplier per attempt.
        jitter: Extra random delay as a fraction of the computed delay.
        retryable: Error classes that may be retried at all.
    """

    max_retries_per_task: int = 3
    max_total_retries: int = 10
    base_delay: float = 30.0
    max_delay: float = 1800.0
    backoff_factor: float = 2.0
    jitter: float = 0.1
    retryable: frozenset[ErrorClass] = field(
        default_factory=lambda: frozenset({ErrorClass.TRANSIENT, ErrorClass.RESOURCE})
    )

    @classmethod
    def from_config(cls, retry_config, classification_config=None) -> RetryPolicy:
        """Build a policy from the ``[retry]`` and ``[classification]`` sections."""
        kwargs = {}
        if classification_config is not None:
            kwargs["retryable"] = frozenset(ErrorClass(c) for c in classification_config.retryable)
        return cls(
            max_retries_per_task=retry_config.max_retries_per_task,
            max_total_retries=retry_config.max_total_retries,
            base_delay=retry_config.base_delay,
            max_delay=retry_config.max_delay,
            backoff_factor=retry_config.backoff_factor,
            jitter=retry_config.jitter,
            **kwargs,
        )

    def is_retryable(self, error_class: ErrorClass) -> bool:
        return error_class in self.retryable


def compute_delay(policy: RetryPolicy, attempt: int, rng: random.Random | None = None) -> float:
    """Backoff delay after the given (1-based) attempt failed.

    ``base_delay * backoff_factor ** (attempt - 1)`` plus up to ``jitter`` of
    that value at random, never above ``max_delay``.
    """
    attempt = max(1, attempt)
    delay = min(policy.max_delay, policy.base_delay * (policy.backoff_factor ** (attempt - 1)))
    if policy.jitter > 0 and delay > 0:
        delay += delay * policy.jitter * (rng or random).random()
    return min(delay, policy.max_delay)


def should_retry(
    task: Task,
    global_retries: int,
    error_class: ErrorClass,
    policy: RetryPolicy,
    rng: random.Random | None = None,
) -> RetryDecision:
    """Decide whether a failed task may be retried, and after how long."""
    if not policy.is_retryable(error_class):
        return RetryDecision(False, 0.0, RetryReason.NON_RETRYABLE_ERROR)

    if task.attempt_count >= policy.max_retries_per_task:
        return RetryDecision(False, 0.0, RetryReason.TASK_LIMIT_EXCEEDED)

    # A task that has never been dispatched does not consume a global retry
    if task.attempt_count > 0 and global_retries >= policy.max_total_retries:
        return RetryDecision(False, 0.0, RetryReason.GLOBAL_LIMIT_EXCEEDED)

    return RetryDecision(True, compute_delay(policy, task.attempt_count, rng), RetryReason.RETRY_SCHEDULED)
