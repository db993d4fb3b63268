"""Failure recovery for longrun.

This package provides:
- Error classification (message -> kind -> class)
- Retry decisions with exponential backoff
- Circuit breakers per operation class
- Recovery points to pause, resume and roll back runs
"""

from .circuit import CircuitBoard, before_call, on_failure, on_success, remaining_cooldown
from .classifier import ClassificationTable, classify_message
from .points import RecoveryPointManager, prepare_resume
from .retry import RetryDecision, RetryPolicy, RetryReason, should_retry

__all__ = [
    # Classifier
    "ClassificationTable",
    "classify_message",
    # Retry
    "RetryDecision",
    "RetryPolicy",
    "RetryReason",
    "should_retry",
    # Circuit breaker
    "CircuitBoard",
    "before_call",
    "on_failure",
    "on_success",
    "remaining_cooldown",
    # Recovery points
    "RecoveryPointManager",
    "prepare_resume",
]
