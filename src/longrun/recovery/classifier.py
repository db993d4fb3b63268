"""Error classification for retry decisions.

Two steps turn a failed attempt into something the retry controller can
reason about:

1. A free-text error message is mapped to an error *kind* (``TIMEOUT``,
   ``NETWORK_ERROR``, ...) by regex patterns, when the executor did not
   report a kind itself.
2. The kind is mapped to an error *class* (transient, permanent, resource,
   state corruption) through a ``ClassificationTable``, which is
   configurable and extensible at runtime.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import NamedTuple

from ..models import ErrorClass, TaskError

logger = logging.getLogger(__name__)

UNKNOWN_KIND = "UNKNOWN_ERROR"
CIRCUIT_OPEN = "CIRCUIT_OPEN"

DEFAULT_KIND_CLASSES: dict[str, ErrorClass] = {
    # Transient
    "API_ERROR": ErrorClass.TRANSIENT,
    "RATE_LIMIT": ErrorClass.TRANSIENT,
    "TIMEOUT": ErrorClass.TRANSIENT,
    "NETWORK_ERROR": ErrorClass.TRANSIENT,
    "TEMPORARY_FAILURE": ErrorClass.TRANSIENT,
    "SERVICE_UNAVAILABLE": ErrorClass.TRANSIENT,
    CIRCUIT_OPEN: ErrorClass.TRANSIENT,
    # Permanent
    "PERMISSION_DENIED": ErrorClass.PERMANENT,
    "AUTHENTICATION_ERROR": ErrorClass.PERMANENT,
    "INVALID_INPUT": ErrorClass.PERMANENT,
    "CONFIGURATION_ERROR": ErrorClass.PERMANENT,
    "COMMAND_NOT_FOUND": ErrorClass.PERMANENT,
    "MALFORMED_TASK": ErrorClass.PERMANENT,
    # Resource
    "DISK_FULL": ErrorClass.RESOURCE,
    "OUT_OF_MEMORY": ErrorClass.RESOURCE,
    "QUOTA_EXCEEDED": ErrorClass.RESOURCE,
    # Halts the run
    "STATE_CORRUPTION": ErrorClass.STATE_CORRUPTION,
}


class ClassificationResult(NamedTuple):
    """Result of mapping an error message to a kind."""

    kind: str
    confidence: float  # 0.0 to 1.0
    reason: str


# Each pattern is a tuple of (regex_pattern, kind, reason, confidence)
MESSAGE_PATTERNS: list[tuple[str, str, str, float]] = [
    # Network errors
    (r"connection\s*(refused|reset|timed?\s*out)", "NETWORK_ERROR", "Network connection failed", 0.95),
    (r"(network|socket)\s*(error|unreachable)", "NETWORK_ERROR", "Network error", 0.9),
    (r"ECONNREFUSED|ENOTFOUND|ETIMEDOUT|ECONNRESET", "NETWORK_ERROR", "Network socket error", 0.95),
    (r"DNS\s*(resolution|lookup)\s*failed", "NETWORK_ERROR", "DNS resolution failed", 0.9),
    (r"network|connection|dns", "NETWORK_ERROR", "Network problem", 0.6),
    # Rate limiting
    (r"rate\s*limit(ed)?|too\s*many\s*requests|\b429\b", "RATE_LIMIT", "Rate limited", 0.95),
    (r"throttl(ed|ing)", "RATE_LIMIT", "Request throttled", 0.9),
    (r"quota\s*exceeded|usage\s*limit", "QUOTA_EXCEEDED", "Quota exceeded", 0.9),
    # Timeouts
    (r"timeout|timed?\s*out|deadline\s*exceeded", "TIMEOUT", "Operation timed out", 0.85),
    # Temporary failures
    (r"(temporary|transient)\s*(failure|error|unavailable)", "TEMPORARY_FAILURE", "Temporary failure", 0.9),
    (r"service\s*(temporarily\s*)?(unavailable|down)", "SERVICE_UNAVAILABLE", "Service unavailable", 0.85),
    (r"\b(502|503|504)\b", "SERVICE_UNAVAILABLE", "Server error", 0.8),
    (r"try\s*again\s*later", "TEMPORARY_FAILURE", "Server requested retry", 0.95),
    (r"\bAPI\s*(error|unavailable)|overloaded", "API_ERROR", "API error", 0.75),
    # Permission and authentication
    (r"permission\s*denied|EACCES|(access|write)\s*denied", "PERMISSION_DENIED", "Permission denied", 0.9),
    (r"(auth|authentication)\s*(failed|error|invalid)", "AUTHENTICATION_ERROR", "Authentication failed", 0.9),
    (r"unauthorized|forbidden|\b40[13]\b", "AUTHENTICATION_ERROR", "Authorization error", 0.85),
    (r"invalid\s*(api\s*)?key|token\s*(expired|invalid)", "AUTHENTICATION_ERROR", "Invalid credentials", 0.95),
    # Bad input and configuration
    (r"(config|configuration)\s*(error|invalid|missing)", "CONFIGURATION_ERROR", "Configuration error", 0.9),
    (r"invalid\s*(config|settings|options)", "CONFIGURATION_ERROR", "Invalid configuration", 0.9),
    (r"(environment|env)\s*(variable|var)\s*(missing|not\s*set)", "CONFIGURATION_ERROR", "Missing env var", 0.95),
    (r"invalid|syntax\s*error|malformed", "INVALID_INPUT", "Invalid input", 0.7),
    (r"command\s*not\s*found|no\s*such\s*file\s*or\s*directory", "COMMAND_NOT_FOUND", "Command not found", 0.9),
    # Resources
    (r"(disk|storage)\s*(full|space)|ENOSPC|no\s*space\s*left", "DISK_FULL", "Disk full", 0.95),
    (r"out\s*of\s*memory|ENOMEM|(memory|ram)\s*(full|exhausted)|MemoryError", "OUT_OF_MEMORY", "Out of memory", 0.95),
]


def classify_message(message: str | None) -> ClassificationResult:
    """Map an error message to an error kind.

    The highest-confidence matching pattern wins; unmatched messages map to
    ``UNKNOWN_ERROR``.
    """
    if not message:
        return ClassificationResult(UNKNOWN_KIND, 0.0, "Empty error message")

    normalized = message.strip()
    best: ClassificationResult | None = None

    for pattern, kind, reason, confidence in MESSAGE_PATTERNS:
        if re.search(pattern, normalized, re.IGNORECASE):
            if best is None or confidence > best.confidence:
                best = ClassificationResult(kind, confidence, reason)

    if best:
        return best

    return ClassificationResult(UNKNOWN_KIND, 0.5, "Could not classify error")


@dataclass
class ClassificationTable:
    """Maps error kinds to error classes.

    Unknown kinds fall back to ``default_class``.
    """

    kinds: dict[str, ErrorClass] = field(default_factory=lambda: dict(DEFAULT_KIND_CLASSES))
    default_class: ErrorClass = ErrorClass.TRANSIENT

    @classmethod
    def from_config(cls, config) -> ClassificationTable:
        """Build a table from a ``ClassificationConfig`` section."""
        table = cls(default_class=ErrorClass(config.default_class))
        for kind, class_name in config.kinds.items():
            table.register(kind, ErrorClass(class_name))
        return table

    def register(self, kind: str, error_class: ErrorClass) -> None:
        """Add or override a kind at runtime."""
        self.kinds[kind.upper()] = error_class

    def class_of(self, kind: str) -> ErrorClass:
        error_class = self.kinds.get(kind.upper())
        if error_class is None:
            logger.debug(f"Unknown error kind {kind}, treating as {self.default_class.value}")
            return self.default_class
        return error_class

    def classify(self, kind: str | None, message: str = "") -> TaskError:
        """Build a TaskError, inferring the kind from the message when missing."""
        if not kind:
            kind = classify_message(message).kind
        return TaskError(kind=kind.upper(), error_class=self.class_of(kind), message=message)
