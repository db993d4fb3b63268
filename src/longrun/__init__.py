"""longrun - resilient orchestrator for long-running task queues."""

__version__ = "0.3.0"
