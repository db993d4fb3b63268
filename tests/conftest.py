"""Shared fixtures for longrun tests."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

import pytest

from longrun.config import LongrunConfig, reset_config
from longrun.models import TaskSpec
from longrun.utils.errors import set_debug_mode


class FakeClock:
    """Manually advanced clock; ``wait`` doubles as an engine waiter."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2025, 1, 1, 12, 0, 0)
        self.waits: list[float] = []

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)

    def wait(self, seconds: float) -> bool:
        self.waits.append(seconds)
        self.advance(seconds)
        return False


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point the config singleton at a throwaway file."""
    monkeypatch.setenv("LONGRUN_CONFIG", str(tmp_path / "config.toml"))
    for name in (
        "LONGRUN_STATE_DIR",
        "LONGRUN_LOG_LEVEL",
        "LONGRUN_WEBHOOK_URL",
        "LONGRUN_MAX_RETRIES_PER_TASK",
        "LONGRUN_MAX_TOTAL_RETRIES",
        "LONGRUN_TASK_TIMEOUT",
        "LONGRUN_HEALTH_INTERVAL",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture(autouse=True)
def restore_logging():
    """Undo handlers installed by the CLI so caplog keeps working."""
    yield
    logger = logging.getLogger("longrun")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
    set_debug_mode(False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fast_config() -> LongrunConfig:
    """Defaults with no backoff delay and no jitter."""
    config = LongrunConfig()
    config.retry.base_delay = 0.0
    config.retry.jitter = 0.0
    config.recovery.periodic_interval = 10**9
    config.engine.task_timeout = 30.0
    return config


@pytest.fixture
def make_specs():
    """Build task specs: ``make_specs("a", ("b", ["a"]))``."""

    def _make(*entries) -> list[TaskSpec]:
        specs = []
        for entry in entries:
            if isinstance(entry, str):
                specs.append(TaskSpec(id=entry))
            else:
                task_id, deps = entry
                specs.append(TaskSpec(id=task_id, depends_on=list(deps)))
        return specs

    return _make
