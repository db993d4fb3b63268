"""Configuration for longrun.

Configuration is stored at ~/.longrun/config.toml (or the path in
``LONGRUN_CONFIG``) and organized into sections.

Configuration loading priority:
1. Environment variables (highest)
2. Config file
3. Defaults (lowest)

Sections:
    [core]            - State directory and logging
    [retry]           - Per-task and global retry ceilings, backoff
    [circuit]         - Circuit breaker threshold and cooldown
    [health]          - Health monitor interval and thresholds
    [recovery]        - Recovery point retention
    [engine]          - Task timeout and operator behaviour
    [gateway]         - Escalation notifications
    [classification]  - Error kind to error class table

Example:
    from longrun.config import get_config

    config = get_config()
    print(config.retry.max_retries_per_task)
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import Any

import tomli_w

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".longrun"
DEFAULT_CONFIG_FILE = "config.toml"

_config: LongrunConfig | None = None


# =============================================================================
# Configuration Sections
# =============================================================================


@dataclass
class CoreConfig:
    """Core settings.

    Attributes:
        state_dir: Directory holding state, recovery points and logs.
        log_level: Logging level (debug, info, warning, error).
        log_file: Log file name inside the state directory.
        log_max_bytes: Size at which run.log is rotated (0 disables rotation).
        log_backups: Rotated run.log files kept.
        journal_max_lines: Line count at which escalation and health journals
            are trimmed (0 disables trimming).
        journal_keep_lines: Newest lines kept when a journal is trimmed.
    """

    state_dir: str = ".longrun"
    log_level: str = "info"
    log_file: str = "run.log"
    log_max_bytes: int = 10 * 1024 * 1024
    log_backups: int = 1
    journal_max_lines: int = 1000
    journal_keep_lines: int = 500

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CoreConfig:
        return cls(
            state_dir=data.get("state_dir", ".longrun"),
            log_level=data.get("log_level", "info"),
            log_file=data.get("log_file", "run.log"),
            log_max_bytes=int(data.get("log_max_bytes", 10 * 1024 * 1024)),
            log_backups=int(data.get("log_backups", 1)),
            journal_max_lines=int(data.get("journal_max_lines", 1000)),
            journal_keep_lines=int(data.get("journal_keep_lines", 500)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "state_dir": self.state_dir,
            "log_level": self.log_level,
            "log_file": self.log_file,
            "log_max_bytes": self.log_max_bytes,
            "log_backups": self.log_backups,
            "journal_max_lines": self.journal_max_lines,
            "journal_keep_lines": self.journal_keep_lines,
        }


@dataclass
class RetryConfig:
    """Retry ceilings and backoff.

    Attributes:
        max_retries_per_task: Attempts allowed for a single task.
        max_total_retries: Retries allowed across the whole run.
        base_delay: Delay before the first retry, in seconds.
        max_delay: Upper bound for any retry delay.
        backoff_factor: Multiplier applied per attempt.
        jitter: Random extra delay as a fraction of the computed delay.
    """

    max_retries_per_task: int = 3
    max_total_retries: int = 10
    base_delay: float = 30.0
    max_delay: float = 1800.0
    backoff_factor: float = 2.0
    jitter: float = 0.1

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryConfig:
        return cls(
            max_retries_per_task=int(data.get("max_retries_per_task", 3)),
            max_total_retries=int(data.get("max_total_retries", 10)),
            base_delay=float(data.get("base_delay", 30.0)),
            max_delay=float(data.get("max_delay", 1800.0)),
            backoff_factor=float(data.get("backoff_factor", 2.0)),
            jitter=float(data.get("jitter", 0.1)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_retries_per_task": self.max_retries_per_task,
            "max_total_retries": self.max_total_retries,
            "base_delay": self.base_delay,
            "max_delay": self.max_delay,
            "backoff_factor": self.backoff_factor,
            "jitter": self.jitter,
        }


@dataclass
class CircuitConfig:
    """Circuit breaker settings, shared by all operation classes."""

    failure_threshold: int = 5
    reset_timeout: float = 300.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CircuitConfig:
        return cls(
            failure_threshold=int(data.get("failure_threshold", 5)),
            reset_timeout=float(data.get("reset_timeout", 300.0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "failure_threshold": self.failure_threshold,
            "reset_timeout": self.reset_timeout,
        }


@dataclass
class HealthConfig:
    """Health monitor settings.

    Attributes:
        interval: Seconds between checks.
        warning_factor: Stuck-task warning at this multiple of the task timeout.
        critical_factor: Stuck-task critical at this multiple of the task timeout.
        error_window: Trailing window for the error rate, in seconds.
        error_warning: Failed attempts in the window that raise a warning.
        error_critical: Failed attempts in the window that raise a critical event.
        cpu_warning / cpu_critical: CPU percent thresholds.
        memory_warning / memory_critical: Memory percent thresholds.
        disk_warning / disk_critical: Disk percent thresholds.
        stale_after: Seconds without a state write before a running run is stale.
        slow_after: Run age after which slow progress is reported.
        slow_min_completion: Completion percent expected after slow_after.
        warning_flush_interval: Minimum seconds between warning summaries.
        network_targets: ``host:port`` endpoints probed with a TCP connect;
            empty disables the network check.
        network_timeout: Seconds before a connect attempt counts as failed.
        network_warning: Failed targets that raise a warning.
        network_critical: Failed targets that raise a critical event
            (0 means all of them).
    """

    interval: float = 60.0
    warning_factor: float = 1.0
    critical_factor: float = 2.0
    error_window: float = 3600.0
    error_warning: int = 5
    error_critical: int = 10
    cpu_warning: float = 80.0
    cpu_critical: float = 95.0
    memory_warning: float = 85.0
    memory_critical: float = 95.0
    disk_warning: float = 90.0
    disk_critical: float = 95.0
    stale_after: float = 900.0
    slow_after: float = 7200.0
    slow_min_completion: float = 20.0
    warning_flush_interval: float = 300.0
    network_targets: list[str] = field(default_factory=list)
    network_timeout: float = 5.0
    network_warning: int = 1
    network_critical: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HealthConfig:
        return cls(
            interval=float(data.get("interval", 60.0)),
            warning_factor=float(data.get("warning_factor", 1.0)),
            critical_factor=float(data.get("critical_factor", 2.0)),
            error_window=float(data.get("error_window", 3600.0)),
            error_warning=int(data.get("error_warning", 5)),
            error_critical=int(data.get("error_critical", 10)),
            cpu_warning=float(data.get("cpu_warning", 80.0)),
            cpu_critical=float(data.get("cpu_critical", 95.0)),
            memory_warning=float(data.get("memory_warning", 85.0)),
            memory_critical=float(data.get("memory_critical", 95.0)),
            disk_warning=float(data.get("disk_warning", 90.0)),
            disk_critical=float(data.get("disk_critical", 95.0)),
            stale_after=float(data.get("stale_after", 900.0)),
            slow_after=float(data.get("slow_after", 7200.0)),
            slow_min_completion=float(data.get("slow_min_completion", 20.0)),
            warning_flush_interval=float(data.get("warning_flush_interval", 300.0)),
            network_targets=list(data.get("network_targets", [])),
            network_timeout=float(data.get("network_timeout", 5.0)),
            network_warning=int(data.get("network_warning", 1)),
            network_critical=int(data.get("network_critical", 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class RecoveryConfig:
    """Recovery point retention.

    Attributes:
        keep_last: Number of newest points always kept.
        error_retention: Seconds an on-error point is kept regardless of count.
        periodic_interval: Seconds between periodic points during a run.
        log_copy_bytes: Tail of each supporting log copied into a point
            (0 copies whole files).
    """

    keep_last: int = 20
    error_retention: float = 86400.0
    periodic_interval: float = 1800.0
    log_copy_bytes: int = 1024 * 1024

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecoveryConfig:
        return cls(
            keep_last=int(data.get("keep_last", 20)),
            error_retention=float(data.get("error_retention", 86400.0)),
            periodic_interval=float(data.get("periodic_interval", 1800.0)),
            log_copy_bytes=int(data.get("log_copy_bytes", 1024 * 1024)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "keep_last": self.keep_last,
            "error_retention": self.error_retention,
            "periodic_interval": self.periodic_interval,
            "log_copy_bytes": self.log_copy_bytes,
        }


@dataclass
class EngineConfig:
    """Execution engine settings.

    Attributes:
        task_timeout: Default hard timeout per dispatch, in seconds.
        await_operator: Wait for an operator decision after an escalation.
        pause_on_critical: Pause the run when a critical health event arrives.
        operator_poll_interval: Seconds between control channel polls while waiting.
    """

    task_timeout: float = 1800.0
    await_operator: bool = False
    pause_on_critical: bool = False
    operator_poll_interval: float = 1.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineConfig:
        return cls(
            task_timeout=float(data.get("task_timeout", 1800.0)),
            await_operator=data.get("await_operator", False),
            pause_on_critical=data.get("pause_on_critical", False),
            operator_poll_interval=float(data.get("operator_poll_interval", 1.0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_timeout": self.task_timeout,
            "await_operator": self.await_operator,
            "pause_on_critical": self.pause_on_critical,
            "operator_poll_interval": self.operator_poll_interval,
        }


@dataclass
class GatewayConfig:
    """Escalation delivery.

    Attributes:
        webhook_url: Optional URL receiving escalations as JSON.
        webhook_timeout: Seconds before a webhook post is abandoned.
        notify_warnings: Also post aggregated health warnings to the webhook.
    """

    webhook_url: str = ""
    webhook_timeout: float = 10.0
    notify_warnings: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GatewayConfig:
        return cls(
            webhook_url=data.get("webhook_url", ""),
            webhook_timeout=float(data.get("webhook_timeout", 10.0)),
            notify_warnings=data.get("notify_warnings", False),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "webhook_url": self.webhook_url,
            "webhook_timeout": self.webhook_timeout,
            "notify_warnings": self.notify_warnings,
        }

    @property
    def is_configured(self) -> bool:
        return bool(self.webhook_url)


@dataclass
class ClassificationConfig:
    """Error classification overrides.

    Attributes:
        retryable: Error classes the retry controller may retry.
        default_class: Class assigned to unknown error kinds.
        kinds: Extra or overriding ``KIND = "class"`` entries.
    """

    retryable: list[str] = field(default_factory=lambda: ["transient", "resource"])
    default_class: str = "transient"
    kinds: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClassificationConfig:
        return cls(
            retryable=list(data.get("retryable", ["transient", "resource"])),
            default_class=data.get("default_class", "transient"),
            kinds=dict(data.get("kinds", {})),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "retryable": list(self.retryable),
            "default_class": self.default_class,
            "kinds": dict(self.kinds),
        }


# =============================================================================
# Main Configuration Class
# =============================================================================


@dataclass
class LongrunConfig:
    """Main configuration container.

    Use get_config() to get the singleton instance.
    """

    core: CoreConfig = field(default_factory=CoreConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    circuit: CircuitConfig = field(default_factory=CircuitConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    classification: ClassificationConfig = field(default_factory=ClassificationConfig)

    # Metadata
    config_version: str = "1.0"
    config_path: Path | None = None
    last_modified: datetime | None = None

    SECTIONS = (
        "core",
        "retry",
        "circuit",
        "health",
        "recovery",
        "engine",
        "gateway",
        "classification",
    )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LongrunConfig:
        """Create configuration from dictionary."""
        return cls(
            core=CoreConfig.from_dict(data.get("core", {})),
            retry=RetryConfig.from_dict(data.get("retry", {})),
            circuit=CircuitConfig.from_dict(data.get("circuit", {})),
            health=HealthConfig.from_dict(data.get("health", {})),
            recovery=RecoveryConfig.from_dict(data.get("recovery", {})),
            engine=EngineConfig.from_dict(data.get("engine", {})),
            gateway=GatewayConfig.from_dict(data.get("gateway", {})),
            classification=ClassificationConfig.from_dict(data.get("classification", {})),
            config_version=data.get("config", {}).get("version", "1.0"),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"config": {"version": self.config_version}}
        for name in self.SECTIONS:
            result[name] = getattr(self, name).to_dict()
        return result

    @property
    def state_path(self) -> Path:
        return Path(self.core.state_dir)

    def apply_env_overrides(self) -> None:
        """Apply LONGRUN_* environment variable overrides."""
        if state_dir := os.environ.get("LONGRUN_STATE_DIR"):
            self.core.state_dir = state_dir
        if log_level := os.environ.get("LONGRUN_LOG_LEVEL"):
            self.core.log_level = log_level.lower()
        if webhook := os.environ.get("LONGRUN_WEBHOOK_URL"):
            self.gateway.webhook_url = webhook

        for env_name, key, cast in (
            ("LONGRUN_MAX_RETRIES_PER_TASK", "retry.max_retries_per_task", int),
            ("LONGRUN_MAX_TOTAL_RETRIES", "retry.max_total_retries", int),
            ("LONGRUN_TASK_TIMEOUT", "engine.task_timeout", float),
            ("LONGRUN_HEALTH_INTERVAL", "health.interval", float),
        ):
            raw = os.environ.get(env_name)
            if not raw:
                continue
            try:
                self.set(key, cast(raw))
            except ValueError:
                logger.warning(f"Ignoring {env_name}={raw!r}: expected {cast.__name__}")

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dotted key path.

        Example:
            config.get('retry.max_total_retries')  # Returns 10
        """
        parts = key.split(".")
        obj: Any = self

        for part in parts:
            if isinstance(obj, dict) and part in obj:
                obj = obj[part]
            elif not isinstance(obj, dict) and hasattr(obj, part):
                obj = getattr(obj, part)
            else:
                return default

        return obj

    def set(self, key: str, value: Any) -> bool:
        """Set a configuration value by dotted key path.

        Returns:
            True if set successfully, False otherwise.

        Example:
            config.set('retry.base_delay', 5.0)
            config.set('classification.kinds.QUOTA_EXCEEDED', 'resource')
        """
        parts = key.split(".")
        if len(parts) < 2 or parts[0] not in self.SECTIONS:
            return False

        section = getattr(self, parts[0])

        if len(parts) == 3 and parts[0] == "classification" and parts[1] == "kinds":
            section.kinds[parts[2]] = str(value)
            return True
        if len(parts) != 2:
            return False

        if hasattr(section, parts[1]):
            setattr(section, parts[1], value)
            return True

        return False


# =============================================================================
# Configuration Loading/Saving
# =============================================================================


def get_config_path() -> Path:
    """Get the path to the configuration file."""
    if custom_path := os.environ.get("LONGRUN_CONFIG"):
        return Path(custom_path)
    return DEFAULT_CONFIG_DIR / DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> LongrunConfig:
    """Load configuration from a TOML file plus environment overrides.

    A file that cannot be parsed is logged and replaced by defaults.
    """
    path = config_path or get_config_path()

    config = LongrunConfig()
    config.config_path = path

    if path.exists():
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)

            config = LongrunConfig.from_dict(data)
            config.config_path = path
            config.last_modified = datetime.fromtimestamp(path.stat().st_mtime)

        except (OSError, tomllib.TOMLDecodeError, ValueError, TypeError) as e:
            logger.error(f"Failed to load config from {path}: {e}")
            config = LongrunConfig()
            config.config_path = path

    config.apply_env_overrides()

    return config


def save_config(config: LongrunConfig, config_path: Path | None = None) -> bool:
    """Save configuration to a TOML file.

    Returns:
        True if saved successfully, False otherwise.
    """
    path = config_path or config.config_path or get_config_path()

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            tomli_w.dump(config.to_dict(), f)
        config.config_path = path
        config.last_modified = datetime.now()
        logger.debug(f"Saved config to {path}")
        return True
    except OSError as e:
        logger.error(f"Failed to save config to {path}: {e}")
        return False


def get_config() -> LongrunConfig:
    """Get the singleton configuration instance.

    Loads from file on first call, returns cached instance after.
    Use reload_config() to force reload.
    """
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> LongrunConfig:
    """Force reload configuration from file."""
    global _config
    _config = load_config()
    return _config


def reset_config() -> None:
    """Reset singleton to force reload on next access."""
    global _config
    _config = None


# =============================================================================
# CLI Helpers
# =============================================================================


def format_config_for_display(config: LongrunConfig) -> str:
    """Format configuration for CLI display."""
    lines = []
    lines.append("longrun configuration")
    lines.append("=" * 50)
    lines.append("")

    if config.config_path:
        lines.append(f"Config file: {config.config_path}")
        if config.last_modified:
            lines.append(f"Last modified: {config.last_modified.strftime('%Y-%m-%d %H:%M:%S')}")
        else:
            lines.append("(file not found, using defaults)")
        lines.append("")

    for name in config.SECTIONS:
        lines.append(f"[{name}]")
        for key, value in getattr(config, name).to_dict().items():
            if isinstance(value, dict):
                if not value:
                    lines.append(f"  {key} = (none)")
                for sub_key, sub_value in value.items():
                    lines.append(f"  {key}.{sub_key} = {sub_value}")
            elif isinstance(value, list):
                lines.append(f"  {key} = {', '.join(str(v) for v in value)}")
            else:
                lines.append(f"  {key} = {value}")
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"


def list_config_keys() -> list[str]:
    """List all available configuration keys as dotted paths."""
    config = LongrunConfig()
    keys = []
    for name in config.SECTIONS:
        for key in getattr(config, name).to_dict():
            keys.append(f"{name}.{key}")
    return keys
