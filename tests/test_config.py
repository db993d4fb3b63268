"""Tests for the configuration system."""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

from longrun.config import (
    ClassificationConfig,
    CoreConfig,
    EngineConfig,
    GatewayConfig,
    HealthConfig,
    LongrunConfig,
    RecoveryConfig,
    RetryConfig,
    format_config_for_display,
    get_config,
    get_config_path,
    list_config_keys,
    load_config,
    reload_config,
    reset_config,
    save_config,
)


# =============================================================================
# Section Tests
# =============================================================================


class TestCoreConfig:
    """Tests for CoreConfig dataclass."""

    def test_defaults(self):
        """Test default values."""
        config = CoreConfig()
        assert config.state_dir == ".longrun"
        assert config.log_level == "info"
        assert config.log_file == "run.log"

    def test_from_dict(self):
        config = CoreConfig.from_dict({"state_dir": "/var/lib/longrun", "log_level": "debug"})
        assert config.state_dir == "/var/lib/longrun"
        assert config.log_level == "debug"
        assert config.log_file == "run.log"


class TestRetryConfig:
    """Tests for RetryConfig dataclass."""

    def test_defaults(self):
        """Defaults match the documented retry policy."""
        config = RetryConfig()
        assert config.max_retries_per_task == 3
        assert config.max_total_retries == 10
        assert config.base_delay == 30.0
        assert config.max_delay == 1800.0
        assert config.backoff_factor == 2.0

    def test_from_dict_casts_numbers(self):
        config = RetryConfig.from_dict({"max_retries_per_task": "5", "base_delay": 1})
        assert config.max_retries_per_task == 5
        assert config.base_delay == 1.0
        assert isinstance(config.base_delay, float)

    def test_to_dict(self):
        data = RetryConfig(max_total_retries=4).to_dict()
        assert data["max_total_retries"] == 4
        assert "jitter" in data


class TestHealthConfig:
    """Tests for HealthConfig dataclass."""

    def test_defaults(self):
        config = HealthConfig()
        assert config.interval == 60.0
        assert config.warning_factor == 1.0
        assert config.critical_factor == 2.0
        assert config.warning_flush_interval == 300.0

    def test_round_trip(self):
        config = HealthConfig(cpu_critical=90.0, stale_after=60.0)
        assert HealthConfig.from_dict(config.to_dict()) == config

    def test_network_targets(self):
        assert HealthConfig().network_targets == []
        config = HealthConfig.from_dict({"network_targets": ["example.com:443"], "network_critical": "2"})
        assert config.network_targets == ["example.com:443"]
        assert config.network_critical == 2
        assert config.network_timeout == 5.0


class TestOtherSections:
    """Tests for the smaller sections."""

    def test_recovery_defaults(self):
        config = RecoveryConfig()
        assert config.keep_last == 20
        assert config.error_retention == 86400.0
        assert config.log_copy_bytes == 1024 * 1024

    def test_core_log_limits(self):
        config = CoreConfig.from_dict({"log_max_bytes": 2048})
        assert config.log_max_bytes == 2048
        assert config.log_backups == 1
        assert config.journal_max_lines == 1000
        assert config.journal_keep_lines == 500

    def test_engine_defaults(self):
        config = EngineConfig()
        assert config.task_timeout == 1800.0
        assert config.await_operator is False

    def test_gateway_is_configured(self):
        assert not GatewayConfig().is_configured
        assert GatewayConfig(webhook_url="https://example.com/hook").is_configured

    def test_classification_defaults(self):
        config = ClassificationConfig()
        assert config.retryable == ["transient", "resource"]
        assert config.default_class == "transient"
        assert config.kinds == {}


# =============================================================================
# LongrunConfig Tests
# =============================================================================


class TestLongrunConfig:
    """Tests for the main configuration container."""

    def test_from_dict(self):
        config = LongrunConfig.from_dict(
            {
                "retry": {"max_total_retries": 20},
                "classification": {"kinds": {"QUOTA_EXCEEDED": "transient"}},
            }
        )
        assert config.retry.max_total_retries == 20
        assert config.classification.kinds == {"QUOTA_EXCEEDED": "transient"}
        assert config.circuit.failure_threshold == 5

    def test_to_dict_has_every_section(self):
        data = LongrunConfig().to_dict()
        for name in LongrunConfig.SECTIONS:
            assert name in data
        assert data["config"]["version"] == "1.0"

    def test_state_path(self):
        config = LongrunConfig()
        config.core.state_dir = "/tmp/run"
        assert config.state_path == Path("/tmp/run")

    def test_get(self):
        """Test getting values by dotted path."""
        config = LongrunConfig()
        config.retry.base_delay = 5.0

        assert config.get("retry.base_delay") == 5.0
        assert config.get("unknown.key") is None
        assert config.get("unknown.key", "default") == "default"

    def test_set(self):
        """Test setting values by dotted path."""
        config = LongrunConfig()

        assert config.set("retry.max_total_retries", 7)
        assert config.retry.max_total_retries == 7

        assert config.set("classification.kinds.QUOTA_EXCEEDED", "transient")
        assert config.classification.kinds["QUOTA_EXCEEDED"] == "transient"

        # Invalid keys
        assert config.set("unknown.key", "value") is False
        assert config.set("single_key", "value") is False
        assert config.set("retry.no_such_field", 1) is False

    def test_apply_env_overrides(self):
        """Test that environment overrides are applied."""
        config = LongrunConfig()

        with patch.dict(
            os.environ,
            {
                "LONGRUN_STATE_DIR": "/srv/state",
                "LONGRUN_MAX_TOTAL_RETRIES": "25",
                "LONGRUN_TASK_TIMEOUT": "90",
                "LONGRUN_WEBHOOK_URL": "https://example.com/hook",
            },
        ):
            config.apply_env_overrides()

        assert config.core.state_dir == "/srv/state"
        assert config.retry.max_total_retries == 25
        assert config.engine.task_timeout == 90.0
        assert config.gateway.webhook_url == "https://example.com/hook"

    def test_invalid_env_override_ignored(self):
        config = LongrunConfig()
        with patch.dict(os.environ, {"LONGRUN_MAX_RETRIES_PER_TASK": "lots"}):
            config.apply_env_overrides()
        assert config.retry.max_retries_per_task == 3


# =============================================================================
# Load/Save Tests
# =============================================================================


class TestLoadSave:
    """Tests for loading and saving configuration."""

    def test_get_config_path_default(self):
        """Test default config path."""
        with patch.dict(os.environ, {}, clear=True):
            path = get_config_path()
            assert path.name == "config.toml"
            assert ".longrun" in str(path)

    def test_get_config_path_custom(self):
        with patch.dict(os.environ, {"LONGRUN_CONFIG": "/custom/path/config.toml"}):
            assert str(get_config_path()) == "/custom/path/config.toml"

    def test_load_config_nonexistent(self, tmp_path):
        """Missing file gives defaults."""
        config_path = tmp_path / "missing.toml"
        config = load_config(config_path)
        assert config.retry.max_retries_per_task == 3
        assert config.config_path == config_path
        assert config.last_modified is None

    def test_save_and_load_config(self, tmp_path):
        config_path = tmp_path / "saved.toml"

        config = LongrunConfig()
        config.retry.base_delay = 2.5
        config.engine.await_operator = True
        config.classification.kinds["FLAKY_UPSTREAM"] = "transient"

        assert save_config(config, config_path)
        assert config_path.exists()

        loaded = load_config(config_path)
        assert loaded.retry.base_delay == 2.5
        assert loaded.engine.await_operator is True
        assert loaded.classification.kinds == {"FLAKY_UPSTREAM": "transient"}
        assert loaded.last_modified is not None

    def test_invalid_toml_falls_back_to_defaults(self, tmp_path):
        config_path = tmp_path / "broken.toml"
        config_path.write_text("[retry\nmax_total_retries = ")
        config = load_config(config_path)
        assert config.retry.max_total_retries == 10
        assert config.config_path == config_path

    def test_env_overrides_file(self, tmp_path):
        config_path = tmp_path / "config.toml"
        config = LongrunConfig()
        config.retry.max_total_retries = 3
        save_config(config, config_path)

        with patch.dict(os.environ, {"LONGRUN_MAX_TOTAL_RETRIES": "8"}):
            loaded = load_config(config_path)
        assert loaded.retry.max_total_retries == 8


# =============================================================================
# Singleton Tests
# =============================================================================


class TestSingleton:
    """Tests for singleton behavior."""

    def test_get_config_returns_same_instance(self):
        reset_config()
        assert get_config() is get_config()

    def test_reload_config_creates_new_instance(self):
        reset_config()
        config1 = get_config()
        config2 = reload_config()
        assert config2 is not config1
        assert get_config() is config2

    def test_reads_longrun_config_path(self, tmp_path):
        """The autouse fixture points LONGRUN_CONFIG into tmp_path."""
        config = LongrunConfig()
        config.circuit.failure_threshold = 2
        save_config(config, tmp_path / "config.toml")

        reset_config()
        assert get_config().circuit.failure_threshold == 2


# =============================================================================
# Helper Function Tests
# =============================================================================


class TestHelperFunctions:
    """Tests for CLI helper functions."""

    def test_list_config_keys(self):
        keys = list_config_keys()
        assert "retry.max_retries_per_task" in keys
        assert "health.cpu_critical" in keys
        assert "classification.kinds" in keys
        assert all("." in key for key in keys)

    def test_format_config_for_display(self):
        config = LongrunConfig()
        config.classification.kinds["DISK_QUOTA"] = "resource"
        output = format_config_for_display(config)
        assert "[retry]" in output
        assert "max_total_retries = 10" in output
        assert "kinds.DISK_QUOTA = resource" in output
