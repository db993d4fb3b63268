"""Tests for error classification."""

from __future__ import annotations

import pytest

from longrun.config import ClassificationConfig
from longrun.models import ErrorClass
from longrun.recovery.classifier import (
    CIRCUIT_OPEN,
    UNKNOWN_KIND,
    ClassificationTable,
    classify_message,
)


class TestClassifyMessage:
    """Tests for message to kind mapping."""

    @pytest.mark.parametrize(
        "message,kind",
        [
            ("Connection refused by upstream", "NETWORK_ERROR"),
            ("HTTP 429 Too Many Requests", "RATE_LIMIT"),
            ("operation timed out after 30s", "TIMEOUT"),
            ("503 Service Unavailable", "SERVICE_UNAVAILABLE"),
            ("Permission denied: /etc/shadow", "PERMISSION_DENIED"),
            ("No space left on device", "DISK_FULL"),
            ("MemoryError: out of memory", "OUT_OF_MEMORY"),
            ("bash: foo: command not found", "COMMAND_NOT_FOUND"),
            ("Environment variable missing: API_KEY", "CONFIGURATION_ERROR"),
        ],
    )
    def test_known_messages(self, message: str, kind: str) -> None:
        assert classify_message(message).kind == kind

    def test_highest_confidence_wins(self) -> None:
        """'connection timed out' matches both network and timeout patterns."""
        result = classify_message("connection timed out")
        assert result.kind == "NETWORK_ERROR"
        assert result.confidence == 0.95

    def test_unknown_message(self) -> None:
        result = classify_message("the flux capacitor hiccuped")
        assert result.kind == UNKNOWN_KIND
        assert result.confidence == 0.5

    def test_empty_message(self) -> None:
        result = classify_message("")
        assert result.kind == UNKNOWN_KIND
        assert result.confidence == 0.0


class TestClassificationTable:
    """Tests for kind to class mapping."""

    def test_default_classes(self) -> None:
        table = ClassificationTable()
        assert table.class_of("TIMEOUT") == ErrorClass.TRANSIENT
        assert table.class_of("INVALID_INPUT") == ErrorClass.PERMANENT
        assert table.class_of("DISK_FULL") == ErrorClass.RESOURCE
        assert table.class_of("STATE_CORRUPTION") == ErrorClass.STATE_CORRUPTION
        assert table.class_of(CIRCUIT_OPEN) == ErrorClass.TRANSIENT

    def test_unknown_kind_uses_default(self) -> None:
        assert ClassificationTable().class_of("SOMETHING_NEW") == ErrorClass.TRANSIENT

    def test_case_insensitive(self) -> None:
        assert ClassificationTable().class_of("timeout") == ErrorClass.TRANSIENT

    def test_register_at_runtime(self) -> None:
        table = ClassificationTable()
        table.register("flaky_upstream", ErrorClass.TRANSIENT)
        table.register("QUOTA_EXCEEDED", ErrorClass.PERMANENT)
        assert table.class_of("FLAKY_UPSTREAM") == ErrorClass.TRANSIENT
        assert table.class_of("QUOTA_EXCEEDED") == ErrorClass.PERMANENT

    def test_from_config(self) -> None:
        config = ClassificationConfig(
            default_class="permanent",
            kinds={"LOCK_CONTENTION": "transient"},
        )
        table = ClassificationTable.from_config(config)
        assert table.class_of("LOCK_CONTENTION") == ErrorClass.TRANSIENT
        assert table.class_of("SOMETHING_NEW") == ErrorClass.PERMANENT

    def test_tables_do_not_share_state(self) -> None:
        first = ClassificationTable()
        first.register("TIMEOUT", ErrorClass.PERMANENT)
        assert ClassificationTable().class_of("TIMEOUT") == ErrorClass.TRANSIENT


class TestClassify:
    """Tests for building TaskErrors."""

    def test_reported_kind_kept(self) -> None:
        error = ClassificationTable().classify("rate_limit", "slow down")
        assert error.kind == "RATE_LIMIT"
        assert error.error_class == ErrorClass.TRANSIENT
        assert error.message == "slow down"

    def test_kind_inferred_from_message(self) -> None:
        error = ClassificationTable().classify(None, "Permission denied")
        assert error.kind == "PERMISSION_DENIED"
        assert error.error_class == ErrorClass.PERMANENT

    def test_unclassifiable_is_transient(self) -> None:
        error = ClassificationTable().classify(None, "exit code 1")
        assert error.kind == UNKNOWN_KIND
        assert error.error_class == ErrorClass.TRANSIENT
