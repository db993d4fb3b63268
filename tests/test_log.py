"""Tests for logging setup."""

from __future__ import annotations

import io
import logging
import logging.handlers

from rich.console import Console

from longrun.utils.log import setup_logging


def quiet_console() -> Console:
    return Console(file=io.StringIO())


class TestSetupLogging:
    """Tests for console and file handlers."""

    def test_file_handler_records_debug(self, tmp_path):
        log_file = tmp_path / "run.log"
        logger = setup_logging("warning", log_file, console=quiet_console())

        logging.getLogger("longrun.engine").debug("detail for the log file")
        for handler in logger.handlers:
            handler.flush()

        assert "detail for the log file" in log_file.read_text()

    def test_run_log_rotates(self, tmp_path):
        log_file = tmp_path / "run.log"
        logger = setup_logging("info", log_file, console=quiet_console(), max_bytes=500, backups=2)

        for i in range(100):
            logging.getLogger("longrun.engine").info(f"message number {i:03d}")
        for handler in logger.handlers:
            handler.flush()

        assert log_file.stat().st_size <= 500
        assert (tmp_path / "run.log.1").exists()
        assert not (tmp_path / "run.log.3").exists()
        assert "message number 099" in log_file.read_text()

    def test_rotation_disabled_by_default(self, tmp_path):
        log_file = tmp_path / "run.log"
        logger = setup_logging("info", log_file, console=quiet_console())

        for i in range(50):
            logging.getLogger("longrun.engine").info(f"message number {i:03d}")
        for handler in logger.handlers:
            handler.flush()

        assert not (tmp_path / "run.log.1").exists()
        file_handlers = [
            h for h in logger.handlers if isinstance(h, logging.handlers.RotatingFileHandler)
        ]
        assert file_handlers[0].maxBytes == 0

    def test_replaces_previous_handlers(self, tmp_path):
        setup_logging("info", tmp_path / "one.log", console=quiet_console())
        logger = setup_logging("info", tmp_path / "two.log", console=quiet_console())
        assert len(logger.handlers) == 2
