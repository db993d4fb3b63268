"""Logging setup for the longrun CLI."""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def setup_logging(
    level: str = "info",
    log_file: Path | None = None,
    console: Console | None = None,
    debug: bool = False,
    max_bytes: int = 0,
    backups: int = 1,
) -> logging.Logger:
    """Attach a rich console handler and an optional file handler.

    The file handler always records DEBUG so run.log holds the full story.
    With ``max_bytes`` set it rotates once the file reaches that size,
    keeping ``backups`` older files.
    Calling this again replaces previously installed handlers.
    """
    root = logging.getLogger("longrun")
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console_level = logging.DEBUG if debug else LEVELS.get(level.lower(), logging.INFO)
    console_handler = RichHandler(
        console=console or Console(stderr=True),
        rich_tracebacks=debug,
        show_path=False,
    )
    console_handler.setLevel(console_level)
    root.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, mode="a", maxBytes=max_bytes, backupCount=backups, encoding="utf-8"
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
        root.addHandler(file_handler)

    root.setLevel(logging.DEBUG)
    root.propagate = False
    return root
