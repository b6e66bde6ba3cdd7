"""Logging configuration for taskloop.

Console output uses a level-colored formatter; an optional rotating file
handler keeps a detailed log next to the task artifacts.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import TextIO

# Detailed format for log files
_FILE_FORMAT = (
    "%(asctime)s | %(levelname)-8s | %(name)s | "
    "%(module)s.%(funcName)s:%(lineno)d | %(message)s"
)

_CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

_LOG_COLORS = {
    "DEBUG": "\033[94m",  # Blue
    "INFO": "\033[92m",  # Green
    "WARNING": "\033[93m",  # Yellow
    "ERROR": "\033[91m",  # Red
    "CRITICAL": "\033[91m\033[1m",  # Bold Red
    "RESET": "\033[0m",
}

LOG_FILENAME = "taskloop.log"


class ColorFormatter(logging.Formatter):
    """Formatter that colors the level name for console output."""

    def format(self, record: logging.LogRecord) -> str:
        color = _LOG_COLORS.get(record.levelname)
        if color is None:
            return super().format(record)

        original = record.levelname
        record.levelname = f"{color}{original}{_LOG_COLORS['RESET']}"
        try:
            return super().format(record)
        finally:
            # Other handlers (the log file) must see the plain level name
            record.levelname = original


def configure_logging(
    level: int = logging.WARNING,
    log_dir: Path | str | None = None,
    file_level: int = logging.DEBUG,
    max_file_size_mb: int = 10,
    backup_count: int = 5,
    stream: TextIO | None = None,
) -> None:
    """Configure console and optional file logging for the taskloop logger.

    Safe to call more than once; existing taskloop handlers are replaced.

    Args:
        level: Logging level for console output
        log_dir: Directory for taskloop.log; no file logging if None
        file_level: Logging level for file output
        max_file_size_mb: Maximum size of each log file in MB before rotation
        backup_count: Number of backup log files to keep
        stream: Console stream (stderr if None, keeping stdout for messages)
    """
    logger = logging.getLogger("taskloop")
    logger.setLevel(logging.DEBUG)  # Capture all logs and let handlers filter
    logger.propagate = False

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(stream or sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(ColorFormatter(_CONSOLE_FORMAT))
    logger.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(exist_ok=True, parents=True)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_path / LOG_FILENAME,
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(file_level)
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
        logger.addHandler(file_handler)

    logger.debug(
        f"Logging initialized (console: {logging.getLevelName(level)}, "
        f"file: {log_dir or 'disabled'})"
    )
