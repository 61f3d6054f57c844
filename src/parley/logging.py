"""Logging configuration for parley.

Uses Python's standard logging module with:
- File logging via config (log_file) or the PARLEY_LOG environment variable
- Level from the argument, PARLEY_LOG_LEVEL, or config (default WARNING)
- Stderr fallback when no log file is configured and stderr is a console
"""

from __future__ import annotations

import logging
import os
import sys

from parley.core.config import read_config

LOG_FILE_ENV = "PARLEY_LOG"
LOG_LEVEL_ENV = "PARLEY_LOG_LEVEL"

# Module-level logger
logger = logging.getLogger("parley")

_initialized = False


class _LowercaseLevelFormatter(logging.Formatter):
    """Formatter that emits lowercase level names."""

    def format(self, record: logging.LogRecord) -> str:
        record.levelname = record.levelname.lower()
        return super().format(record)


def _resolve_level(level: str | None) -> int:
    name = level or os.environ.get(LOG_LEVEL_ENV) or read_config().get("log_level")
    if not name:
        return logging.WARNING
    resolved = logging.getLevelName(str(name).upper())
    return resolved if isinstance(resolved, int) else logging.WARNING


def setup_logging(level: str | None = None, log_file: str | None = None) -> None:
    """Initialize logging. Call once at startup; later calls are no-ops.

    Args:
        level: Level name override (e.g. "debug").
        log_file: Log file override. Falls back to $PARLEY_LOG, then config.
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    log_level = _resolve_level(level)
    logger.setLevel(log_level)

    # Format: HH:MM:SS level name: message
    formatter = _LowercaseLevelFormatter(
        "%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S"
    )

    log_path = log_file or os.environ.get(LOG_FILE_ENV) or read_config().get("log_file")

    if log_path:
        log_path = os.path.expanduser(log_path)
        try:
            file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError as e:
            if sys.stderr.isatty():
                print(f"[parley] Failed to open log file: {e}", file=sys.stderr)
                _add_stderr_handler(formatter, log_level)
    elif sys.stderr.isatty():
        _add_stderr_handler(formatter, log_level)


def _add_stderr_handler(formatter: logging.Formatter, level: int) -> None:
    """Add a stderr handler to the logger."""
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(level)
    stderr_handler.setFormatter(formatter)
    logger.addHandler(stderr_handler)


def get_logger(name: str | None = None) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Optional child logger name (e.g. "supervisor", "registry").
              If None, returns the root parley logger.
    """
    if name:
        return logger.getChild(name)
    return logger
