"""File logging setup.

stdout belongs to the MCP stdio transport, so log records go to
``<data_dir>/logs/loupe.log`` instead. The level comes from
``LOUPE_LOG_LEVEL`` (DEBUG, INFO, WARNING, ERROR, OFF).
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from loupe._utils import get_logs_dir

LOG_FILE_NAME = "loupe.log"
_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "OFF": logging.CRITICAL + 10,
}


def parse_log_level(value: str | None) -> int:
    """Map a level name to a logging level, defaulting to INFO."""
    if not value:
        return logging.INFO
    return _LEVELS.get(value.strip().upper(), logging.INFO)


def configure_logging(logs_dir: Path | None = None) -> logging.Handler:
    """Attach a file handler to the ``loupe`` logger.

    Safe to call more than once: an existing loupe file handler for the
    same file is reused and only its level is refreshed.
    """
    level = parse_log_level(os.getenv("LOUPE_LOG_LEVEL"))
    logs_dir = logs_dir or get_logs_dir()
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / LOG_FILE_NAME

    root = logging.getLogger("loupe")
    root.setLevel(level)
    for handler in root.handlers:
        if (
            isinstance(handler, logging.FileHandler)
            and handler.baseFilename == os.path.abspath(log_path)
        ):
            handler.setLevel(level)
            return handler

    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler.setLevel(level)
    root.addHandler(handler)
    return handler
