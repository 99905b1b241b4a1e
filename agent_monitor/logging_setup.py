"""Logging for the agent-monitor process.

The monitor runs next to the agents it watches, often in the same terminal,
so the full log goes to a rotating file under the data directory and stderr
only carries warnings unless ``--verbose`` is given.
"""

from __future__ import annotations

import gzip
import logging
import os
import shutil
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import resolve_data_dir

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
LOG_FILE_NAME = "agent-monitor.log"
MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 3

# Per-request and per-inotify chatter that drowns out refresh cycles
NOISY_LOGGERS = ("httpx", "httpcore", "watchdog", "uvicorn.access")


def _gzip_rotator(source: str, dest: str) -> None:
    with open(source, "rb") as src, gzip.open(dest, "wb") as dst:
        shutil.copyfileobj(src, dst)
    os.remove(source)


def _file_handler(path: Path) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8")
    handler.namer = lambda name: f"{name}.gz"
    handler.rotator = _gzip_rotator
    return handler


def _parse_level(name: str | None, default: int) -> int:
    if not name:
        return default
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else default


def configure_logging(level: str | None = None, *, verbose: bool = False) -> Path | None:
    """Route all monitor logging to the rotating log file and stderr.

    ``level`` (or ``AGENT_MONITOR_LOG_LEVEL``) sets the file level, INFO by
    default. ``verbose`` mirrors that level on stderr instead of WARNING.
    Returns the log file path, or None when the log directory is unwritable
    and logging fell back to stderr alone.
    """
    file_level = _parse_level(level or os.environ.get("AGENT_MONITOR_LOG_LEVEL"), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(file_level)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(file_level if verbose else max(file_level, logging.WARNING))
    stderr_handler.setFormatter(formatter)
    root.addHandler(stderr_handler)

    log_path: Path | None = resolve_data_dir() / "logs" / LOG_FILE_NAME
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = _file_handler(log_path)
    except OSError as exc:
        logging.getLogger(__name__).warning("File logging disabled (%s); logging to stderr only", exc)
        log_path = None
    else:
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(file_level, logging.WARNING))
    return log_path
