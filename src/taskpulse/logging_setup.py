# src/taskpulse/logging_setup.py

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Loggers that fire on every reconcile pass or push; console shows WARNING+ only.
QUIET_PREFIXES: tuple[str, ...] = (
    "taskpulse.tasks.reconciler",
    "taskpulse.connectors.matrix_",
    "taskpulse.realtime.session",
)


class _ConsoleFilter(logging.Filter):
    """
    Console gets our own logs (minus the per-pass chatter in quiet_prefixes)
    and only ERROR+ from everything else, py.warnings and nio included.
    The file handler is unfiltered.
    """

    def __init__(self, app_prefix: str = "taskpulse.", quiet_prefixes: tuple[str, ...] = QUIET_PREFIXES) -> None:
        super().__init__()
        self._app_prefix = app_prefix
        self._quiet = quiet_prefixes

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name
        if not name.startswith(self._app_prefix):
            return record.levelno >= logging.ERROR
        if name.startswith(self._quiet):
            return record.levelno >= logging.WARNING
        return True


def setup_logging(
    *,
    log_dir: str | Path = ".local/taskpulse",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
) -> Path:
    """
    Console (filtered) + rotating file (everything) on the root logger.

    Call once, before the first log line. Returns the log file path.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "taskpulse.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for h in list(root.handlers):
        root.removeHandler(h)

    # Thread name tells the service loop apart from the operator console.
    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)-7s [%(threadName)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(fmt)
    console.addFilter(_ConsoleFilter())
    root.addHandler(console)

    file_handler = RotatingFileHandler(
        str(log_file), maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setLevel(file_level)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    logging.captureWarnings(True)
    return log_file
