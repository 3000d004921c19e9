# src/taskpulse/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, then starts:
- the realtime server and reconciler in a background thread,
- the operator console REPL in the main thread (optional).
"""

from __future__ import annotations

import logging
import signal
import threading

from ..cli.bootstrap import create_initial_state
from ..config import get_settings
from ..connectors.console_connector import run_console_loop
from ..logging_setup import setup_logging
from ..realtime.runner import start_service_in_background

logger = logging.getLogger(__name__)


def main() -> None:
    settings = get_settings()

    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)

    log_dir = getattr(settings, "data_dir", ".local/taskpulse")
    setup_logging(log_dir=log_dir, console_level=console_level)

    logging.getLogger("nio").setLevel(max(console_level, logging.INFO))
    logging.getLogger("aiohttp").setLevel(logging.WARNING)

    logger.info("Starting %s...", getattr(settings, "app_name", "taskpulse"))

    state = create_initial_state(settings=settings)

    runner = start_service_in_background(state)
    if runner is None:
        logger.error("Could not start the realtime service.")
        raise SystemExit(1)

    stop_main = threading.Event()

    def _handle_signal(signum, _frame) -> None:
        logger.info("Signal %s received, shutting down...", signum)
        stop_main.set()

    try:
        signal.signal(signal.SIGINT, _handle_signal)
        signal.signal(signal.SIGTERM, _handle_signal)
    except (ValueError, OSError, AttributeError):
        # SIGTERM is missing on some platforms.
        pass

    try:
        if settings.console_enabled:
            run_console_loop(state)
        else:
            logger.info("Console disabled. Press Ctrl+C to stop.")
            while not stop_main.is_set() and runner.is_alive():
                stop_main.wait(timeout=1.0)
    finally:
        runner.stop()
        runner.join(timeout=10.0)
        logger.info("Bye.")


if __name__ == "__main__":
    main()
