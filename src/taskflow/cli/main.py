# src/taskflow/cli/main.py

"""
CLI entrypoint.

Initializes logging, optionally starts the Matrix notifier in a background thread,
builds AppState around the chosen notification sink, then runs the console REPL.
"""

from __future__ import annotations

import logging

from ..cli.bootstrap import create_initial_state
from ..config import get_settings
from ..logging_setup import setup_logging
from ..notify.matrix_sink import MatrixBackgroundRunner, start_matrix_notifier
from .console import run_console_loop

logger = logging.getLogger(__name__)


def main() -> None:
    settings = get_settings()

    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    log_file = setup_logging(log_dir=settings.data_dir, console_level=console_level)

    logger.info("Starting %s... (log file: %s)", settings.app_name, log_file)

    matrix_runner: MatrixBackgroundRunner | None = None
    if settings.matrix_enabled:
        matrix_runner = start_matrix_notifier(settings)

    state = create_initial_state(
        settings=settings,
        sink=matrix_runner.sink if matrix_runner is not None else None,
    )

    try:
        if settings.console_enabled:
            run_console_loop(state)
        else:
            logger.info("Console disabled; nothing to run.")
    finally:
        if matrix_runner is not None:
            matrix_runner.stop()
            matrix_runner.join(timeout=10.0)
        logger.info("Bye.")


if __name__ == "__main__":
    main()
