# src/taskflow/cli/console.py

from __future__ import annotations

import logging
from datetime import datetime

from ..core.state import AppState
from .commands import registry as command_registry

logger = logging.getLogger(__name__)


def _ts_local() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _prompt(state: AppState) -> str:
    actor = state.actor
    who = f"{actor.id[:8]}({actor.role.value})" if actor else "anonymous"
    return f"[{who}] >>> "


def run_console_loop(state: AppState) -> None:
    logger.info("Console started.")
    print(f"[{_ts_local()}] [CONSOLE] Use /help for commands. Use /exit to quit.\n")

    while True:
        try:
            line = input(_prompt(state)).strip()
        except EOFError:
            logger.info("Console EOF received, exiting.")
            break
        except KeyboardInterrupt:
            logger.info("Console KeyboardInterrupt, exiting.")
            print()
            break

        if not line:
            continue

        if line.lower() in ("/exit", "/quit"):
            logger.info("Console exit command received.")
            break

        try:
            resp = command_registry.handle(state, line)
        except Exception:
            logger.exception("Command handler crashed.")
            resp = "Internal error while handling a command."

        if resp is None:
            resp = "Commands start with '/'. Use /help to list them."
        print(f"[{_ts_local()}] {resp}")

    logger.info("Console finished.")
