# src/taskflow/logging_setup.py

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping
from pathlib import Path

# Console floor per logger prefix; the longest matching prefix wins.
CONSOLE_LEVELS: dict[str, int] = {
    "taskflow": logging.DEBUG,
    # Per-row store chatter (saves, deletes) belongs in the file log.
    "taskflow.tasks.task_store": logging.INFO,
    # The notifier runs on a background thread and would interleave with the prompt.
    "taskflow.notify.matrix_sink": logging.WARNING,
    "taskflow.notify.matrix_client": logging.WARNING,
    "py.warnings": logging.ERROR,
}

# Third-party loggers capped even in the file log.
LIBRARY_LEVELS: dict[str, int] = {
    "nio": logging.INFO,
    "aiohttp": logging.WARNING,
    "asyncio": logging.WARNING,
}


class _ConsoleNoiseFilter(logging.Filter):
    """
    Per-module console thresholds.

    Records from a logger matching none of the prefixes (other libraries) need ERROR+.
    """

    def __init__(self, levels: Mapping[str, int], default: int = logging.ERROR) -> None:
        super().__init__()
        # Longest prefix first so "taskflow.tasks.task_store" beats "taskflow".
        self._levels = sorted(levels.items(), key=lambda kv: len(kv[0]), reverse=True)
        self._default = default

    def threshold(self, name: str) -> int:
        for prefix, level in self._levels:
            if name == prefix or name.startswith(prefix + "."):
                return level
        return self._default

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= self.threshold(record.name)


def setup_logging(
    *,
    log_dir: str | Path = ".local/taskflow",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
    console_levels: Mapping[str, int] | None = None,
) -> Path:
    """
    Configure logging with:
    - Console handler: console_level, then per-module floors from CONSOLE_LEVELS
      (entries in console_levels override or extend them)
    - File handler: everything from file_level up, in <log_dir>/taskflow.log

    Call this ONCE, very early (before first logger.info). Returns the log file path.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "taskflow.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    levels = {**CONSOLE_LEVELS, **(console_levels or {})}

    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(console_level)
    ch.setFormatter(fmt)
    ch.addFilter(_ConsoleNoiseFilter(levels))
    root.addHandler(ch)

    fh = logging.FileHandler(str(log_file), encoding="utf-8")
    fh.setLevel(file_level)
    fh.setFormatter(fmt)
    root.addHandler(fh)

    for name, level in LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(level)

    logging.captureWarnings(True)
    return log_file
