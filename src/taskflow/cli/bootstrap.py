# src/taskflow/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires the store, the notification sink and the service into AppState.
"""

from __future__ import annotations

import logging

from ..config import get_settings
from ..core.ports import NotificationSink
from ..core.state import AppState
from ..notify.sinks import LoggingNotificationSink
from ..tasks.task_service import TaskService
from ..tasks.task_store import TaskStore

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.tasks_db_path.parent.mkdir(parents=True, exist_ok=True)


def create_initial_state(*, settings=None, sink: NotificationSink | None = None) -> AppState:
    """
    Create AppState from the provided settings.

    sink defaults to LoggingNotificationSink; pass the Matrix sink (or a fake) to push
    events elsewhere. If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    if sink is None:
        sink = LoggingNotificationSink()

    store = TaskStore(settings.tasks_db_path)
    service = TaskService(
        store,
        sink,
        default_limit=getattr(settings, "page_default_limit", 5),
        max_limit=getattr(settings, "page_max_limit", 50),
    )
    logger.debug("State wired (sink=%s)", type(sink).__name__)
    return AppState(settings=settings, task_store=store, sink=sink, service=service)
