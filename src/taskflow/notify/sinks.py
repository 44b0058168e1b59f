# src/taskflow/notify/sinks.py

from __future__ import annotations

import logging
from typing import Any

from ..tasks.task_models import TaskEvent

logger = logging.getLogger(__name__)


def render_event_text(event: TaskEvent, payload: dict[str, Any]) -> str:
    """One-line human text for a lifecycle event (used by text transports)."""
    if event == TaskEvent.DELETED:
        return f"Task deleted: {payload.get('id', '?')}"

    title = payload.get("title", "?")
    notification = payload.get("notification") or ""
    if event == TaskEvent.CREATED:
        head = f"New task: {title} [{payload.get('priority', '?')}]"
    else:
        head = f"Task updated: {title} ({payload.get('status', '?')})"
    return f"{head} - {notification}" if notification else head


class LoggingNotificationSink:
    """Default sink when no push transport is configured: events go to the log."""

    def emit(self, event: TaskEvent, scope_user_id: str, payload: dict[str, Any]) -> None:
        logger.info("[%s -> %s] %s", event.value, scope_user_id, render_event_text(event, payload))
