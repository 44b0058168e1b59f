# src/taskflow/core/state.py

from __future__ import annotations

from dataclasses import dataclass

from ..tasks.task_models import Actor
from ..tasks.task_service import TaskService
from ..tasks.task_store import TaskStore
from .ports import NotificationSink


@dataclass
class AppState:
    # Settings object (taskflow.config.Settings or a test stand-in).
    settings: object

    task_store: TaskStore
    sink: NotificationSink
    service: TaskService

    # Who console commands act as; set with /as.
    actor: Actor | None = None
