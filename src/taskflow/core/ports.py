# src/taskflow/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the task service.

The service depends on Protocols instead of concrete implementations.
This keeps storage and notification transports swappable and makes testing easier.
"""

from contextlib import AbstractContextManager
from typing import Any, Iterable, Protocol

from ..tasks.task_models import Task, TaskEvent, TaskPriority, TaskStatus, User


class NotificationSink(Protocol):
    """
    Fan-out boundary for lifecycle events.

    emit() must not block and gives no delivery guarantee (at-most-once).
    scope_user_id is the user whose listeners should receive the event.
    """

    def emit(self, event: TaskEvent, scope_user_id: str, payload: dict[str, Any]) -> None: ...


class TaskUnitOfWork(Protocol):
    def get_task(self, task_id: str) -> Task | None: ...
    def get_user(self, user_id: str) -> User | None: ...
    def save_task(
        self,
        task: Task,
        *,
        columns: Iterable[str] | None = None,
        expected_version: int | None = None,
    ) -> bool: ...


class TaskRepo(Protocol):
    # Tasks
    def add_task(self, task: Task) -> Task: ...
    def get_task(self, task_id: str) -> Task | None: ...
    def save_task(
        self,
        task: Task,
        *,
        columns: Iterable[str] | None = None,
        expected_version: int | None = None,
    ) -> bool: ...
    def delete_task(self, task_id: str) -> bool: ...
    def list_tasks_for_user(self, user_id: str) -> list[Task]: ...

    def query_tasks(
            self,
            *,
            status: TaskStatus | None = None,
            priority: TaskPriority | None = None,
            search: str | None = None,
            offset: int = 0,
            limit: int = 50,
    ) -> list[Task]: ...

    def count_tasks(
            self,
            *,
            status: TaskStatus | None = None,
            exclude_status: TaskStatus | None = None,
            priority: TaskPriority | None = None,
            search: str | None = None,
            deadline_before: float | None = None,
    ) -> int: ...

    def count_by(self, column: str) -> dict[str, int]: ...

    # Users (referenced, not owned)
    def get_user(self, user_id: str) -> User | None: ...
    def get_users(self, user_ids: Iterable[str]) -> dict[str, User]: ...

    # Write-locked read-modify-write section (every task mutation)
    def transaction(self) -> AbstractContextManager[TaskUnitOfWork]: ...
