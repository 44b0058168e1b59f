# src/taskflow/tasks/task_views.py

"""
Derived views.

Every task handed to a client goes through build_task_view(). The extra fields
(is_overdue, notification) are computed at read time and never stored.
"""

from __future__ import annotations

import time
from dataclasses import asdict
from datetime import UTC, datetime
from typing import Any

from .task_models import Task, TaskPriority, TaskStatus, User

_DONE_TEXT = "Task completed. Nice work!"

# (status, priority, overdue) -> text, for every status other than done.
_NOTIFICATIONS: dict[tuple[TaskStatus, TaskPriority, bool], str] = {
    (TaskStatus.TODO, TaskPriority.HIGH, True): "Urgent: high-priority task is overdue and not started!",
    (TaskStatus.TODO, TaskPriority.MEDIUM, True): "Task is overdue and not started yet.",
    (TaskStatus.TODO, TaskPriority.LOW, True): "Low-priority task is past its deadline.",
    (TaskStatus.TODO, TaskPriority.HIGH, False): "High-priority task is waiting to be started.",
    (TaskStatus.TODO, TaskPriority.MEDIUM, False): "Task not started yet.",
    (TaskStatus.TODO, TaskPriority.LOW, False): "Task not started yet (low priority).",
    (TaskStatus.IN_PROGRESS, TaskPriority.HIGH, True): "Urgent: high-priority task is overdue!",
    (TaskStatus.IN_PROGRESS, TaskPriority.MEDIUM, True): "Task is overdue. Please wrap it up.",
    (TaskStatus.IN_PROGRESS, TaskPriority.LOW, True): "Low-priority task in progress is past its deadline.",
    (TaskStatus.IN_PROGRESS, TaskPriority.HIGH, False): "High-priority task in progress. Keep going!",
    (TaskStatus.IN_PROGRESS, TaskPriority.MEDIUM, False): "Task in progress.",
    (TaskStatus.IN_PROGRESS, TaskPriority.LOW, False): "Task in progress (low priority).",
}


def _iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, UTC).isoformat()


def is_overdue(task: Task, now: float | None = None) -> bool:
    """True iff a deadline is set, it is already behind `now`, and the task is not done."""
    if task.deadline is None or task.status == TaskStatus.DONE:
        return False
    if now is None:
        now = time.time()
    return task.deadline < now


def build_notification(status: TaskStatus, priority: TaskPriority, overdue: bool) -> str:
    if status == TaskStatus.DONE:
        return _DONE_TEXT
    return _NOTIFICATIONS[(status, priority, overdue)]


def build_task_view(
    task: Task,
    *,
    now: float | None = None,
    creator: User | None = None,
    assignee: User | None = None,
) -> dict[str, Any]:
    """
    Client representation of a task.

    creator/assignee, when given, replace the bare user id with the minimal identity
    ({id, name, email}).
    """
    overdue = is_overdue(task, now)
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "status": task.status.value,
        "priority": task.priority.value,
        "deadline": _iso(task.deadline),
        "created_by": creator.identity() if creator else task.created_by,
        "assigned_to": assignee.identity() if assignee else task.assigned_to,
        "sub_tasks": [asdict(s) for s in task.sub_tasks],
        "comments": [
            {"author": c.author, "text": c.text, "created_at": _iso(c.created_at)}
            for c in task.comments
        ],
        "activity_logs": [
            {
                "action": a.action,
                "actor": a.actor,
                "old_value": a.old_value,
                "new_value": a.new_value,
                "created_at": _iso(a.created_at),
            }
            for a in task.activity_logs
        ],
        "is_deleted": task.is_deleted,
        "created_at": _iso(task.created_at),
        "updated_at": _iso(task.updated_at),
        "version": task.version,
        "is_overdue": overdue,
        "notification": build_notification(task.status, task.priority, overdue),
    }
