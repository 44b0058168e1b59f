# src/taskflow/tasks/task_service.py

from __future__ import annotations

"""
Task service.

One entry point per operation. Each operation runs:
permission check -> domain change -> store write -> derived view -> event -> return.

Errors are raised as typed TaskServiceError subclasses; only notification failures are
swallowed (logged), since delivery is best-effort.
"""

import logging
import math
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, TypeVar

from ..core.ports import NotificationSink, TaskRepo
from ..errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    TaskServiceError,
    TransactionError,
    ValidationError,
)
from .task_models import (
    ActivityLog,
    Actor,
    Comment,
    SubTask,
    Task,
    TaskEvent,
    TaskPriority,
    TaskStatus,
    User,
    new_id,
    normalize_id,
    parse_deadline,
)
from .task_views import build_task_view

logger = logging.getLogger(__name__)

TITLE_MAX_LEN = 120

CREATE_FIELDS = frozenset({"title", "description", "priority", "deadline"})
UPDATE_FIELDS = frozenset({"title", "description", "priority", "status", "deadline"})

E = TypeVar("E", bound=StrEnum)


@dataclass(slots=True)
class TaskPage:
    items: list[dict[str, Any]]
    total: int
    page: int
    pages: int
    limit: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "page": self.page,
            "pages": self.pages,
            "count": len(self.items),
            "data": self.items,
        }


@dataclass(slots=True)
class TaskStats:
    total: int
    completed: int
    pending: int
    overdue: int
    status_count: dict[str, int] = field(default_factory=dict)
    priority_count: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "completed": self.completed,
            "pending": self.pending,
            "overdue": self.overdue,
            "status_count": dict(self.status_count),
            "priority_count": dict(self.priority_count),
        }


# ---- input checks ----


def _require_id(raw: Any, what: str) -> str:
    value = normalize_id(raw)
    if value is None:
        raise ValidationError(f"Invalid {what} id")
    return value


def _parse_title(raw: Any, errors: list[str]) -> str | None:
    if not isinstance(raw, str) or not raw.strip():
        errors.append("Task title is required")
        return None
    title = raw.strip()
    if len(title) > TITLE_MAX_LEN:
        errors.append(f"Task title must be at most {TITLE_MAX_LEN} characters")
        return None
    return title


def _parse_enum(enum_cls: type[E], raw: Any, label: str, errors: list[str]) -> E | None:
    try:
        return enum_cls(raw)
    except ValueError:
        errors.append(f"Invalid {label} value")
        return None


def _parse_description(raw: Any, errors: list[str]) -> str | None:
    if raw is None or isinstance(raw, str):
        return raw
    errors.append("Description must be a string")
    return None


def _parse_deadline(raw: Any, errors: list[str]) -> float | None:
    try:
        return parse_deadline(raw)
    except ValueError:
        errors.append("Invalid deadline date")
        return None


def _lenient_enum(enum_cls: type[E], raw: Any) -> E | None:
    """Filter values outside the enum are ignored, not rejected."""
    if raw is None:
        return None
    try:
        return enum_cls(raw)
    except ValueError:
        return None


def _coerce_int(raw: Any, default: int) -> int:
    if raw is None or isinstance(raw, bool):
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _reject_unknown(fields: Mapping[str, Any], allowed: frozenset[str]) -> None:
    unknown = sorted(set(fields) - allowed)
    if unknown:
        raise ValidationError(
            "Unsupported fields",
            [f"Unsupported field: {name}" for name in unknown],
        )


def _fmt_value(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, StrEnum):
        return value.value
    return str(value)


def _fmt_deadline(ts: float | None) -> str | None:
    return datetime.fromtimestamp(ts, UTC).isoformat() if ts is not None else None


class TaskService:
    """
    Task lifecycle and authorization rules.

    The notification sink is injected so transports can be swapped or faked.
    """

    def __init__(
        self,
        store: TaskRepo,
        sink: NotificationSink,
        *,
        default_limit: int = 5,
        max_limit: int = 50,
    ) -> None:
        self._store = store
        self._sink = sink
        self._default_limit = max(1, int(default_limit))
        self._max_limit = max(self._default_limit, int(max_limit))

    # ---- helpers ----

    @staticmethod
    def _require_admin(actor: Actor) -> None:
        if not actor.is_admin:
            raise AuthorizationError("Admin access required")

    @staticmethod
    def _check_permission(task: Task, actor: Actor) -> None:
        if task.assigned_to != actor.id and not actor.is_admin:
            raise AuthorizationError("Not authorized")

    def _load_owned(self, actor: Actor, task_id: Any) -> Task:
        tid = _require_id(task_id, "task")
        task = self._store.get_task(tid)
        if task is None:
            raise NotFoundError("Task not found")
        self._check_permission(task, actor)
        return task

    def _mutate(
        self,
        checked: Task,
        change: Callable[[Task], tuple[str, ...]],
        *,
        expected_version: int | None = None,
    ) -> tuple[Task, tuple[str, ...]]:
        """
        Read-modify-write one task under the store's write lock.

        `checked` is the task as first read, already permission-checked. `change` is
        applied to the row re-read inside the transaction and returns the columns it
        touched; only those are written, and an empty tuple writes nothing.
        """
        try:
            with self._store.transaction() as tx:
                task = tx.get_task(checked.id)
                if task is None:
                    raise NotFoundError("Task not found")
                if expected_version is not None and task.version != expected_version:
                    raise ConflictError(
                        "Task was modified by someone else",
                        [f"Expected version {expected_version}, task has version {task.version}"],
                    )
                columns = change(task)
                if columns and not tx.save_task(task, columns=columns):
                    raise NotFoundError("Task not found")
        except TaskServiceError:
            raise
        except Exception as exc:
            logger.exception("Task write failed task=%s", checked.id)
            raise TransactionError("Task update failed") from exc
        return task, columns

    def _publish(self, event: TaskEvent, scope_user_id: str, payload: dict[str, Any]) -> None:
        try:
            self._sink.emit(event, scope_user_id, payload)
        except Exception:
            logger.exception("Notification emit failed event=%s scope=%s", event.value, scope_user_id)

    def _users(self, ids: Iterable[str]) -> dict[str, User]:
        return self._store.get_users(ids)

    # ---- CRUD ----

    def create(self, actor: Actor, fields: Mapping[str, Any]) -> dict[str, Any]:
        _reject_unknown(fields, CREATE_FIELDS)

        errors: list[str] = []
        title = _parse_title(fields.get("title"), errors)
        description = _parse_description(fields.get("description"), errors)
        priority = TaskPriority.MEDIUM
        if fields.get("priority") is not None:
            priority = _parse_enum(TaskPriority, fields["priority"], "priority", errors) or priority
        deadline = _parse_deadline(fields.get("deadline"), errors)
        if errors or title is None:
            raise ValidationError(errors[0], errors)

        task = Task(
            id=new_id(),
            title=title,
            description=description,
            priority=priority,
            deadline=deadline,
            created_by=actor.id,
            assigned_to=actor.id,
            activity_logs=[ActivityLog(action="created", actor=actor.id, new_value=title)],
        )
        self._store.add_task(task)
        logger.info("Task created id=%s by=%s priority=%s", task.id, actor.id, priority.value)

        view = build_task_view(task)
        self._publish(TaskEvent.CREATED, actor.id, view)
        return view

    def get(self, actor: Actor, task_id: Any) -> dict[str, Any]:
        task = self._load_owned(actor, task_id)
        users = self._users([task.created_by, task.assigned_to])
        return build_task_view(
            task,
            creator=users.get(task.created_by),
            assignee=users.get(task.assigned_to),
        )

    def update(
        self,
        actor: Actor,
        task_id: Any,
        fields: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> dict[str, Any]:
        checked = self._load_owned(actor, task_id)
        _reject_unknown(fields, UPDATE_FIELDS)

        errors: list[str] = []
        changes: dict[str, Any] = {}
        if "title" in fields:
            changes["title"] = _parse_title(fields["title"], errors)
        if "description" in fields:
            changes["description"] = _parse_description(fields["description"], errors)
        if "priority" in fields:
            changes["priority"] = _parse_enum(TaskPriority, fields["priority"], "priority", errors)
        if "status" in fields:
            changes["status"] = _parse_enum(TaskStatus, fields["status"], "status", errors)
        if "deadline" in fields:
            changes["deadline"] = _parse_deadline(fields["deadline"], errors)
        if errors:
            raise ValidationError(errors[0], errors)

        def change(task: Task) -> tuple[str, ...]:
            touched: list[str] = []
            for name, new in changes.items():
                old = getattr(task, name)
                if old == new:
                    continue
                setattr(task, name, new)
                touched.append(name)
                if name == "deadline":
                    old_s, new_s = _fmt_deadline(old), _fmt_deadline(new)
                else:
                    old_s, new_s = _fmt_value(old), _fmt_value(new)
                task.activity_logs.append(
                    ActivityLog(action=f"{name}_changed", actor=actor.id, old_value=old_s, new_value=new_s)
                )
            return (*touched, "activity_logs") if touched else ()

        task, touched = self._mutate(checked, change, expected_version=expected_version)
        view = build_task_view(task)
        if not touched:
            logger.debug("Task update was a no-op id=%s by=%s", task.id, actor.id)
            return view

        logger.info("Task updated id=%s by=%s fields=%s", task.id, actor.id, list(touched[:-1]))
        self._publish(TaskEvent.UPDATED, task.assigned_to, view)
        return view

    def delete(self, actor: Actor, task_id: Any) -> None:
        task = self._load_owned(actor, task_id)
        if not self._store.delete_task(task.id):
            raise NotFoundError("Task not found")
        logger.info("Task deleted id=%s by=%s", task.id, actor.id)
        self._publish(TaskEvent.DELETED, task.assigned_to, {"id": task.id})

    def list_mine(self, actor: Actor) -> list[dict[str, Any]]:
        tasks = self._store.list_tasks_for_user(actor.id)
        users = self._users(t.created_by for t in tasks)
        now = time.time()
        return [build_task_view(t, now=now, creator=users.get(t.created_by)) for t in tasks]

    def list_all(
        self,
        actor: Actor,
        *,
        status: Any = None,
        priority: Any = None,
        search: str | None = None,
        page: Any = 1,
        limit: Any = None,
    ) -> TaskPage:
        self._require_admin(actor)

        status_f = _lenient_enum(TaskStatus, status)
        priority_f = _lenient_enum(TaskPriority, priority)
        search_f = search.strip() if isinstance(search, str) and search.strip() else None

        page_n = max(1, _coerce_int(page, 1))
        limit_n = _coerce_int(limit, self._default_limit)
        if limit_n < 1:
            limit_n = self._default_limit
        limit_n = min(limit_n, self._max_limit)

        total = self._store.count_tasks(status=status_f, priority=priority_f, search=search_f)
        tasks = self._store.query_tasks(
            status=status_f,
            priority=priority_f,
            search=search_f,
            offset=(page_n - 1) * limit_n,
            limit=limit_n,
        )

        users = self._users([t.created_by for t in tasks] + [t.assigned_to for t in tasks])
        now = time.time()
        items = [
            build_task_view(
                t,
                now=now,
                creator=users.get(t.created_by),
                assignee=users.get(t.assigned_to),
            )
            for t in tasks
        ]
        return TaskPage(
            items=items,
            total=total,
            page=page_n,
            pages=math.ceil(total / limit_n),
            limit=limit_n,
        )

    # ---- assignment ----

    def assign(self, actor: Actor, task_id: Any, user_id: Any) -> dict[str, Any]:
        """
        Reassign a task to another user in one transaction.

        Task and target user are read under the write lock; if either is missing
        nothing is written and no event is emitted.
        """
        self._require_admin(actor)

        tid = normalize_id(task_id)
        uid = normalize_id(user_id)
        if tid is None or uid is None:
            raise ValidationError("Invalid user or task id")

        try:
            with self._store.transaction() as tx:
                task = tx.get_task(tid)
                if task is None:
                    raise NotFoundError("Task not found")
                user = tx.get_user(uid)
                if user is None:
                    raise NotFoundError("User not found")

                previous = task.assigned_to
                task.assigned_to = uid
                task.activity_logs.append(
                    ActivityLog(action="assigned", actor=actor.id, old_value=previous, new_value=uid)
                )
                if not tx.save_task(task, columns=("assigned_to", "activity_logs")):
                    raise NotFoundError("Task not found")
        except TaskServiceError:
            raise
        except Exception as exc:
            logger.exception("Assignment transaction failed task=%s user=%s", tid, uid)
            raise TransactionError("Task assignment failed") from exc

        logger.info("Task assigned id=%s from=%s to=%s by=%s", tid, previous, uid, actor.id)

        view = build_task_view(task, assignee=user)
        self._publish(TaskEvent.UPDATED, uid, view)
        return view

    # ---- sub-resources ----

    def add_comment(self, actor: Actor, task_id: Any, text: Any) -> dict[str, Any]:
        checked = self._load_owned(actor, task_id)
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Comment text is required")

        body = text.strip()

        def change(task: Task) -> tuple[str, ...]:
            task.comments.append(Comment(author=actor.id, text=body))
            task.activity_logs.append(ActivityLog(action="comment_added", actor=actor.id, new_value=body))
            return ("comments", "activity_logs")

        task, _ = self._mutate(checked, change)
        logger.info("Comment added task=%s by=%s", task.id, actor.id)

        view = build_task_view(task)
        self._publish(TaskEvent.UPDATED, task.assigned_to, view)
        return view

    def add_subtask(self, actor: Actor, task_id: Any, title: Any) -> dict[str, Any]:
        checked = self._load_owned(actor, task_id)
        errors: list[str] = []
        clean = _parse_title(title, errors)
        if clean is None:
            raise ValidationError("Invalid sub-task title", [e.replace("Task", "Sub-task") for e in errors])

        def change(task: Task) -> tuple[str, ...]:
            task.sub_tasks.append(SubTask(title=clean))
            task.activity_logs.append(ActivityLog(action="subtask_added", actor=actor.id, new_value=clean))
            return ("sub_tasks", "activity_logs")

        task, _ = self._mutate(checked, change)
        logger.info("Sub-task added task=%s by=%s", task.id, actor.id)

        view = build_task_view(task)
        self._publish(TaskEvent.UPDATED, task.assigned_to, view)
        return view

    def set_subtask_completed(
        self, actor: Actor, task_id: Any, index: Any, completed: bool = True
    ) -> dict[str, Any]:
        """Tick or reopen one sub-task. Setting the state it already has writes and emits nothing."""
        checked = self._load_owned(actor, task_id)
        idx = _coerce_int(index, -1)
        done = bool(completed)

        def change(task: Task) -> tuple[str, ...]:
            if not 0 <= idx < len(task.sub_tasks):
                raise NotFoundError("Sub-task not found")
            sub = task.sub_tasks[idx]
            if sub.completed == done:
                return ()
            sub.completed = done
            action = "subtask_completed" if done else "subtask_reopened"
            task.activity_logs.append(ActivityLog(action=action, actor=actor.id, new_value=sub.title))
            return ("sub_tasks", "activity_logs")

        task, touched = self._mutate(checked, change)
        view = build_task_view(task)
        if touched:
            logger.info(
                "Sub-task %s task=%s index=%s by=%s",
                "completed" if done else "reopened",
                task.id,
                idx,
                actor.id,
            )
            self._publish(TaskEvent.UPDATED, task.assigned_to, view)
        return view

    # ---- stats ----

    def stats(self, actor: Actor) -> TaskStats:
        """
        Aggregate counts for the admin dashboard.

        Each number comes from its own query, so under concurrent writes the numbers
        may not add up exactly; each is correct as of its own read.
        """
        self._require_admin(actor)
        now = time.time()

        status_count = {s.value: 0 for s in TaskStatus}
        for key, n in self._store.count_by("status").items():
            if key in status_count:
                status_count[key] = n

        priority_count = {p.value: 0 for p in TaskPriority}
        for key, n in self._store.count_by("priority").items():
            if key in priority_count:
                priority_count[key] = n

        return TaskStats(
            total=self._store.count_tasks(),
            completed=self._store.count_tasks(status=TaskStatus.DONE),
            pending=self._store.count_tasks(exclude_status=TaskStatus.DONE),
            overdue=self._store.count_tasks(exclude_status=TaskStatus.DONE, deadline_before=now),
            status_count=status_count,
            priority_count=priority_count,
        )
