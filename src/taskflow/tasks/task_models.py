# src/taskflow/tasks/task_models.py

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any


class TaskStatus(StrEnum):
    TODO = "todo"
    IN_PROGRESS = "in-progress"
    DONE = "done"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.TODO
        try:
            return cls(raw)
        except ValueError:
            return cls.TODO


class TaskPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskPriority:
        if not raw:
            return cls.MEDIUM
        try:
            return cls(raw)
        except ValueError:
            return cls.MEDIUM


class Role(StrEnum):
    USER = "user"
    ADMIN = "admin"


class TaskEvent(StrEnum):
    """Lifecycle events pushed to the notification sink."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


def parse_deadline(raw: Any) -> float | None:
    """
    Convert a deadline (ISO string, date or datetime) into epoch seconds.

    Naive values are taken as UTC. None means "no deadline".
    Raises ValueError for anything that is not a valid date, or whose UTC instant
    falls outside the years datetime can represent.
    """
    if raw is None:
        return None
    if isinstance(raw, datetime):
        dt = raw
    elif isinstance(raw, date):
        dt = datetime(raw.year, raw.month, raw.day)
    elif isinstance(raw, str) and raw.strip():
        dt = datetime.fromisoformat(raw.strip())
    else:
        raise ValueError(f"not a date: {raw!r}")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    ts = dt.timestamp()

    # The stored instant must render back as a UTC datetime (year 1..9999).
    try:
        datetime.fromtimestamp(ts, UTC)
    except (OverflowError, OSError, ValueError):
        raise ValueError(f"deadline out of range: {raw!r}") from None
    return ts


def new_id() -> str:
    return uuid.uuid4().hex


def normalize_id(raw: Any) -> str | None:
    """
    Return the canonical 32-char hex form of a well-formed identifier, else None.

    Accepts both the dashed and the bare hex UUID spellings.
    """
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        return uuid.UUID(raw.strip()).hex
    except ValueError:
        return None


@dataclass(slots=True)
class SubTask:
    title: str
    completed: bool = False


@dataclass(slots=True)
class Comment:
    author: str
    text: str
    created_at: float = field(default_factory=time.time)


@dataclass(slots=True, frozen=True)
class ActivityLog:
    """One audit-trail entry. Entries are appended, never edited or removed."""

    action: str
    actor: str
    old_value: str | None = None
    new_value: str | None = None
    created_at: float = field(default_factory=time.time)


@dataclass(slots=True)
class Task:
    id: str
    title: str
    created_by: str
    assigned_to: str

    description: str | None = None
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    deadline: float | None = None

    sub_tasks: list[SubTask] = field(default_factory=list)
    comments: list[Comment] = field(default_factory=list)
    activity_logs: list[ActivityLog] = field(default_factory=list)

    is_deleted: bool = False
    created_at: float = 0.0
    updated_at: float = 0.0
    version: int = 0


@dataclass(slots=True, frozen=True)
class User:
    id: str
    name: str
    email: str
    role: Role = Role.USER

    def identity(self) -> dict[str, str]:
        """Minimal identity joined onto task views."""
        return {"id": self.id, "name": self.name, "email": self.email}


@dataclass(slots=True, frozen=True)
class Actor:
    """The authenticated principal issuing a request. Trusted as given."""

    id: str
    role: Role = Role.USER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN
