# src/taskflow/tasks/task_schemas.py

"""
Request-body schemas.

Bodies are checked here before a service operation runs; a malformed body becomes
a ValidationError carrying one message per offending field.
"""

from __future__ import annotations

from typing import Any, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..errors import ValidationError
from .task_models import TaskPriority, TaskStatus, parse_deadline

M = TypeVar("M", bound=BaseModel)


class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


def _check_deadline(value: str | None) -> str | None:
    if value is None:
        return value
    try:
        parse_deadline(value)
    except ValueError as exc:
        raise ValueError("Invalid date format") from exc
    return value


class CreateTaskRequest(_Request):
    title: str = Field(min_length=1, max_length=120)
    description: str | None = None
    priority: TaskPriority | None = None
    deadline: str | None = None

    @field_validator("deadline")
    @classmethod
    def check_deadline(cls, value: str | None) -> str | None:
        return _check_deadline(value)


class UpdateTaskRequest(_Request):
    title: str | None = Field(default=None, min_length=1, max_length=120)
    description: str | None = None
    priority: TaskPriority | None = None
    status: TaskStatus | None = None
    deadline: str | None = None

    @field_validator("deadline")
    @classmethod
    def check_deadline(cls, value: str | None) -> str | None:
        return _check_deadline(value)


class AssignTaskRequest(_Request):
    user_id: str = Field(min_length=1)


class CommentRequest(_Request):
    text: str = Field(min_length=1)


class SubTaskRequest(_Request):
    title: str = Field(min_length=1, max_length=120)


class ListTasksQuery(_Request):
    # Filters stay strings: values outside the enums are ignored by the service.
    status: str | None = None
    priority: str | None = None
    search: str | None = None
    page: str | None = None
    limit: str | None = None


def parse_request(model: type[M], data: dict[str, Any]) -> M:
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        messages = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ())) or "body"
            messages.append(f"{loc}: {err.get('msg', 'invalid value')}")
        raise ValidationError("Invalid request data", messages) from exc


def to_fields(request: BaseModel) -> dict[str, Any]:
    """Only the keys the caller actually sent (explicit None included)."""
    return {
        k: (v.value if isinstance(v, (TaskStatus, TaskPriority)) else v)
        for k, v in request.model_dump(exclude_unset=True).items()
    }
