# src/taskflow/errors.py

"""
Typed domain errors raised by the task service.

Callers translate them at the boundary with error_response(); nothing in the core
sets response codes or swallows these.
"""

from __future__ import annotations

from typing import Any


class TaskServiceError(Exception):
    kind = "error"

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.errors = list(errors) if errors else [message]


class ValidationError(TaskServiceError):
    """Bad input shape or values. Always client-caused; never retried."""

    kind = "validation"


class NotFoundError(TaskServiceError):
    kind = "not_found"


class AuthorizationError(TaskServiceError):
    """Authenticated, but not permitted to touch this task/operation."""

    kind = "forbidden"


class ConflictError(TaskServiceError):
    """The task changed since the caller read it (expected_version mismatch)."""

    kind = "conflict"


class TransactionError(TaskServiceError):
    kind = "transaction_failed"


def error_response(exc: TaskServiceError) -> dict[str, Any]:
    return {"success": False, "error": exc.kind, "errors": list(exc.errors)}
