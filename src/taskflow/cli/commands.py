# src/taskflow/cli/commands.py

from __future__ import annotations

import logging
import shlex
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from ..core.state import AppState
from ..errors import TaskServiceError, ValidationError, error_response
from ..tasks.task_models import Actor, Role, normalize_id
from ..tasks.task_schemas import (
    AssignTaskRequest,
    CommentRequest,
    CreateTaskRequest,
    ListTasksQuery,
    SubTaskRequest,
    UpdateTaskRequest,
    parse_request,
    to_fields,
)

CommandHandler = Callable[[AppState, list[str]], str]

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Simple slash-command registry used by the console (/help, /create, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    def handle(self, state: AppState, line: str) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.

        Domain errors are turned into a readable failure line here.
        """
        if not line.startswith("/"):
            return None

        try:
            parts = shlex.split(line[1:])
        except ValueError as e:
            return f"Could not parse command: {e}"
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            return handler(state, args)
        except TaskServiceError as e:
            logger.debug("Command /%s failed: %s", name, e.kind)
            return _render_failure(error_response(e))

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


# ---- argument / output helpers ----


def _split_args(args: list[str]) -> tuple[list[str], dict[str, str]]:
    """Separate positional tokens from key=value tokens."""
    positional: list[str] = []
    kv: dict[str, str] = {}
    for a in args:
        key, sep, value = a.partition("=")
        if sep and key:
            kv[key.strip().lower()] = value
        else:
            positional.append(a)
    return positional, kv


def _require_actor(state: AppState) -> Actor:
    if state.actor is None:
        raise ValidationError("No active user. Use /useradd, then /as <user_id>.")
    return state.actor


def _render_failure(resp: dict[str, Any]) -> str:
    return f"Error ({resp['error']}): " + "; ".join(resp["errors"])


def _short_ts(iso: str | None) -> str:
    if not iso:
        return "-"
    return datetime.fromisoformat(iso).astimezone(UTC).strftime("%Y-%m-%d %H:%M")


def _who(ref: Any) -> str:
    if isinstance(ref, dict):
        return f"{ref.get('name')} <{ref.get('email')}>"
    return str(ref)


def _fmt_task(view: dict[str, Any]) -> str:
    flag = " OVERDUE" if view["is_overdue"] else ""
    return (
        f"{view['id']} [{view['status']}/{view['priority']}]{flag} {view['title']}"
        f" (due {_short_ts(view['deadline'])}) - {view['notification']}"
    )


def _fmt_task_detail(view: dict[str, Any]) -> str:
    lines = [
        _fmt_task(view),
        f"  description: {view['description'] or '-'}",
        f"  created by: {_who(view['created_by'])}",
        f"  assigned to: {_who(view['assigned_to'])}",
        f"  version: {view['version']}",
    ]
    for i, sub in enumerate(view["sub_tasks"], start=1):
        lines.append(f"  [{'x' if sub['completed'] else ' '}] {i}. {sub['title']}")
    for c in view["comments"]:
        lines.append(f"  > {c['author']} ({_short_ts(c['created_at'])}): {c['text']}")
    for a in view["activity_logs"]:
        change = f" {a['old_value']} -> {a['new_value']}" if a["old_value"] else ""
        lines.append(f"  * {_short_ts(a['created_at'])} {a['action']} by {a['actor']}{change}")
    return "\n".join(lines)


# ---- identity ----


def cmd_help(state: AppState, args: list[str]) -> str:
    return registry.build_help()


def cmd_users(state: AppState, args: list[str]) -> str:
    users = state.task_store.list_users()
    if not users:
        return "No users yet. Use /useradd <name> <email> [admin]."
    return "\n".join(f"{u.id} {u.name} <{u.email}> ({u.role.value})" for u in users)


def cmd_useradd(state: AppState, args: list[str]) -> str:
    """
    /useradd <name> <email> [admin]
    """
    if len(args) < 2:
        return "Usage: /useradd <name> <email> [admin]"
    role = Role.ADMIN if len(args) > 2 and args[2].lower() == "admin" else Role.USER
    user = state.task_store.add_user(name=args[0], email=args[1], role=role)
    return f"User added: {user.id} {user.name} ({user.role.value})"


def cmd_as(state: AppState, args: list[str]) -> str:
    if not args:
        return "Usage: /as <user_id>"
    uid = normalize_id(args[0])
    user = state.task_store.get_user(uid) if uid else None
    if user is None:
        return f"No such user: {args[0]}"
    state.actor = Actor(id=user.id, role=user.role)
    return f"Now acting as {user.name} ({user.role.value})."


def cmd_whoami(state: AppState, args: list[str]) -> str:
    if state.actor is None:
        return "No active user."
    return f"{state.actor.id} ({state.actor.role.value})"


# ---- tasks ----


def cmd_create(state: AppState, args: list[str]) -> str:
    """
    /create <title...> [priority=high] [deadline=2026-01-31] [description="..."]
    """
    actor = _require_actor(state)
    positional, kv = _split_args(args)
    if positional and "title" not in kv:
        kv["title"] = " ".join(positional)
    req = parse_request(CreateTaskRequest, kv)
    view = state.service.create(actor, to_fields(req))
    return "Created: " + _fmt_task(view)


def cmd_mine(state: AppState, args: list[str]) -> str:
    actor = _require_actor(state)
    views = state.service.list_mine(actor)
    if not views:
        return "No tasks assigned to you."
    return "\n".join(_fmt_task(v) for v in views)


def cmd_all(state: AppState, args: list[str]) -> str:
    """
    /all [status=..] [priority=..] [search=..] [page=N] [limit=N]
    """
    actor = _require_actor(state)
    _, kv = _split_args(args)
    q = parse_request(ListTasksQuery, kv)
    page = state.service.list_all(
        actor,
        status=q.status,
        priority=q.priority,
        search=q.search,
        page=q.page,
        limit=q.limit,
    )
    head = f"Page {page.page}/{max(page.pages, 1)} ({page.total} total, {page.limit} per page)"
    return "\n".join([head, *(_fmt_task(v) for v in page.items)])


def cmd_show(state: AppState, args: list[str]) -> str:
    actor = _require_actor(state)
    if not args:
        return "Usage: /show <task_id>"
    return _fmt_task_detail(state.service.get(actor, args[0]))


def cmd_update(state: AppState, args: list[str]) -> str:
    """
    /update <task_id> key=value ... [version=N]

    An empty value clears description/deadline (e.g. deadline=).
    """
    actor = _require_actor(state)
    positional, kv = _split_args(args)
    if not positional:
        return "Usage: /update <task_id> key=value ..."

    expected: int | None = None
    if "version" in kv:
        try:
            expected = int(kv.pop("version"))
        except ValueError:
            raise ValidationError("version must be an integer") from None

    body: dict[str, Any] = {}
    for key, value in kv.items():
        body[key] = None if value == "" and key == "deadline" else value

    req = parse_request(UpdateTaskRequest, body)
    view = state.service.update(actor, positional[0], to_fields(req), expected_version=expected)
    return "Updated: " + _fmt_task(view)


def cmd_delete(state: AppState, args: list[str]) -> str:
    actor = _require_actor(state)
    if not args:
        return "Usage: /delete <task_id>"
    state.service.delete(actor, args[0])
    return "Task deleted successfully."


def cmd_assign(state: AppState, args: list[str]) -> str:
    actor = _require_actor(state)
    if len(args) < 2:
        return "Usage: /assign <task_id> <user_id>"
    req = parse_request(AssignTaskRequest, {"user_id": args[1]})
    view = state.service.assign(actor, args[0], req.user_id)
    return f"Task assigned successfully to {_who(view['assigned_to'])}."


def cmd_stats(state: AppState, args: list[str]) -> str:
    actor = _require_actor(state)
    s = state.service.stats(actor)
    status = ", ".join(f"{k}={v}" for k, v in s.status_count.items())
    priority = ", ".join(f"{k}={v}" for k, v in s.priority_count.items())
    return (
        "Stats:\n"
        f"  total={s.total} completed={s.completed} pending={s.pending} overdue={s.overdue}\n"
        f"  by status: {status}\n"
        f"  by priority: {priority}"
    )


def cmd_comment(state: AppState, args: list[str]) -> str:
    actor = _require_actor(state)
    if len(args) < 2:
        return "Usage: /comment <task_id> <text...>"
    req = parse_request(CommentRequest, {"text": " ".join(args[1:])})
    state.service.add_comment(actor, args[0], req.text)
    return "Comment added."


def cmd_subtask(state: AppState, args: list[str]) -> str:
    actor = _require_actor(state)
    if len(args) < 2:
        return "Usage: /subtask <task_id> <title...>"
    req = parse_request(SubTaskRequest, {"title": " ".join(args[1:])})
    view = state.service.add_subtask(actor, args[0], req.title)
    return f"Sub-task {len(view['sub_tasks'])} added."


def cmd_check(state: AppState, args: list[str]) -> str:
    """
    /check <task_id> <n> [off]   (n is 1-based as shown by /show)
    """
    actor = _require_actor(state)
    if len(args) < 2 or not args[1].isdigit():
        return "Usage: /check <task_id> <n> [off]"
    completed = not (len(args) > 2 and args[2].lower() in ("off", "0", "no"))
    view = state.service.set_subtask_completed(actor, args[0], int(args[1]) - 1, completed)
    sub = view["sub_tasks"][int(args[1]) - 1]
    return f"Sub-task {args[1]} {'done' if sub['completed'] else 'reopened'}: {sub['title']}"


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("users", cmd_users, help_text="List known users.")
registry.register("useradd", cmd_useradd, help_text="Add a user: /useradd <name> <email> [admin].")
registry.register("as", cmd_as, help_text="Act as a user: /as <user_id>.")
registry.register("whoami", cmd_whoami, help_text="Show the active user.")
registry.register("create", cmd_create, help_text="Create a task: /create <title> [priority=] [deadline=].")
registry.register("mine", cmd_mine, help_text="List tasks assigned to you.")
registry.register("all", cmd_all, help_text="Admin: list tasks [status= priority= search= page= limit=].")
registry.register("show", cmd_show, help_text="Show one task with comments and history.")
registry.register("update", cmd_update, help_text="Update a task: /update <id> key=value ... [version=N].")
registry.register("delete", cmd_delete, help_text="Delete a task: /delete <id>.")
registry.register("assign", cmd_assign, help_text="Admin: reassign a task: /assign <id> <user_id>.")
registry.register("stats", cmd_stats, help_text="Admin: task statistics.")
registry.register("comment", cmd_comment, help_text="Comment on a task: /comment <id> <text>.")
registry.register("subtask", cmd_subtask, help_text="Add a sub-task: /subtask <id> <title>.")
registry.register("check", cmd_check, help_text="Tick a sub-task: /check <id> <n> [off].")
