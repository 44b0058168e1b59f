# src/taskflow/tasks/task_store.py

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import time
from collections.abc import Iterable, Iterator
from dataclasses import asdict
from enum import StrEnum
from pathlib import Path
from typing import Any

from .task_models import (
    ActivityLog,
    Comment,
    Role,
    SubTask,
    Task,
    TaskPriority,
    TaskStatus,
    User,
    new_id,
)

logger = logging.getLogger(__name__)

# Columns that may be grouped on by count_by(); never interpolate anything else.
_GROUPABLE = frozenset({"status", "priority"})

_LIVE = "is_deleted = 0"

# Everything save_task may write; created_by and timestamps are managed here.
_MUTABLE_COLUMNS = (
    "title",
    "description",
    "status",
    "priority",
    "deadline",
    "assigned_to",
    "sub_tasks",
    "comments",
    "activity_logs",
    "is_deleted",
)
_JSON_COLUMNS = frozenset({"sub_tasks", "comments", "activity_logs"})


def _dump_list(items: Iterable[Any]) -> str:
    return json.dumps([asdict(i) for i in items], ensure_ascii=False)


def _load_list(raw: str | None) -> list[dict[str, Any]]:
    if not raw:
        return []
    try:
        val = json.loads(raw)
    except ValueError:
        logger.warning("Corrupt JSON list column; treating as empty.")
        return []
    return [v for v in val if isinstance(v, dict)] if isinstance(val, list) else []


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=str(row["id"]),
        title=str(row["title"]),
        description=row["description"],
        status=TaskStatus.from_db(row["status"]),
        priority=TaskPriority.from_db(row["priority"]),
        deadline=float(row["deadline"]) if row["deadline"] is not None else None,
        created_by=str(row["created_by"]),
        assigned_to=str(row["assigned_to"]),
        sub_tasks=[
            SubTask(title=str(d.get("title", "")), completed=bool(d.get("completed", False)))
            for d in _load_list(row["sub_tasks"])
        ],
        comments=[
            Comment(
                author=str(d.get("author", "")),
                text=str(d.get("text", "")),
                created_at=float(d.get("created_at") or 0.0),
            )
            for d in _load_list(row["comments"])
        ],
        activity_logs=[
            ActivityLog(
                action=str(d.get("action", "")),
                actor=str(d.get("actor", "")),
                old_value=d.get("old_value"),
                new_value=d.get("new_value"),
                created_at=float(d.get("created_at") or 0.0),
            )
            for d in _load_list(row["activity_logs"])
        ],
        is_deleted=bool(row["is_deleted"]),
        created_at=float(row["created_at"] or 0.0),
        updated_at=float(row["updated_at"] or 0.0),
        version=int(row["version"] or 0),
    )


def _row_to_user(row: sqlite3.Row) -> User:
    try:
        role = Role(row["role"])
    except ValueError:
        role = Role.USER
    return User(id=str(row["id"]), name=str(row["name"]), email=str(row["email"]), role=role)


def _select_task(conn: sqlite3.Connection, task_id: str) -> Task | None:
    row = conn.execute(f"SELECT * FROM tasks WHERE id = ? AND {_LIVE}", (task_id,)).fetchone()
    return _row_to_task(row) if row else None


def _select_user(conn: sqlite3.Connection, user_id: str) -> User | None:
    row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    return _row_to_user(row) if row else None


def _column_value(task: Task, name: str) -> Any:
    value = getattr(task, name)
    if name in _JSON_COLUMNS:
        return _dump_list(value)
    if name == "is_deleted":
        return int(value)
    if isinstance(value, StrEnum):
        return value.value
    return value


def _update_task(
    conn: sqlite3.Connection,
    task: Task,
    expected_version: int | None,
    columns: Iterable[str] | None = None,
) -> bool:
    """
    Write the given mutable columns of `task` (all of them when columns is None).

    created_by is never written. Returns False when no live row matched
    (missing, or version mismatch).
    """
    names = _MUTABLE_COLUMNS if columns is None else tuple(dict.fromkeys(columns))
    unknown = set(names) - set(_MUTABLE_COLUMNS)
    if unknown:
        raise ValueError(f"not a writable task column: {sorted(unknown)}")

    now = time.time()
    assignments = [f"{name} = ?" for name in names]
    assignments += ["updated_at = ?", "version = version + 1"]
    params: list[Any] = [_column_value(task, name) for name in names]
    params += [now, task.id]

    sql = f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ? AND {_LIVE}"
    if expected_version is not None:
        sql += " AND version = ?"
        params.append(int(expected_version))

    cur = conn.execute(sql, params)
    if cur.rowcount != 1:
        return False

    (version,) = conn.execute("SELECT version FROM tasks WHERE id = ?", (task.id,)).fetchone()
    task.version = int(version)
    task.updated_at = now
    return True


def _filter_sql(
    *,
    assigned_to: str | None = None,
    status: TaskStatus | None = None,
    exclude_status: TaskStatus | None = None,
    priority: TaskPriority | None = None,
    search: str | None = None,
    deadline_before: float | None = None,
) -> tuple[str, list[Any]]:
    clauses = [_LIVE]
    params: list[Any] = []

    if assigned_to is not None:
        clauses.append("assigned_to = ?")
        params.append(assigned_to)
    if status is not None:
        clauses.append("status = ?")
        params.append(status.value)
    if exclude_status is not None:
        clauses.append("status != ?")
        params.append(exclude_status.value)
    if priority is not None:
        clauses.append("priority = ?")
        params.append(priority.value)
    if search:
        # Plain substring match; no LIKE wildcards to escape.
        clauses.append("instr(casefold(title), ?) > 0")
        params.append(search.casefold())
    if deadline_before is not None:
        clauses.append("deadline IS NOT NULL AND deadline < ?")
        params.append(float(deadline_before))

    return " AND ".join(clauses), params


class TaskTransaction:
    """
    Read/write view over one open `BEGIN IMMEDIATE` transaction.

    Only valid inside TaskStore.transaction(); the store commits or rolls back.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def get_task(self, task_id: str) -> Task | None:
        return _select_task(self._conn, task_id)

    def get_user(self, user_id: str) -> User | None:
        return _select_user(self._conn, user_id)

    def save_task(
        self,
        task: Task,
        *,
        columns: Iterable[str] | None = None,
        expected_version: int | None = None,
    ) -> bool:
        return _update_task(self._conn, task, expected_version, columns)


class TaskStore:
    """
    SQLite task store.

    Tasks are stored as one row each; sub-tasks, comments and activity logs live in
    JSON columns so they are always written together with their parent.

    Thread-safety:
    - each method opens its own SQLite connection
    - transaction() holds the write lock for the whole block
    """

    def __init__(self, db_path: str | Path = "tasks.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        logger.info("TaskStore ready db=%s total=%s", self._db_path, self.count_tasks())

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")
        # SQLite lower() only folds ASCII.
        conn.create_function("casefold", 1, lambda s: s.casefold() if s else s, deterministic=True)

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT,
                    status TEXT NOT NULL DEFAULT 'todo',
                    priority TEXT NOT NULL DEFAULT 'medium',
                    deadline REAL,
                    created_by TEXT NOT NULL,
                    assigned_to TEXT NOT NULL,
                    sub_tasks TEXT NOT NULL DEFAULT '[]',
                    comments TEXT NOT NULL DEFAULT '[]',
                    activity_logs TEXT NOT NULL DEFAULT '[]',
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'user',
                    created_at REAL NOT NULL
                )
                """
            )

            cur.execute("PRAGMA table_info(tasks)")
            cols = {row["name"] for row in cur.fetchall()}

            def add_col(name: str, decl: str) -> None:
                if name in cols:
                    return
                cur.execute(f"ALTER TABLE tasks ADD COLUMN {name} {decl}")
                logger.info("TaskStore migration: added column %s", name)

            add_col("is_deleted", "INTEGER NOT NULL DEFAULT 0")
            add_col("version", "INTEGER NOT NULL DEFAULT 1")

            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_assigned ON tasks(assigned_to)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_priority ON tasks(priority)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_deadline ON tasks(deadline)")

            conn.commit()
        finally:
            conn.close()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[TaskTransaction]:
        """
        Run a block under one write-locked transaction.

        Commits when the block exits normally, rolls back on any exception
        (which is then re-raised unchanged).
        """
        conn = self._get_conn()
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield TaskTransaction(conn)
            except BaseException:
                conn.execute("ROLLBACK")
                logger.debug("Transaction rolled back")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    # ---- tasks ----

    def add_task(self, task: Task) -> Task:
        if not task.title or not task.title.strip():
            raise ValueError("title is required")

        now = time.time()
        task.created_at = now
        task.updated_at = now
        task.version = 1

        conn = self._get_conn()
        try:
            conn.execute(
                """
                INSERT INTO tasks(
                    id, title, description, status, priority, deadline,
                    created_by, assigned_to, sub_tasks, comments, activity_logs,
                    is_deleted, created_at, updated_at, version
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.id,
                    task.title,
                    task.description,
                    task.status.value,
                    task.priority.value,
                    task.deadline,
                    task.created_by,
                    task.assigned_to,
                    _dump_list(task.sub_tasks),
                    _dump_list(task.comments),
                    _dump_list(task.activity_logs),
                    int(task.is_deleted),
                    now,
                    now,
                    task.version,
                ),
            )
            conn.commit()
            logger.debug("Task added id=%s assigned_to=%s", task.id, task.assigned_to)
            return task
        finally:
            conn.close()

    def get_task(self, task_id: str) -> Task | None:
        conn = self._get_conn()
        try:
            return _select_task(conn, task_id)
        finally:
            conn.close()

    def save_task(
        self,
        task: Task,
        *,
        columns: Iterable[str] | None = None,
        expected_version: int | None = None,
    ) -> bool:
        """
        Persist `columns` of `task` (every mutable column when None; last write wins).

        With expected_version, the write only happens if the stored version still matches.
        Read-modify-write callers should go through transaction() instead.
        """
        conn = self._get_conn()
        try:
            ok = _update_task(conn, task, expected_version, columns)
            conn.commit()
            if ok:
                logger.debug("Task saved id=%s version=%s", task.id, task.version)
            return ok
        finally:
            conn.close()

    def delete_task(self, task_id: str) -> bool:
        """Hard delete. Returns True if a row was removed."""
        conn = self._get_conn()
        try:
            cur = conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            conn.commit()
            logger.debug("Task deleted id=%s rows=%s", task_id, cur.rowcount)
            return cur.rowcount == 1
        finally:
            conn.close()

    def list_tasks_for_user(self, user_id: str) -> list[Task]:
        where, params = _filter_sql(assigned_to=user_id)
        conn = self._get_conn()
        try:
            cur = conn.execute(
                f"SELECT * FROM tasks WHERE {where} ORDER BY created_at DESC, rowid DESC",
                params,
            )
            return [_row_to_task(r) for r in cur.fetchall()]
        finally:
            conn.close()

    def query_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        priority: TaskPriority | None = None,
        search: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[Task]:
        where, params = _filter_sql(status=status, priority=priority, search=search)
        conn = self._get_conn()
        try:
            cur = conn.execute(
                f"""
                SELECT *
                FROM tasks
                WHERE {where}
                ORDER BY created_at DESC, rowid DESC
                    LIMIT ? OFFSET ?
                """,
                (*params, int(limit), max(0, int(offset))),
            )
            return [_row_to_task(r) for r in cur.fetchall()]
        finally:
            conn.close()

    def count_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        exclude_status: TaskStatus | None = None,
        priority: TaskPriority | None = None,
        search: str | None = None,
        deadline_before: float | None = None,
    ) -> int:
        where, params = _filter_sql(
            status=status,
            exclude_status=exclude_status,
            priority=priority,
            search=search,
            deadline_before=deadline_before,
        )
        conn = self._get_conn()
        try:
            (n,) = conn.execute(f"SELECT COUNT(*) FROM tasks WHERE {where}", params).fetchone()
            return int(n)
        finally:
            conn.close()

    def count_by(self, column: str) -> dict[str, int]:
        """Group live tasks by `column` (status or priority) and count each group."""
        if column not in _GROUPABLE:
            raise ValueError(f"cannot group by {column!r}")
        conn = self._get_conn()
        try:
            cur = conn.execute(
                f"SELECT {column} AS k, COUNT(*) AS n FROM tasks WHERE {_LIVE} GROUP BY {column}"
            )
            return {str(r["k"]): int(r["n"]) for r in cur.fetchall()}
        finally:
            conn.close()

    # ---- users ----

    def add_user(
        self,
        *,
        name: str,
        email: str,
        role: Role = Role.USER,
        user_id: str | None = None,
    ) -> User:
        if not name or not name.strip():
            raise ValueError("name is required")

        user = User(id=user_id or new_id(), name=name.strip(), email=email.strip(), role=role)
        conn = self._get_conn()
        try:
            conn.execute(
                "INSERT INTO users(id, name, email, role, created_at) VALUES (?, ?, ?, ?, ?)",
                (user.id, user.name, user.email, user.role.value, time.time()),
            )
            conn.commit()
            logger.debug("User added id=%s role=%s", user.id, user.role.value)
            return user
        finally:
            conn.close()

    def get_user(self, user_id: str) -> User | None:
        conn = self._get_conn()
        try:
            return _select_user(conn, user_id)
        finally:
            conn.close()

    def get_users(self, user_ids: Iterable[str]) -> dict[str, User]:
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        conn = self._get_conn()
        try:
            cur = conn.execute(f"SELECT * FROM users WHERE id IN ({placeholders})", ids)
            return {u.id: u for u in (_row_to_user(r) for r in cur.fetchall())}
        finally:
            conn.close()

    def list_users(self) -> list[User]:
        conn = self._get_conn()
        try:
            cur = conn.execute("SELECT * FROM users ORDER BY created_at ASC, rowid ASC")
            return [_row_to_user(r) for r in cur.fetchall()]
        finally:
            conn.close()

    def delete_user(self, user_id: str) -> bool:
        """Remove a user. Tasks referencing it are left as they are (no cascade)."""
        conn = self._get_conn()
        try:
            cur = conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()
