# tests/test_task_store.py

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

import pytest

from taskflow.tasks.task_models import ActivityLog, Comment, SubTask, Task, TaskStatus, new_id
from taskflow.tasks.task_store import TaskStore


def _task(owner: str, title: str = "t") -> Task:
    return Task(id=new_id(), title=title, created_by=owner, assigned_to=owner)


def test_add_get_save_keeps_nested_lists(store: TaskStore, u1) -> None:
    task = _task(u1.id)
    task.sub_tasks.append(SubTask(title="a"))
    task.comments.append(Comment(author=u1.id, text="hi", created_at=10.0))
    task.activity_logs.append(ActivityLog(action="created", actor=u1.id, created_at=10.0))
    store.add_task(task)

    got = store.get_task(task.id)
    assert got is not None
    assert got.sub_tasks == [SubTask(title="a", completed=False)]
    assert got.comments[0].text == "hi"
    assert got.activity_logs[0].action == "created"
    assert got.version == 1

    got.status = TaskStatus.DONE
    assert store.save_task(got)
    again = store.get_task(task.id)
    assert again.status == TaskStatus.DONE
    assert again.version == 2
    assert again.created_by == u1.id


def test_save_never_rewrites_created_by(store: TaskStore, u1, u2) -> None:
    task = store.add_task(_task(u1.id))
    task.created_by = u2.id
    store.save_task(task)
    assert store.get_task(task.id).created_by == u1.id


def test_save_with_expected_version(store: TaskStore, u1) -> None:
    task = store.add_task(_task(u1.id))
    assert store.save_task(task, expected_version=1)
    assert not store.save_task(task, expected_version=1)


def test_save_missing_task_returns_false(store: TaskStore, u1) -> None:
    assert not store.save_task(_task(u1.id))


def test_soft_deleted_rows_are_invisible(store: TaskStore, u1) -> None:
    task = store.add_task(_task(u1.id))
    task.is_deleted = True
    assert store.save_task(task)

    assert store.get_task(task.id) is None
    assert store.list_tasks_for_user(u1.id) == []
    assert store.count_tasks() == 0
    assert store.count_by("status") == {}


def test_transaction_rolls_back_on_error(store: TaskStore, u1, u2) -> None:
    task = store.add_task(_task(u1.id))

    with pytest.raises(RuntimeError):
        with store.transaction() as tx:
            t = tx.get_task(task.id)
            t.assigned_to = u2.id
            assert tx.save_task(t)
            raise RuntimeError("abort")

    assert store.get_task(task.id).assigned_to == u1.id


def test_transaction_commits(store: TaskStore, u1, u2) -> None:
    task = store.add_task(_task(u1.id))
    with store.transaction() as tx:
        t = tx.get_task(task.id)
        assert tx.get_user(u2.id) == u2
        t.assigned_to = u2.id
        tx.save_task(t)
    assert store.get_task(task.id).assigned_to == u2.id


def test_count_by_rejects_unknown_column(store: TaskStore) -> None:
    with pytest.raises(ValueError):
        store.count_by("title; DROP TABLE tasks")


def test_search_is_substring_not_pattern(store: TaskStore, u1) -> None:
    store.add_task(_task(u1.id, "100% done"))
    store.add_task(_task(u1.id, "1000 things"))
    assert store.count_tasks(search="0%") == 1
    assert store.count_tasks(search="_") == 0


def test_users(store: TaskStore) -> None:
    a = store.add_user(name=" Ann ", email="ann@example.com")
    assert a.name == "Ann"
    assert store.get_users([a.id, new_id()]) == {a.id: a}
    assert store.list_users() == [a]
    assert store.delete_user(a.id)
    assert store.get_user(a.id) is None


def test_migration_adds_missing_columns(tmp_path: Path) -> None:
    db = tmp_path / "old.sqlite3"
    conn = sqlite3.connect(db)
    conn.execute(
        """
        CREATE TABLE tasks (
            id TEXT PRIMARY KEY, title TEXT NOT NULL, description TEXT,
            status TEXT NOT NULL DEFAULT 'todo', priority TEXT NOT NULL DEFAULT 'medium',
            deadline REAL, created_by TEXT NOT NULL, assigned_to TEXT NOT NULL,
            sub_tasks TEXT NOT NULL DEFAULT '[]', comments TEXT NOT NULL DEFAULT '[]',
            activity_logs TEXT NOT NULL DEFAULT '[]',
            created_at REAL NOT NULL, updated_at REAL NOT NULL
        )
        """
    )
    conn.execute(
        "INSERT INTO tasks(id, title, created_by, assigned_to, created_at, updated_at) "
        "VALUES ('abc', 'legacy', 'u', 'u', 1, 1)"
    )
    conn.commit()
    conn.close()

    store = TaskStore(db)
    legacy = store.get_task("abc")
    assert legacy is not None
    assert legacy.is_deleted is False
    assert legacy.version == 1


def test_save_writes_only_named_columns(store: TaskStore, u1, u2) -> None:
    task = store.add_task(_task(u1.id))
    stale = store.get_task(task.id)

    fresh = store.get_task(task.id)
    fresh.assigned_to = u2.id
    assert store.save_task(fresh, columns=("assigned_to",))

    stale.status = TaskStatus.DONE
    assert store.save_task(stale, columns=("status",))

    got = store.get_task(task.id)
    assert got.status == TaskStatus.DONE
    assert got.assigned_to == u2.id
    assert got.version == 3


def test_save_rejects_unknown_columns(store: TaskStore, u1) -> None:
    task = store.add_task(_task(u1.id))
    with pytest.raises(ValueError):
        store.save_task(task, columns=("created_by",))


def _in_thread(fn, *args) -> tuple[threading.Thread, dict]:
    result: dict = {}

    def run() -> None:
        result["value"] = fn(*args)

    t = threading.Thread(target=run, daemon=True)
    t.start()
    return t, result


@pytest.mark.parametrize("target", ["task", "user"])
def test_delete_waits_for_open_transaction(store: TaskStore, u1, u2, target) -> None:
    task = store.add_task(_task(u1.id))

    with store.transaction() as tx:
        t = tx.get_task(task.id)
        assert tx.get_user(u2.id) is not None

        if target == "task":
            worker, result = _in_thread(store.delete_task, task.id)
        else:
            worker, result = _in_thread(store.delete_user, u2.id)

        # Still holding the write lock: the delete cannot land yet.
        worker.join(0.3)
        assert worker.is_alive()

        t.assigned_to = u2.id
        assert tx.save_task(t, columns=("assigned_to",))

    worker.join(10.0)
    assert not worker.is_alive()
    assert result["value"] is True
