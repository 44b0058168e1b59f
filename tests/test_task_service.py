# tests/test_task_service.py

from __future__ import annotations

import contextlib
import math
import threading

import pytest

from taskflow.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    TransactionError,
    ValidationError,
)
from taskflow.tasks.task_models import TaskEvent, new_id
from taskflow.tasks.task_service import TaskService

from .fakes import BrokenNotificationSink


# ---- create ----


@pytest.mark.parametrize("title", ["", "   ", None])
def test_create_rejects_blank_title(service, actor1, title) -> None:
    with pytest.raises(ValidationError):
        service.create(actor1, {"title": title})


def test_create_rejects_long_title(service, actor1) -> None:
    with pytest.raises(ValidationError):
        service.create(actor1, {"title": "x" * 121})
    assert service.create(actor1, {"title": "  " + "x" * 120 + "  "})["title"] == "x" * 120


def test_create_rejects_bad_priority_and_deadline(service, actor1) -> None:
    with pytest.raises(ValidationError) as exc:
        service.create(actor1, {"title": "ok", "priority": "urgent", "deadline": "not-a-date"})
    assert exc.value.errors == ["Invalid priority value", "Invalid deadline date"]


def test_create_defaults_and_self_assignment(service, sink, actor1) -> None:
    view = service.create(actor1, {"title": "  Write docs  "})

    assert view["title"] == "Write docs"
    assert view["status"] == "todo"
    assert view["priority"] == "medium"
    assert view["created_by"] == actor1.id
    assert view["assigned_to"] == actor1.id
    assert view["is_overdue"] is False
    assert [a["action"] for a in view["activity_logs"]] == ["created"]

    created = sink.of(TaskEvent.CREATED)
    assert len(created) == 1
    assert created[0].scope_user_id == actor1.id
    assert created[0].payload["id"] == view["id"]


def test_create_rejects_unknown_fields(service, actor1) -> None:
    with pytest.raises(ValidationError):
        service.create(actor1, {"title": "x", "assigned_to": actor1.id})


def test_create_with_past_deadline_is_overdue(service, actor1) -> None:
    view = service.create(actor1, {"title": "late", "deadline": "2001-01-01"})
    assert view["is_overdue"] is True


def test_create_rejects_unrepresentable_deadline_and_stores_nothing(service, store, actor1) -> None:
    with pytest.raises(ValidationError) as exc:
        service.create(actor1, {"title": "far", "deadline": "9999-12-31T23:00:00-05:00"})
    assert exc.value.errors == ["Invalid deadline date"]

    assert store.count_tasks() == 0
    assert service.list_mine(actor1) == []


# ---- update ----


def test_update_only_touches_provided_fields(service, actor1) -> None:
    view = service.create(actor1, {"title": "t", "description": "keep", "priority": "low"})

    out = service.update(actor1, view["id"], {"status": "in-progress"})
    assert out["status"] == "in-progress"
    assert out["description"] == "keep"
    assert out["priority"] == "low"

    out = service.update(actor1, view["id"], {"description": ""})
    assert out["description"] == ""

    actions = [a["action"] for a in out["activity_logs"]]
    assert actions == ["created", "status_changed", "description_changed"]
    assert out["activity_logs"][1]["old_value"] == "todo"
    assert out["activity_logs"][1]["new_value"] == "in-progress"


def test_update_clears_deadline_with_none(service, actor1) -> None:
    view = service.create(actor1, {"title": "t", "deadline": "2001-01-01"})
    out = service.update(actor1, view["id"], {"deadline": None})
    assert out["deadline"] is None
    assert out["is_overdue"] is False


def test_update_by_stranger_is_forbidden_and_leaves_task(service, store, actor1, actor2) -> None:
    view = service.create(actor1, {"title": "mine"})

    with pytest.raises(AuthorizationError):
        service.update(actor2, view["id"], {"title": "hijacked"})

    task = store.get_task(view["id"])
    assert task is not None
    assert task.title == "mine"
    assert task.version == view["version"]


def test_admin_may_update_any_task(service, actor1, admin) -> None:
    view = service.create(actor1, {"title": "t"})
    assert service.update(admin, view["id"], {"priority": "high"})["priority"] == "high"


@pytest.mark.parametrize(
    "fields",
    [
        {"status": "blocked"},
        {"priority": "urgent"},
        {"deadline": "31/12/2025"},
        {"deadline": "9999-12-31T23:00:00-05:00"},
        {"title": " "},
    ],
)
def test_update_rejects_invalid_values(service, store, actor1, fields) -> None:
    view = service.create(actor1, {"title": "t"})
    with pytest.raises(ValidationError):
        service.update(actor1, view["id"], fields)
    assert store.get_task(view["id"]).version == view["version"]


def test_update_missing_and_malformed_ids(service, actor1) -> None:
    with pytest.raises(NotFoundError):
        service.update(actor1, new_id(), {"title": "x"})
    with pytest.raises(ValidationError):
        service.update(actor1, "nope", {"title": "x"})


def test_update_emits_to_assignee(service, sink, actor1, admin) -> None:
    view = service.create(actor1, {"title": "t"})
    service.update(admin, view["id"], {"status": "done"})

    updated = sink.of(TaskEvent.UPDATED)
    assert [e.scope_user_id for e in updated] == [actor1.id]
    assert updated[0].payload["notification"]


def test_update_with_stale_version_conflicts(service, store, actor1) -> None:
    view = service.create(actor1, {"title": "t"})
    service.update(actor1, view["id"], {"title": "first"}, expected_version=view["version"])

    with pytest.raises(ConflictError):
        service.update(actor1, view["id"], {"title": "second"}, expected_version=view["version"])
    assert store.get_task(view["id"]).title == "first"


def _after_first_read(monkeypatch, store, action) -> None:
    """Run `action` once, right after the next store.get_task() returns."""
    original = store.get_task
    pending = [action]

    def get_task(task_id):
        task = original(task_id)
        if pending:
            pending.pop()()
        return task

    monkeypatch.setattr(store, "get_task", get_task)


def test_update_keeps_assignment_made_after_its_read(
    monkeypatch, service, store, sink, actor1, admin, u2
) -> None:
    tid = service.create(actor1, {"title": "t"})["id"]
    _after_first_read(monkeypatch, store, lambda: service.assign(admin, tid, u2.id))

    out = service.update(actor1, tid, {"status": "done"})

    task = store.get_task(tid)
    assert task.assigned_to == u2.id
    assert task.status.value == "done"
    assert [a.action for a in task.activity_logs] == ["created", "assigned", "status_changed"]
    assert out["version"] == task.version == 3
    assert sink.of(TaskEvent.UPDATED)[-1].scope_user_id == u2.id


def test_overlapping_comments_keep_each_other(monkeypatch, service, store, actor1, admin) -> None:
    tid = service.create(actor1, {"title": "t"})["id"]
    _after_first_read(monkeypatch, store, lambda: service.add_comment(admin, tid, "from admin"))

    out = service.add_comment(actor1, tid, "from owner")

    assert [c["text"] for c in out["comments"]] == ["from admin", "from owner"]
    actions = [a["action"] for a in out["activity_logs"]]
    assert actions == ["created", "comment_added", "comment_added"]


def test_update_without_effective_change_writes_nothing(service, store, sink, actor1) -> None:
    view = service.create(actor1, {"title": "same", "priority": "high"})
    before = len(sink.events)

    out = service.update(actor1, view["id"], {"title": "same", "priority": "high"})

    assert out["version"] == view["version"]
    assert store.get_task(view["id"]).version == view["version"]
    assert len(sink.events) == before


# ---- delete / get ----


def test_delete_removes_from_every_read_path(service, sink, actor1, admin) -> None:
    view = service.create(actor1, {"title": "gone soon"})
    service.delete(actor1, view["id"])

    assert service.list_mine(actor1) == []
    assert service.list_all(admin).total == 0
    with pytest.raises(NotFoundError):
        service.get(admin, view["id"])

    deleted = sink.of(TaskEvent.DELETED)
    assert len(deleted) == 1
    assert deleted[0].scope_user_id == actor1.id
    assert deleted[0].payload == {"id": view["id"]}


def test_delete_requires_permission(service, actor1, actor2) -> None:
    view = service.create(actor1, {"title": "t"})
    with pytest.raises(AuthorizationError):
        service.delete(actor2, view["id"])
    assert service.get(actor1, view["id"])["id"] == view["id"]


def test_get_joins_identities(service, actor1, u1) -> None:
    view = service.create(actor1, {"title": "t"})
    got = service.get(actor1, view["id"])
    assert got["created_by"] == {"id": u1.id, "name": "Una", "email": "una@example.com"}
    assert got["assigned_to"]["name"] == "Una"


# ---- listing ----


def test_list_mine_newest_first_with_creator(service, actor1, actor2) -> None:
    first = service.create(actor1, {"title": "first"})
    second = service.create(actor1, {"title": "second"})
    service.create(actor2, {"title": "not mine"})

    views = service.list_mine(actor1)
    assert [v["id"] for v in views] == [second["id"], first["id"]]
    assert views[0]["created_by"]["email"] == "una@example.com"


def test_list_all_is_admin_only(service, actor1) -> None:
    with pytest.raises(AuthorizationError):
        service.list_all(actor1)


def test_list_all_filters_and_search(service, actor1, admin) -> None:
    service.create(actor1, {"title": "Ship Release", "priority": "high"})
    service.create(actor1, {"title": "write release notes", "priority": "low"})
    service.create(actor1, {"title": "Lunch"})

    assert service.list_all(admin, search="RELEASE").total == 2
    assert service.list_all(admin, priority="high").total == 1
    # Values outside the enum are ignored, not errors.
    assert service.list_all(admin, priority="critical", status="weird").total == 3

    page = service.list_all(admin, priority="high")
    item = page.items[0]
    assert item["assigned_to"]["name"] == "Una"
    assert item["created_by"]["name"] == "Una"


def test_list_all_pagination_clamps_limit(service, actor1, admin) -> None:
    for i in range(53):
        service.create(actor1, {"title": f"task {i}"})

    page = service.list_all(admin, limit=200)
    assert page.limit == 50
    assert len(page.items) == 50
    assert page.pages == math.ceil(53 / 50)

    last = service.list_all(admin, limit=200, page=2)
    assert len(last.items) == 3
    assert last.items[-1]["title"] == "task 0"


def test_list_all_defaults(service, actor1, admin) -> None:
    for i in range(7):
        service.create(actor1, {"title": f"t{i}"})

    page = service.list_all(admin, page="junk", limit="0")
    assert page.page == 1
    assert page.limit == 5
    assert page.pages == 2
    assert page.items[0]["title"] == "t6"
    assert page.as_dict()["count"] == 5


# ---- assign ----


def test_assign_scenario(service, sink, actor1, actor2, admin, u2) -> None:
    view = service.create(actor1, {"title": "Ship release", "priority": "high"})
    assert view["status"] == "todo"
    assert view["assigned_to"] == actor1.id

    out = service.assign(admin, view["id"], u2.id)
    assert out["assigned_to"]["id"] == u2.id
    assert out["activity_logs"][-1]["action"] == "assigned"

    updated = sink.of(TaskEvent.UPDATED)
    assert updated[-1].scope_user_id == u2.id

    with pytest.raises(AuthorizationError):
        service.update(actor1, view["id"], {"status": "done"})
    assert service.update(actor2, view["id"], {"status": "done"})["status"] == "done"


def test_assign_to_missing_user_rolls_back(service, store, sink, actor1, admin) -> None:
    view = service.create(actor1, {"title": "t"})
    before = len(sink.events)

    with pytest.raises(NotFoundError):
        service.assign(admin, view["id"], new_id())

    task = store.get_task(view["id"])
    assert task.assigned_to == actor1.id
    assert [a.action for a in task.activity_logs] == ["created"]
    assert len(sink.events) == before


def test_assign_missing_task(service, admin, u2) -> None:
    with pytest.raises(NotFoundError):
        service.assign(admin, new_id(), u2.id)


def test_assign_validates_ids_and_role(service, actor1, admin, u2) -> None:
    view = service.create(actor1, {"title": "t"})
    with pytest.raises(ValidationError):
        service.assign(admin, view["id"], "bad-id")
    with pytest.raises(ValidationError):
        service.assign(admin, "bad-id", u2.id)
    with pytest.raises(AuthorizationError):
        service.assign(actor1, view["id"], u2.id)


def test_assign_after_user_deleted_fails_cleanly(service, store, actor1, admin, u2) -> None:
    view = service.create(actor1, {"title": "t"})
    store.delete_user(u2.id)
    with pytest.raises(NotFoundError):
        service.assign(admin, view["id"], u2.id)
    assert store.get_task(view["id"]).assigned_to == actor1.id


def test_assign_after_task_deleted_emits_nothing(service, store, sink, actor1, admin, u2) -> None:
    view = service.create(actor1, {"title": "t"})
    store.delete_task(view["id"])
    before = len(sink.events)

    with pytest.raises(NotFoundError):
        service.assign(admin, view["id"], u2.id)
    assert len(sink.events) == before


class _HoldingStore:
    """Store whose transaction() runs `on_hold` after the block, before commit."""

    def __init__(self, store, on_hold) -> None:
        self._store = store
        self._on_hold = on_hold

    def __getattr__(self, name):
        return getattr(self._store, name)

    @contextlib.contextmanager
    def transaction(self):
        with self._store.transaction() as tx:
            yield tx
            self._on_hold()


@pytest.mark.parametrize("target", ["task", "user"])
def test_delete_during_assign_waits_for_commit(store, sink, actor1, admin, u2, target) -> None:
    tid = TaskService(store, sink).create(actor1, {"title": "t"})["id"]
    seen: dict = {}

    def work() -> None:
        if target == "task":
            seen["deleted"] = store.delete_task(tid)
        else:
            seen["deleted"] = store.delete_user(u2.id)

    def start_delete() -> None:
        worker = threading.Thread(target=work, daemon=True)
        worker.start()
        worker.join(0.3)
        seen["blocked"] = worker.is_alive()
        seen["worker"] = worker

    service = TaskService(_HoldingStore(store, start_delete), sink)
    out = service.assign(admin, tid, u2.id)

    seen["worker"].join(10.0)
    assert seen["blocked"] is True
    assert seen["deleted"] is True
    assert out["assigned_to"]["id"] == u2.id
    assert sink.of(TaskEvent.UPDATED)[-1].scope_user_id == u2.id
    if target == "user":
        assert store.get_task(tid).assigned_to == u2.id
    else:
        assert store.get_task(tid) is None


def test_assign_storage_failure_becomes_transaction_error(store, sink, actor1, admin, u2) -> None:
    service = TaskService(store, sink)
    view = service.create(actor1, {"title": "t"})

    class FailingSaveStore:
        def __getattr__(self, name):
            return getattr(store, name)

        def transaction(self):
            return _FailingTx(store.transaction())

    class _FailingTx:
        def __init__(self, inner):
            self._inner = inner

        def __enter__(self):
            tx = self._inner.__enter__()

            def boom(*a, **kw):
                raise RuntimeError("disk on fire")

            tx.save_task = boom
            return tx

        def __exit__(self, *exc):
            return self._inner.__exit__(*exc)

    broken = TaskService(FailingSaveStore(), sink)
    before = len(sink.events)
    with pytest.raises(TransactionError):
        broken.assign(admin, view["id"], u2.id)
    assert store.get_task(view["id"]).assigned_to == actor1.id
    assert len(sink.events) == before


# ---- sub-resources ----


def test_comments_and_subtasks(service, actor1, actor2) -> None:
    view = service.create(actor1, {"title": "t"})

    out = service.add_comment(actor1, view["id"], "  looks good  ")
    assert out["comments"][0]["text"] == "looks good"
    assert out["comments"][0]["author"] == actor1.id

    out = service.add_subtask(actor1, view["id"], "step one")
    out = service.set_subtask_completed(actor1, view["id"], 0, True)
    assert out["sub_tasks"] == [{"title": "step one", "completed": True}]

    actions = [a["action"] for a in out["activity_logs"]]
    assert actions == ["created", "comment_added", "subtask_added", "subtask_completed"]

    with pytest.raises(NotFoundError):
        service.set_subtask_completed(actor1, view["id"], 5, True)
    with pytest.raises(ValidationError):
        service.add_comment(actor1, view["id"], "   ")
    with pytest.raises(AuthorizationError):
        service.add_subtask(actor2, view["id"], "nope")


def test_subtask_toggle_to_same_state_is_silent(service, store, sink, actor1) -> None:
    view = service.add_subtask(actor1, service.create(actor1, {"title": "t"})["id"], "step")
    before = len(sink.events)

    out = service.set_subtask_completed(actor1, view["id"], 0, False)

    assert out["version"] == view["version"]
    assert store.get_task(view["id"]).version == view["version"]
    assert len(sink.events) == before

    service.set_subtask_completed(actor1, view["id"], 0, True)
    assert len(sink.events) == before + 1


# ---- stats ----


def test_stats_empty_is_zero_filled(service, admin) -> None:
    s = service.stats(admin).as_dict()
    assert s == {
        "total": 0,
        "completed": 0,
        "pending": 0,
        "overdue": 0,
        "status_count": {"todo": 0, "in-progress": 0, "done": 0},
        "priority_count": {"low": 0, "medium": 0, "high": 0},
    }


def test_stats_counts(service, actor1, admin) -> None:
    a = service.create(actor1, {"title": "a", "priority": "high", "deadline": "2001-01-01"})
    b = service.create(actor1, {"title": "b", "deadline": "2001-01-01"})
    service.create(actor1, {"title": "c", "priority": "low", "deadline": "2999-01-01"})
    service.update(actor1, b["id"], {"status": "done"})
    service.update(actor1, a["id"], {"status": "in-progress"})

    s = service.stats(admin)
    assert (s.total, s.completed, s.pending, s.overdue) == (3, 1, 2, 1)
    assert s.status_count == {"todo": 1, "in-progress": 1, "done": 1}
    assert s.priority_count == {"low": 1, "medium": 1, "high": 1}


def test_stats_is_admin_only(service, actor1) -> None:
    with pytest.raises(AuthorizationError):
        service.stats(actor1)


# ---- notifications ----


def test_sink_failure_never_fails_the_request(store, actor1) -> None:
    broken = BrokenNotificationSink()
    service = TaskService(store, broken)

    view = service.create(actor1, {"title": "still saved"})

    assert broken.calls == 1
    assert store.get_task(view["id"]) is not None
