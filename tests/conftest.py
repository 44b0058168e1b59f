# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from taskflow.core.state import AppState
from taskflow.tasks.task_models import Actor, Role, User
from taskflow.tasks.task_service import TaskService
from taskflow.tasks.task_store import TaskStore

from .fakes import FakeNotificationSink


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with AppState and the service.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated from the environment.
    """
    return SimpleNamespace(
        app_name="taskflow-test",
        data_dir=tmp_path,
        tasks_db_path=tmp_path / "tasks.sqlite3",
        page_default_limit=5,
        page_max_limit=50,
    )


@pytest.fixture()
def store(settings: SimpleNamespace) -> TaskStore:
    # Real SQLite: the store's queries and transactions are part of what we test.
    return TaskStore(settings.tasks_db_path)


@pytest.fixture()
def sink() -> FakeNotificationSink:
    return FakeNotificationSink()


@pytest.fixture()
def service(store: TaskStore, sink: FakeNotificationSink) -> TaskService:
    return TaskService(store, sink)


@pytest.fixture()
def u1(store: TaskStore) -> User:
    return store.add_user(name="Una", email="una@example.com")


@pytest.fixture()
def u2(store: TaskStore) -> User:
    return store.add_user(name="Dos", email="dos@example.com")


@pytest.fixture()
def admin_user(store: TaskStore) -> User:
    return store.add_user(name="Root", email="root@example.com", role=Role.ADMIN)


@pytest.fixture()
def actor1(u1: User) -> Actor:
    return Actor(id=u1.id, role=u1.role)


@pytest.fixture()
def actor2(u2: User) -> Actor:
    return Actor(id=u2.id, role=u2.role)


@pytest.fixture()
def admin(admin_user: User) -> Actor:
    return Actor(id=admin_user.id, role=Role.ADMIN)


@pytest.fixture()
def state(settings, store, sink, service) -> AppState:
    return AppState(settings=settings, task_store=store, sink=sink, service=service)
